"""Blob storage: local filesystem published under a public URL prefix."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

import httpx

from scriptshift.config import Settings, get_settings
from scriptshift.errors import NotFoundError, ProviderError
from scriptshift.providers.base import BlobStorage

logger = logging.getLogger(__name__)

PROVIDER_NAME = "storage"


def sanitize_blob_name(name: str) -> str:
    """
    Sanitize a blob name to prevent path traversal.

    Args:
        name: Requested blob name

    Returns:
        Name safe for use as a single path component
    """
    safe_name = os.path.basename(name)
    safe_name = "".join(c for c in safe_name if c.isalnum() or c in "._-")
    if not safe_name or safe_name.strip(".") == "":
        raise ValueError(f"Invalid blob name: {name!r}")
    return safe_name


class LocalBlobStorage(BlobStorage):
    """
    Stores blobs under `storage_dir` and serves them from `public_base_url`.

    URLs outside the public prefix (provider outputs, remote sources) are
    downloaded over HTTP.
    """

    def __init__(
        self,
        storage_dir: Path | None = None,
        public_base_url: str | None = None,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.root = Path(storage_dir or self.settings.storage_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or self.settings.public_base_url).rstrip("/")
        self._transport = transport

    def url_for(self, name: str) -> str:
        return f"{self.public_base_url}/{name}"

    def path_for_url(self, url: str) -> Path | None:
        """Local path behind one of our URLs, or None for foreign URLs."""
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        return self.root / sanitize_blob_name(url[len(prefix) :])

    async def put(self, data: bytes, name: str) -> str:
        safe_name = sanitize_blob_name(name)
        target = self.root / safe_name

        def _write() -> None:
            tmp = target.with_name(f".{safe_name}.tmp")
            tmp.write_bytes(data)
            tmp.replace(target)

        await asyncio.to_thread(_write)
        logger.info("Stored blob %s (%.2f MB)", safe_name, len(data) / (1024 * 1024))
        return self.url_for(safe_name)

    async def fetch(self, url: str) -> bytes:
        local_path = self.path_for_url(url)
        if local_path is not None:
            if not local_path.exists():
                raise NotFoundError(f"Blob not found: {url}")
            return await asyncio.to_thread(local_path.read_bytes)

        async with httpx.AsyncClient(
            timeout=self.settings.provider_request_timeout_seconds,
            follow_redirects=True,
            transport=self._transport,
        ) as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ProviderError(
                    f"Download of {url} returned {e.response.status_code}", provider=PROVIDER_NAME
                ) from e
            except httpx.HTTPError as e:
                raise ProviderError(f"Download of {url} failed: {e}", provider=PROVIDER_NAME) from e
        return response.content
