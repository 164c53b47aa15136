"""HeyGen lip-sync over its REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from scriptshift.config import Settings, get_settings
from scriptshift.errors import ProviderError
from scriptshift.providers.base import LipSyncProvider, LipSyncStatus

logger = logging.getLogger(__name__)

PROVIDER_NAME = "heygen"


class HeyGenLipSyncProvider(LipSyncProvider):
    """Submits video + audio URLs and reports the processing status."""

    base_url = "https://api.heygen.com/v2"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.heygen_api_key
        if not self.api_key:
            raise ValueError("HeyGen API key is required. Set HEYGEN_API_KEY environment variable.")
        self._transport = transport

    async def submit(self, video_url: str, audio_url: str) -> str:
        data = await self._request(
            "POST",
            "/video/translate",
            json={"video_url": video_url, "audio_url": audio_url},
        )
        video_id = data.get("video_id") or (data.get("data") or {}).get("video_id")
        if not video_id:
            raise ProviderError("Lip-sync response missing video_id", provider=PROVIDER_NAME)

        logger.info("Submitted lip-sync job %s", video_id)
        return str(video_id)

    async def status(self, handle: str) -> LipSyncStatus:
        data = await self._request("GET", f"/video/status/{handle}")
        nested = data.get("data") or {}
        return LipSyncStatus(
            status=str(data.get("status") or nested.get("status") or "pending"),
            output_url=data.get("video_url") or nested.get("video_url"),
            error=data.get("error") or nested.get("error"),
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Api-Key": self.api_key},
            timeout=self.settings.provider_request_timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                raise ProviderError(
                    f"{method} {url} returned {e.response.status_code}: {e.response.text[:500]}",
                    provider=PROVIDER_NAME,
                ) from e
            except (httpx.HTTPError, ValueError) as e:
                raise ProviderError(f"{method} {url} failed: {e}", provider=PROVIDER_NAME) from e
