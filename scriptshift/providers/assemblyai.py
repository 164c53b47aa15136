"""AssemblyAI transcription + speaker diarization over its REST API."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx

from scriptshift.config import Settings, get_settings
from scriptshift.errors import ProviderError
from scriptshift.models import Segment
from scriptshift.providers.base import TranscriptionProvider, TranscriptionResult
from scriptshift.services.polling import poll_until

logger = logging.getLogger(__name__)

PROVIDER_NAME = "assemblyai"


class AssemblyAITranscriptionProvider(TranscriptionProvider):
    """Uploads audio, requests a diarized transcript and polls until it is ready."""

    base_url = "https://api.assemblyai.com/v2"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.assemblyai_api_key
        if not self.api_key:
            raise ValueError(
                "AssemblyAI API key is required. Set ASSEMBLYAI_API_KEY environment variable."
            )
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"authorization": self.api_key},
            timeout=self.settings.provider_request_timeout_seconds,
            transport=self._transport,
        )

    async def transcribe(self, audio_path: Path) -> TranscriptionResult:
        audio_path = Path(audio_path)
        if not audio_path.exists():
            raise FileNotFoundError(f"Audio file not found: {audio_path}")

        async with self._client() as client:
            audio = await asyncio.to_thread(audio_path.read_bytes)
            upload = await self._request(client, "POST", "/upload", content=audio)
            upload_url = upload.get("upload_url")
            if not upload_url:
                raise ProviderError("Upload response missing upload_url", provider=PROVIDER_NAME)

            created = await self._request(
                client,
                "POST",
                "/transcript",
                json={
                    "audio_url": upload_url,
                    "speaker_labels": True,
                    "language_detection": True,
                },
            )
            transcript_id = created.get("id")
            if not transcript_id:
                raise ProviderError("Transcript response missing id", provider=PROVIDER_NAME)
            logger.info("Submitted transcription %s for %s", transcript_id, audio_path.name)

            async def check() -> dict[str, Any]:
                return await self._request(client, "GET", f"/transcript/{transcript_id}")

            result = await poll_until(
                check,
                is_done=lambda data: data.get("status") == "completed",
                is_failed=lambda data: (data.get("error") or "unknown error")
                if data.get("status") == "error"
                else None,
                interval_seconds=self.settings.provider_poll_interval_seconds,
                max_wait_seconds=self.settings.transcription_max_wait_seconds,
                description=f"Transcription {transcript_id}",
                provider=PROVIDER_NAME,
            )

        return self._parse_result(result)

    @staticmethod
    def _parse_result(data: dict[str, Any]) -> TranscriptionResult:
        """Convert AssemblyAI utterances (milliseconds) to segments (seconds)."""
        segments: list[Segment] = []
        for utterance in data.get("utterances") or []:
            start = float(utterance.get("start", 0)) / 1000
            end = float(utterance.get("end", 0)) / 1000
            if end <= start:
                logger.warning("Dropping zero-length utterance at %.3fs", start)
                continue

            confidence = utterance.get("confidence")
            segments.append(
                Segment(
                    start=start,
                    end=end,
                    speaker=f"Speaker {utterance.get('speaker', 'A')}",
                    text=str(utterance.get("text") or ""),
                    confidence=min(1.0, max(0.0, float(confidence)))
                    if confidence is not None
                    else None,
                )
            )

        return TranscriptionResult(language=data.get("language_code") or "en", segments=segments)

    @staticmethod
    async def _request(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
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
