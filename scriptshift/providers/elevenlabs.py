"""ElevenLabs text-to-speech (voice cloning) over its REST API."""

from __future__ import annotations

import logging

import httpx

from scriptshift.config import Settings, get_settings
from scriptshift.errors import ProviderError
from scriptshift.providers.base import SpeechProvider

logger = logging.getLogger(__name__)

PROVIDER_NAME = "elevenlabs"

DEFAULT_VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0.5,
    "use_speaker_boost": True,
}


class ElevenLabsSpeechProvider(SpeechProvider):
    """Per-segment speech synthesis returning MP3 bytes."""

    base_url = "https://api.elevenlabs.io/v1"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.elevenlabs_api_key
        if not self.api_key:
            raise ValueError(
                "ElevenLabs API key is required. Set ELEVENLABS_API_KEY environment variable."
            )
        self.model_id = self.settings.elevenlabs_model_id
        self._transport = transport

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        if not text.strip():
            raise ValueError("Text to synthesize cannot be empty")

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.settings.provider_request_timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    f"/text-to-speech/{voice_id}",
                    headers={
                        "Accept": "audio/mpeg",
                        "xi-api-key": self.api_key,
                    },
                    json={
                        "text": text,
                        "model_id": self.model_id,
                        "voice_settings": DEFAULT_VOICE_SETTINGS,
                    },
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ProviderError(
                    f"Speech generation failed ({e.response.status_code}): {e.response.text[:500]}",
                    provider=PROVIDER_NAME,
                ) from e
            except httpx.HTTPError as e:
                raise ProviderError(f"Speech generation failed: {e}", provider=PROVIDER_NAME) from e

        if not response.content:
            raise ProviderError("Speech generation returned no audio", provider=PROVIDER_NAME)

        logger.debug("Synthesized %s chars with voice %s", len(text), voice_id)
        return response.content
