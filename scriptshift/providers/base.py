"""Abstract interfaces for the external capability providers.

The pipeline only talks to these interfaces. Concrete clients are built
once per process by `build_providers` and handed to the pipeline
explicitly, which also lets tests pass in fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from scriptshift.models import Segment


@dataclass(slots=True)
class TranscriptionResult:
    """Speaker-attributed transcription of one audio file."""

    language: str
    segments: list[Segment] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class LipSyncStatus:
    """Status of a lip-sync job as reported by the provider."""

    status: str  # pending | processing | completed | failed
    output_url: str | None = None
    error: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"


class TranscriptionProvider(ABC):
    """Speech-to-text with speaker diarization."""

    @abstractmethod
    async def transcribe(self, audio_path: Path) -> TranscriptionResult:
        """
        Transcribe and diarize an audio file.

        Args:
            audio_path: Local path to the extracted audio

        Returns:
            Detected language plus segments (any order; the pipeline sorts them)

        Raises:
            ProviderError: If the provider rejects the audio or fails
        """


class TranslationProvider(ABC):
    """Machine translation of short texts."""

    @abstractmethod
    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        """
        Translate text from source language to target language.

        Args:
            text: The text to translate
            source_lang: Source language code (e.g., "en")
            target_lang: Target language code (e.g., "es")

        Returns:
            The translated text

        Raises:
            ProviderError: If translation fails
        """

    @abstractmethod
    def get_model_info(self) -> dict[str, Any]:
        """
        Get information about the model being used.

        Returns:
            Dictionary with at least `name` and `provider`
        """

    def __str__(self) -> str:
        """String representation of the provider."""
        info = self.get_model_info()
        return f"{info.get('provider', 'Unknown')} ({info.get('name', 'Unknown')})"


class SpeechProvider(ABC):
    """Text-to-speech with selectable (cloned) voices."""

    @abstractmethod
    async def synthesize(self, text: str, voice_id: str) -> bytes:
        """Synthesize one segment of speech; returns encoded audio bytes (MP3)."""


class LipSyncProvider(ABC):
    """Adjusts mouth movement in a video to match new audio."""

    @abstractmethod
    async def submit(self, video_url: str, audio_url: str) -> str:
        """Start a lip-sync job; returns the provider's job handle."""

    @abstractmethod
    async def status(self, handle: str) -> LipSyncStatus:
        """Fetch the current status of a lip-sync job."""


class BlobStorage(ABC):
    """Durable storage handing out public URLs."""

    @abstractmethod
    async def put(self, data: bytes, name: str) -> str:
        """Store bytes under a name and return a public URL."""

    @abstractmethod
    async def fetch(self, url: str) -> bytes:
        """Download the bytes behind a URL (stored by us or not)."""
