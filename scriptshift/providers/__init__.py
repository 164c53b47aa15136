"""External capability providers and the bundle handed to the pipeline."""

from dataclasses import dataclass

from scriptshift.config import Settings, get_settings
from scriptshift.providers.base import (
    BlobStorage,
    LipSyncProvider,
    LipSyncStatus,
    SpeechProvider,
    TranscriptionProvider,
    TranscriptionResult,
    TranslationProvider,
)


@dataclass(slots=True)
class ProviderBundle:
    """Constructed provider handles for one process; passed explicitly to each pipeline run."""

    transcription: TranscriptionProvider
    translation: TranslationProvider
    speech: SpeechProvider
    storage: BlobStorage
    lipsync: LipSyncProvider | None = None


def build_providers(settings: Settings | None = None) -> ProviderBundle:
    """
    Build the production provider clients from settings.

    Lip-sync is optional: without a HeyGen key the bundle carries no lip-sync
    provider and jobs requesting it fail at the lipsync stage.
    """
    from scriptshift.providers.anthropic import AnthropicTranslationProvider
    from scriptshift.providers.assemblyai import AssemblyAITranscriptionProvider
    from scriptshift.providers.elevenlabs import ElevenLabsSpeechProvider
    from scriptshift.providers.heygen import HeyGenLipSyncProvider
    from scriptshift.providers.storage import LocalBlobStorage

    settings = settings or get_settings()
    return ProviderBundle(
        transcription=AssemblyAITranscriptionProvider(settings=settings),
        translation=AnthropicTranslationProvider(settings=settings),
        speech=ElevenLabsSpeechProvider(settings=settings),
        storage=LocalBlobStorage(settings=settings),
        lipsync=HeyGenLipSyncProvider(settings=settings) if settings.heygen_api_key else None,
    )


__all__ = [
    "BlobStorage",
    "LipSyncProvider",
    "LipSyncStatus",
    "ProviderBundle",
    "SpeechProvider",
    "TranscriptionProvider",
    "TranscriptionResult",
    "TranslationProvider",
    "build_providers",
]
