"""Application configuration and settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Application version - single source of truth
VERSION = "0.4.0"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "ScriptShift"
    debug: bool = False
    log_level: str = "INFO"
    silence_sqlalchemy: bool = True  # Silence SQLAlchemy logs except errors

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///./data/scriptshift.db"

    # File Storage
    storage_dir: Path = Path("./data/blobs")  # Local blob storage root
    public_base_url: str = "http://localhost:8000/blobs"  # URL prefix for stored blobs
    temp_dir: Path = Path("./data/tmp")  # Per-job scratch directories
    max_upload_size_mb: int = 50

    # AI Services
    assemblyai_api_key: str = ""
    anthropic_api_key: str = ""
    elevenlabs_api_key: str = ""
    heygen_api_key: str = ""
    provider_request_timeout_seconds: float = 120.0

    # Translation Settings
    translation_model: str = "claude-sonnet-4-5"
    translation_concurrency: int = 4  # Segments translated in parallel

    # Speech Settings
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    default_voice_id: str = "21m00Tcm4TlvDq8ikWAM"  # Used for speakers without a mapping

    # Provider polling
    provider_poll_interval_seconds: float = 5.0
    transcription_max_wait_seconds: float = 600.0
    lipsync_max_wait_seconds: float = 600.0

    # Job queue
    max_concurrent_jobs: int = 2  # Active jobs across every dispatcher process
    rate_limit_max_jobs: int = 5  # Job starts allowed per window
    rate_limit_window_seconds: float = 60.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 5.0  # Doubled after every failed attempt
    queue_retention_days: int = 7
    queue_lease_seconds: float = 120.0  # Claims not renewed within this are requeued
    dispatcher_poll_interval_seconds: float = 1.0
    dispatcher_concurrency: int | None = None  # Per-process cap; defaults to max_concurrent_jobs

    # Behavior
    enable_lipsync_default: bool = False
    attach_inflight_submissions: bool = False  # Reuse a pending/processing job for the same file
    cache_default_ttl_seconds: int = 86400

    # Media toolchain
    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_timeout_seconds: int = 900

    @property
    def max_upload_size_bytes(self) -> int:
        """Upload limit converted to bytes."""
        return self.max_upload_size_mb * 1024 * 1024

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        if self.database_url.startswith("sqlite:///") and ":memory:" not in self.database_url:
            Path(self.database_url.removeprefix("sqlite:///")).parent.mkdir(
                parents=True, exist_ok=True
            )


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    settings = Settings()
    settings.ensure_directories()
    return settings
