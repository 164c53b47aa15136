"""Shared fixtures: isolated database, fake providers and a wired pipeline."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from scriptshift import models  # noqa: F401  (registers tables)
from scriptshift.config import Settings
from scriptshift.database import Base, enable_sqlite_foreign_keys
from scriptshift.errors import NotFoundError
from scriptshift.models import Job, JobStatus, Segment
from scriptshift.providers import ProviderBundle
from scriptshift.providers.base import (
    BlobStorage,
    LipSyncProvider,
    LipSyncStatus,
    SpeechProvider,
    TranscriptionProvider,
    TranscriptionResult,
    TranslationProvider,
)
from scriptshift.schemas import ProgressUpdate, UploadResponse
from scriptshift.services import jobs
from scriptshift.services.job_queue import JobQueue
from scriptshift.services.media import MediaProcessor, plan_clip_offsets
from scriptshift.services.pipeline import DubbingPipeline

SOURCE_SEGMENTS = [
    Segment(start=4.0, end=6.5, speaker="Speaker B", text="See you tomorrow.", confidence=0.88),
    Segment(start=0.0, end=2.0, speaker="Speaker A", text="Hello there.", confidence=0.95),
    Segment(start=2.5, end=4.0, speaker="Speaker A", text="How are you?", confidence=0.9),
]

LIPSYNC_OUTPUT_URL = "memory://heygen/output.mp4"


class FakeStorage(BlobStorage):
    base_url = "memory://blobs"

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.puts: list[str] = []

    async def put(self, data: bytes, name: str) -> str:
        url = f"{self.base_url}/{name}"
        self.blobs[url] = data
        self.puts.append(name)
        return url

    async def fetch(self, url: str) -> bytes:
        if url not in self.blobs:
            raise NotFoundError(f"Blob not found: {url}")
        return self.blobs[url]


class FakeTranscription(TranscriptionProvider):
    def __init__(self, segments: list[Segment] | None = None, language: str = "en") -> None:
        self.segments = list(segments if segments is not None else SOURCE_SEGMENTS)
        self.language = language
        self.calls = 0

    async def transcribe(self, audio_path: Path) -> TranscriptionResult:
        assert Path(audio_path).exists()
        self.calls += 1
        return TranscriptionResult(language=self.language, segments=list(self.segments))


class FakeTranslation(TranslationProvider):
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.fail_with: Exception | None = None

    async def translate(self, text: str, source_lang: str, target_lang: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append((text, source_lang, target_lang))
        return f"[{target_lang}] {text}"

    def get_model_info(self) -> dict[str, Any]:
        return {"name": "fake-translator", "provider": "fake"}


class FakeSpeech(SpeechProvider):
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    async def synthesize(self, text: str, voice_id: str) -> bytes:
        self.calls.append((text, voice_id))
        return f"<{voice_id}:{text}>".encode()


class FakeLipSync(LipSyncProvider):
    def __init__(self, storage: FakeStorage) -> None:
        self.storage = storage
        self.submitted: list[tuple[str, str]] = []
        self.statuses = [
            LipSyncStatus(status="processing"),
            LipSyncStatus(status="completed", output_url=LIPSYNC_OUTPUT_URL),
        ]

    async def submit(self, video_url: str, audio_url: str) -> str:
        self.submitted.append((video_url, audio_url))
        self.storage.blobs[LIPSYNC_OUTPUT_URL] = b"lipsynced-video"
        return "lip-1"

    async def status(self, handle: str) -> LipSyncStatus:
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class FakeMedia(MediaProcessor):
    """Writes predictable bytes instead of running ffmpeg/pydub."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.extract_calls = 0
        self.mux_calls = 0
        self.rendered: list[list[Segment]] = []

    async def extract_audio(self, video_path: Path, audio_path: Path) -> Path:
        self.extract_calls += 1
        Path(audio_path).write_bytes(b"audio:" + Path(video_path).read_bytes())
        return Path(audio_path)

    async def mux_video(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        self.mux_calls += 1
        Path(output_path).write_bytes(b"muxed:" + Path(audio_path).read_bytes())
        return Path(output_path)

    async def render_track(self, segments, clips, output_path, **kwargs):  # type: ignore[no-untyped-def]
        placements, _ = plan_clip_offsets(segments, [1.0] * len(clips))
        Path(output_path).write_bytes(b"".join(clips))
        self.rendered.append(list(segments))
        return placements


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url="sqlite://",
        storage_dir=tmp_path / "blobs",
        temp_dir=tmp_path / "tmp",
        public_base_url="http://testserver/blobs",
        max_concurrent_jobs=2,
        rate_limit_max_jobs=100,
        rate_limit_window_seconds=60,
        max_attempts=3,
        retry_backoff_seconds=5,
        translation_concurrency=2,
        provider_poll_interval_seconds=0.0,
        lipsync_max_wait_seconds=30.0,
        default_voice_id="default-voice",
        attach_inflight_submissions=False,
    )


@pytest.fixture()
def session_factory() -> Iterator[sessionmaker[Session]]:
    """Isolated in-memory SQLite shared across threads (StaticPool)."""
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


@pytest.fixture()
def db(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def job_factory(db: Session) -> Callable[..., Job]:
    def _create_job(**overrides: Any) -> Job:
        payload: dict[str, Any] = {
            "id": str(uuid4()),
            "file_hash": "a" * 64,
            "original_filename": "clip.mp4",
            "file_url": "memory://blobs/clip.mp4",
            "target_language": "es",
            "status": JobStatus.PENDING,
            "progress": 0,
        }
        payload.update(overrides)

        job = Job(**payload)
        db.add(job)
        db.commit()
        db.refresh(job)
        return job

    return _create_job


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def providers(storage: FakeStorage) -> ProviderBundle:
    return ProviderBundle(
        transcription=FakeTranscription(),
        translation=FakeTranslation(),
        speech=FakeSpeech(),
        storage=storage,
        lipsync=FakeLipSync(storage),
    )


@pytest.fixture()
def media(settings: Settings) -> FakeMedia:
    return FakeMedia(settings)


@pytest.fixture()
def queue(session_factory: sessionmaker[Session], settings: Settings) -> JobQueue:
    return JobQueue(session_factory=session_factory, settings=settings)


@pytest.fixture()
def progress_events() -> list[ProgressUpdate]:
    return []


@pytest.fixture()
def pipeline(
    providers: ProviderBundle,
    media: FakeMedia,
    queue: JobQueue,
    session_factory: sessionmaker[Session],
    settings: Settings,
    progress_events: list[ProgressUpdate],
) -> DubbingPipeline:
    async def record(update: ProgressUpdate) -> None:
        progress_events.append(update)

    return DubbingPipeline(
        providers,
        media=media,
        queue=queue,
        session_factory=session_factory,
        settings=settings,
        progress_sink=record,
        sleep=_no_sleep,
    )


@pytest.fixture()
def submit(
    session_factory: sessionmaker[Session],
    storage: FakeStorage,
    queue: JobQueue,
    settings: Settings,
) -> Callable[..., Awaitable[UploadResponse]]:
    """Submit an upload through the service layer, as the upload route does."""

    async def _submit(
        data: bytes = b"source-video-bytes",
        target_language: str = "es",
        *,
        filename: str = "clip.mp4",
        enable_lipsync: bool = False,
    ) -> UploadResponse:
        session = session_factory()
        try:
            return await jobs.submit_upload(
                session,
                data=data,
                filename=filename,
                target_language=target_language,
                enable_lipsync=enable_lipsync,
                storage=storage,
                queue=queue,
                settings=settings,
            )
        finally:
            session.close()

    return _submit
