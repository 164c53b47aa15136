"""Tests for the job service functions behind the HTTP routes."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from scriptshift.config import Settings
from scriptshift.errors import InputValidationError, NotFoundError
from scriptshift.models import (
    SOURCE_LANGUAGE,
    Job,
    JobStatus,
    QueueEntry,
    QueueState,
    Segment,
    Transcript,
    VoiceMapping,
    utcnow,
)
from scriptshift.schemas import UploadResponse
from scriptshift.services import jobs
from scriptshift.services.content_cache import compute_content_hash
from scriptshift.services.job_queue import JobQueue

Submit = Callable[..., Awaitable[UploadResponse]]


def _complete(session_factory: sessionmaker[Session], job_id: str) -> None:
    with session_factory() as session:
        job = session.get(Job, job_id)
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.completed_at = utcnow()
        session.commit()


@pytest.mark.asyncio
async def test_submit_upload_creates_pending_job(
    submit: Submit,
    storage,
    queue: JobQueue,
    session_factory: sessionmaker[Session],
) -> None:
    data = b"a small video"

    upload = await submit(data, "es", filename="My Clip.mp4")

    file_hash = compute_content_hash(data)
    assert upload.cached is False
    assert upload.file_hash == file_hash
    assert upload.file_url == f"memory://blobs/{file_hash}-MyClip.mp4"
    assert storage.blobs[upload.file_url] == data

    with session_factory() as session:
        job = session.get(Job, upload.job_id)
        assert job.status == JobStatus.PENDING
        assert job.original_filename == "My Clip.mp4"
        assert job.enable_lipsync is False
    assert queue.get_status(upload.job_id).state == QueueState.WAITING


@pytest.mark.asyncio
async def test_resubmitting_completed_content_returns_same_job(
    submit: Submit, storage, session_factory: sessionmaker[Session]
) -> None:
    first = await submit()
    _complete(session_factory, first.job_id)
    puts = len(storage.puts)

    second = await submit()

    assert second.cached is True
    assert second.job_id == first.job_id
    assert len(storage.puts) == puts
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(Job)) == 1


@pytest.mark.asyncio
async def test_resubmitting_inflight_content_creates_new_job_by_default(
    submit: Submit, session_factory: sessionmaker[Session]
) -> None:
    first = await submit()
    second = await submit()

    assert second.cached is False
    assert second.job_id != first.job_id
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(QueueEntry)) == 2


@pytest.mark.asyncio
async def test_attach_inflight_submissions(
    session_factory: sessionmaker[Session], storage, settings: Settings
) -> None:
    strict = settings.model_copy(update={"attach_inflight_submissions": True})
    queue = JobQueue(session_factory=session_factory, settings=strict)

    responses = []
    for _ in range(2):
        with session_factory() as session:
            responses.append(
                await jobs.submit_upload(
                    session,
                    data=b"same bytes",
                    filename="clip.mp4",
                    target_language="es",
                    storage=storage,
                    queue=queue,
                    settings=strict,
                )
            )

    assert responses[1].cached is True
    assert responses[1].job_id == responses[0].job_id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("data", "language", "status_code"),
    [
        (b"", "es", 400),
        (b"video", "", 400),
        (b"video", "   ", 400),
    ],
)
async def test_submit_upload_rejects_bad_input(
    submit: Submit, data: bytes, language: str, status_code: int
) -> None:
    with pytest.raises(InputValidationError) as exc_info:
        await submit(data, language)

    assert exc_info.value.status_code == status_code


@pytest.mark.asyncio
async def test_submit_upload_rejects_oversized_file(
    db: Session, storage, queue: JobQueue, settings: Settings
) -> None:
    small = settings.model_copy(update={"max_upload_size_mb": 1})

    with pytest.raises(InputValidationError) as exc_info:
        await jobs.submit_upload(
            db,
            data=b"x" * (1024 * 1024 + 1),
            filename="big.mp4",
            target_language="es",
            storage=storage,
            queue=queue,
            settings=small,
        )

    assert exc_info.value.status_code == 413
    assert storage.puts == []


@pytest.mark.asyncio
async def test_get_job_status_before_completion(
    submit: Submit, db: Session, queue: JobQueue
) -> None:
    upload = await submit()

    status = jobs.get_job_status(db, upload.job_id, queue)

    assert status.job.id == upload.job_id
    assert status.job.status == JobStatus.PENDING
    assert status.queue_status.state == QueueState.WAITING
    assert status.artifacts is None
    assert status.ready_video_url is None


def test_get_job_status_unknown_job(db: Session, queue: JobQueue) -> None:
    with pytest.raises(NotFoundError):
        jobs.get_job_status(db, "nope", queue)


def _seed_transcript(db: Session, job: Job) -> Transcript:
    transcript = Transcript(
        job_id=job.id,
        file_hash=job.file_hash,
        language=SOURCE_LANGUAGE,
        source_language="en",
        speakers=["Speaker A"],
        segments=[Segment(start=0.0, end=1.0, speaker="Speaker A", text="helo")],
    )
    db.add(transcript)
    db.commit()
    return transcript


def test_save_transcript_version_appends(db: Session, job_factory: Callable[..., Job]) -> None:
    job = job_factory()
    original = _seed_transcript(db, job)

    saved = jobs.save_transcript_version(
        db,
        job.id,
        SOURCE_LANGUAGE,
        [
            Segment(start=1.0, end=2.0, speaker="Speaker B", text="world"),
            Segment(start=0.0, end=1.0, speaker="Speaker A", text="hello"),
        ],
    )

    assert saved.id != original.id
    assert saved.source_language == "en"
    assert [s.text for s in saved.segments] == ["hello", "world"]
    assert saved.speakers == ["Speaker A", "Speaker B"]
    assert jobs.get_transcript(db, job.id).id == saved.id
    assert db.scalar(select(func.count()).select_from(Transcript)) == 2


def test_save_transcript_version_requires_base(db: Session, job_factory: Callable[..., Job]) -> None:
    job = job_factory()
    segment = Segment(start=0.0, end=1.0, speaker="Speaker A", text="hola")

    with pytest.raises(NotFoundError):
        jobs.save_transcript_version(db, job.id, "es", [segment])
    with pytest.raises(NotFoundError):
        jobs.save_transcript_version(db, "missing", SOURCE_LANGUAGE, [segment])
    with pytest.raises(InputValidationError):
        jobs.save_transcript_version(db, job.id, SOURCE_LANGUAGE, [])


def test_upsert_voice_mapping_replaces_previous_choice(
    db: Session, job_factory: Callable[..., Job]
) -> None:
    job = job_factory()

    first = jobs.upsert_voice_mapping(db, job.id, speaker_id="Speaker A", voice_id="v1")
    second = jobs.upsert_voice_mapping(
        db, job.id, speaker_id="Speaker A", voice_id="v2", voice_name="Rachel"
    )
    jobs.upsert_voice_mapping(db, job.id, speaker_id="Speaker B", voice_id="v3")

    assert second.id == first.id
    mappings = jobs.list_voice_mappings(db, job.id)
    assert [(m.speaker_id, m.voice_id) for m in mappings] == [
        ("Speaker A", "v2"),
        ("Speaker B", "v3"),
    ]
    assert mappings[0].voice_name == "Rachel"
    assert db.scalar(select(func.count()).select_from(VoiceMapping)) == 2


def test_voice_mapping_requires_job(db: Session) -> None:
    with pytest.raises(NotFoundError):
        jobs.upsert_voice_mapping(db, "missing", speaker_id="Speaker A", voice_id="v1")
    with pytest.raises(NotFoundError):
        jobs.list_voice_mappings(db, "missing")


def test_list_recent_jobs_newest_first(db: Session, job_factory: Callable[..., Job]) -> None:
    now = utcnow()
    older = job_factory(created_at=now - timedelta(hours=1))
    newer = job_factory(created_at=now)

    assert [j.id for j in jobs.list_recent_jobs(db)] == [newer.id, older.id]
    assert len(jobs.list_recent_jobs(db, limit=1)) == 1


@pytest.mark.asyncio
async def test_delete_job_removes_queue_entry(
    submit: Submit, db: Session, queue: JobQueue
) -> None:
    upload = await submit()

    jobs.delete_job(db, upload.job_id)

    assert db.get(Job, upload.job_id) is None
    assert queue.get_status(upload.job_id) is None
    with pytest.raises(NotFoundError):
        jobs.delete_job(db, upload.job_id)
