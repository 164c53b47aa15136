"""Job submission and read/write operations behind the HTTP routes.

Kept free of FastAPI so the same operations can be driven from tests or
scripts. Boundary problems raise `InputValidationError` / `NotFoundError`;
the routes translate those into HTTP status codes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scriptshift.config import Settings, get_settings
from scriptshift.errors import InputValidationError, NotFoundError
from scriptshift.models import (
    SOURCE_LANGUAGE,
    Artifact,
    ArtifactType,
    Job,
    JobStatus,
    Segment,
    Transcript,
    VoiceMapping,
)
from scriptshift.providers.base import BlobStorage
from scriptshift.providers.storage import sanitize_blob_name
from scriptshift.schemas import (
    ArtifactResponse,
    JobResponse,
    JobStatusResponse,
    QueueStatusResponse,
    UploadResponse,
)
from scriptshift.services.content_cache import ContentCache, compute_content_hash
from scriptshift.services.job_queue import JobQueue, build_payload

logger = logging.getLogger(__name__)


def _require_job(db: Session, job_id: str) -> Job:
    job = db.get(Job, job_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    return job


async def submit_upload(
    db: Session,
    *,
    data: bytes,
    filename: str,
    target_language: str,
    storage: BlobStorage,
    queue: JobQueue,
    enable_lipsync: bool | None = None,
    settings: Settings | None = None,
) -> UploadResponse:
    """
    Accept an uploaded video and create (or reuse) a dubbing job.

    A completed job for the same bytes and target language is returned as-is
    with `cached=True`; nothing is stored or enqueued in that case.

    Args:
        db: Database session
        data: Raw uploaded bytes
        filename: Client-supplied filename
        target_language: Language to dub into
        storage: Blob storage for the source video
        queue: Job queue the new job is admitted to
        enable_lipsync: Request lip-sync (defaults to the configured default)
        settings: Settings override

    Returns:
        The job id, content hash, source URL and whether an existing job was reused

    Raises:
        InputValidationError: Empty or oversized file, or missing target language
    """
    settings = settings or get_settings()

    if not data:
        raise InputValidationError("No file provided")
    if len(data) > settings.max_upload_size_bytes:
        raise InputValidationError(
            f"File too large. Maximum size: {settings.max_upload_size_mb}MB", status_code=413
        )
    target_language = (target_language or "").strip()
    if not target_language:
        raise InputValidationError("Target language is required")
    if enable_lipsync is None:
        enable_lipsync = settings.enable_lipsync_default

    file_hash = compute_content_hash(data)
    cache = ContentCache(db)

    existing = cache.lookup_completed_job(file_hash, target_language)
    if existing is None and settings.attach_inflight_submissions:
        existing = cache.lookup_inflight_job(file_hash, target_language)
    if existing is not None:
        logger.info(
            "Reusing job %s for %s (%s, status=%s)",
            existing.id,
            file_hash[:12],
            target_language,
            existing.status.value,
        )
        return UploadResponse(
            job_id=existing.id, file_hash=file_hash, file_url=existing.file_url, cached=True
        )

    try:
        safe_filename = sanitize_blob_name(filename or "")
    except ValueError:
        safe_filename = "upload" + (Path(filename or "").suffix.lower() or ".mp4")
    file_url = await storage.put(data, f"{file_hash}-{safe_filename}")

    job = Job(
        id=str(uuid4()),
        file_hash=file_hash,
        original_filename=filename or safe_filename,
        file_url=file_url,
        target_language=target_language,
        enable_lipsync=enable_lipsync,
        status=JobStatus.PENDING,
        progress=0,
    )
    db.add(job)
    db.commit()

    queue.enqueue(
        job.id,
        build_payload(
            file_hash=file_hash,
            file_url=file_url,
            original_filename=job.original_filename,
            target_language=target_language,
            enable_lipsync=enable_lipsync,
        ),
    )
    logger.info("Created job %s for %s -> %s", job.id, safe_filename, target_language)

    return UploadResponse(job_id=job.id, file_hash=file_hash, file_url=file_url, cached=False)


def get_job_status(db: Session, job_id: str, queue: JobQueue) -> JobStatusResponse:
    """
    Merge the durable job row with the queue's live progress.

    Artifacts are included once the job completed, and for a failed job that
    still produced some (e.g. the final video before a lip-sync failure).
    """
    job = _require_job(db, job_id)
    queue_status = queue.get_status(job_id)

    artifacts = db.scalars(
        select(Artifact)
        .where(Artifact.job_id == job_id)
        .order_by(Artifact.created_at.asc(), Artifact.id.asc())
    ).all()

    visible: list[Artifact] | None = None
    if job.status == JobStatus.COMPLETED or (job.status == JobStatus.FAILED and artifacts):
        visible = list(artifacts)

    ready_video_url = None
    if visible:
        by_type = {a.artifact_type: a.url for a in visible}
        ready_video_url = by_type.get(ArtifactType.LIPSYNCED_VIDEO.value) or by_type.get(
            ArtifactType.FINAL_VIDEO.value
        )

    return JobStatusResponse(
        job=JobResponse.model_validate(job),
        queue_status=(
            QueueStatusResponse.model_validate(queue_status) if queue_status is not None else None
        ),
        artifacts=(
            [ArtifactResponse.model_validate(a) for a in visible] if visible is not None else None
        ),
        ready_video_url=ready_video_url,
    )


def get_transcript(db: Session, job_id: str, language: str = SOURCE_LANGUAGE) -> Transcript:
    """Most recent transcript version for the job's content and a language."""
    job = _require_job(db, job_id)
    transcript = ContentCache(db).lookup_transcript(job.file_hash, language)
    if transcript is None:
        raise NotFoundError(f"No {language} transcript for job {job_id}")
    return transcript


def save_transcript_version(
    db: Session, job_id: str, language: str, segments: Sequence[Segment]
) -> Transcript:
    """
    Append an edited transcript version. Earlier versions are kept.

    Raises:
        NotFoundError: Unknown job, or no transcript in that language to edit
        InputValidationError: Empty segment list
    """
    if not segments:
        raise InputValidationError("At least one segment is required", status_code=422)

    base = get_transcript(db, job_id, language)
    ordered = sorted(segments, key=lambda s: (s.start, s.end))

    transcript = Transcript(
        job_id=job_id,
        file_hash=base.file_hash,
        language=language,
        source_language=base.source_language,
        speakers=list(dict.fromkeys(s.speaker for s in ordered)),
        segments=ordered,
    )
    db.add(transcript)
    db.commit()
    db.refresh(transcript)

    logger.info("Saved %s transcript version %s for job %s", language, transcript.id, job_id)
    return transcript


def list_voice_mappings(db: Session, job_id: str) -> list[VoiceMapping]:
    _require_job(db, job_id)
    return list(
        db.scalars(
            select(VoiceMapping)
            .where(VoiceMapping.job_id == job_id)
            .order_by(VoiceMapping.speaker_id.asc())
        ).all()
    )


def upsert_voice_mapping(
    db: Session,
    job_id: str,
    *,
    speaker_id: str,
    voice_id: str,
    speaker_name: str | None = None,
    voice_name: str | None = None,
) -> VoiceMapping:
    """Assign a voice to a speaker, replacing any previous choice for that speaker."""
    _require_job(db, job_id)

    def _find() -> VoiceMapping | None:
        return db.scalars(
            select(VoiceMapping).where(
                VoiceMapping.job_id == job_id, VoiceMapping.speaker_id == speaker_id
            )
        ).first()

    mapping = _find()
    if mapping is None:
        mapping = VoiceMapping(
            job_id=job_id,
            speaker_id=speaker_id,
            speaker_name=speaker_name,
            voice_id=voice_id,
            voice_name=voice_name,
        )
        db.add(mapping)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent request inserted the same speaker first
            db.rollback()
            mapping = _find()
            if mapping is None:
                raise
        else:
            db.refresh(mapping)
            return mapping

    mapping.voice_id = voice_id
    mapping.speaker_name = speaker_name
    mapping.voice_name = voice_name
    db.commit()
    db.refresh(mapping)
    return mapping


def list_recent_jobs(db: Session, limit: int = 50) -> list[Job]:
    return list(db.scalars(select(Job).order_by(Job.created_at.desc()).limit(limit)).all())


def delete_job(db: Session, job_id: str) -> None:
    """Delete a job with its transcripts, voice mappings, artifacts and queue entry."""
    job = _require_job(db, job_id)
    db.delete(job)
    db.commit()
    logger.info("Deleted job %s", job_id)
