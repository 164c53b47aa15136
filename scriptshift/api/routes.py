"""API routes for ScriptShift."""

import logging

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from sqlalchemy.orm import Session

from scriptshift.config import get_settings
from scriptshift.database import get_db
from scriptshift.errors import InputValidationError, NotFoundError
from scriptshift.models import SOURCE_LANGUAGE, Job, Transcript, VoiceMapping
from scriptshift.providers.base import BlobStorage
from scriptshift.schemas import (
    JobResponse,
    JobStatusResponse,
    TranscriptResponse,
    TranscriptUpdate,
    UploadResponse,
    VoiceMappingCreate,
    VoiceMappingResponse,
)
from scriptshift.services import jobs
from scriptshift.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()

CHUNK_SIZE = 1024 * 1024  # 1MB chunks to bound memory usage


def get_job_queue(request: Request) -> JobQueue:
    """Queue shared by the app (set up in the lifespan)."""
    return request.app.state.queue


def get_blob_storage(request: Request) -> BlobStorage:
    """Blob storage of the app's provider bundle."""
    return request.app.state.providers.storage


def _http_error(error: InputValidationError | NotFoundError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    return HTTPException(status_code=error.status_code, detail=str(error))


@router.post("/jobs/upload", response_model=UploadResponse)
async def upload_video(
    file: UploadFile | None = File(None),
    target_language: str | None = Form(None),
    enable_lipsync: bool = Form(False),
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    queue: JobQueue = Depends(get_job_queue),
) -> UploadResponse:
    """
    Upload a video to dub into a target language.

    Re-uploading identical bytes for the same language returns the existing
    completed job with `cached: true` instead of starting new work.

    Raises:
        HTTPException: 400 if the file or language is missing, 413 if too large
    """
    if file is None or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")
    if not target_language or not target_language.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Target language is required"
        )

    max_bytes = settings.max_upload_size_bytes
    chunks: list[bytes] = []
    total_bytes = 0
    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break

        total_bytes += len(chunk)
        if total_bytes > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File too large. Maximum size: {settings.max_upload_size_mb}MB",
            )
        chunks.append(chunk)

    try:
        return await jobs.submit_upload(
            db,
            data=b"".join(chunks),
            filename=file.filename,
            target_language=target_language,
            enable_lipsync=enable_lipsync,
            storage=storage,
            queue=queue,
            settings=settings,
        )
    except InputValidationError as e:
        raise _http_error(e) from e


@router.get("/jobs", response_model=list[JobResponse])
async def list_jobs(
    limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)
) -> list[Job]:
    """List the most recent jobs, newest first."""
    return jobs.list_recent_jobs(db, limit=limit)


@router.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
) -> JobStatusResponse:
    """
    Get the durable status of a job merged with its live queue progress.

    Raises:
        HTTPException: If job not found
    """
    try:
        return jobs.get_job_status(db, job_id, queue)
    except NotFoundError as e:
        raise _http_error(e) from e


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_job(job_id: str, db: Session = Depends(get_db)) -> None:
    """Delete a job and everything recorded for it. Stored blobs are kept."""
    try:
        jobs.delete_job(db, job_id)
    except NotFoundError as e:
        raise _http_error(e) from e


@router.get("/jobs/{job_id}/transcript", response_model=TranscriptResponse)
async def get_transcript(
    job_id: str,
    language: str = Query(SOURCE_LANGUAGE),
    db: Session = Depends(get_db),
) -> Transcript:
    """
    Get the latest transcript version of a job.

    Args:
        job_id: Job ID
        language: `auto` for the source transcript, or a target language code
    """
    try:
        return jobs.get_transcript(db, job_id, language)
    except NotFoundError as e:
        raise _http_error(e) from e


@router.post(
    "/jobs/{job_id}/transcript",
    response_model=TranscriptResponse,
    status_code=status.HTTP_201_CREATED,
)
async def save_transcript(
    job_id: str, payload: TranscriptUpdate, db: Session = Depends(get_db)
) -> Transcript:
    """Save an edited transcript as a new version."""
    try:
        return jobs.save_transcript_version(
            db, job_id, payload.language, [s.to_segment() for s in payload.segments]
        )
    except (InputValidationError, NotFoundError) as e:
        raise _http_error(e) from e


@router.get("/jobs/{job_id}/voices", response_model=list[VoiceMappingResponse])
async def list_voices(job_id: str, db: Session = Depends(get_db)) -> list[VoiceMapping]:
    """List speaker → voice assignments for a job."""
    try:
        return jobs.list_voice_mappings(db, job_id)
    except NotFoundError as e:
        raise _http_error(e) from e


@router.post("/jobs/{job_id}/voices", response_model=VoiceMappingResponse)
async def set_voice(
    job_id: str, payload: VoiceMappingCreate, db: Session = Depends(get_db)
) -> VoiceMapping:
    """Assign (or reassign) the synthesis voice of one speaker."""
    try:
        return jobs.upsert_voice_mapping(
            db,
            job_id,
            speaker_id=payload.speaker_id,
            voice_id=payload.voice_id,
            speaker_name=payload.speaker_name,
            voice_name=payload.voice_name,
        )
    except NotFoundError as e:
        raise _http_error(e) from e
