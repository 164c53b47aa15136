"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from scriptshift.models import SOURCE_LANGUAGE, JobStatus, QueueState, Segment


class SegmentSchema(BaseModel):
    """Schema for one transcript segment."""

    model_config = ConfigDict(from_attributes=True)

    start: float = Field(..., ge=0.0, allow_inf_nan=False)
    end: float = Field(..., allow_inf_nan=False)
    speaker: str = Field(..., min_length=1, max_length=100)
    text: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_interval(self) -> "SegmentSchema":
        if self.end <= self.start:
            raise ValueError("segment end must be greater than start")
        return self

    def to_segment(self) -> Segment:
        return Segment(
            start=self.start,
            end=self.end,
            speaker=self.speaker,
            text=self.text,
            confidence=self.confidence,
        )


class TranscriptResponse(BaseModel):
    """Schema for transcript response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    file_hash: str
    language: str
    source_language: str | None
    speakers: list[str]
    segments: list[SegmentSchema]
    created_at: datetime


class TranscriptUpdate(BaseModel):
    """Schema for saving an edited transcript version."""

    language: str = Field(default=SOURCE_LANGUAGE, min_length=2, max_length=16)
    segments: list[SegmentSchema] = Field(..., min_length=1)


class VoiceMappingCreate(BaseModel):
    """Schema for assigning a voice to a speaker."""

    speaker_id: str = Field(..., min_length=1, max_length=100)
    voice_id: str = Field(..., min_length=1, max_length=100)
    speaker_name: str | None = Field(default=None, max_length=255)
    voice_name: str | None = Field(default=None, max_length=255)


class VoiceMappingResponse(BaseModel):
    """Schema for voice mapping response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    speaker_id: str
    speaker_name: str | None
    voice_id: str
    voice_name: str | None
    created_at: datetime


class ArtifactResponse(BaseModel):
    """Schema for artifact response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    job_id: str
    file_hash: str | None
    artifact_type: str
    url: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    created_at: datetime


class JobResponse(BaseModel):
    """Schema for job response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    file_hash: str
    original_filename: str
    file_url: str
    target_language: str
    enable_lipsync: bool
    status: JobStatus
    progress: int
    current_stage: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class QueueStatusResponse(BaseModel):
    """Live queue snapshot for a job."""

    model_config = ConfigDict(from_attributes=True)

    state: QueueState
    progress: int
    stage: str | None
    message: str | None
    attempts_made: int
    failed_reason: str | None


class JobStatusResponse(BaseModel):
    """Merged durable + live view returned to polling clients."""

    job: JobResponse
    queue_status: QueueStatusResponse | None
    artifacts: list[ArtifactResponse] | None
    ready_video_url: str | None


class UploadResponse(BaseModel):
    """Schema for upload/submission response."""

    job_id: str
    file_hash: str
    file_url: str
    cached: bool


class ProgressUpdate(BaseModel):
    """Schema for SSE progress updates."""

    job_id: str
    status: JobStatus
    progress: int
    stage: str | None = None
    message: str | None = None
