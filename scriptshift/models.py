"""Database models for ScriptShift."""

import json
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from scriptshift.database import Base
from scriptshift.errors import CacheConsistencyError

# Transcript language used for the untranslated, source-language transcript
SOURCE_LANGUAGE = "auto"


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, PyEnum):
    """Durable job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueState(str, PyEnum):
    """State of a queue entry, independent of the job row."""

    WAITING = "waiting"
    DELAYED = "delayed"  # Waiting for a retry backoff to elapse
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactType(str, PyEnum):
    """Durable pipeline byproducts."""

    EXTRACTED_AUDIO = "extracted_audio"
    DUBBED_AUDIO = "dubbed_audio"
    FINAL_VIDEO = "final_video"
    LIPSYNCED_VIDEO = "lipsynced_video"


@dataclass(frozen=True, slots=True)
class Segment:
    """One speaker-attributed span of a transcript (seconds, half-open)."""

    start: float
    end: float
    speaker: str
    text: str
    confidence: float | None = None

    def __post_init__(self) -> None:
        if not (math.isfinite(self.start) and math.isfinite(self.end)):
            raise ValueError("Segment bounds must be finite numbers")
        if self.start < 0:
            raise ValueError(f"Segment start must be >= 0, got {self.start}")
        if self.end <= self.start:
            raise ValueError(f"Segment end ({self.end}) must be greater than start ({self.start})")
        if not self.speaker:
            raise ValueError("Segment speaker is required")
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Segment confidence must be within [0, 1], got {self.confidence}")

    @property
    def duration(self) -> float:
        return self.end - self.start

    def with_text(self, text: str) -> "Segment":
        """Copy of this segment with replaced text (timing and speaker preserved)."""
        return Segment(
            start=self.start,
            end=self.end,
            speaker=self.speaker,
            text=text,
            confidence=self.confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.confidence is None:
            data.pop("confidence")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Segment":
        confidence = data.get("confidence")
        return cls(
            start=float(data["start"]),
            end=float(data["end"]),
            speaker=str(data["speaker"]),
            text=str(data["text"]),
            confidence=float(confidence) if confidence is not None else None,
        )


class _JSONText(TypeDecorator[Any]):
    """Text column holding JSON; decoding errors surface as CacheConsistencyError."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        return json.dumps(self._encode(value), ensure_ascii=False)

    def process_result_value(self, value: str | None, dialect: Any) -> Any:
        if value is None:
            return None
        try:
            return self._decode(json.loads(value))
        except (ValueError, TypeError, KeyError) as e:
            raise CacheConsistencyError(
                f"Malformed stored {self.__class__.__name__} value: {e}"
            ) from e

    def _encode(self, value: Any) -> Any:
        return value

    def _decode(self, data: Any) -> Any:
        return data


class JSONDict(_JSONText):
    """Free-form JSON object."""

    def _decode(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            raise TypeError(f"expected an object, got {type(data).__name__}")
        return data


class JSONValue(_JSONText):
    """Any JSON-serializable value."""


class StringList(_JSONText):
    """Ordered list of strings (speaker ids)."""

    def _decode(self, data: Any) -> list[str]:
        if not isinstance(data, list):
            raise TypeError(f"expected a list, got {type(data).__name__}")
        return [str(item) for item in data]


class SegmentList(_JSONText):
    """Ordered list of Segment records."""

    def _encode(self, value: list[Segment]) -> list[dict[str, Any]]:
        return [segment.to_dict() for segment in value]

    def _decode(self, data: Any) -> list[Segment]:
        if not isinstance(data, list):
            raise TypeError(f"expected a list, got {type(data).__name__}")
        return [Segment.from_dict(item) for item in data]


class Job(Base):
    """
    Dubbing job: one uploaded file dubbed into one target language.

    Tracks the entire pipeline: extract → transcribe → translate → speech → mix → upload → lipsync
    """

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Source file
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_url: Mapped[str] = mapped_column(String(1000), nullable=False)

    target_language: Mapped[str] = mapped_column(String(16), nullable=False)
    enable_lipsync: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Processing status
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0 to 100
    current_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Metadata
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    transcripts: Mapped[list["Transcript"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )
    voice_mappings: Mapped[list["VoiceMapping"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )
    artifacts: Mapped[list["Artifact"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )
    queue_entry: Mapped["QueueEntry | None"] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        """String representation of Job."""
        return f"<Job(id={self.id}, file={self.original_filename}, status={self.status})>"


class Transcript(Base):
    """A transcription or translation of a source file's audio. Rows are never updated."""

    __tablename__ = "transcripts"
    __table_args__ = (Index("ix_transcripts_hash_lang", "file_hash", "language"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    language: Mapped[str] = mapped_column(String(16), nullable=False)
    source_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    speakers: Mapped[list[str]] = mapped_column(StringList, nullable=False)
    segments: Mapped[list[Segment]] = mapped_column(SegmentList, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    job: Mapped[Job] = relationship(back_populates="transcripts")


class VoiceMapping(Base):
    """Synthesis voice chosen for one detected speaker of a job."""

    __tablename__ = "voice_mappings"
    __table_args__ = (UniqueConstraint("job_id", "speaker_id", name="uq_voice_mappings_job_speaker"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    speaker_id: Mapped[str] = mapped_column(String(100), nullable=False)
    speaker_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    voice_id: Mapped[str] = mapped_column(String(100), nullable=False)
    voice_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    job: Mapped[Job] = relationship(back_populates="voice_mappings")


class Artifact(Base):
    """Immutable pointer to a pipeline byproduct held in blob storage."""

    __tablename__ = "artifacts"
    __table_args__ = (Index("ix_artifacts_hash_type", "file_hash", "artifact_type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    artifact_type: Mapped[str] = mapped_column(String(50), nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONDict, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    job: Mapped[Job] = relationship(back_populates="artifacts")


class CacheEntry(Base):
    """Generic expiring key/value row."""

    __tablename__ = "cache"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSONValue, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class QueueEntry(Base):
    """Durable unit of queued work. The job id doubles as the dedupe key."""

    __tablename__ = "queue_entries"

    job_id: Mapped[str] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDict, nullable=False)
    state: Mapped[QueueState] = mapped_column(
        Enum(QueueState), default=QueueState.WAITING, nullable=False, index=True
    )
    attempts_made: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Live progress channel
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Claim ownership; an active entry whose lease lapsed belongs to a dead worker
    claimed_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    job: Mapped[Job] = relationship(back_populates="queue_entry")


class QueueStart(Base):
    """One row per claim, retries included. Feeds the rolling start-rate window."""

    __tablename__ = "queue_starts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # No FK: deleting a job must not hand its starts back to the window
    job_id: Mapped[str] = mapped_column(String(36), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
