"""Content-addressed lookups and a generic expiring cache.

Expensive, idempotent results (extracted audio, transcripts, translations,
finished videos) are keyed by the SHA-256 of the uploaded bytes plus the
operation parameters, so identical inputs never pay for the same external
API call twice. Lookups here are strictly read-only.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scriptshift.models import (
    Artifact,
    ArtifactType,
    CacheEntry,
    Job,
    JobStatus,
    Transcript,
    utcnow,
)

logger = logging.getLogger(__name__)

_INFLIGHT_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


def compute_content_hash(data: bytes) -> str:
    """Return the hex SHA-256 digest of raw file bytes."""
    return hashlib.sha256(data).hexdigest()


def make_cache_key(namespace: str, **parts: Any) -> str:
    """Build a stable cache key from a namespace and operation parameters."""
    blob = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return f"{namespace}:{hashlib.sha256(blob).hexdigest()}"


class ContentCache:
    """Read-only lookups over artifacts, transcripts and jobs keyed by content hash."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def lookup_artifact(self, file_hash: str, artifact_type: ArtifactType | str) -> Artifact | None:
        """Most recently created artifact of a type for a content hash."""
        type_value = artifact_type.value if isinstance(artifact_type, ArtifactType) else artifact_type
        stmt = (
            select(Artifact)
            .where(Artifact.file_hash == file_hash, Artifact.artifact_type == type_value)
            .order_by(Artifact.created_at.desc(), Artifact.id.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def lookup_transcript(self, file_hash: str, language: str) -> Transcript | None:
        """Most recent transcript version for (content hash, language)."""
        stmt = (
            select(Transcript)
            .where(Transcript.file_hash == file_hash, Transcript.language == language)
            .order_by(Transcript.created_at.desc(), Transcript.id.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def lookup_job(self, file_hash: str, target_language: str) -> Job | None:
        """Most recent job for (content hash, target language), whatever its status."""
        stmt = (
            select(Job)
            .where(Job.file_hash == file_hash, Job.target_language == target_language)
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def lookup_completed_job(self, file_hash: str, target_language: str) -> Job | None:
        """Most recent completed job for the pair; used to short-circuit uploads."""
        stmt = (
            select(Job)
            .where(
                Job.file_hash == file_hash,
                Job.target_language == target_language,
                Job.status == JobStatus.COMPLETED,
            )
            .order_by(Job.completed_at.desc(), Job.created_at.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def lookup_inflight_job(self, file_hash: str, target_language: str) -> Job | None:
        """Most recent pending or processing job for the pair."""
        stmt = (
            select(Job)
            .where(
                Job.file_hash == file_hash,
                Job.target_language == target_language,
                Job.status.in_(_INFLIGHT_STATUSES),
            )
            .order_by(Job.created_at.desc())
            .limit(1)
        )
        return self._scalar(stmt)

    def _scalar(self, stmt: Any) -> Any:
        # Lookups must not flush pending state from the caller's session
        with self._session.no_autoflush:
            return self._session.execute(stmt).scalars().first()


class ExpiringCache:
    """Key/value memoization with optional expiry, backed by the `cache` table."""

    def __init__(self, session: Session, default_ttl_seconds: int | None = None) -> None:
        self._session = session
        self._default_ttl = default_ttl_seconds

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        """Store a JSON-serializable value, replacing any previous one."""
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl) if ttl is not None else None

        entry = self._session.get(CacheEntry, key)
        if entry is None:
            self._session.add(
                CacheEntry(key=key, value=value, expires_at=expires_at, created_at=now)
            )
            try:
                self._session.commit()
                return
            except IntegrityError:
                # Another process stored the key first; overwrite its value
                self._session.rollback()
                entry = self._session.get(CacheEntry, key)
                if entry is None:
                    raise

        entry.value = value
        entry.expires_at = expires_at
        entry.created_at = now
        self._session.commit()

    def get(self, key: str, now: datetime | None = None) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        now = now or utcnow()
        entry = self._session.get(CacheEntry, key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= now:
            logger.debug("Cache entry %s expired; purging", key)
            self._session.delete(entry)
            self._session.commit()
            return None
        return entry.value

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True when something was deleted."""
        result = self._session.execute(delete(CacheEntry).where(CacheEntry.key == key))
        self._session.commit()
        return bool(result.rowcount)

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every expired entry; returns the number removed."""
        now = now or utcnow()
        result = self._session.execute(
            delete(CacheEntry).where(
                CacheEntry.expires_at.is_not(None), CacheEntry.expires_at <= now
            )
        )
        self._session.commit()
        if result.rowcount:
            logger.info("Purged %s expired cache entries", result.rowcount)
        return int(result.rowcount or 0)
