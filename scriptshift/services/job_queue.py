"""Durable job queue kept in the `queue_entries` table.

Submission (the HTTP request) and execution (the dispatcher) only meet in
this table. The job id is the entry's primary key, so enqueueing the same
job twice never creates a second run. A claim is a single conditional
UPDATE that re-checks the global concurrency cap and the rolling-window
start rate, so several dispatcher processes can share one database. Each
claim records its owner and a lease; only the owner may report on the
entry, and an entry whose lease lapsed is handed back to the queue.
Failures are retried with exponential backoff until the attempt budget is
spent.
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement, and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, aliased

from scriptshift.config import Settings, get_settings
from scriptshift.database import SessionLocal
from scriptshift.models import QueueEntry, QueueStart, QueueState, utcnow

logger = logging.getLogger(__name__)

_FINISHED_STATES = (QueueState.COMPLETED, QueueState.FAILED)


def default_worker_id() -> str:
    """Identity stamped on claims: host, pid and a per-instance suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@dataclass(slots=True, frozen=True)
class ClaimedWork:
    """Snapshot of a queue entry that has been claimed for execution."""

    job_id: str
    file_hash: str
    file_url: str
    original_filename: str
    target_language: str
    enable_lipsync: bool
    attempt: int
    max_attempts: int


@dataclass(slots=True, frozen=True)
class QueueStatus:
    """Read-only snapshot for status polling."""

    state: QueueState
    progress: int
    stage: str | None
    message: str | None
    attempts_made: int
    failed_reason: str | None


def build_payload(
    *,
    file_hash: str,
    file_url: str,
    original_filename: str,
    target_language: str,
    enable_lipsync: bool = False,
) -> dict[str, Any]:
    """Queue payload for one dubbing job."""
    return {
        "file_hash": file_hash,
        "file_url": file_url,
        "original_filename": original_filename,
        "target_language": target_language,
        "enable_lipsync": enable_lipsync,
    }


class JobQueue:
    """Database-backed work queue with dedupe, limits, leases, retry and retention."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session] | None = None,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or SessionLocal
        self.worker_id = worker_id or default_worker_id()

        self.max_concurrent = max(1, int(self._settings.max_concurrent_jobs))
        self.rate_limit_max = max(1, int(self._settings.rate_limit_max_jobs))
        self.rate_limit_window = timedelta(seconds=float(self._settings.rate_limit_window_seconds))
        self.max_attempts = max(1, int(self._settings.max_attempts))
        self.backoff_seconds = max(0.0, float(self._settings.retry_backoff_seconds))
        self.retention = timedelta(days=int(self._settings.queue_retention_days))
        self.lease = timedelta(seconds=max(1.0, float(self._settings.queue_lease_seconds)))

    def enqueue(self, job_id: str, payload: dict[str, Any]) -> QueueStatus:
        """Admit a job. Enqueueing an id that already has an entry is a no-op."""
        session = self._session_factory()
        try:
            existing = session.get(QueueEntry, job_id)
            if existing is not None:
                logger.info(
                    "Job %s already queued (state=%s); not enqueueing again",
                    job_id,
                    existing.state.value,
                )
                return self._snapshot(existing)

            entry = QueueEntry(
                job_id=job_id,
                payload=payload,
                state=QueueState.WAITING,
                max_attempts=self.max_attempts,
            )
            session.add(entry)
            try:
                session.commit()
            except IntegrityError:
                # Lost a race with a concurrent enqueue of the same id
                session.rollback()
                existing = session.get(QueueEntry, job_id)
                if existing is None:
                    raise
                return self._snapshot(existing)

            session.refresh(entry)
            logger.info("Queued job %s", job_id)
            return self._snapshot(entry)
        finally:
            session.close()

    def claim_next(self, now: datetime | None = None) -> ClaimedWork | None:
        """Move the next eligible entry to `active` for this worker, honoring both limits."""
        now = now or utcnow()
        session = self._session_factory()
        try:
            candidate = session.execute(
                select(QueueEntry.job_id, QueueEntry.state)
                .where(
                    or_(
                        QueueEntry.state == QueueState.WAITING,
                        and_(
                            QueueEntry.state == QueueState.DELAYED,
                            QueueEntry.available_at <= now,
                        ),
                    )
                )
                .order_by(QueueEntry.available_at.asc(), QueueEntry.created_at.asc())
                .limit(1)
            ).first()
            if candidate is None:
                return None

            job_id, state = candidate
            try:
                claimed = self._claim(session, job_id, state, now)
                if claimed:
                    session.add(QueueStart(job_id=job_id, started_at=now))
                session.commit()
            except OperationalError as e:
                # Another process holds the write lock; try again on the next poll
                session.rollback()
                logger.warning("Queue busy while claiming job %s: %s", job_id, e)
                return None

            if not claimed:
                logger.debug("Job %s not claimed: limits reached or claimed elsewhere", job_id)
                return None

            entry = session.get(QueueEntry, job_id)
            if entry is None:
                return None

            payload = entry.payload
            return ClaimedWork(
                job_id=entry.job_id,
                file_hash=payload["file_hash"],
                file_url=payload["file_url"],
                original_filename=payload.get("original_filename", ""),
                target_language=payload["target_language"],
                enable_lipsync=bool(payload.get("enable_lipsync", False)),
                attempt=entry.attempts_made,
                max_attempts=entry.max_attempts,
            )
        finally:
            session.close()

    def _claim(self, session: Session, job_id: str, state: QueueState, now: datetime) -> bool:
        """Conditional UPDATE: the limit checks and the state change are one statement."""
        other = aliased(QueueEntry)
        active_count = (
            select(func.count())
            .select_from(other)
            .where(other.state == QueueState.ACTIVE)
            .scalar_subquery()
        )
        recent_starts = (
            select(func.count())
            .select_from(QueueStart)
            .where(QueueStart.started_at > now - self.rate_limit_window)
            .scalar_subquery()
        )
        result = session.execute(
            update(QueueEntry)
            .where(
                QueueEntry.job_id == job_id,
                QueueEntry.state == state,
                active_count < self.max_concurrent,
                recent_starts < self.rate_limit_max,
            )
            .values(
                state=QueueState.ACTIVE,
                attempts_made=QueueEntry.attempts_made + 1,
                started_at=now,
                finished_at=None,
                progress=0,
                stage=None,
                message=None,
                claimed_by=self.worker_id,
                lease_expires_at=now + self.lease,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _owned(self, job_id: str) -> ColumnElement[bool]:
        return and_(
            QueueEntry.job_id == job_id,
            QueueEntry.state == QueueState.ACTIVE,
            QueueEntry.claimed_by == self.worker_id,
        )

    def report_progress(
        self, job_id: str, stage: str, progress: int, message: str | None = None
    ) -> bool:
        """Publish live progress for an entry this worker holds, renewing its lease."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(QueueEntry)
                .where(self._owned(job_id))
                .values(
                    stage=stage,
                    progress=progress,
                    message=message,
                    lease_expires_at=utcnow() + self.lease,
                )
            )
            session.commit()
            if result.rowcount == 0:
                logger.warning("Progress for job %s dropped: not held by this worker", job_id)
            return result.rowcount == 1
        finally:
            session.close()

    def renew_leases(self, now: datetime | None = None) -> int:
        """Extend the lease on every active entry this worker holds."""
        now = now or utcnow()
        session = self._session_factory()
        try:
            result = session.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.state == QueueState.ACTIVE,
                    QueueEntry.claimed_by == self.worker_id,
                )
                .values(lease_expires_at=now + self.lease)
            )
            session.commit()
            return int(result.rowcount or 0)
        finally:
            session.close()

    def complete(
        self, job_id: str, message: str | None = None, now: datetime | None = None
    ) -> bool:
        """Mark an entry this worker holds as successfully finished."""
        session = self._session_factory()
        try:
            result = session.execute(
                update(QueueEntry)
                .where(self._owned(job_id))
                .values(
                    state=QueueState.COMPLETED,
                    progress=100,
                    stage="complete",
                    message=message,
                    failed_reason=None,
                    finished_at=now or utcnow(),
                    lease_expires_at=None,
                )
            )
            session.commit()
            if result.rowcount == 0:
                logger.warning(
                    "Cannot complete job %s: entry is not held by %s", job_id, self.worker_id
                )
            return result.rowcount == 1
        finally:
            session.close()

    def fail(
        self, job_id: str, error: str, now: datetime | None = None, *, retry: bool = True
    ) -> bool:
        """
        Record a failed attempt.

        Args:
            job_id: Entry that failed
            error: Human-readable failure reason
            now: Override for the current time
            retry: False marks the entry failed regardless of remaining attempts

        Returns:
            True if the entry was scheduled for another attempt, False if it is
            now terminally failed, unknown, or no longer held by this worker.
        """
        now = now or utcnow()
        session = self._session_factory()
        try:
            entry = session.get(QueueEntry, job_id)
            if entry is None:
                logger.warning("Cannot record failure for unknown queue entry %s", job_id)
                return False
            if entry.state != QueueState.ACTIVE or entry.claimed_by != self.worker_id:
                logger.warning(
                    "Ignoring failure of job %s: entry is not held by %s", job_id, self.worker_id
                )
                return False

            entry.failed_reason = error
            entry.lease_expires_at = None
            if retry and entry.attempts_made < entry.max_attempts:
                delay = self.backoff_seconds * (2 ** max(0, entry.attempts_made - 1))
                entry.state = QueueState.DELAYED
                entry.available_at = now + timedelta(seconds=delay)
                entry.message = (
                    f"Retrying in {delay:.0f}s "
                    f"(attempt {entry.attempts_made}/{entry.max_attempts} failed)"
                )
                session.commit()
                logger.warning(
                    "Job %s failed attempt %s/%s; retrying in %.1fs",
                    job_id,
                    entry.attempts_made,
                    entry.max_attempts,
                    delay,
                )
                return True

            entry.state = QueueState.FAILED
            entry.finished_at = now
            entry.message = error
            session.commit()
            logger.error("Job %s exhausted %s attempt(s): %s", job_id, entry.max_attempts, error)
            return False
        finally:
            session.close()

    def get_status(self, job_id: str) -> QueueStatus | None:
        """Live snapshot for the status endpoint, or None if the entry is gone."""
        session = self._session_factory()
        try:
            entry = session.get(QueueEntry, job_id)
            return self._snapshot(entry) if entry is not None else None
        finally:
            session.close()

    def counts(self) -> dict[str, int]:
        """Number of entries per state."""
        session = self._session_factory()
        try:
            rows = session.execute(
                select(QueueEntry.state, func.count()).group_by(QueueEntry.state)
            ).all()
            counts = {state.value: 0 for state in QueueState}
            for state, count in rows:
                counts[state.value] = int(count)
            return counts
        finally:
            session.close()

    def requeue_stalled(self, now: datetime | None = None, *, include_own: bool = True) -> int:
        """
        Return abandoned `active` entries to the waiting state.

        An entry is abandoned when its lease has lapsed. With `include_own`,
        entries claimed under this worker id are returned as well; that is
        only right when this worker is (re)starting and runs none of them.
        """
        now = now or utcnow()
        abandoned = [QueueEntry.lease_expires_at.is_(None), QueueEntry.lease_expires_at < now]
        if include_own:
            abandoned.append(QueueEntry.claimed_by == self.worker_id)

        session = self._session_factory()
        try:
            update_result = session.execute(
                update(QueueEntry)
                .where(QueueEntry.state == QueueState.ACTIVE, or_(*abandoned))
                .values(
                    state=QueueState.WAITING,
                    claimed_by=None,
                    lease_expires_at=None,
                    message="Requeued after its worker stopped",
                )
            )
            session.commit()
            if update_result.rowcount:
                logger.info("Requeued %s stalled job(s)", update_result.rowcount)
            return int(update_result.rowcount or 0)
        finally:
            session.close()

    def purge_finished(self, now: datetime | None = None) -> int:
        """Delete completed/failed entries past the retention window. Job rows are kept."""
        now = now or utcnow()
        cutoff = now - self.retention
        session = self._session_factory()
        try:
            result = session.execute(
                delete(QueueEntry)
                .where(QueueEntry.state.in_(_FINISHED_STATES))
                .where(QueueEntry.finished_at.is_not(None))
                .where(QueueEntry.finished_at < cutoff)
            )
            # Starts older than the rate window no longer count
            session.execute(
                delete(QueueStart).where(QueueStart.started_at <= now - self.rate_limit_window)
            )
            session.commit()
            if result.rowcount:
                logger.info("Purged %s finished queue entries", result.rowcount)
            return int(result.rowcount or 0)
        finally:
            session.close()

    @staticmethod
    def _snapshot(entry: QueueEntry) -> QueueStatus:
        return QueueStatus(
            state=entry.state,
            progress=entry.progress,
            stage=entry.stage,
            message=entry.message,
            attempts_made=entry.attempts_made,
            failed_reason=entry.failed_reason,
        )


__all__ = ["ClaimedWork", "JobQueue", "QueueStatus", "build_payload", "default_worker_id"]
