"""Tests for the database-backed job queue."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta

import pytest
from sqlalchemy.orm import Session, sessionmaker

from scriptshift.config import Settings
from scriptshift.models import Job, QueueEntry, QueueStart, QueueState, utcnow
from scriptshift.services.job_queue import JobQueue, build_payload


def _enqueue(queue: JobQueue, job: Job, **overrides: object) -> None:
    payload = build_payload(
        file_hash=job.file_hash,
        file_url=job.file_url,
        original_filename=job.original_filename,
        target_language=job.target_language,
    )
    payload.update(overrides)
    queue.enqueue(job.id, payload)


def _queue_with(
    session_factory: sessionmaker[Session], settings: Settings, **overrides: object
) -> JobQueue:
    return JobQueue(
        session_factory=session_factory, settings=settings.model_copy(update=overrides)
    )


def _worker(
    session_factory: sessionmaker[Session],
    settings: Settings,
    worker_id: str,
    **overrides: object,
) -> JobQueue:
    return JobQueue(
        session_factory=session_factory,
        settings=settings.model_copy(update=overrides),
        worker_id=worker_id,
    )


def test_enqueue_is_idempotent_per_job(queue: JobQueue, job_factory: Callable[..., Job]) -> None:
    job = job_factory()

    _enqueue(queue, job)
    _enqueue(queue, job, target_language="fr")

    assert queue.counts()[QueueState.WAITING.value] == 1
    claimed = queue.claim_next()
    assert claimed is not None
    assert claimed.target_language == "es"
    assert queue.claim_next() is None


def test_claim_next_marks_active(queue: JobQueue, job_factory: Callable[..., Job]) -> None:
    job = job_factory(original_filename="talk.mov")
    _enqueue(queue, job, enable_lipsync=True)

    claimed = queue.claim_next()

    assert claimed is not None
    assert claimed.job_id == job.id
    assert claimed.original_filename == "talk.mov"
    assert claimed.enable_lipsync is True
    assert claimed.attempt == 1
    assert claimed.max_attempts == 3

    status = queue.get_status(job.id)
    assert status is not None
    assert status.state == QueueState.ACTIVE
    assert status.attempts_made == 1


def test_claim_next_honors_concurrency_limit(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    queue = _queue_with(session_factory, settings, max_concurrent_jobs=1)
    first, second = job_factory(), job_factory()
    _enqueue(queue, first)
    _enqueue(queue, second)

    assert queue.claim_next() is not None
    assert queue.claim_next() is None

    queue.complete(first.id)
    claimed = queue.claim_next()
    assert claimed is not None
    assert claimed.job_id == second.id


def test_claim_next_honors_rate_limit(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    queue = _queue_with(
        session_factory, settings, max_concurrent_jobs=10, rate_limit_max_jobs=2
    )
    jobs = [job_factory() for _ in range(3)]
    for job in jobs:
        _enqueue(queue, job)

    assert queue.claim_next() is not None
    assert queue.claim_next() is not None
    assert queue.claim_next() is None

    claimed = queue.claim_next(now=utcnow() + timedelta(seconds=61))
    assert claimed is not None
    assert claimed.job_id == jobs[2].id


def test_fail_retries_with_exponential_backoff(
    queue: JobQueue, job_factory: Callable[..., Job]
) -> None:
    job = job_factory()
    _enqueue(queue, job)
    t0 = utcnow()

    assert queue.claim_next(now=t0) is not None
    assert queue.fail(job.id, "boom", now=t0) is True

    status = queue.get_status(job.id)
    assert status.state == QueueState.DELAYED
    assert status.failed_reason == "boom"

    # First retry after 5s
    assert queue.claim_next(now=t0 + timedelta(seconds=4)) is None
    second = queue.claim_next(now=t0 + timedelta(seconds=5))
    assert second is not None
    assert second.attempt == 2

    # Second retry after 10s
    t1 = t0 + timedelta(seconds=5)
    assert queue.fail(job.id, "boom again", now=t1) is True
    assert queue.claim_next(now=t1 + timedelta(seconds=9)) is None
    third = queue.claim_next(now=t1 + timedelta(seconds=10))
    assert third is not None
    assert third.attempt == 3

    # Attempts exhausted
    assert queue.fail(job.id, "final", now=t1 + timedelta(seconds=10)) is False
    status = queue.get_status(job.id)
    assert status.state == QueueState.FAILED
    assert status.failed_reason == "final"
    assert queue.claim_next(now=t1 + timedelta(hours=1)) is None


def test_fail_without_retry_is_terminal(queue: JobQueue, job_factory: Callable[..., Job]) -> None:
    job = job_factory()
    _enqueue(queue, job)
    queue.claim_next()

    assert queue.fail(job.id, "job vanished", retry=False) is False
    assert queue.get_status(job.id).state == QueueState.FAILED


def test_fail_unknown_entry(queue: JobQueue) -> None:
    assert queue.fail("missing", "boom") is False


def test_report_progress_and_complete(queue: JobQueue, job_factory: Callable[..., Job]) -> None:
    job = job_factory()
    _enqueue(queue, job)
    queue.claim_next()

    queue.report_progress(job.id, "translate", 47, "Translated 3/8 segments")
    status = queue.get_status(job.id)
    assert (status.stage, status.progress, status.message) == (
        "translate",
        47,
        "Translated 3/8 segments",
    )

    queue.complete(job.id, "done")
    status = queue.get_status(job.id)
    assert status.state == QueueState.COMPLETED
    assert status.progress == 100


def test_requeue_stalled_on_restart(queue: JobQueue, job_factory: Callable[..., Job]) -> None:
    job = job_factory()
    _enqueue(queue, job)
    queue.claim_next()

    # While running, its own live claims are left alone
    assert queue.requeue_stalled(include_own=False) == 0
    assert queue.requeue_stalled() == 1
    assert queue.get_status(job.id).state == QueueState.WAITING
    assert queue.requeue_stalled() == 0


def test_purge_finished_keeps_job_rows(
    queue: JobQueue, db: Session, job_factory: Callable[..., Job]
) -> None:
    old, recent = job_factory(), job_factory()
    for job in (old, recent):
        _enqueue(queue, job)
        queue.claim_next()

    queue.complete(old.id, now=utcnow() - timedelta(days=8))
    queue.complete(recent.id)

    assert queue.purge_finished() == 1
    assert queue.get_status(old.id) is None
    assert queue.get_status(recent.id) is not None
    db.expire_all()
    assert db.get(Job, old.id) is not None
    assert db.get(QueueEntry, old.id) is None


@pytest.mark.parametrize("state", [QueueState.WAITING, QueueState.ACTIVE])
def test_purge_finished_ignores_unfinished(
    queue: JobQueue, job_factory: Callable[..., Job], state: QueueState
) -> None:
    job = job_factory()
    _enqueue(queue, job)
    if state == QueueState.ACTIVE:
        queue.claim_next()

    assert queue.purge_finished(now=utcnow() + timedelta(days=30)) == 0
    assert queue.get_status(job.id).state == state


def test_live_claim_is_not_taken_by_another_worker(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    worker_a = _worker(session_factory, settings, "worker-a")
    worker_b = _worker(session_factory, settings, "worker-b")
    job = job_factory()
    _enqueue(worker_a, job)

    claimed = worker_a.claim_next()
    assert claimed is not None

    # Worker B starting up must not hand A's running job to itself
    assert worker_b.requeue_stalled() == 0
    assert worker_b.claim_next() is None
    assert worker_b.get_status(job.id).state == QueueState.ACTIVE

    # Only the holder reports on the entry
    assert worker_b.report_progress(job.id, "translate", 50) is False
    assert worker_b.complete(job.id) is False
    assert worker_b.fail(job.id, "not mine") is False
    assert worker_a.report_progress(job.id, "translate", 50) is True
    assert worker_a.get_status(job.id).progress == 50


def test_lapsed_lease_is_reclaimed_and_old_holder_is_fenced(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    worker_a = _worker(session_factory, settings, "worker-a", queue_lease_seconds=30)
    worker_b = _worker(session_factory, settings, "worker-b", queue_lease_seconds=30)
    job = job_factory()
    _enqueue(worker_a, job)
    t0 = utcnow()
    assert worker_a.claim_next(now=t0) is not None

    assert worker_b.requeue_stalled(now=t0 + timedelta(seconds=29)) == 0
    assert worker_b.requeue_stalled(now=t0 + timedelta(seconds=31)) == 1

    reclaimed = worker_b.claim_next(now=t0 + timedelta(seconds=31))
    assert reclaimed is not None
    assert reclaimed.attempt == 2

    # A finishing late does not overwrite B's run
    assert worker_a.complete(job.id) is False
    assert worker_a.report_progress(job.id, "mix", 80) is False
    assert worker_b.get_status(job.id).state == QueueState.ACTIVE
    assert worker_b.complete(job.id) is True
    assert worker_b.get_status(job.id).state == QueueState.COMPLETED


def test_renewed_lease_keeps_the_claim(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    worker_a = _worker(session_factory, settings, "worker-a", queue_lease_seconds=30)
    worker_b = _worker(session_factory, settings, "worker-b", queue_lease_seconds=30)
    job = job_factory()
    _enqueue(worker_a, job)
    t0 = utcnow()
    worker_a.claim_next(now=t0)

    assert worker_a.renew_leases(now=t0 + timedelta(seconds=25)) == 1
    assert worker_b.renew_leases(now=t0 + timedelta(seconds=25)) == 0

    assert worker_b.requeue_stalled(now=t0 + timedelta(seconds=40)) == 0
    assert worker_b.requeue_stalled(now=t0 + timedelta(seconds=56)) == 1


def test_retries_count_against_the_start_rate(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    queue = _queue_with(
        session_factory,
        settings,
        max_concurrent_jobs=10,
        rate_limit_max_jobs=2,
        retry_backoff_seconds=0,
    )
    first, second = job_factory(), job_factory()
    _enqueue(queue, first)
    t0 = utcnow()

    assert queue.claim_next(now=t0) is not None
    assert queue.fail(first.id, "boom", now=t0) is True
    retried = queue.claim_next(now=t0 + timedelta(seconds=2))
    assert retried is not None
    assert retried.attempt == 2

    # Two starts (one of them a retry) already fill the window
    _enqueue(queue, second)
    assert queue.claim_next(now=t0 + timedelta(seconds=3)) is None

    claimed = queue.claim_next(now=t0 + timedelta(seconds=61))
    assert claimed is not None
    assert claimed.job_id == second.id


def test_limits_are_checked_inside_the_claim(
    session_factory: sessionmaker[Session],
    settings: Settings,
    job_factory: Callable[..., Job],
) -> None:
    worker_a = _worker(session_factory, settings, "worker-a", max_concurrent_jobs=1)
    worker_b = _worker(session_factory, settings, "worker-b", max_concurrent_jobs=1)
    first, second = job_factory(), job_factory()
    _enqueue(worker_a, first)
    _enqueue(worker_a, second)
    now = utcnow()

    # B picked `second` as its candidate, then A claimed `first` before B's update ran
    assert worker_a.claim_next(now=now) is not None
    with session_factory() as session:
        assert worker_b._claim(session, second.id, QueueState.WAITING, now) is False
        session.rollback()

    assert worker_b.claim_next(now=now) is None
    assert worker_b.counts()[QueueState.ACTIVE.value] == 1


def test_purge_finished_drops_starts_outside_the_window(
    queue: JobQueue, db: Session, job_factory: Callable[..., Job]
) -> None:
    job = job_factory()
    _enqueue(queue, job)
    t0 = utcnow()
    queue.claim_next(now=t0)

    queue.purge_finished(now=t0 + timedelta(seconds=30))
    assert db.query(QueueStart).count() == 1

    queue.purge_finished(now=t0 + timedelta(seconds=61))
    assert db.query(QueueStart).count() == 0
