"""Long-lived runner that feeds queued jobs through the dubbing pipeline.

The dispatcher runs as an asyncio task inside the API process (or alone via
`python -m scriptshift.worker`). It claims work from the durable queue,
respecting the queue's global limits plus a per-process concurrency cap,
and hands failures back to the queue, which decides between a delayed
retry and a terminal failure.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from sqlalchemy.orm import Session

from scriptshift.config import Settings, get_settings
from scriptshift.database import SessionLocal
from scriptshift.errors import NotFoundError, StageError
from scriptshift.services.job_queue import ClaimedWork, JobQueue
from scriptshift.services.pipeline import DubbingPipeline

logger = logging.getLogger(__name__)

# How often finished queue entries past retention are purged
_PURGE_INTERVAL_SECONDS = 3600.0


class JobDispatcher:
    """Coordinates background processing with the durable job queue."""

    def __init__(
        self,
        pipeline: DubbingPipeline,
        *,
        queue: JobQueue | None = None,
        session_factory: Callable[[], Session] | None = None,
        settings: Settings | None = None,
        poll_interval: float | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory or SessionLocal
        self._pipeline = pipeline
        self._queue = queue or JobQueue(session_factory=self._session_factory, settings=self._settings)
        self._poll_interval = (
            poll_interval
            if poll_interval is not None
            else max(0.1, float(self._settings.dispatcher_poll_interval_seconds))
        )
        self._max_parallel = max(
            1, int(self._settings.dispatcher_concurrency or self._settings.max_concurrent_jobs)
        )
        self._heartbeat_interval = self._queue.lease.total_seconds() / 3
        self._last_purge = 0.0
        self._last_heartbeat = 0.0

        self._shutdown_event = asyncio.Event()
        self._dispatcher_task: asyncio.Task[None] | None = None
        self._active_tasks: set[asyncio.Task[None]] = set()

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def running(self) -> bool:
        return self._dispatcher_task is not None

    @property
    def active_jobs(self) -> int:
        return len(self._active_tasks)

    async def start(self) -> None:
        """Launch the dispatcher loop if it is not already running."""
        if self._dispatcher_task is not None:
            logger.debug("JobDispatcher already running; start() call ignored")
            return

        # Nothing runs under this worker id yet, so its own leftovers are stale too
        await asyncio.to_thread(self._queue.requeue_stalled)
        logger.info(
            "Job dispatcher %s starting with %s parallel job(s)",
            self._queue.worker_id,
            self._max_parallel,
        )

        self._shutdown_event.clear()
        self._dispatcher_task = asyncio.create_task(self._run_loop(), name="job-dispatcher")

    async def stop(self) -> None:
        """Signal the dispatcher loop to exit and await in-flight work."""
        if self._dispatcher_task is None:
            return

        logger.info("Stopping job dispatcher")
        self._shutdown_event.set()

        try:
            await self._dispatcher_task
        finally:
            self._dispatcher_task = None

        # Cancelled jobs stay `active` until their lease lapses or this dispatcher restarts
        for task in list(self._active_tasks):
            task.cancel()
        if self._active_tasks:
            await asyncio.gather(*self._active_tasks, return_exceptions=True)
        self._active_tasks.clear()

    async def wait_idle(self) -> None:
        """Wait until every in-flight job has finished."""
        while self._active_tasks:
            await asyncio.gather(*list(self._active_tasks), return_exceptions=True)

    async def run_once(self) -> bool:
        """
        Claim and start at most one job.

        Returns:
            True if a job was claimed
        """
        self._prune_finished_tasks()
        if len(self._active_tasks) >= self._max_parallel:
            return False

        claimed = await asyncio.to_thread(self._queue.claim_next)
        if claimed is None:
            return False

        logger.info(
            "Claimed job %s (attempt %s/%s)", claimed.job_id, claimed.attempt, claimed.max_attempts
        )
        task = asyncio.create_task(self._execute_job(claimed), name=f"job-{claimed.job_id}")
        self._active_tasks.add(task)
        task.add_done_callback(self._active_tasks.discard)
        return True

    async def _run_loop(self) -> None:
        """Main loop: claim jobs when capacity is available."""
        try:
            while not self._shutdown_event.is_set():
                await self._maybe_heartbeat()
                await self._maybe_purge()
                if not await self.run_once():
                    await self._sleep()
        finally:
            logger.info("Job dispatcher loop exited")

    async def _execute_job(self, work: ClaimedWork) -> None:
        """Run the pipeline for a claimed job and report failures to the queue."""
        try:
            await self._pipeline.run(work)
        except asyncio.CancelledError:
            logger.warning("Pipeline task for job %s cancelled", work.job_id)
            raise
        except Exception as e:
            cause = e.cause if isinstance(e, StageError) else e
            if not isinstance(e, StageError):
                logger.exception("Unexpected error while processing job %s", work.job_id)
            retry = not isinstance(cause, NotFoundError)
            await asyncio.to_thread(self._queue.fail, work.job_id, str(e), retry=retry)

    async def _maybe_heartbeat(self) -> None:
        """Renew this worker's leases and hand back work whose worker went away."""
        now = time.monotonic()
        if self._last_heartbeat and now - self._last_heartbeat < self._heartbeat_interval:
            return
        self._last_heartbeat = now
        await asyncio.to_thread(self._queue.renew_leases)
        await asyncio.to_thread(self._queue.requeue_stalled, include_own=False)

    async def _maybe_purge(self) -> None:
        now = time.monotonic()
        if self._last_purge and now - self._last_purge < _PURGE_INTERVAL_SECONDS:
            return
        self._last_purge = now
        await asyncio.to_thread(self._queue.purge_finished)

    async def _sleep(self) -> None:
        """Sleep for the configured poll interval unless shutdown triggers."""
        if self._poll_interval <= 0:
            await asyncio.sleep(0)
            return

        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._poll_interval)
        except TimeoutError:
            return

    def _prune_finished_tasks(self) -> None:
        """Remove completed tasks from the active set to avoid memory growth."""
        for task in list(self._active_tasks):
            if task.done():
                self._active_tasks.discard(task)


__all__ = ["JobDispatcher"]
