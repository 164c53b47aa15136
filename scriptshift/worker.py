"""
Standalone pipeline worker.

Runs the job dispatcher without the HTTP server, so processing can scale
separately from the API. Workers share the database-backed queue: the
concurrency and start-rate limits are checked inside each claim, and every
claim carries this worker's id and a lease it renews while working.

Usage:
    python -m scriptshift.worker [--concurrency N] [--poll-interval SECONDS]
"""

import argparse
import asyncio
import logging
import signal
import sys

from scriptshift.config import Settings, get_settings
from scriptshift.database import init_db
from scriptshift.main import configure_logging, purge_expired_cache
from scriptshift.providers import build_providers
from scriptshift.services.dispatcher import JobDispatcher
from scriptshift.services.job_queue import JobQueue
from scriptshift.services.pipeline import DubbingPipeline

logger = logging.getLogger(__name__)


async def run_worker(settings: Settings, poll_interval: float | None = None) -> None:
    """Start the dispatcher and run until SIGINT/SIGTERM."""
    settings.ensure_directories()
    init_db()
    purge_expired_cache()

    queue = JobQueue(settings=settings)
    # No SSE clients live in this process; progress reaches them via the status endpoint
    pipeline = DubbingPipeline(
        build_providers(settings), queue=queue, settings=settings, progress_sink=None
    )
    dispatcher = JobDispatcher(pipeline, queue=queue, settings=settings, poll_interval=poll_interval)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass

    await dispatcher.start()
    logger.info(
        "Worker %s running (global limit %s active jobs)",
        queue.worker_id,
        settings.max_concurrent_jobs,
    )
    try:
        await stop_event.wait()
    finally:
        await dispatcher.stop()
        logger.info("Worker stopped")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the ScriptShift pipeline worker")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Jobs this worker runs in parallel (default: MAX_CONCURRENT_JOBS)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between queue polls when idle",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    if args.concurrency is not None:
        if args.concurrency < 1:
            parser.error("--concurrency must be at least 1")
        settings = settings.model_copy(update={"dispatcher_concurrency": args.concurrency})

    configure_logging(settings)
    asyncio.run(run_worker(settings, poll_interval=args.poll_interval))
    return 0


if __name__ == "__main__":
    sys.exit(main())
