"""Live job progress over Server-Sent Events.

The pipeline pushes a `ProgressUpdate` at every stage checkpoint; each
connected `/progress` stream gets a bounded inbox and sees the updates for
the job it asked about (or for every job). Fan-out is per process: updates
from a standalone worker are not seen here, and clients of such a worker
poll `/api/jobs/{id}/status` instead.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from scriptshift.database import get_db
from scriptshift.models import Job
from scriptshift.schemas import ProgressUpdate

logger = logging.getLogger(__name__)

router = APIRouter()

# Updates buffered per stream before the stream is considered stuck
STREAM_BUFFER_SIZE = 1000
# Jobs replayed to a stream that subscribes to everything
SNAPSHOT_LIMIT = 50

Inbox = asyncio.Queue[dict[str, Any]]


class ProgressBroadcaster:
    """Fans progress updates out to the inboxes of open SSE streams."""

    def __init__(self) -> None:
        self.clients: list[Inbox] = []

    def add_client(self, inbox: Inbox) -> None:
        self.clients.append(inbox)

    def remove_client(self, inbox: Inbox) -> None:
        if inbox in self.clients:
            self.clients.remove(inbox)

    async def broadcast(self, update: ProgressUpdate) -> None:
        """Deliver without waiting; a stream whose inbox is full is dropped."""
        event = update.model_dump(mode="json")

        stuck = []
        for inbox in self.clients:
            try:
                inbox.put_nowait(event)
            except asyncio.QueueFull:
                stuck.append(inbox)

        for inbox in stuck:
            logger.warning("Dropping SSE client that stopped consuming updates")
            self.remove_client(inbox)


broadcaster = ProgressBroadcaster()


def _snapshot(job: Job) -> dict[str, Any]:
    return ProgressUpdate(
        job_id=job.id,
        status=job.status,
        progress=job.progress,
        stage=job.current_stage,
        message=job.error,
    ).model_dump(mode="json")


def _event(payload: dict[str, Any]) -> dict[str, Any]:
    return {"event": "progress", "data": json.dumps(payload)}


async def event_generator(job_id: str | None, db: Session) -> AsyncIterator[dict[str, Any]]:
    """
    Current state first, then live updates.

    With a `job_id` only that job's snapshot and updates are sent; without
    one, the most recent jobs are replayed and every update follows.
    """
    inbox: Inbox = asyncio.Queue(maxsize=STREAM_BUFFER_SIZE)
    broadcaster.add_client(inbox)

    try:
        if job_id is not None:
            job = db.get(Job, job_id)
            current = [job] if job is not None else []
        else:
            current = db.query(Job).order_by(Job.created_at.desc()).limit(SNAPSHOT_LIMIT).all()
        for job in current:
            yield _event(_snapshot(job))

        while True:
            update = await inbox.get()
            if job_id is None or update.get("job_id") == job_id:
                yield _event(update)
    except Exception:
        logger.exception("Progress stream for %s failed", job_id or "all jobs")
        raise
    finally:
        broadcaster.remove_client(inbox)


@router.get("/progress")
async def progress_stream(
    job_id: str | None = None, db: Session = Depends(get_db)
) -> EventSourceResponse:
    """
    Stream `progress` events, optionally for a single job.

        const source = new EventSource('/progress?job_id=<uuid>');
        source.addEventListener('progress', (e) => render(JSON.parse(e.data)));
    """
    return EventSourceResponse(event_generator(job_id, db))


async def send_progress_update(update: ProgressUpdate) -> None:
    """Progress sink the API-process pipeline publishes through."""
    await broadcaster.broadcast(update)
