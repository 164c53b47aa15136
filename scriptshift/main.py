"""
ScriptShift - video localization pipeline.

Main FastAPI application entry point.
"""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from scriptshift.api import progress, routes
from scriptshift.config import VERSION, Settings, get_settings
from scriptshift.database import SessionLocal, init_db
from scriptshift.providers import build_providers
from scriptshift.services.content_cache import ExpiringCache
from scriptshift.services.dispatcher import JobDispatcher
from scriptshift.services.job_queue import JobQueue
from scriptshift.services.pipeline import DubbingPipeline

settings = get_settings()


def configure_logging(settings: Settings = settings) -> None:
    """
    Configure application logging based on settings.

    Sets up:
    - Log level from environment variable (DEBUG/INFO/WARNING/ERROR)
    - Detailed format with timestamp, logger name, level, and message
    - Quiet third-party HTTP and SQLAlchemy loggers
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.debug:
        log_format = (
            "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
        )
    else:
        log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Set specific log levels for noisy third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    # Optionally silence SQLAlchemy (except errors)
    if settings.silence_sqlalchemy:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
        logging.getLogger("sqlalchemy.pool").setLevel(logging.ERROR)
        logging.getLogger("sqlalchemy.dialects").setLevel(logging.ERROR)
        logging.getLogger("sqlalchemy.orm").setLevel(logging.ERROR)

    logger = logging.getLogger(__name__)
    logger.info(
        f"Logging configured: level={settings.log_level.upper()}, debug={settings.debug}, "
        f"sqlalchemy_silenced={settings.silence_sqlalchemy}"
    )


def purge_expired_cache() -> int:
    """Drop expired rows of the generic cache table."""
    session = SessionLocal()
    try:
        return ExpiringCache(session).purge_expired()
    finally:
        session.close()


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan events.

    Startup creates tables, purges expired cache rows, builds the provider
    clients and starts the job dispatcher; shutdown stops the dispatcher.
    """
    logger.info("Starting ScriptShift application...")
    settings.ensure_directories()
    init_db()
    logger.info("Database initialized successfully")
    purge_expired_cache()

    providers = build_providers(settings)
    queue = JobQueue(settings=settings)
    pipeline = DubbingPipeline(providers, queue=queue, settings=settings)
    dispatcher = JobDispatcher(pipeline, queue=queue, settings=settings)

    app.state.providers = providers
    app.state.queue = queue
    app.state.dispatcher = dispatcher

    logger.info(
        f"Translation model: {settings.translation_model}, "
        f"lip-sync provider: {'configured' if providers.lipsync else 'not configured'}"
    )
    await dispatcher.start()
    try:
        yield
    finally:
        logger.info("Shutting down ScriptShift application...")
        await dispatcher.stop()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Video localization pipeline: transcription, translation, voice dubbing and lip-sync",
    version=VERSION,
    lifespan=lifespan,
)

# CORS Configuration
# Allow all origins for development, restrict in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Stored blobs (uploads, extracted audio, dubbed outputs)
settings.storage_dir.mkdir(parents=True, exist_ok=True)
app.mount("/blobs", StaticFiles(directory=settings.storage_dir), name="blobs")

# Include API routes
app.include_router(routes.router, prefix="/api")
app.include_router(progress.router)


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        Status, version and queue entry counts by state
    """
    queue: JobQueue | None = getattr(app.state, "queue", None)
    dispatcher: JobDispatcher | None = getattr(app.state, "dispatcher", None)
    return {
        "status": "healthy",
        "version": VERSION,
        "dispatcher_running": bool(dispatcher and dispatcher.running),
        "queue": queue.counts() if queue is not None else {},
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("scriptshift.main:app", host=settings.host, port=settings.port, reload=settings.debug)
