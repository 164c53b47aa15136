"""Database setup and session management."""

import logging
from collections.abc import Generator
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from scriptshift.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def enable_sqlite_foreign_keys(engine: Engine) -> None:
    """Turn on FK enforcement (and therefore ON DELETE CASCADE) for SQLite connections."""
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# Create SQLAlchemy engine
# Note: echo is disabled when silence_sqlalchemy is True, even in debug mode
engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
    echo=settings.debug and not settings.silence_sqlalchemy,
)
enable_sqlite_foreign_keys(engine)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency for FastAPI.

    Yields:
        SQLAlchemy session that is automatically closed after use
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables."""
    # Import models so every table is registered on Base.metadata
    from scriptshift import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
