"""Database configuration for the settlement service."""
from __future__ import annotations

import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from settlement import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
if DATABASE_URL.startswith("sqlite:///") and ":memory:" not in DATABASE_URL:
    settings.DEFAULT_SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)


def _create_engine(url: str):
    """Create a SQLAlchemy engine for the given URL, handling sqlite connect args."""
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, future=True)


# Verify the configured database is reachable. In development an unreachable
# server falls back to the local SQLite file; anywhere else startup fails.
try:
    engine = _create_engine(DATABASE_URL)
    with engine.connect() as _conn:  # type: ignore[var-annotated]
        pass
except Exception as e:  # pragma: no cover - environment dependent
    logger.error("Could not connect to database at %r: %s", DATABASE_URL, e)
    if settings.ENVIRONMENT == "development":
        settings.DEFAULT_SQLITE_PATH.parent.mkdir(parents=True, exist_ok=True)
        fallback = f"sqlite:///{settings.DEFAULT_SQLITE_PATH}"
        logger.warning("Falling back to SQLite for local development at %s", fallback)
        DATABASE_URL = fallback
        engine = _create_engine(DATABASE_URL)
    else:
        raise

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a database session."""

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db() -> None:
    """Ensure database tables exist."""

    from settlement import models  # noqa: F401  (import ensures model metadata is registered)

    Base.metadata.create_all(bind=engine, checkfirst=True)
    logger.info("Database schema ready at %s", engine.url.render_as_string(hide_password=True))
