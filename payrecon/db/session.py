"""Engine and session helpers for the reconciliation store.

The engine is created lazily from :func:`payrecon.db.config.get_database_settings`
so tests can point the process at an in-memory database with
:func:`configure_engine` before anything touches the store.
"""

from __future__ import annotations

from typing import Generator, Optional

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_database_settings
from .models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_sessionmaker: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""

    global _engine, _sessionmaker
    if _engine is None:
        settings = get_database_settings()
        _engine = create_engine(settings.url, **settings.engine_options())
        _sessionmaker = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
        logger.info("database_engine_created", sqlite=settings.is_sqlite)
    return _engine


def configure_engine(engine: Engine) -> None:
    """Point the session factory at *engine* (used by tests and scripts)."""

    global _engine, _sessionmaker
    _engine = engine
    _sessionmaker = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _session_factory() -> sessionmaker:
    if _sessionmaker is None:
        get_engine()
    assert _sessionmaker is not None
    return _sessionmaker


def initialise_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""

    Base.metadata.create_all(engine or get_engine())


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a SQLAlchemy session."""

    session: Session = _session_factory()()
    try:
        yield session
    finally:
        session.close()
