"""Database helpers for PayRecon."""

from __future__ import annotations

from .config import DatabaseSettings, get_database_settings
from .models import Base
from .session import (
    configure_engine,
    get_engine,
    get_session,
    initialise_schema,
)

__all__ = [
    "Base",
    "DatabaseSettings",
    "configure_engine",
    "get_database_settings",
    "get_engine",
    "get_session",
    "initialise_schema",
]
