"""Database configuration for the reconciliation store.

``PAYRECON_DATABASE_URL`` (or ``DATABASE_URL``) selects a server database;
otherwise a SQLite file under the platform data directory is used, which
``PAYRECON_DB_PATH`` may relocate.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from platformdirs import user_data_dir

from payrecon.key_manager import APP_NAME

SQLITE_FILENAME = "payrecon.db"

_POOL_ENV = {
    "pool_size": "DB_POOL_SIZE",
    "max_overflow": "DB_MAX_OVERFLOW",
    "pool_timeout": "DB_POOL_TIMEOUT",
}


def _int_env(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False
    pool: Dict[str, str] = field(default_factory=lambda: dict(_POOL_ENV))

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgresql", "postgres"))

    def _postgres_connect_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {}
        connect_timeout = _int_env("PGCONNECT_TIMEOUT")
        if connect_timeout is not None:
            args["connect_timeout"] = connect_timeout
        # Stored timestamps are compared in UTC regardless of server locale.
        session_options = ["-c timezone=UTC"]
        statement_timeout = _int_env("STATEMENT_TIMEOUT_MS")
        if statement_timeout is not None:
            session_options.append(f"-c statement_timeout={statement_timeout}")
        args["options"] = " ".join(session_options)
        return args

    def engine_options(self) -> Dict[str, Any]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, Any] = {"echo": self.echo, "future": True}
        for option, env_name in self.pool.items():
            value = _int_env(env_name)
            if value is not None:
                options[option] = value
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            options["pool_pre_ping"] = True
            options["connect_args"] = self._postgres_connect_args()
        return options


def _sqlite_url(path_override: Optional[str]) -> str:
    if path_override:
        path = Path(path_override).expanduser()
        if path.is_dir():
            path = path / SQLITE_FILENAME
    else:
        path = Path(user_data_dir(APP_NAME, APP_NAME)) / SQLITE_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


def _with_psycopg_driver(url: str) -> str:
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    """Return the active database settings derived from the environment."""

    echo = os.getenv("DB_ECHO", "").strip().lower() in {"1", "true", "yes"}
    url = os.getenv("PAYRECON_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=_with_psycopg_driver(url), echo=echo)
    return DatabaseSettings(url=_sqlite_url(os.getenv("PAYRECON_DB_PATH")), echo=echo)


__all__ = ["DatabaseSettings", "get_database_settings"]
