"""UTC helpers for Stripe epoch timestamps and stored datetimes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

EpochLike = Union[int, float, str]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive values (as returned by SQLite) as UTC."""

    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)


def from_epoch_seconds(value: Optional[EpochLike]) -> Optional[datetime]:
    """Convert Stripe's ``created``/``paid_at`` epoch seconds, ``None`` if unparseable."""

    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def epoch_or_now(value: Optional[EpochLike]) -> datetime:
    return from_epoch_seconds(value) or utc_now()


def isoformat_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO 8601 text ending in ``Z``."""

    if dt is None:
        return None
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


__all__ = ["utc_now", "ensure_utc", "from_epoch_seconds", "epoch_or_now", "isoformat_z"]
