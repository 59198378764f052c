from __future__ import annotations
import math
from datetime import datetime, timedelta, UTC
from typing import Optional

__all__ = [
    "utc_now",
    "utc_now_naive",
    "to_naive_utc",
    "elapsed_days",
    "NEVER_ACTIVE",
]

# Elapsed-days value for a user with no recorded activity at all.
NEVER_ACTIVE = math.inf


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(UTC)


def utc_now_naive() -> datetime:
    """UTC now without tzinfo, matching what the DateTime columns store."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime | None) -> Optional[datetime]:
    """Convert aware datetime to naive UTC for storage/compare; pass through naive assumed UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def elapsed_days(now: datetime, since: datetime | None) -> float:
    """Whole days between ``since`` and ``now`` (floored), or NEVER_ACTIVE if unknown."""
    if since is None:
        return NEVER_ACTIVE
    delta: timedelta = to_naive_utc(now) - to_naive_utc(since)
    return max(0, delta.days)
