"""
Time utilities for the WBS service.

This module provides a single source of truth for time operations. The
engine never calls ``datetime.now`` directly: it asks an injected clock,
so tests can pin "now" to a known instant.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC time.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes (SQLite drops the offset on read).
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def epoch_millis(value: Optional[datetime]) -> int:
    """
    Milliseconds since the Unix epoch, 0 for a missing timestamp.
    """
    if value is None:
        return 0
    return int(ensure_utc(value).timestamp() * 1000)


def add_days(start: datetime, days: float) -> datetime:
    """Offset a datetime by a (possibly fractional) number of calendar days."""
    return start + timedelta(days=days)


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return utc_now()


class FixedClock:
    """Clock frozen at a given instant; ``advance`` moves it forward."""

    def __init__(self, instant: Optional[datetime] = None):
        self._instant = ensure_utc(instant) if instant else utc_now()

    def now(self) -> datetime:
        return self._instant

    def advance(self, **kwargs) -> datetime:
        self._instant = self._instant + timedelta(**kwargs)
        return self._instant
