"""
Clock — injectable time source.

Services receive a Clock through their constructor and never call
``datetime.now()`` themselves, so backoff schedules, stuck thresholds
and urgency windows can be tested against a fixed instant.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Abstract clock.  ``now()`` is always timezone-aware UTC."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Production clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant; ``advance()`` moves it forward."""

    def __init__(self, current: datetime | None = None) -> None:
        self._current = ensure_utc(current) if current else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, **delta: float) -> datetime:
        self._current = self._current + timedelta(**delta)
        return self._current


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Attach UTC to naive datetimes.

    SQLite hands back naive values for ``DateTime(timezone=True)``
    columns; everything we store is UTC, so this is lossless.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
