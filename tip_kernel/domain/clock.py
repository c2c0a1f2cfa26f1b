"""
Clock -- injectable time source.

Services receive a Clock through their constructor and never call
``datetime.now()`` themselves, so every ``posted_at``, ``joined_at`` and
segment boundary written by the kernel is reproducible under test.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current instant. Always timezone-aware UTC."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock time. The only place the kernel reads real time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Controlled clock for tests and replays.

    ``now()`` is stable between calls; time only moves through
    ``advance()`` or ``set()``. The default start instant is
    2024-01-01 12:00 UTC.
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        self._current = ensure_utc(start) if start else self.DEFAULT_START

    def now(self) -> datetime:
        return self._current

    def set(self, instant: datetime) -> None:
        self._current = ensure_utc(instant)

    def advance(self, seconds: float = 0, *, minutes: float = 0, hours: float = 0) -> datetime:
        """Move forward and return the new instant."""
        delta = timedelta(seconds=seconds, minutes=minutes, hours=hours)
        if delta < timedelta(0):
            raise ValueError("DeterministicClock cannot move backwards")
        self._current = self._current + delta
        return self._current


def ensure_utc(value: datetime) -> datetime:
    """Normalise to aware UTC. Naive datetimes are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
