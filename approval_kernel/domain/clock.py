"""
Injectable time source.

Deadlines, escalation scans, delegation windows and delivery backoff all
read the current time through a Clock handed to them at construction, so
a test can move time forward instead of sleeping.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Starts at ``start`` (default 2024-01-01 12:00 UTC). Offsets other than
    UTC are accepted and normalised; naive datetimes are rejected.
    """

    def __init__(self, start: datetime | None = None):
        start = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._now = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: float | timedelta = 1) -> datetime:
        """Move forward by ``delta`` (seconds or a timedelta) and return the new time."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        if delta < timedelta(0):
            raise ValueError("DeterministicClock cannot move backwards")
        self._now += delta
        return self._now
