"""
Time sources.

All wall-clock values are timezone-aware UTC datetimes.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    """Supplies wall-clock and monotonic time."""

    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...


class SystemClock:
    """Clock backed by the operating system."""

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """
    Clock that only moves when told to.

    Used to drive delays, backoff and recurrence deterministically.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> datetime:
        """Move the clock forward and return the new time."""
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds
        return self._now

    def set(self, moment: datetime) -> None:
        """Jump to an absolute time (must not move backwards)."""
        if moment < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._monotonic += (moment - self._now).total_seconds()
        self._now = moment
