"""
Injectable time source.

Due dates, stage thresholds and the dispatch hour are all judged against
``Clock.now()``.  Services take a Clock in their constructor; only
``SystemClock`` reads the wall clock.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("DeterministicClock requires a timezone-aware datetime")
    return value


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware."""

    def today(self) -> date:
        """Calendar date of ``now()`` in UTC."""
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, fixed_time: datetime | None = None):
        self._now = _require_aware(
            fixed_time or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        )

    def now(self) -> datetime:
        return self._now

    def set_time(self, time: datetime) -> None:
        self._now = _require_aware(time)

    def advance(self, seconds: int = 1) -> None:
        self._now += timedelta(seconds=seconds)

    def advance_days(self, days: int = 1) -> None:
        self._now += timedelta(days=days)
