"""
Clock -- injectable source of "now" for escrow lifecycles.

Funding deadlines, review SLAs, certificate expiry and audit timestamps all
read time through a Clock handed to the owning service. Engines never read
time at all; callers pass the instant in.

SystemClock is the only implementation that touches the wall clock.
DeterministicClock starts at a fixed instant and only moves when a test
moves it, so deadline scenarios (30-day funding windows, 48-hour reviews,
365-day certificate terms) can be stepped through exactly.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of timezone-aware UTC instants."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Manually driven clock.

    Repeated ``now()`` calls return the same instant. Time moves forward
    only through ``advance``, ``advance_hours`` or ``advance_days``; it can
    be repositioned with ``set_time``.
    """

    def __init__(self, start: datetime | None = None):
        self._current = self._as_utc(start or DEFAULT_EPOCH)

    @staticmethod
    def _as_utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        return value.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def set_time(self, value: datetime) -> None:
        self._current = self._as_utc(value)

    def advance(self, seconds: int | float = 1) -> datetime:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        self._current += timedelta(seconds=seconds)
        return self._current

    def advance_hours(self, hours: float) -> datetime:
        return self.advance(hours * 3600)

    def advance_days(self, days: float) -> datetime:
        return self.advance(days * 86400)
