"""
Injectable time source.

Orchestrators, the transaction coordinator and the pricing cache take a
``Clock`` in their constructor instead of calling ``datetime.now()``.
Submission, approval, posting, reservation-expiry and saga timestamps
therefore come from one place, and tests drive them with
``DeterministicClock``.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen clock that only moves when ``advance`` is called."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1) -> None:
        self._now += timedelta(seconds=seconds)
