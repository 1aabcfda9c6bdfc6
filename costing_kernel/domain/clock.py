"""
Injectable time source.

COGS runs stamp ``started_at`` and ``finished_at``, layer voids stamp
``voided_at`` and undone returns default their recognition time from a
Clock, so tests can pin every timestamp a service writes.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Returns the current instant as an aware UTC ``datetime``."""

    @abstractmethod
    def now_utc(self) -> datetime:
        ...


class SystemClock(Clock):

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen clock for tests; defaults to 2024-01-01 12:00 UTC."""

    def __init__(self, fixed_time: datetime | None = None):
        self._fixed_time = fixed_time or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now_utc(self) -> datetime:
        return self._fixed_time.astimezone(timezone.utc)
