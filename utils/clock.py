"""Injected time source. All deadlines derive from it."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Time source interface returning naive UTC datetimes"""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)
