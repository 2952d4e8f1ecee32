"""
Clock abstraction.

Every time-sensitive computation receives its "now" from a Clock so that
reports and reconciliation runs are repeatable in tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone


class Clock(ABC):
    """Source of the current instant."""

    @abstractmethod
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FixedClock(Clock):
    """Clock frozen at a given instant."""
    instant: datetime

    def now(self) -> datetime:
        return self.instant
