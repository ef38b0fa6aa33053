"""
Clock capability for time-dependent rules.

Components receive a clock instead of reading the wall clock, so the
modification window and audit timestamps can be driven from tests.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Anything that can report the current timezone-aware instant."""

    def now(self) -> datetime:
        ...


@dataclass
class SystemClock:
    """Wall clock in the station's timezone."""

    timezone: tzinfo = field(default_factory=lambda: ZoneInfo("UTC"))

    def now(self) -> datetime:
        return datetime.now(self.timezone)


@dataclass
class FixedClock:
    """Clock frozen at a given instant until moved explicitly."""

    instant: datetime

    def __post_init__(self) -> None:
        if self.instant.tzinfo is None:
            raise ValueError("instant must be timezone-aware")

    def now(self) -> datetime:
        return self.instant

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs."""
        self.instant = self.instant + timedelta(**kwargs)
        return self.instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            raise ValueError("instant must be timezone-aware")
        self.instant = instant
