"""Clock abstraction.

Core components never read the wall clock directly; they receive a Clock.
Timestamps are naive UTC datetimes, matching what the DateTime columns store.
"""

from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


system_clock = SystemClock()
