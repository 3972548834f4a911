"""
Clock Module

Injectable time source. Due dates and the overdue cutoff are calendar days in
one local reference timezone; timestamps are stored in UTC.
"""

from abc import ABC, abstractmethod
from datetime import datetime, date, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


class Clock(ABC):
    """Abstract time source"""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz or timezone.utc

    @abstractmethod
    def now(self) -> datetime:
        """Current instant as an aware UTC datetime"""
        pass

    def today(self) -> date:
        """Current calendar day in the reference timezone"""
        return self.now().astimezone(self.tz).date()

    def local_now(self) -> datetime:
        """Current instant in the reference timezone"""
        return self.now().astimezone(self.tz)


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to an instant; tests move it explicitly"""

    def __init__(self, instant: datetime, tz: Optional[tzinfo] = None):
        super().__init__(tz)
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self._instant = instant

    def advance(self, delta) -> None:
        self._instant = self._instant + delta


def clock_for_timezone(name: str) -> SystemClock:
    """Build a system clock for an IANA timezone name"""
    return SystemClock(ZoneInfo(name))
