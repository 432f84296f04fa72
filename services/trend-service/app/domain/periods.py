"""
Calendar period arithmetic.

All boundaries are evaluated in one fixed timezone so that the host locale
never changes which week a transaction belongs to.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from .entities import Period

Clock = Callable[[], datetime]


class PeriodCalculator:
    """
    Pure period boundary functions of "now".

    Weeks run Monday through Sunday. A period is closed once its last day is
    before today in the configured zone.
    """

    def __init__(self, tz_name: str = "America/Los_Angeles", clock: Optional[Clock] = None):
        """
        Args:
            tz_name: IANA timezone name all boundaries are computed in
            clock: Returns the current instant; defaults to the system clock
        """
        self.tz = ZoneInfo(tz_name)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        current = self._clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def local_date(self, timestamp: datetime) -> date:
        """Calendar date of a timestamp in the fixed zone; naive means UTC."""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return timestamp.astimezone(self.tz).date()

    def week_range(self, weeks_back: int = 0) -> Period:
        today = self.today()
        monday = today - timedelta(days=today.weekday() + 7 * weeks_back)
        return Period(start=monday, end=monday + timedelta(days=6))

    def day_range(self, days_back: int = 0) -> Period:
        day = self.today() - timedelta(days=days_back)
        return Period(start=day, end=day)

    def year_to_date_range(self) -> Period:
        today = self.today()
        return Period(start=date(today.year, 1, 1), end=today)

    def is_closed(self, period: Period) -> bool:
        return period.end < self.today()

    def recent_weeks(self, count: int) -> List[Period]:
        """The last `count` weeks including the current one, oldest first."""
        return [self.week_range(back) for back in range(count - 1, -1, -1)]

