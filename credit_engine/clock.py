"""
Business Clock Module

Date source for every "today" computation. Dates are taken in the business
timezone and only the calendar date is used, so late-fee day counts do not
drift around midnight UTC.
"""

import calendar
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .exceptions import ValidationError


class BusinessClock:
    """Wall clock in the configured business timezone"""

    def __init__(self, timezone_name: str = "America/Argentina/Tucuman"):
        self.timezone = ZoneInfo(timezone_name)

    def now(self) -> datetime:
        return datetime.now(self.timezone)

    def today(self) -> date:
        return self.now().date()

    def time_of_day(self) -> str:
        return self.now().strftime("%H:%M:%S")


class FixedClock(BusinessClock):
    """Clock pinned to a given date, for backdated runs and tests"""

    def __init__(self, today: date, time_of_day: str = "12:00:00",
                 timezone_name: str = "America/Argentina/Tucuman"):
        super().__init__(timezone_name)
        self._today = today
        self._time = time_of_day

    def set_today(self, today: date) -> None:
        self._today = today

    def advance(self, days: int = 1) -> None:
        self._today = self._today + timedelta(days=days)

    def now(self) -> datetime:
        hour, minute, second = (int(part) for part in self._time.split(":"))
        return datetime(self._today.year, self._today.month, self._today.day,
                        hour, minute, second, tzinfo=self.timezone)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the month end"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_date(value, field: Optional[str] = None) -> Optional[date]:
    """Accept a date, a datetime or an ISO "YYYY-MM-DD" string"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}", field=field)
