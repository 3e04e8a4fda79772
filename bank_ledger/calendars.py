"""
Calendar Module

Supplies the current date to the ledger service so that loan-date logic is
deterministic under test, plus the month arithmetic used by the loan
schedule.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable
import calendar


@runtime_checkable
class Calendar(Protocol):
    """Anything that can tell the ledger what day it is"""

    def current_date(self) -> date:
        ...


class SystemCalendar:
    """Production calendar: today's date in UTC"""

    def current_date(self) -> date:
        return datetime.now(timezone.utc).date()


class FixedCalendar:
    """Controllable calendar for tests and back-dated batch runs"""

    def __init__(self, today: Optional[date] = None):
        self._today = today or datetime.now(timezone.utc).date()

    def current_date(self) -> date:
        return self._today

    def set_date(self, today: date) -> None:
        self._today = today

    def advance_days(self, days: int) -> date:
        self._today = self._today + timedelta(days=days)
        return self._today

    def advance_months(self, months: int) -> date:
        self._today = add_months(self._today, months)
        return self._today


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def months_between(start: date, end: date) -> int:
    """
    Count whole calendar months from start to end.

    A trailing partial month is not counted, so months_between(Jan 15, Mar 14)
    is 1. Returns a negative number when end precedes start.
    """
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if months > 0 and end.day < start.day:
        months -= 1
    elif months < 0 and end.day > start.day:
        months += 1
    return months
