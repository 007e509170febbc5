"""Utility / helper functions used across the application."""

from __future__ import annotations

import calendar
import datetime
import logging
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def parse_month(raw: Optional[str]) -> Optional[datetime.date]:
    """Parse ``YYYY-MM`` into the first day of that month."""
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse month: %r", raw)
        return None


# ---------------------------------------------------------------------------
# Calendar-month arithmetic
# ---------------------------------------------------------------------------

def first_of_month(day: datetime.date) -> datetime.date:
    return day.replace(day=1)


def last_of_month(day: datetime.date) -> datetime.date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def add_months(day: datetime.date, months: int) -> datetime.date:
    """Shift *day* by *months*, clamping the day to the target month's length."""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    return datetime.date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def previous_month(day: datetime.date) -> datetime.date:
    """Return the first day of the calendar month before *day*."""
    return add_months(first_of_month(day), -1)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class Clock:
    """Wall clock used by the billing services."""

    def now(self) -> datetime.datetime:
        return utc_now()

    def today(self) -> datetime.date:
        return self.now().date()


class FixedClock(Clock):
    """Clock frozen at a given instant (tests, back-dated runs)."""

    def __init__(self, instant):
        if not isinstance(instant, datetime.datetime):
            instant = datetime.datetime.combine(instant, datetime.time(), tzinfo=timezone.utc)
        self.instant = instant

    def now(self) -> datetime.datetime:
        return self.instant
