# periods.py
"""
Monthly fiscal periods, written "YYYY-MM".

Helpers here are pure; they never touch the database.
"""
from __future__ import annotations

import calendar
import re
from datetime import date

from .errors import InvalidPeriod

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def parse_period(period: str) -> tuple[int, int]:
    m = _PERIOD_RE.match((period or "").strip())
    if not m:
        raise InvalidPeriod(period)
    year, month = int(m.group(1)), int(m.group(2))
    if not 1 <= month <= 12:
        raise InvalidPeriod(period)
    return year, month


def format_period(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def normalize_period(period: str) -> str:
    return format_period(*parse_period(period))


def previous_period(period: str) -> str:
    year, month = parse_period(period)
    if month == 1:
        return format_period(year - 1, 12)
    return format_period(year, month - 1)


def next_period(period: str) -> str:
    year, month = parse_period(period)
    if month == 12:
        return format_period(year + 1, 1)
    return format_period(year, month + 1)


def period_end(period: str) -> date:
    """Last calendar day of the period; used as the assessment date."""
    year, month = parse_period(period)
    return date(year, month, calendar.monthrange(year, month)[1])


def period_of(day: date) -> str:
    return format_period(day.year, day.month)


def whole_months_between(start: date, end: date) -> int:
    """
    Calendar-month difference (day of month ignored), never negative.
    An asset bought any day in June counts 10 months by any day of the
    following April.
    """
    months = (end.year - start.year) * 12 + (end.month - start.month)
    return max(0, months)


def iter_periods(first: str, last: str):
    """Yield every period from `first` to `last`, inclusive."""
    current = normalize_period(first)
    last = normalize_period(last)
    while current <= last:
        yield current
        current = next_period(current)
