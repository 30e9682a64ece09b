"""Utilidades de calendario: semanas ISO, meses y rangos de periodo."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta

from dateutil import parser as date_parser

PERIOD_DAYS: dict[str, int] = {
    "4weeks": 28,
    "8weeks": 56,
    "12weeks": 84,
    "6months": 180,
    "12months": 365,
}


def parse_day(value: object) -> date | None:
    """Parse a ``YYYY-MM-DD`` value into a date.

    Accepts ``date``, ``datetime`` and ISO strings. Malformed values
    return ``None`` instead of raising.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        pass
    try:
        return date_parser.isoparse(value.strip()).date()
    except (ValueError, OverflowError):
        return None


def iso_week(day: date) -> tuple[int, int]:
    """Return ``(iso_year, iso_week)`` for a date (Monday-start weeks)."""
    iso = day.isocalendar()
    return iso[0], iso[1]


def monday_of(day: date) -> date:
    """Monday of the ISO week containing ``day``."""
    return day - timedelta(days=day.weekday())


def week_end(day: date) -> date:
    """Sunday of the ISO week containing ``day``."""
    return monday_of(day) + timedelta(days=6)


def week_starts(start: date, end: date) -> list[date]:
    """Mondays of every ISO week overlapping ``[start, end]``."""
    if start > end:
        return []
    out: list[date] = []
    current = monday_of(start)
    while current <= end:
        out.append(current)
        current += timedelta(days=7)
    return out


def month_bounds(year: int, month: int) -> tuple[date, date]:
    """First and last day of a calendar month."""
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def months_between(start: date, end: date) -> list[tuple[int, int]]:
    """``(year, month)`` of every calendar month overlapping ``[start, end]``."""
    if start > end:
        return []
    out: list[tuple[int, int]] = []
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        out.append((year, month))
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    return out


def majority_month(week_start: date) -> tuple[int, int]:
    """Month holding the majority (4 of 7) of the week's days.

    That is always the month of the week's Thursday.
    """
    thursday = monday_of(week_start) + timedelta(days=3)
    return thursday.year, thursday.month


def date_range_for_period(period: str, today: date) -> tuple[date, date]:
    """Inclusive ``(start, end)`` range ending today for a named period.

    Raises:
        ValueError: If the period name is unknown.
    """
    try:
        days = PERIOD_DAYS[period]
    except KeyError:
        raise ValueError(f"Unknown period: {period!r}") from None
    return today - timedelta(days=days), today
