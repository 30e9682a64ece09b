from __future__ import annotations

from datetime import date, datetime

import pytest

from bitebudget.dates import (
    date_range_for_period,
    iso_week,
    majority_month,
    month_bounds,
    monday_of,
    months_between,
    parse_day,
    week_end,
    week_starts,
)


def test_parse_day_accepts_common_inputs() -> None:
    assert parse_day("2024-01-10") == date(2024, 1, 10)
    assert parse_day("2024-01-10T23:15:00+02:00") == date(2024, 1, 10)
    assert parse_day(datetime(2024, 1, 10, 8, 0)) == date(2024, 1, 10)
    assert parse_day(date(2024, 1, 10)) == date(2024, 1, 10)


def test_parse_day_malformed_returns_none() -> None:
    assert parse_day("not-a-date") is None
    assert parse_day("") is None
    assert parse_day(None) is None
    assert parse_day(20240110) is None


def test_iso_week_year_boundaries() -> None:
    assert iso_week(date(2024, 12, 30)) == (2025, 1)
    assert iso_week(date(2021, 1, 3)) == (2020, 53)
    assert iso_week(date(2024, 1, 1)) == (2024, 1)


def test_monday_and_week_end() -> None:
    assert monday_of(date(2024, 1, 14)) == date(2024, 1, 8)
    assert monday_of(date(2024, 1, 8)) == date(2024, 1, 8)
    assert week_end(date(2024, 1, 10)) == date(2024, 1, 14)


def test_week_starts_covers_partial_weeks() -> None:
    assert week_starts(date(2024, 1, 3), date(2024, 1, 15)) == [
        date(2024, 1, 1),
        date(2024, 1, 8),
        date(2024, 1, 15),
    ]
    assert week_starts(date(2024, 1, 15), date(2024, 1, 3)) == []


def test_month_helpers() -> None:
    assert month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))
    assert months_between(date(2023, 11, 20), date(2024, 2, 1)) == [
        (2023, 11),
        (2023, 12),
        (2024, 1),
        (2024, 2),
    ]


def test_majority_month_uses_thursday() -> None:
    # Mon 29 Jan .. Sun 4 Feb 2024: four days in February.
    assert majority_month(date(2024, 1, 29)) == (2024, 2)
    # Mon 26 Feb .. Sun 3 Mar 2024: four days in February.
    assert majority_month(date(2024, 2, 26)) == (2024, 2)
    # Mon 30 Sep .. Sun 6 Oct 2024: Thursday is 3 Oct.
    assert majority_month(date(2024, 9, 30)) == (2024, 10)


def test_date_range_for_period() -> None:
    today = date(2024, 3, 31)
    assert date_range_for_period("4weeks", today) == (date(2024, 3, 3), today)
    assert date_range_for_period("12months", today)[0] == date(2023, 4, 1)
    with pytest.raises(ValueError):
        date_range_for_period("3days", today)
