"""Agregados semanales y mensuales de nutricion y actividad diaria."""

from __future__ import annotations

import calendar
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

import pandas as pd

from bitebudget.dates import (
    date_range_for_period,
    majority_month,
    month_bounds,
    months_between,
    parse_day,
    week_starts,
)
from bitebudget.model import (
    ACTIVITY_FIELDS,
    NUTRIENT_FIELDS,
    DailyActivity,
    MealEntry,
    UserSettings,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationConfig:
    """Calorie target band used to classify days."""

    calorie_target: float
    tolerance: float = 0.10

    @classmethod
    def from_settings(cls, settings: UserSettings) -> AggregationConfig:
        """Use the rest-day calorie target and the configured tolerance."""
        return cls(
            calorie_target=settings.calories_rest,
            tolerance=settings.calorie_tolerance,
        )

    @property
    def lower_bound(self) -> float:
        return self.calorie_target * (1 - self.tolerance)

    @property
    def upper_bound(self) -> float:
        return self.calorie_target * (1 + self.tolerance)


@dataclass(frozen=True)
class NutritionAggregate:
    """Daily means per nutrient plus calorie-band day counts."""

    averages: dict[str, float] = field(default_factory=dict)
    metric_days: dict[str, int] = field(default_factory=dict)
    days_under_target: int = 0
    days_in_range: int = 0
    days_over_target: int = 0
    adherence: float = 0.0

    def avg(self, metric: str) -> float:
        return self.averages.get(metric, 0.0)

    @property
    def avg_calories(self) -> float:
        return self.avg("calories")


@dataclass(frozen=True)
class ActivityAggregate:
    """Daily means per activity metric."""

    averages: dict[str, float] = field(default_factory=dict)
    metric_days: dict[str, int] = field(default_factory=dict)
    days_with_activity: int = 0

    def avg(self, metric: str) -> float:
        return self.averages.get(metric, 0.0)


@dataclass(frozen=True)
class WeekAggregate:
    """Summary of one ISO week (Monday to Sunday)."""

    year: int
    week_number: int
    week_start: date
    week_end: date
    days_tracked: int
    nutrition: NutritionAggregate
    activity: ActivityAggregate | None = None


@dataclass(frozen=True)
class MonthAggregate:
    """Summary of one calendar month and the weeks attributed to it."""

    year: int
    month: int
    month_name: str
    month_start: date
    month_end: date
    weeks: list[WeekAggregate]
    days_tracked: int
    nutrition: NutritionAggregate
    activity: ActivityAggregate | None = None
    best_week: int | None = None
    worst_week: int | None = None


def daily_nutrition_frame(entries: Sequence[MealEntry]) -> pd.DataFrame:
    """Sum meal entries per day.

    A nutrient stays missing for a day when no entry of that day recorded
    it. Soft-deleted entries and entries with an unparseable date are
    ignored; days without any nutrient value are dropped.

    Returns DataFrame columns:
        date, calories, protein, carbohydrates, sugars, fat,
        saturated_fat, fiber, sodium
    """
    columns = ["date", *NUTRIENT_FIELDS]
    rows: list[dict[str, object]] = []
    for entry in entries:
        if entry.deleted:
            continue
        day = parse_day(entry.date)
        if day is None:
            continue
        rows.append({"date": day, **{f: getattr(entry, f) for f in NUTRIENT_FIELDS}})

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    for col in NUTRIENT_FIELDS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    daily = df.groupby("date", as_index=False)[list(NUTRIENT_FIELDS)].sum(min_count=1)
    daily = drop_empty_days(daily, NUTRIENT_FIELDS)
    return daily.sort_values("date").reset_index(drop=True)


def daily_activity_frame(activities: Sequence[DailyActivity]) -> pd.DataFrame:
    """One activity row per day (last record wins on duplicates)."""
    columns = ["date", *ACTIVITY_FIELDS]
    rows: list[dict[str, object]] = []
    for activity in activities:
        if activity.deleted:
            continue
        day = parse_day(activity.date)
        if day is None:
            continue
        rows.append(
            {"date": day, **{f: getattr(activity, f) for f in ACTIVITY_FIELDS}}
        )

    if not rows:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(rows, columns=columns)
    for col in ACTIVITY_FIELDS:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.drop_duplicates(subset="date", keep="last")
    df = drop_empty_days(df, ACTIVITY_FIELDS)
    return df.sort_values("date").reset_index(drop=True)


def drop_empty_days(df: pd.DataFrame, metric_cols: Sequence[str]) -> pd.DataFrame:
    """Drop days where every metric column is null/NA."""
    if df.empty:
        return df
    existing = [c for c in metric_cols if c in df.columns]
    if not existing:
        return df
    mask = df[existing].notna().any(axis=1)
    return df.loc[mask].reset_index(drop=True)


def _between(df: pd.DataFrame, start: date, end: date) -> pd.DataFrame:
    if df.empty:
        return df
    mask = (df["date"] >= start) & (df["date"] <= end)
    return df.loc[mask].reset_index(drop=True)


def _means(
    df: pd.DataFrame, metric_cols: Sequence[str]
) -> tuple[dict[str, float], dict[str, int]]:
    averages: dict[str, float] = {}
    counts: dict[str, int] = {}
    for col in metric_cols:
        values = df[col].dropna() if not df.empty else pd.Series(dtype=float)
        counts[col] = int(len(values))
        averages[col] = round(float(values.mean()), 2) if len(values) else 0.0
    return averages, counts


def summarize_nutrition(
    days: pd.DataFrame, config: AggregationConfig
) -> NutritionAggregate:
    """Means over days that have each nutrient, plus calorie-band counts."""
    averages, counts = _means(days, NUTRIENT_FIELDS)
    if days.empty:
        return NutritionAggregate(averages=averages, metric_days=counts)

    calories = days["calories"].dropna()
    under = int((calories < config.lower_bound).sum())
    over = int((calories > config.upper_bound).sum())
    in_range = int(
        ((calories >= config.lower_bound) & (calories <= config.upper_bound)).sum()
    )
    adherence = round(in_range / len(calories), 4) if len(calories) else 0.0
    return NutritionAggregate(
        averages=averages,
        metric_days=counts,
        days_under_target=under,
        days_in_range=in_range,
        days_over_target=over,
        adherence=adherence,
    )


def summarize_activity(days: pd.DataFrame) -> ActivityAggregate | None:
    """Activity means, or ``None`` when there is no activity day."""
    if days.empty:
        return None
    averages, counts = _means(days, ACTIVITY_FIELDS)
    return ActivityAggregate(
        averages=averages, metric_days=counts, days_with_activity=int(len(days))
    )


def weekly_aggregates(
    entries: Sequence[MealEntry],
    activities: Sequence[DailyActivity],
    config: AggregationConfig,
    start: date | str,
    end: date | str,
    *,
    include_activity: bool = True,
) -> list[WeekAggregate]:
    """Aggregate daily records into ISO weeks.

    Every week overlapping ``[start, end]`` is returned in chronological
    order, including weeks without any tracked day. Only days inside the
    range are counted.

    Args:
        entries: Meal entries (several per day allowed).
        activities: Daily activity records.
        config: Calorie target band.
        start: First day of the range (inclusive).
        end: Last day of the range (inclusive).
        include_activity: Attach activity aggregates when True.

    Returns:
        List of week aggregates, empty when no record falls in range.
    """
    range_start, range_end = parse_day(start), parse_day(end)
    if range_start is None or range_end is None or range_start > range_end:
        return []

    nutrition = _between(daily_nutrition_frame(entries), range_start, range_end)
    activity = (
        _between(daily_activity_frame(activities), range_start, range_end)
        if include_activity
        else pd.DataFrame()
    )
    if nutrition.empty and activity.empty:
        return []

    out: list[WeekAggregate] = []
    for monday in week_starts(range_start, range_end):
        sunday = monday + timedelta(days=6)
        lo, hi = max(monday, range_start), min(sunday, range_end)
        week_days = _between(nutrition, lo, hi)
        week_activity = _between(activity, lo, hi) if include_activity else activity
        iso_year, iso_week, _ = monday.isocalendar()
        out.append(
            WeekAggregate(
                year=iso_year,
                week_number=iso_week,
                week_start=monday,
                week_end=sunday,
                days_tracked=int(len(week_days)),
                nutrition=summarize_nutrition(week_days, config),
                activity=summarize_activity(week_activity)
                if include_activity
                else None,
            )
        )
    logger.debug(
        "Weekly aggregates %s..%s: %d weeks", range_start, range_end, len(out)
    )
    return out


def monthly_aggregates(
    entries: Sequence[MealEntry],
    activities: Sequence[DailyActivity],
    config: AggregationConfig,
    start: date | str,
    end: date | str,
    *,
    include_activity: bool = True,
) -> list[MonthAggregate]:
    """Aggregate daily records into calendar months.

    Month averages are computed directly over the month's days, never as a
    mean of week means. A week spanning two months is attributed to the
    month holding the majority of its days.

    Returns:
        One aggregate per calendar month overlapping the range, in
        chronological order; empty when no record falls in range.
    """
    range_start, range_end = parse_day(start), parse_day(end)
    weeks = weekly_aggregates(
        entries,
        activities,
        config,
        start,
        end,
        include_activity=include_activity,
    )
    if not weeks or range_start is None or range_end is None:
        return []

    nutrition = _between(daily_nutrition_frame(entries), range_start, range_end)
    activity = (
        _between(daily_activity_frame(activities), range_start, range_end)
        if include_activity
        else pd.DataFrame()
    )

    months = months_between(range_start, range_end)
    attributed: dict[tuple[int, int], list[WeekAggregate]] = {m: [] for m in months}
    for week in weeks:
        attributed[_owning_month(week.week_start, months)].append(week)

    out: list[MonthAggregate] = []
    for year, month in months:
        first, last = month_bounds(year, month)
        lo, hi = max(first, range_start), min(last, range_end)
        month_days = _between(nutrition, lo, hi)
        month_weeks = attributed[(year, month)]
        best, worst = _best_and_worst_week(month_weeks)
        out.append(
            MonthAggregate(
                year=year,
                month=month,
                month_name=calendar.month_name[month],
                month_start=first,
                month_end=last,
                weeks=month_weeks,
                days_tracked=int(len(month_days)),
                nutrition=summarize_nutrition(month_days, config),
                activity=summarize_activity(_between(activity, lo, hi))
                if include_activity
                else None,
                best_week=best,
                worst_week=worst,
            )
        )
    return out


def aggregate_period(
    period: str,
    entries: Sequence[MealEntry],
    activities: Sequence[DailyActivity],
    config: AggregationConfig,
    today: date,
) -> list[WeekAggregate] | list[MonthAggregate]:
    """Weekly aggregates for ``*weeks`` periods, monthly for ``*months``.

    Raises:
        ValueError: If the period name is unknown.
    """
    start, end = date_range_for_period(period, today)
    if period.endswith("months"):
        return monthly_aggregates(entries, activities, config, start, end)
    return weekly_aggregates(entries, activities, config, start, end)


def _owning_month(
    week_start: date, months: list[tuple[int, int]]
) -> tuple[int, int]:
    candidate = majority_month(week_start)
    if candidate in months:
        return candidate
    # Majority month lies outside the range: use the nearest month in range.
    return months[0] if candidate < months[0] else months[-1]


def _best_and_worst_week(
    weeks: Sequence[WeekAggregate],
) -> tuple[int | None, int | None]:
    scored = [
        w for w in weeks if w.nutrition.metric_days.get("calories", 0) > 0
    ]
    if not scored:
        return None, None
    best = max(scored, key=lambda w: w.nutrition.adherence)
    worst = min(scored, key=lambda w: w.nutrition.adherence)
    return best.week_number, worst.week_number
