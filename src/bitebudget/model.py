"""Modelos tipados para comidas, actividad diaria y ajustes de usuario."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

NUTRIENT_FIELDS: tuple[str, ...] = (
    "calories",
    "protein",
    "carbohydrates",
    "sugars",
    "fat",
    "saturated_fat",
    "fiber",
    "sodium",
)

ACTIVITY_FIELDS: tuple[str, ...] = (
    "steps",
    "active_calories",
    "resting_calories",
    "total_calories",
    "intensity_minutes",
    "distance_m",
    "floors_climbed",
    "sleep_seconds",
    "heart_rate_resting",
    "heart_rate_max",
)

# Snapshot/JSON keys (camelCase) -> dataclass fields.
_ENTRY_KEYS: dict[str, str] = {
    "saturatedFat": "saturated_fat",
}

_ACTIVITY_KEYS: dict[str, str] = {
    "activeCalories": "active_calories",
    "restingCalories": "resting_calories",
    "totalCalories": "total_calories",
    "intensityMinutes": "intensity_minutes",
    "distanceMeters": "distance_m",
    "floorsClimbed": "floors_climbed",
    "sleepSeconds": "sleep_seconds",
    "heartRateResting": "heart_rate_resting",
    "heartRateMax": "heart_rate_max",
}


@dataclass(frozen=True)
class MealEntry:
    """One journal entry (a meal) on a given date."""

    date: str
    time: str = "00:00"
    name: str = ""
    calories: float | None = None
    protein: float | None = None
    carbohydrates: float | None = None
    sugars: float | None = None
    fat: float | None = None
    saturated_fat: float | None = None
    fiber: float | None = None
    sodium: float | None = None
    deleted: bool = False
    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> MealEntry:
        """Build an entry from a snapshot/storage record (camelCase keys)."""
        values = _rename(record, _ENTRY_KEYS)
        return cls(
            date=str(values.get("date", "")),
            time=str(values.get("time") or "00:00"),
            name=str(values.get("name") or ""),
            deleted=bool(values.get("deleted", False)),
            id=_optional_str(values.get("id")),
            created_at=_optional_str(values.get("created_at")),
            updated_at=_optional_str(values.get("updated_at")),
            **{f: values.get(f) for f in NUTRIENT_FIELDS},
        )


@dataclass(frozen=True)
class DailyActivity:
    """Daily activity metrics (date-based, one record per day)."""

    date: str
    steps: float | None = None
    active_calories: float | None = None
    resting_calories: float | None = None
    total_calories: float | None = None
    intensity_minutes: float | None = None
    distance_m: float | None = None
    floors_climbed: float | None = None
    sleep_seconds: float | None = None
    heart_rate_resting: float | None = None
    heart_rate_max: float | None = None
    deleted: bool = False

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> DailyActivity:
        """Build an activity from a storage record (camelCase keys)."""
        values = _rename(record, _ACTIVITY_KEYS)
        return cls(
            date=str(values.get("date", "")),
            deleted=bool(values.get("deleted", False)),
            **{f: values.get(f) for f in ACTIVITY_FIELDS},
        )


@dataclass(frozen=True)
class UserSettings:
    """Objetivos diarios del usuario."""

    calories_rest: float = 1900
    calories_sport: float = 2200
    protein_rest: float = 110
    protein_sport: float = 120
    saturated_fat_max: float = 20
    fiber_min: float = 35
    sodium_max: float = 2300
    target_weight: float = 78
    calorie_tolerance: float = 0.10

    def to_record(self) -> dict[str, Any]:
        """Serialize with the camelCase keys used in sync snapshots."""
        return {
            "caloriesRest": self.calories_rest,
            "caloriesSport": self.calories_sport,
            "proteinRest": self.protein_rest,
            "proteinSport": self.protein_sport,
            "saturatedFatMax": self.saturated_fat_max,
            "fiberMin": self.fiber_min,
            "sodiumMax": self.sodium_max,
            "targetWeight": self.target_weight,
            "calorieTolerance": self.calorie_tolerance,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any] | None) -> UserSettings:
        """Parse settings, falling back to defaults for missing/bad keys."""
        defaults = cls()
        if not record:
            return defaults

        def pick(key: str, default: float) -> float:
            value = record.get(key)
            try:
                return float(value) if value is not None else default
            except (TypeError, ValueError):
                return default

        return cls(
            calories_rest=pick("caloriesRest", defaults.calories_rest),
            calories_sport=pick("caloriesSport", defaults.calories_sport),
            protein_rest=pick("proteinRest", defaults.protein_rest),
            protein_sport=pick("proteinSport", defaults.protein_sport),
            saturated_fat_max=pick("saturatedFatMax", defaults.saturated_fat_max),
            fiber_min=pick("fiberMin", defaults.fiber_min),
            sodium_max=pick("sodiumMax", defaults.sodium_max),
            target_weight=pick("targetWeight", defaults.target_weight),
            calorie_tolerance=pick("calorieTolerance", defaults.calorie_tolerance),
        )


def _rename(record: dict[str, Any], mapping: dict[str, str]) -> dict[str, Any]:
    return {mapping.get(key, key): value for key, value in record.items()}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
