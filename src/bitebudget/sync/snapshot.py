"""Snapshot serializable de todos los datos locales."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from bitebudget.sync.errors import SnapshotFormatError

SNAPSHOT_VERSION = "1.3"

ENTITY_TYPES: tuple[str, ...] = (
    "entries",
    "products",
    "weights",
    "productPortions",
    "mealTemplates",
)

_FIELD_BY_ENTITY: dict[str, str] = {
    "entries": "entries",
    "products": "products",
    "weights": "weights",
    "productPortions": "product_portions",
    "mealTemplates": "meal_templates",
}

Record = dict[str, Any]


@dataclass(frozen=True)
class SyncSnapshot:
    """Full exportable state of the app at ``export_date``."""

    export_date: str
    entries: list[Record] = field(default_factory=list)
    products: list[Record] = field(default_factory=list)
    weights: list[Record] = field(default_factory=list)
    settings: Record | None = None
    product_portions: list[Record] = field(default_factory=list)
    meal_templates: list[Record] = field(default_factory=list)
    version: str = SNAPSHOT_VERSION

    def records(self, entity: str) -> list[Record]:
        """Records of one entity type (snapshot key, e.g. ``mealTemplates``)."""
        try:
            return getattr(self, _FIELD_BY_ENTITY[entity])
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity!r}") from None

    def count(self, entity: str) -> int:
        return len(self.records(entity))

    def counts(self) -> dict[str, int]:
        return {entity: self.count(entity) for entity in ENTITY_TYPES}

    def with_records(self, updates: dict[str, list[Record]]) -> SyncSnapshot:
        """Copy of the snapshot with some entity collections replaced."""
        values = {
            _FIELD_BY_ENTITY[entity]: list(records)
            for entity, records in updates.items()
        }
        return SyncSnapshot(
            export_date=self.export_date,
            entries=values.get("entries", self.entries),
            products=values.get("products", self.products),
            weights=values.get("weights", self.weights),
            settings=self.settings,
            product_portions=values.get("product_portions", self.product_portions),
            meal_templates=values.get("meal_templates", self.meal_templates),
            version=self.version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "exportDate": self.export_date,
            "entries": self.entries,
            "products": self.products,
            "weights": self.weights,
            "settings": self.settings,
            "productPortions": self.product_portions,
            "mealTemplates": self.meal_templates,
        }

    def to_json(self) -> str:
        """Canonical JSON: sorted keys, compact separators."""
        return canonical_json(self.to_dict())

    @classmethod
    def from_dict(cls, payload: object) -> SyncSnapshot:
        """Validate and build a snapshot from decoded JSON.

        Snapshots older than 1.3 carry no portions/templates and load with
        empty lists. Older exports used ``timestamp`` instead of
        ``exportDate``.

        Raises:
            SnapshotFormatError: If the payload shape is invalid.
        """
        if not isinstance(payload, dict):
            raise SnapshotFormatError("Snapshot must be a JSON object")

        export_date = payload.get("exportDate") or payload.get("timestamp")
        if not isinstance(export_date, str):
            raise SnapshotFormatError("Snapshot has no export date")

        settings = payload.get("settings")
        if settings is not None and not isinstance(settings, dict):
            raise SnapshotFormatError("Snapshot settings must be an object")

        return cls(
            version=str(payload.get("version") or "1.0"),
            export_date=export_date,
            entries=_record_list(payload, "entries"),
            products=_record_list(payload, "products"),
            weights=_record_list(payload, "weights"),
            settings=settings,
            product_portions=_record_list(payload, "productPortions"),
            meal_templates=_record_list(payload, "mealTemplates"),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> SyncSnapshot:
        try:
            payload = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise SnapshotFormatError(f"Snapshot is not valid JSON: {exc}") from exc
        return cls.from_dict(payload)


def canonical_json(payload: object) -> str:
    return json.dumps(
        payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _record_list(payload: dict[str, Any], key: str) -> list[Record]:
    raw = payload.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise SnapshotFormatError(f"Snapshot field {key!r} must be a list")
    if not all(isinstance(item, dict) for item in raw):
        raise SnapshotFormatError(f"Snapshot field {key!r} must hold objects")
    return list(raw)
