"""Persistencia SQLite para configuracion, registros y actividad diaria."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

from bitebudget.model import DailyActivity, MealEntry
from bitebudget.sync.merge import NATURAL_KEYS, MergePlan
from bitebudget.sync.snapshot import ENTITY_TYPES, Record, SyncSnapshot

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS records (
    entity TEXT NOT NULL,
    id TEXT NOT NULL,
    natural_key TEXT NOT NULL,
    day TEXT,
    payload TEXT NOT NULL,
    PRIMARY KEY (entity, id)
);

CREATE INDEX IF NOT EXISTS idx_records_day
ON records(entity, day);

CREATE TABLE IF NOT EXISTS activities (
    date TEXT PRIMARY KEY,
    payload TEXT NOT NULL
);
"""

_SETTINGS_KEY = "user_settings"

ChangeListener = Callable[[str], None]


@dataclass(frozen=True)
class AppConfig:
    """Configuracion persistida de la sincronizacion."""

    auto_sync_enabled: bool = False
    debounce_seconds: float = 30.0
    last_push_at: str | None = None
    last_sync_at: str | None = None


class SQLiteStore:
    """Repositorio SQLite para la app."""

    def __init__(self, db_path: Path) -> None:
        """Create store and ensure schema exists."""
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._change_listeners: list[ChangeListener] = []
        self._init_schema()

    def subscribe_changes(self, listener: ChangeListener) -> Callable[[], None]:
        """Call ``listener(entity)`` after each user data mutation.

        Writes made by a sync (``apply_plan``, ``delete_records``) are not
        reported. Returns a callable that removes the listener.
        """
        self._change_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._change_listeners:
                self._change_listeners.remove(listener)

        return unsubscribe

    def _changed(self, entity: str) -> None:
        for listener in list(self._change_listeners):
            listener(entity)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def load_config(self) -> AppConfig:
        """Devuelve configuracion guardada o defaults."""
        values = self._config_values()
        defaults = AppConfig()
        return AppConfig(
            auto_sync_enabled=values.get("auto_sync_enabled") == "true",
            debounce_seconds=_parse_float(
                values.get("debounce_seconds"), defaults.debounce_seconds
            ),
            last_push_at=values.get("last_push_at") or None,
            last_sync_at=values.get("last_sync_at") or None,
        )

    def save_config(self, config: AppConfig) -> None:
        """Guarda la configuracion en tabla key/value."""
        payload = {
            "auto_sync_enabled": "true" if config.auto_sync_enabled else "false",
            "debounce_seconds": str(config.debounce_seconds),
            "last_push_at": config.last_push_at or "",
            "last_sync_at": config.last_sync_at or "",
        }
        with self._connect() as conn:
            _upsert_config(conn, payload)
            conn.commit()

    def load_settings_record(self) -> Record | None:
        raw = self._config_values().get(_SETTINGS_KEY)
        if not raw:
            return None
        try:
            parsed: Any = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def save_settings_record(self, record: Record) -> None:
        with self._connect() as conn:
            _upsert_config(conn, {_SETTINGS_KEY: json.dumps(record)})
            conn.commit()
        self._changed("settings")

    def add_record(self, entity: str, record: Record) -> Record:
        """Insert a record, assigning an id when it has none."""
        stored = dict(record)
        if stored.get("id") is None:
            stored["id"] = uuid.uuid4().hex
        with self._connect() as conn:
            _insert_record(conn, entity, stored)
            conn.commit()
        self._changed(entity)
        return stored

    def records(self, entity: str) -> list[Record]:
        """All records of an entity type, in insertion order."""
        _check_entity(entity)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM records WHERE entity = ? ORDER BY rowid",
                (entity,),
            ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def entries_between(self, start: date, end: date) -> list[MealEntry]:
        """Meal entries with ``start <= date <= end``."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload FROM records
                WHERE entity = 'entries' AND day BETWEEN ? AND ?
                ORDER BY day, rowid
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        return [MealEntry.from_record(json.loads(row["payload"])) for row in rows]

    def upsert_activity(self, record: Record) -> None:
        """Insert or replace the activity record of a day."""
        day = str(record["date"])
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activities(date, payload) VALUES(?, ?)
                ON CONFLICT(date) DO UPDATE SET payload=excluded.payload
                """,
                (day, json.dumps(record)),
            )
            conn.commit()
        self._changed("activities")

    def activities_between(self, start: date, end: date) -> list[DailyActivity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload FROM activities
                WHERE date BETWEEN ? AND ?
                ORDER BY date
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
        return [DailyActivity.from_record(json.loads(row["payload"])) for row in rows]

    def export_snapshot(self, now: datetime) -> SyncSnapshot:
        """Serializable bundle of every synced entity."""
        return SyncSnapshot(
            export_date=now.isoformat(),
            entries=self.records("entries"),
            products=self.records("products"),
            weights=self.records("weights"),
            settings=self.load_settings_record(),
            product_portions=self.records("productPortions"),
            meal_templates=self.records("mealTemplates"),
        )

    def apply_plan(self, plan: MergePlan) -> None:
        """Apply a merge plan atomically (all or nothing)."""
        conn = self._connect()
        try:
            with conn:
                for entity, entity_plan in plan.entities.items():
                    for record in entity_plan.inserts:
                        stored = dict(record)
                        if stored.get("id") is None:
                            stored["id"] = uuid.uuid4().hex
                        _insert_record(conn, entity, stored)
                    for update in entity_plan.updates:
                        _update_record(conn, entity, update.local_id, update.record)
                if plan.settings is not None:
                    _upsert_config(conn, {_SETTINGS_KEY: json.dumps(plan.settings)})
        finally:
            conn.close()

    def delete_records(self, entity: str, ids: Iterable[Any]) -> int:
        """Permanently delete records by id. Returns rows deleted."""
        _check_entity(entity)
        keys = [(entity, str(i)) for i in ids]
        if not keys:
            return 0
        with self._connect() as conn:
            cur = conn.executemany(
                "DELETE FROM records WHERE entity = ? AND id = ?", keys
            )
            conn.commit()
            return int(cur.rowcount)

    def _config_values(self) -> dict[str, str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM app_config").fetchall()
        return {row["key"]: row["value"] for row in rows}


def _check_entity(entity: str) -> None:
    if entity not in ENTITY_TYPES:
        raise ValueError(f"Unknown entity type: {entity!r}")


def _record_day(entity: str, record: Record) -> str | None:
    if entity in ("entries", "weights") and record.get("date") is not None:
        return str(record["date"])[:10]
    return None


def _insert_record(conn: sqlite3.Connection, entity: str, record: Record) -> None:
    _check_entity(entity)
    conn.execute(
        """
        INSERT INTO records(entity, id, natural_key, day, payload)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            entity,
            str(record["id"]),
            NATURAL_KEYS[entity](record),
            _record_day(entity, record),
            json.dumps(record),
        ),
    )


def _update_record(
    conn: sqlite3.Connection, entity: str, local_id: Any, record: Record
) -> None:
    cur = conn.execute(
        """
        UPDATE records SET natural_key = ?, day = ?, payload = ?
        WHERE entity = ? AND id = ?
        """,
        (
            NATURAL_KEYS[entity](record),
            _record_day(entity, record),
            json.dumps(record),
            entity,
            str(local_id),
        ),
    )
    if cur.rowcount != 1:
        raise LookupError(f"No local {entity} record with id {local_id!r}")


def _upsert_config(conn: sqlite3.Connection, payload: dict[str, str]) -> None:
    conn.executemany(
        """
        INSERT INTO app_config(key, value) VALUES(?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        payload.items(),
    )


def _parse_float(raw: str | None, default: float) -> float:
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default
