"""Fusion de un snapshot remoto con los datos locales (gana el mas nuevo).

La fusion nunca borra registros locales: solo inserta los que faltan y
actualiza los que tienen una marca de tiempo remota mas reciente.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from dateutil import parser as date_parser

from bitebudget.sync.snapshot import ENTITY_TYPES, Record, SyncSnapshot

logger = logging.getLogger(__name__)

TOMBSTONE_RETENTION_DAYS = 14
# Epoch seconds stay below this until the year 5138; JS Date.now() is above.
EPOCH_MS_THRESHOLD = 1e11


def _text(record: Record, key: str) -> str:
    value = record.get(key)
    return "" if value is None else str(value)


NATURAL_KEYS: dict[str, Callable[[Record], str]] = {
    "entries": lambda r: f"{_text(r, 'date')}|{_text(r, 'time')}|{_text(r, 'name')}",
    "products": lambda r: _text(r, "name"),
    "weights": lambda r: _text(r, "date"),
    "productPortions": lambda r: (
        f"{_text(r, 'productName')}|{_text(r, 'portionName')}"
    ),
    "mealTemplates": lambda r: _text(r, "name"),
}


@dataclass(frozen=True)
class RecordUpdate:
    """Replace the local record ``local_id`` with ``record``."""

    key: str
    local_id: Any
    record: Record


@dataclass
class EntityPlan:
    """Inserts and updates for one entity type."""

    inserts: list[Record] = field(default_factory=list)
    updates: list[RecordUpdate] = field(default_factory=list)


@dataclass
class MergePlan:
    """Update instructions produced by :func:`plan_merge`."""

    entities: dict[str, EntityPlan] = field(default_factory=dict)
    settings: Record | None = None

    @property
    def inserted(self) -> int:
        return sum(len(p.inserts) for p in self.entities.values())

    @property
    def updated(self) -> int:
        return sum(len(p.updates) for p in self.entities.values())

    def is_empty(self) -> bool:
        return self.inserted == 0 and self.updated == 0 and self.settings is None


def parse_timestamp(value: object) -> float | None:
    """Convert an ISO string or epoch number into a comparable float.

    Naive ISO timestamps are taken as UTC. Numbers are epoch seconds, or
    epoch milliseconds when larger than ``EPOCH_MS_THRESHOLD``.
    Unparseable values return None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if abs(value) > EPOCH_MS_THRESHOLD:
            return float(value) / 1000
        return float(value)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = date_parser.isoparse(value.strip())
        except (ValueError, OverflowError):
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def record_timestamp(record: Record) -> float | None:
    """Modification time: updated_at, else deleted_at (if deleted), else created_at."""
    stamp = parse_timestamp(record.get("updated_at"))
    if stamp is not None:
        return stamp
    if record.get("deleted"):
        stamp = parse_timestamp(record.get("deleted_at"))
        if stamp is not None:
            return stamp
    return parse_timestamp(record.get("created_at"))


def is_newer(remote: Record, local: Record) -> bool:
    """True when ``remote`` must overwrite ``local`` (ties keep local)."""
    remote_ts = record_timestamp(remote)
    if remote_ts is None:
        return False
    local_ts = record_timestamp(local)
    if local_ts is None:
        return True
    return remote_ts > local_ts


def plan_merge(local: SyncSnapshot, remote: SyncSnapshot) -> MergePlan:
    """Compute the inserts/updates that bring remote changes into local.

    Args:
        local: Current local state.
        remote: Decrypted remote snapshot.

    Returns:
        Merge plan; applying it never removes a local record.
    """
    plan = MergePlan()
    for entity in ENTITY_TYPES:
        plan.entities[entity] = _plan_entity(
            entity, local.records(entity), remote.records(entity)
        )

    if remote.settings is not None:
        if local.settings is None or is_newer(remote.settings, local.settings):
            plan.settings = dict(remote.settings)

    logger.info(
        "Merge plan (remote %s, version %s): %d inserts, %d updates, settings %s",
        remote.export_date,
        remote.version,
        plan.inserted,
        plan.updated,
        "replaced" if plan.settings is not None else "kept",
    )
    return plan


def _plan_entity(
    entity: str, local_records: list[Record], remote_records: list[Record]
) -> EntityPlan:
    key_of = NATURAL_KEYS[entity]
    local_by_key = {key_of(r): r for r in local_records}
    used_ids = {str(r["id"]) for r in local_records if r.get("id") is not None}

    newest_remote: dict[str, Record] = {}
    for record in remote_records:
        key = key_of(record)
        current = newest_remote.get(key)
        if current is None or is_newer(record, current):
            newest_remote[key] = record

    out = EntityPlan()
    for key, remote in newest_remote.items():
        local = local_by_key.get(key)
        if local is None:
            record = dict(remote)
            remote_id = record.get("id")
            if remote_id is not None and str(remote_id) in used_ids:
                # Same id, different record: keep both under distinct ids.
                record["id"] = uuid.uuid4().hex
                logger.warning(
                    "Id conflict for %s %r: inserting with new id", entity, key
                )
            if record.get("id") is not None:
                used_ids.add(str(record["id"]))
            out.inserts.append(record)
        elif is_newer(remote, local):
            record = dict(remote)
            if local.get("id") is not None:
                record["id"] = local["id"]
            out.updates.append(
                RecordUpdate(key=key, local_id=local.get("id"), record=record)
            )
    return out


def apply_plan(local: SyncSnapshot, plan: MergePlan) -> SyncSnapshot:
    """Return ``local`` with the plan applied (pure, input untouched)."""
    replaced: dict[str, list[Record]] = {}
    for entity, entity_plan in plan.entities.items():
        key_of = NATURAL_KEYS[entity]
        updates = {u.key: u.record for u in entity_plan.updates}
        merged = [updates.get(key_of(r), r) for r in local.records(entity)]
        merged.extend(entity_plan.inserts)
        replaced[entity] = merged

    out = local.with_records(replaced)
    if plan.settings is not None:
        out = SyncSnapshot(
            export_date=out.export_date,
            entries=out.entries,
            products=out.products,
            weights=out.weights,
            settings=plan.settings,
            product_portions=out.product_portions,
            meal_templates=out.meal_templates,
            version=out.version,
        )
    return out


def expired_tombstones(
    snapshot: SyncSnapshot,
    now: datetime,
    retention_days: int = TOMBSTONE_RETENTION_DAYS,
) -> dict[str, list[Any]]:
    """Ids of soft-deleted records whose ``deleted_at`` is past retention.

    Only used before a push; a pull never purges anything.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    cutoff = (now - timedelta(days=retention_days)).timestamp()

    out: dict[str, list[Any]] = {}
    for entity in ENTITY_TYPES:
        ids: list[Any] = []
        for record in snapshot.records(entity):
            if not record.get("deleted") or record.get("id") is None:
                continue
            deleted_at = parse_timestamp(record.get("deleted_at"))
            if deleted_at is not None and deleted_at < cutoff:
                ids.append(record["id"])
        if ids:
            out[entity] = ids
    return out
