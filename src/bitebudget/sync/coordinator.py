"""Coordinador de sincronizacion: estados, auto-sync y notificaciones.

Un unico objeto por sesion con ciclo de vida ``configure -> start -> stop``.
Garantiza como mucho una operacion en curso; las pedidas mientras tanto se
encolan (fusionadas en una sola) y se ejecutan al terminar la actual.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from bitebudget.providers.base import StorageProvider
from bitebudget.storage import AppConfig
from bitebudget.sync.crypto import DEFAULT_ITERATIONS, decrypt_snapshot, encrypt_snapshot
from bitebudget.sync.errors import (
    AUTH,
    CONFIG,
    INTERNAL,
    BackupNotFoundError,
    SyncError,
)
from bitebudget.sync.merge import (
    MergePlan,
    expired_tombstones,
    parse_timestamp,
    plan_merge,
)
from bitebudget.sync.snapshot import SyncSnapshot

logger = logging.getLogger(__name__)

PUSH = "push"
PULL = "pull"
SYNC = "sync"
PULL_IF_NEWER = "pull_if_newer"

PULL_INTERVAL_SECONDS = 300.0


class SyncState(Enum):
    IDLE = "idle"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    DOWNLOADING = "downloading"
    DECRYPTING = "decrypting"
    MERGING = "merging"
    ERROR = "error"


class EventKind(Enum):
    STATE = "state"
    DATA_CHANGED = "data_changed"
    TOKEN_EXPIRED = "token_expired"
    AUTO_SYNC_DISABLED = "auto_sync_disabled"
    RESULT = "result"


@dataclass(frozen=True)
class SyncResult:
    """Terminal outcome of one sync action."""

    ok: bool
    action: str
    message: str
    error_kind: str | None = None
    inserted: int = 0
    updated: int = 0


@dataclass(frozen=True)
class SyncEvent:
    kind: EventKind
    state: SyncState | None = None
    result: SyncResult | None = None
    message: str | None = None


Listener = Callable[[SyncEvent], None]


class LocalStore(Protocol):
    """Local persistence collaborator (``SQLiteStore`` implements it)."""

    def export_snapshot(self, now: datetime) -> SyncSnapshot: ...

    def apply_plan(self, plan: MergePlan) -> None: ...

    def delete_records(self, entity: str, ids: Any) -> int: ...

    def load_config(self) -> AppConfig: ...

    def save_config(self, config: AppConfig) -> None: ...

    def subscribe_changes(
        self, listener: Callable[[str], None]
    ) -> Callable[[], None]: ...


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _combine(queued: str, requested: str) -> str:
    if queued == requested:
        return queued
    if {queued, requested} == {PULL, PULL_IF_NEWER}:
        return PULL
    return SYNC


class SyncCoordinator:
    """Runs push/pull/sync against a storage provider for one session."""

    def __init__(
        self,
        store: LocalStore,
        provider: StorageProvider,
        *,
        now: Callable[[], datetime] = _utcnow,
        iterations: int = DEFAULT_ITERATIONS,
        pull_interval: float = PULL_INTERVAL_SECONDS,
    ) -> None:
        self._store = store
        self._provider = provider
        self._now = now
        self._iterations = iterations
        self._pull_interval = pull_interval

        self._passphrase: str | None = None
        self._auto_sync = False
        self._debounce_seconds = 30.0
        self._configured = False
        self._running = False

        self._state = SyncState.IDLE
        self._listeners: list[Listener] = []
        self._busy = False
        self._pending_op: str | None = None
        self._pending_future: asyncio.Future[SyncResult] | None = None
        self._debounce_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe_store: Callable[[], None] | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def auto_sync_enabled(self) -> bool:
        return self._auto_sync

    @property
    def busy(self) -> bool:
        return self._busy

    def configure(
        self,
        passphrase: str | None,
        *,
        auto_sync: bool | None = None,
        debounce_seconds: float | None = None,
    ) -> None:
        """Set the passphrase and auto-sync options.

        Options left as ``None`` are read from the persisted config. An
        explicit ``auto_sync`` value is persisted.
        """
        config = self._store.load_config()
        self._passphrase = passphrase or None
        self._debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.debounce_seconds
        )
        if auto_sync is None:
            self._auto_sync = config.auto_sync_enabled
        else:
            self._auto_sync = auto_sync
            self._store.save_config(replace(config, auto_sync_enabled=auto_sync))
        self._configured = True

    def start(self) -> None:
        """Begin the session.

        Local store mutations are watched from here on. With auto-sync on,
        the cloud copy is also checked every ``pull_interval`` seconds, which
        requires a running event loop.
        """
        if not self._configured:
            raise RuntimeError("configure() must be called before start()")
        self._running = True
        self._set_state(SyncState.IDLE)
        if self._unsubscribe_store is None:
            self._unsubscribe_store = self._store.subscribe_changes(
                self._on_local_change
            )
        if self._auto_sync and self._passphrase:
            logger.info(
                "Auto-sync active (debounce %.0fs, cloud check every %.0fs)",
                self._debounce_seconds,
                self._pull_interval,
            )
            if self._poll_task is None:
                self._poll_task = asyncio.get_running_loop().create_task(
                    self._poll_cloud()
                )

    def stop(self) -> None:
        """Cancel pending timers; in-flight operations run to completion."""
        self._running = False
        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None
        if self._debounce_task is not None:
            self._debounce_task.cancel()
            self._debounce_task = None
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def push(self) -> SyncResult:
        """Encrypt the local snapshot and upload it."""
        return await self._submit(PUSH)

    async def pull(self) -> SyncResult:
        """Download, decrypt and merge the remote snapshot."""
        return await self._submit(PULL)

    async def sync(self) -> SyncResult:
        """Pull-then-push."""
        return await self._submit(SYNC)

    async def pull_if_newer(self) -> SyncResult:
        """Pull only when the cloud copy changed after the last sync."""
        return await self._submit(PULL_IF_NEWER)

    def notify_local_change(self) -> None:
        """Schedule a debounced auto-sync after a local mutation."""
        if not (self._running and self._auto_sync and self._passphrase):
            return
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounce())

    async def drain(self) -> None:
        """Wait for the pending debounce and any auto-sync it started."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if self._debounce_task is not None and not self._debounce_task.done():
                pending.append(self._debounce_task)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _debounce(self) -> None:
        await asyncio.sleep(self._debounce_seconds)
        self._debounce_task = None
        task = asyncio.get_running_loop().create_task(self._auto_sync_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _auto_sync_run(self) -> None:
        result = await self.sync()
        if result.ok:
            logger.info("Auto-sync completed")
        else:
            self._auto_failure("Auto-sync", result)

    async def _poll_cloud(self) -> None:
        while self._running and self._auto_sync:
            await asyncio.sleep(self._pull_interval)
            if not (self._running and self._auto_sync):
                return
            # Shielded so stop() never interrupts a pull mid-merge.
            result = await asyncio.shield(self.pull_if_newer())
            if not result.ok:
                self._auto_failure("Cloud check", result)

    def _auto_failure(self, label: str, result: SyncResult) -> None:
        if result.error_kind == AUTH:
            self._disable_auto_sync(
                "Auto-sync disabled: cloud session expired. Reconnect to resume."
            )
        else:
            logger.warning("%s failed: %s", label, result.message)

    def _on_local_change(self, entity: str) -> None:
        logger.debug("Local %s changed", entity)
        self.notify_local_change()

    def _disable_auto_sync(self, message: str) -> None:
        self._auto_sync = False
        config = self._store.load_config()
        self._store.save_config(replace(config, auto_sync_enabled=False))
        logger.warning(message)
        self._emit(SyncEvent(EventKind.AUTO_SYNC_DISABLED, message=message))

    async def _submit(self, op: str) -> SyncResult:
        if not self._running:
            raise RuntimeError("Sync coordinator is not started")

        if self._busy:
            self._pending_op = op if self._pending_op is None else _combine(self._pending_op, op)
            if self._pending_future is None:
                self._pending_future = asyncio.get_running_loop().create_future()
            logger.info("Sync in progress; queued %s", self._pending_op)
            return await asyncio.shield(self._pending_future)

        self._busy = True
        try:
            result = await self._execute(op)
            while self._pending_op is not None:
                next_op, future = self._pending_op, self._pending_future
                self._pending_op, self._pending_future = None, None
                queued_result = await self._execute(next_op)
                if future is not None and not future.done():
                    future.set_result(queued_result)
        finally:
            self._busy = False
            if self._pending_future is not None and not self._pending_future.done():
                self._pending_future.cancel()
            self._pending_op, self._pending_future = None, None
        return result

    async def _execute(self, op: str) -> SyncResult:
        passphrase = self._passphrase
        if not passphrase:
            result = SyncResult(
                ok=False,
                action=op,
                message="An encryption passphrase is required",
                error_kind=CONFIG,
            )
            self._emit(SyncEvent(EventKind.RESULT, result=result))
            return result

        try:
            if op == PUSH:
                result = await self._run_push(passphrase)
            elif op == PULL:
                result = await self._run_pull(passphrase, require_backup=True)
            elif op == PULL_IF_NEWER:
                result = await self._run_pull_if_newer(passphrase)
            else:
                pulled = await self._run_pull(passphrase, require_backup=False)
                pushed = await self._run_push(passphrase)
                result = replace(
                    pushed,
                    action=SYNC,
                    message="Synced with cloud backup",
                    inserted=pulled.inserted,
                    updated=pulled.updated,
                )
        except SyncError as exc:
            self._set_state(SyncState.ERROR)
            logger.warning("%s failed (%s): %s", op, exc.error_kind, exc)
            result = SyncResult(
                ok=False, action=op, message=str(exc), error_kind=exc.error_kind
            )
            if exc.error_kind == AUTH:
                self._emit(SyncEvent(EventKind.TOKEN_EXPIRED, message=str(exc)))
        except Exception as exc:
            self._set_state(SyncState.ERROR)
            logger.exception("%s failed unexpectedly", op)
            result = SyncResult(
                ok=False, action=op, message=f"Sync failed: {exc}", error_kind=INTERNAL
            )
        finally:
            self._set_state(SyncState.IDLE)

        self._emit(SyncEvent(EventKind.RESULT, result=result))
        return result

    async def _run_push(self, passphrase: str) -> SyncResult:
        self._set_state(SyncState.ENCRYPTING)
        now = self._now()
        snapshot = self._store.export_snapshot(now)
        tombstones = expired_tombstones(snapshot, now)
        if tombstones:
            for entity, ids in tombstones.items():
                removed = self._store.delete_records(entity, ids)
                logger.info("Purged %d expired deleted %s", removed, entity)
            snapshot = self._store.export_snapshot(now)

        blob = await asyncio.to_thread(
            encrypt_snapshot, snapshot, passphrase, iterations=self._iterations
        )

        self._set_state(SyncState.UPLOADING)
        await self._provider.upload(blob)

        config = self._store.load_config()
        self._store.save_config(replace(config, last_push_at=now.isoformat()))
        logger.info("Pushed snapshot %s", snapshot.counts())
        return SyncResult(ok=True, action=PUSH, message="Backup uploaded")

    async def _run_pull(self, passphrase: str, *, require_backup: bool) -> SyncResult:
        self._set_state(SyncState.DOWNLOADING)
        blob = await self._provider.download()
        if blob is None:
            if require_backup:
                raise BackupNotFoundError("No cloud backup found")
            return SyncResult(ok=True, action=PULL, message="No cloud backup yet")

        self._set_state(SyncState.DECRYPTING)
        remote = await asyncio.to_thread(decrypt_snapshot, blob, passphrase)

        self._set_state(SyncState.MERGING)
        now = self._now()
        plan = plan_merge(self._store.export_snapshot(now), remote)
        if not plan.is_empty():
            self._store.apply_plan(plan)
            self._emit(SyncEvent(EventKind.DATA_CHANGED))

        config = self._store.load_config()
        self._store.save_config(replace(config, last_sync_at=now.isoformat()))
        return SyncResult(
            ok=True,
            action=PULL,
            message="Merged cloud backup",
            inserted=plan.inserted,
            updated=plan.updated,
        )

    async def _run_pull_if_newer(self, passphrase: str) -> SyncResult:
        self._set_state(SyncState.DOWNLOADING)
        remote = await self._provider.info()
        if remote is None:
            return SyncResult(
                ok=True, action=PULL_IF_NEWER, message="No cloud backup yet"
            )

        # Our own upload is not news: compare against the later of both marks.
        config = self._store.load_config()
        marks = [
            stamp
            for stamp in (
                parse_timestamp(config.last_sync_at),
                parse_timestamp(config.last_push_at),
            )
            if stamp is not None
        ]
        if marks and remote.modified.timestamp() <= max(marks):
            logger.debug("Cloud backup (%s) not newer than last sync", remote.modified)
            return SyncResult(
                ok=True, action=PULL_IF_NEWER, message="Local data is up to date"
            )

        logger.info("Cloud backup changed at %s; merging", remote.modified)
        pulled = await self._run_pull(passphrase, require_backup=False)
        return replace(pulled, action=PULL_IF_NEWER)

    def _set_state(self, state: SyncState) -> None:
        if state is self._state:
            return
        self._state = state
        self._emit(SyncEvent(EventKind.STATE, state=state))

    def _emit(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Sync listener failed on %s", event.kind.value)
