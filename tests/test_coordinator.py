from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from bitebudget.providers.base import RemoteInfo
from bitebudget.providers.local import LocalFileProvider, LocalPaths
from bitebudget.storage import SQLiteStore
from bitebudget.sync.coordinator import EventKind, SyncCoordinator, SyncEvent, SyncState
from bitebudget.sync.crypto import decrypt_snapshot
from bitebudget.sync.errors import (
    AUTH,
    CONFIG,
    INTEGRITY,
    MISSING,
    AuthenticationExpiredError,
)

NOW = datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)
FAST = 1_000


class CountingProvider(LocalFileProvider):
    def __init__(self, root: Path) -> None:
        super().__init__(LocalPaths(root=root))
        self.uploads = 0
        self.downloads = 0

    async def upload(self, blob: str) -> None:
        self.uploads += 1
        await super().upload(blob)

    async def download(self) -> str | None:
        self.downloads += 1
        return await super().download()


class GatedProvider(CountingProvider):
    def __init__(self, root: Path, gate: asyncio.Event) -> None:
        super().__init__(root)
        self.gate = gate

    async def upload(self, blob: str) -> None:
        self.uploads += 1
        await self.gate.wait()
        await LocalFileProvider.upload(self, blob)


class ExpiredProvider(LocalFileProvider):
    async def upload(self, blob: str) -> None:
        raise AuthenticationExpiredError("token expired")

    async def download(self) -> str | None:
        raise AuthenticationExpiredError("token expired")

    async def info(self) -> RemoteInfo | None:
        raise AuthenticationExpiredError("token expired")


def make_coordinator(
    store: SQLiteStore, provider: LocalFileProvider
) -> SyncCoordinator:
    return SyncCoordinator(store, provider, now=lambda: NOW, iterations=FAST)


def collect(coordinator: SyncCoordinator) -> list[SyncEvent]:
    events: list[SyncEvent] = []
    coordinator.subscribe(events.append)
    return events


def states(events: list[SyncEvent]) -> list[SyncState]:
    return [e.state for e in events if e.kind is EventKind.STATE and e.state is not None]


def test_push_then_pull_between_devices(tmp_path: Path) -> None:
    cloud = tmp_path / "cloud"
    device_a = SQLiteStore(tmp_path / "a.sqlite3")
    device_b = SQLiteStore(tmp_path / "b.sqlite3")
    device_a.add_record(
        "entries", {"id": "e1", "date": "2024-01-10", "name": "Lunch", "calories": 650}
    )
    device_a.save_settings_record({"caloriesRest": 1800, "updated_at": 10})

    async def scenario() -> None:
        pusher = make_coordinator(device_a, LocalFileProvider(LocalPaths(root=cloud)))
        pusher.configure("secret")
        pusher.start()
        push_events = collect(pusher)
        pushed = await pusher.push()

        assert pushed.ok
        assert states(push_events) == [
            SyncState.ENCRYPTING,
            SyncState.UPLOADING,
            SyncState.IDLE,
        ]
        assert push_events[-1].kind is EventKind.RESULT

        puller = make_coordinator(device_b, LocalFileProvider(LocalPaths(root=cloud)))
        puller.configure("secret")
        puller.start()
        pull_events = collect(puller)
        pulled = await puller.pull()

        assert pulled.ok
        assert pulled.inserted == 1
        assert states(pull_events) == [
            SyncState.DOWNLOADING,
            SyncState.DECRYPTING,
            SyncState.MERGING,
            SyncState.IDLE,
        ]
        assert any(e.kind is EventKind.DATA_CHANGED for e in pull_events)

    asyncio.run(scenario())

    assert device_b.records("entries") == device_a.records("entries")
    assert device_b.load_settings_record() == {"caloriesRest": 1800, "updated_at": 10}
    assert device_a.load_config().last_push_at == NOW.isoformat()
    assert device_b.load_config().last_sync_at == NOW.isoformat()


def test_pull_twice_changes_nothing_the_second_time(tmp_path: Path) -> None:
    cloud = tmp_path / "cloud"
    source = SQLiteStore(tmp_path / "a.sqlite3")
    source.add_record("products", {"id": "p1", "name": "Oats", "updated_at": 1})
    target = SQLiteStore(tmp_path / "b.sqlite3")

    async def scenario() -> tuple[int, int]:
        pusher = make_coordinator(source, LocalFileProvider(LocalPaths(root=cloud)))
        pusher.configure("pw")
        pusher.start()
        await pusher.push()

        puller = make_coordinator(target, LocalFileProvider(LocalPaths(root=cloud)))
        puller.configure("pw")
        puller.start()
        first = await puller.pull()
        second = await puller.pull()
        return first.inserted, second.inserted + second.updated

    assert asyncio.run(scenario()) == (1, 0)
    assert len(target.records("products")) == 1


def test_wrong_passphrase_reports_integrity_and_keeps_local(tmp_path: Path) -> None:
    cloud = tmp_path / "cloud"
    source = SQLiteStore(tmp_path / "a.sqlite3")
    source.add_record("products", {"id": "p1", "name": "Oats"})
    target = SQLiteStore(tmp_path / "b.sqlite3")
    target.add_record("products", {"id": "p9", "name": "Rice"})

    async def scenario() -> None:
        pusher = make_coordinator(source, LocalFileProvider(LocalPaths(root=cloud)))
        pusher.configure("right")
        pusher.start()
        await pusher.push()

        puller = make_coordinator(target, LocalFileProvider(LocalPaths(root=cloud)))
        puller.configure("wrong")
        puller.start()
        events = collect(puller)
        result = await puller.pull()

        assert not result.ok
        assert result.error_kind == INTEGRITY
        assert SyncState.ERROR in states(events)
        assert puller.state is SyncState.IDLE

    asyncio.run(scenario())
    assert target.records("products") == [{"id": "p9", "name": "Rice"}]


def test_pull_without_backup(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")

    async def scenario() -> None:
        coordinator = make_coordinator(
            store, LocalFileProvider(LocalPaths(root=tmp_path / "cloud"))
        )
        coordinator.configure("pw")
        coordinator.start()

        pulled = await coordinator.pull()
        assert pulled.error_kind == MISSING

        synced = await coordinator.sync()
        assert synced.ok
        assert synced.action == "sync"

    asyncio.run(scenario())
    assert (tmp_path / "cloud" / "bitebudget-data.enc").exists()


def test_missing_passphrase_is_a_config_error(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    provider = CountingProvider(tmp_path / "cloud")

    async def scenario() -> None:
        coordinator = make_coordinator(store, provider)
        coordinator.configure(None)
        coordinator.start()
        result = await coordinator.push()
        assert result.error_kind == CONFIG

    asyncio.run(scenario())
    assert provider.uploads == 0


def test_lifecycle_is_enforced(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    coordinator = make_coordinator(
        store, LocalFileProvider(LocalPaths(root=tmp_path / "cloud"))
    )

    with pytest.raises(RuntimeError):
        coordinator.start()
    coordinator.configure("pw")
    with pytest.raises(RuntimeError):
        asyncio.run(coordinator.push())


def test_expired_session_emits_token_expired(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")

    async def scenario() -> None:
        coordinator = make_coordinator(
            store, ExpiredProvider(LocalPaths(root=tmp_path / "cloud"))
        )
        coordinator.configure("pw")
        coordinator.start()
        events = collect(coordinator)
        result = await coordinator.push()

        assert result.error_kind == AUTH
        assert any(e.kind is EventKind.TOKEN_EXPIRED for e in events)

    asyncio.run(scenario())


def test_auto_sync_is_disabled_on_expired_session(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")

    async def scenario() -> SyncCoordinator:
        coordinator = make_coordinator(
            store, ExpiredProvider(LocalPaths(root=tmp_path / "cloud"))
        )
        coordinator.configure("pw", auto_sync=True, debounce_seconds=0.01)
        coordinator.start()
        events = collect(coordinator)

        coordinator.notify_local_change()
        await coordinator.drain()

        assert any(e.kind is EventKind.AUTO_SYNC_DISABLED for e in events)
        return coordinator

    coordinator = asyncio.run(scenario())
    assert not coordinator.auto_sync_enabled
    assert store.load_config().auto_sync_enabled is False


def test_auto_sync_debounces_bursts(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    provider = CountingProvider(tmp_path / "cloud")

    async def scenario() -> None:
        coordinator = make_coordinator(store, provider)
        coordinator.configure("pw", auto_sync=True, debounce_seconds=0.05)
        coordinator.start()
        for name in ("a", "b", "c"):
            store.add_record("products", {"name": name})
            coordinator.notify_local_change()
        await coordinator.drain()
        coordinator.stop()

    asyncio.run(scenario())
    assert provider.uploads == 1
    assert store.load_config().auto_sync_enabled is True


def test_auto_sync_off_ignores_local_changes(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    provider = CountingProvider(tmp_path / "cloud")

    async def scenario() -> None:
        coordinator = make_coordinator(store, provider)
        coordinator.configure("pw", auto_sync=False, debounce_seconds=0.01)
        coordinator.start()
        coordinator.notify_local_change()
        await coordinator.drain()

    asyncio.run(scenario())
    assert provider.uploads == 0


def test_requests_during_an_operation_are_queued(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")

    async def scenario() -> int:
        gate = asyncio.Event()
        provider = GatedProvider(tmp_path / "cloud", gate)
        coordinator = make_coordinator(store, provider)
        coordinator.configure("pw")
        coordinator.start()

        first = asyncio.create_task(coordinator.push())
        for _ in range(500):
            if provider.uploads:
                break
            await asyncio.sleep(0.01)
        assert coordinator.busy

        second = asyncio.create_task(coordinator.push())
        third = asyncio.create_task(coordinator.push())
        await asyncio.sleep(0)
        assert provider.uploads == 1

        gate.set()
        results = await asyncio.gather(first, second, third)
        assert all(r.ok for r in results)
        assert not coordinator.busy
        return provider.uploads

    assert asyncio.run(scenario()) == 2


def test_push_purges_expired_tombstones(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    old = (NOW - timedelta(days=30)).isoformat()
    recent = (NOW - timedelta(days=2)).isoformat()
    store.add_record("entries", {"id": "old", "date": "2023-12-01", "name": "x",
                                 "deleted": True, "deleted_at": old})
    store.add_record("entries", {"id": "new", "date": "2024-01-18", "name": "y",
                                 "deleted": True, "deleted_at": recent})
    provider = CountingProvider(tmp_path / "cloud")

    async def scenario() -> None:
        coordinator = make_coordinator(store, provider)
        coordinator.configure("pw")
        coordinator.start()
        assert (await coordinator.push()).ok

    asyncio.run(scenario())

    assert [r["id"] for r in store.records("entries")] == ["new"]
    remote = decrypt_snapshot(provider.path.read_text(encoding="utf-8"), "pw")
    assert [r["id"] for r in remote.entries] == ["new"]


def test_failing_listener_does_not_break_sync(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")

    def broken(event: SyncEvent) -> None:
        raise RuntimeError("listener bug")

    async def scenario() -> None:
        coordinator = make_coordinator(
            store, LocalFileProvider(LocalPaths(root=tmp_path / "cloud"))
        )
        coordinator.configure("pw")
        coordinator.start()
        coordinator.subscribe(broken)
        events: list[SyncEvent] = []
        unsubscribe = coordinator.subscribe(events.append)

        assert (await coordinator.push()).ok
        seen = len(events)
        unsubscribe()
        assert (await coordinator.push()).ok
        assert len(events) == seen

    asyncio.run(scenario())


def _set_backup_mtime(provider: LocalFileProvider, when: datetime) -> None:
    stamp = when.timestamp()
    os.utime(provider.path, (stamp, stamp))


def test_pull_if_newer_only_downloads_changed_backups(tmp_path: Path) -> None:
    cloud = tmp_path / "cloud"
    source = SQLiteStore(tmp_path / "a.sqlite3")
    source.add_record("products", {"id": "p1", "name": "Oats", "updated_at": 1})
    target = SQLiteStore(tmp_path / "b.sqlite3")
    target.save_config(
        replace(target.load_config(), last_sync_at=(NOW - timedelta(days=1)).isoformat())
    )
    provider = CountingProvider(cloud)

    async def scenario() -> None:
        puller = make_coordinator(target, provider)
        puller.configure("pw")
        puller.start()

        empty = await puller.pull_if_newer()
        assert empty.ok
        assert empty.message == "No cloud backup yet"

        pusher = make_coordinator(source, LocalFileProvider(LocalPaths(root=cloud)))
        pusher.configure("pw")
        pusher.start()
        await pusher.push()

        _set_backup_mtime(provider, NOW - timedelta(days=2))
        skipped = await puller.pull_if_newer()
        assert skipped.ok
        assert skipped.message == "Local data is up to date"
        assert provider.downloads == 0

        _set_backup_mtime(provider, NOW - timedelta(hours=1))
        pulled = await puller.pull_if_newer()
        assert pulled.ok
        assert pulled.action == "pull_if_newer"
        assert pulled.inserted == 1
        assert provider.downloads == 1

        # last_sync_at is now NOW, so the same backup is not fetched again.
        again = await puller.pull_if_newer()
        assert again.message == "Local data is up to date"
        assert provider.downloads == 1

    asyncio.run(scenario())
    assert [p["name"] for p in target.records("products")] == ["Oats"]
    assert target.load_config().last_sync_at == NOW.isoformat()


def test_pull_if_newer_ignores_own_upload(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    store.add_record("products", {"id": "p1", "name": "Oats"})
    provider = CountingProvider(tmp_path / "cloud")

    async def scenario() -> str:
        coordinator = make_coordinator(store, provider)
        coordinator.configure("pw")
        coordinator.start()
        await coordinator.push()
        _set_backup_mtime(provider, NOW)
        return (await coordinator.pull_if_newer()).message

    assert asyncio.run(scenario()) == "Local data is up to date"
    assert provider.downloads == 0


def test_store_mutations_trigger_one_debounced_sync(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")
    provider = CountingProvider(tmp_path / "cloud")

    async def scenario() -> None:
        coordinator = make_coordinator(store, provider)
        coordinator.configure("pw", auto_sync=True, debounce_seconds=0.05)
        coordinator.start()
        store.add_record("entries", {"date": "2024-01-19", "name": "Lunch"})
        store.upsert_activity({"date": "2024-01-19", "steps": 9000})
        store.save_settings_record({"caloriesRest": 1800, "updated_at": 5})
        await coordinator.drain()
        coordinator.stop()

        store.add_record("products", {"name": "Rice"})
        await coordinator.drain()

    asyncio.run(scenario())
    assert provider.uploads == 1
    remote = decrypt_snapshot(provider.path.read_text(encoding="utf-8"), "pw")
    assert [e["name"] for e in remote.entries] == ["Lunch"]
    assert remote.settings == {"caloriesRest": 1800, "updated_at": 5}


def test_cloud_check_runs_periodically_while_started(tmp_path: Path) -> None:
    cloud = tmp_path / "cloud"
    source = SQLiteStore(tmp_path / "a.sqlite3")
    source.add_record("products", {"id": "p1", "name": "Oats", "updated_at": 1})
    target = SQLiteStore(tmp_path / "b.sqlite3")
    provider = CountingProvider(cloud)

    async def scenario() -> None:
        pusher = make_coordinator(source, LocalFileProvider(LocalPaths(root=cloud)))
        pusher.configure("pw")
        pusher.start()
        await pusher.push()

        coordinator = SyncCoordinator(
            target, provider, now=lambda: NOW, iterations=FAST, pull_interval=0.01
        )
        coordinator.configure("pw", auto_sync=True, debounce_seconds=60)
        coordinator.start()
        for _ in range(500):
            if target.records("products"):
                break
            await asyncio.sleep(0.01)
        coordinator.stop()

    asyncio.run(scenario())
    assert [p["name"] for p in target.records("products")] == ["Oats"]
    assert provider.downloads >= 1
    assert provider.uploads == 0


def test_cloud_check_on_expired_session_disables_auto_sync(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "a.sqlite3")

    async def scenario() -> list[SyncEvent]:
        coordinator = SyncCoordinator(
            store,
            ExpiredProvider(LocalPaths(root=tmp_path / "cloud")),
            now=lambda: NOW,
            iterations=FAST,
            pull_interval=0.01,
        )
        coordinator.configure("pw", auto_sync=True, debounce_seconds=60)
        events = collect(coordinator)
        coordinator.start()
        for _ in range(500):
            if not coordinator.auto_sync_enabled:
                break
            await asyncio.sleep(0.01)
        coordinator.stop()
        return events

    events = asyncio.run(scenario())
    assert any(e.kind is EventKind.AUTO_SYNC_DISABLED for e in events)
    assert any(e.kind is EventKind.TOKEN_EXPIRED for e in events)
    assert store.load_config().auto_sync_enabled is False
