from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from bitebudget.providers.base import BACKUP_FILE_NAME
from bitebudget.providers.local import LocalFileProvider, LocalPaths
from bitebudget.sync.errors import ProviderError


def test_local_provider_lifecycle(tmp_path: Path) -> None:
    provider = LocalFileProvider(LocalPaths(root=tmp_path / "backup"))

    async def scenario() -> None:
        assert await provider.download() is None
        assert await provider.info() is None

        await provider.upload("first")
        await provider.upload("second")
        assert await provider.download() == "second"

        info = await provider.info()
        assert info is not None
        assert info.size == len("second")

        await provider.delete()
        await provider.delete()
        assert await provider.download() is None

    asyncio.run(scenario())
    assert provider.path == tmp_path / "backup" / BACKUP_FILE_NAME
    assert list((tmp_path / "backup").iterdir()) == []


def test_local_provider_wraps_os_errors(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    provider = LocalFileProvider(LocalPaths(root=tmp_path))
    provider.path.mkdir()

    with pytest.raises(ProviderError):
        asyncio.run(provider.delete())

    def _denied(self: Path, *args: object, **kwargs: object) -> None:
        raise PermissionError("denied")

    monkeypatch.setattr(Path, "stat", _denied)
    with pytest.raises(ProviderError):
        asyncio.run(provider.info())
