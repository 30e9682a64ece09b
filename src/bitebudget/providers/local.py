"""Proveedor que guarda el blob cifrado en un directorio local."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from bitebudget.providers.base import RemoteInfo, StorageProvider
from bitebudget.sync.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalPaths:
    """Directory receiving the backup file."""

    root: Path


class LocalFileProvider(StorageProvider):
    """Offline backup target (also used by tests)."""

    def __init__(self, paths: LocalPaths) -> None:
        self._paths = paths

    @property
    def path(self) -> Path:
        return self._paths.root / self.file_name

    async def upload(self, blob: str) -> None:
        try:
            self._paths.root.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(blob, encoding="utf-8")
            tmp.replace(self.path)
        except OSError as exc:
            raise ProviderError(f"Could not write backup: {exc}") from exc
        logger.info("Backup written to %s (%d bytes)", self.path, len(blob))

    async def download(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderError(f"Could not read backup: {exc}") from exc

    async def info(self) -> RemoteInfo | None:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ProviderError(f"Could not stat backup: {exc}") from exc
        return RemoteInfo(
            modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size=stat.st_size,
        )

    async def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise ProviderError(f"Could not delete backup: {exc}") from exc
