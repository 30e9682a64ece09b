"""Clases base para proveedores de almacenamiento remoto."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

BACKUP_FILE_NAME = "bitebudget-data.enc"


@dataclass(frozen=True)
class RemoteInfo:
    """Metadata of the stored backup object."""

    modified: datetime
    size: int


class StorageProvider(ABC):
    """Remote store holding one encrypted blob per user."""

    file_name: str = BACKUP_FILE_NAME

    @abstractmethod
    async def upload(self, blob: str) -> None:
        """Create or replace the backup object.

        Raises:
            AuthenticationExpiredError: If the provider session expired.
            ProviderError: On any other provider or network failure.
        """

    @abstractmethod
    async def download(self) -> str | None:
        """Return the backup blob, or ``None`` when no backup exists."""

    @abstractmethod
    async def info(self) -> RemoteInfo | None:
        """Return backup metadata, or ``None`` when no backup exists."""

    @abstractmethod
    async def delete(self) -> None:
        """Remove the backup object if present."""
