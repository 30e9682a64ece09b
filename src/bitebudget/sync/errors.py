"""Jerarquia de errores de sincronizacion."""

from __future__ import annotations

TRANSIENT = "transient"
AUTH = "auth"
INTEGRITY = "integrity"
MISSING = "missing"
CONFIG = "config"
INTERNAL = "internal"


class SyncError(Exception):
    """Base class for every sync failure."""

    error_kind = TRANSIENT


class ProviderError(SyncError):
    """Network or storage provider failure; safe to retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationExpiredError(SyncError):
    """The provider session/token is no longer valid; user must reconnect."""

    error_kind = AUTH


class DecryptionError(SyncError):
    """Wrong passphrase or corrupted blob (the two are indistinguishable)."""

    error_kind = INTEGRITY


class SnapshotFormatError(SyncError):
    """Decrypted payload is not a valid snapshot."""

    error_kind = INTEGRITY


class BackupNotFoundError(SyncError):
    """No remote backup exists yet."""

    error_kind = MISSING
