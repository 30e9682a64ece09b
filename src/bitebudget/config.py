"""Configuracion de servicios desde variables de entorno (.env)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_DB_PATH = Path.home() / ".bitebudget" / "bitebudget.sqlite3"


@dataclass(frozen=True)
class ServiceSettings:
    """Endpoints and secrets used by the sync commands."""

    db_path: Path
    functions_url: str | None = None
    anon_key: str | None = None
    user_id: str | None = None
    passphrase: str | None = None
    backup_dir: Path | None = None

    @property
    def drive_configured(self) -> bool:
        return bool(self.functions_url and self.anon_key and self.user_id)


def load_settings(env_file: Path | None = None) -> ServiceSettings:
    """Read ``BITEBUDGET_*`` variables, loading a .env file first if present."""
    load_dotenv(dotenv_path=env_file)
    backup_dir = os.getenv("BITEBUDGET_BACKUP_DIR")
    return ServiceSettings(
        db_path=Path(os.getenv("BITEBUDGET_DB") or DEFAULT_DB_PATH).expanduser(),
        functions_url=os.getenv("BITEBUDGET_FUNCTIONS_URL") or None,
        anon_key=os.getenv("BITEBUDGET_ANON_KEY") or None,
        user_id=os.getenv("BITEBUDGET_USER_ID") or None,
        passphrase=os.getenv("BITEBUDGET_SYNC_PASSPHRASE") or None,
        backup_dir=Path(backup_dir).expanduser() if backup_dir else None,
    )
