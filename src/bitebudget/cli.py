"""CLI: agregados semanales/mensuales y backup cifrado en la nube."""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import date
from pathlib import Path

from bitebudget.aggregation import (
    AggregationConfig,
    MonthAggregate,
    WeekAggregate,
    monthly_aggregates,
    weekly_aggregates,
)
from bitebudget.config import ServiceSettings, load_settings
from bitebudget.dates import PERIOD_DAYS, date_range_for_period, parse_day
from bitebudget.model import UserSettings
from bitebudget.oauth import OAuthClient, authorization_url, generate_code_verifier
from bitebudget.providers.base import StorageProvider
from bitebudget.providers.google_drive import GoogleDriveProvider
from bitebudget.providers.local import LocalFileProvider, LocalPaths
from bitebudget.storage import SQLiteStore
from bitebudget.sync.coordinator import SyncCoordinator, SyncResult
from bitebudget.sync.errors import AUTH, SyncError

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed argparse namespace.
    """
    parser = argparse.ArgumentParser(
        description="BiteBudget: agregados de nutricion y backup cifrado."
    )
    parser.add_argument("--env-file", default=None, help="Archivo .env a cargar.")
    parser.add_argument("--db", default=None, help="Ruta de la base SQLite.")
    parser.add_argument("--verbose", action="store_true", help="Logging DEBUG.")
    sub = parser.add_subparsers(dest="command", required=True)

    agg = sub.add_parser("aggregate", help="Agregados semanales o mensuales.")
    agg.add_argument("--period", choices=sorted(PERIOD_DAYS), default="4weeks")
    agg.add_argument("--start", default=None, help="Inicio YYYY-MM-DD.")
    agg.add_argument("--end", default=None, help="Fin YYYY-MM-DD.")
    agg.add_argument("--monthly", action="store_true", help="Forzar meses.")

    sub.add_parser("push", help="Subir snapshot cifrado.")
    pull = sub.add_parser("pull", help="Descargar y fusionar el backup.")
    pull.add_argument(
        "--if-newer",
        action="store_true",
        help="Solo si el backup cambio despues de la ultima sincronizacion.",
    )
    sub.add_parser("sync", help="Fusionar y luego subir.")

    connect = sub.add_parser("connect", help="Conectar Google Drive (OAuth PKCE).")
    connect.add_argument("--client-id", default=None)
    connect.add_argument("--redirect-uri", required=True)
    connect.add_argument("--code", default=None)
    connect.add_argument("--verifier", default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the CLI.

    Returns:
        Exit code (0 on success, 2 when the cloud session must be renewed).
    """
    ns = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if ns.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings(Path(ns.env_file) if ns.env_file else None)
    db_path = Path(ns.db).expanduser() if ns.db else settings.db_path
    store = SQLiteStore(db_path)

    if ns.command == "aggregate":
        return run_aggregate(store, ns, today=date.today())
    if ns.command == "connect":
        return asyncio.run(run_connect(settings, ns))
    command = ns.command
    if command == "pull" and ns.if_newer:
        command = "pull_if_newer"
    return asyncio.run(run_sync_command(store, settings, command))


def run_aggregate(store: SQLiteStore, ns: argparse.Namespace, today: date) -> int:
    start, end = date_range_for_period(ns.period, today)
    start = parse_day(ns.start) or start
    end = parse_day(ns.end) or end

    user_settings = UserSettings.from_record(store.load_settings_record())
    config = AggregationConfig.from_settings(user_settings)
    entries = store.entries_between(start, end)
    activities = store.activities_between(start, end)

    if ns.monthly or ns.period.endswith("months"):
        months = monthly_aggregates(entries, activities, config, start, end)
        for month in months:
            print(format_month(month))
        count = len(months)
    else:
        weeks = weekly_aggregates(entries, activities, config, start, end)
        for week in weeks:
            print(format_week(week))
        count = len(weeks)

    if count == 0:
        print(f"Sin datos entre {start} y {end}")
    return 0


def format_week(week: WeekAggregate) -> str:
    n = week.nutrition
    line = (
        f"{week.year}-W{week.week_number:02d} "
        f"{week.week_start}..{week.week_end} "
        f"dias={week.days_tracked} kcal={n.avg_calories:.0f} "
        f"prot={n.avg('protein'):.0f} "
        f"bajo/ok/alto={n.days_under_target}/{n.days_in_range}/{n.days_over_target}"
    )
    if week.activity is not None:
        line += f" pasos={week.activity.avg('steps'):.0f}"
    return line


def format_month(month: MonthAggregate) -> str:
    n = month.nutrition
    best = f"W{month.best_week:02d}" if month.best_week is not None else "-"
    worst = f"W{month.worst_week:02d}" if month.worst_week is not None else "-"
    return (
        f"{month.year}-{month.month:02d} {month.month_name} "
        f"dias={month.days_tracked} semanas={len(month.weeks)} "
        f"kcal={n.avg_calories:.0f} adherencia={n.adherence:.0%} "
        f"mejor={best} peor={worst}"
    )


def build_provider(settings: ServiceSettings) -> StorageProvider:
    """Google Drive when the token broker is configured, else a local directory.

    Raises:
        ValueError: If no provider is configured.
    """
    if settings.drive_configured:
        oauth = OAuthClient(
            str(settings.functions_url), str(settings.anon_key), str(settings.user_id)
        )
        return GoogleDriveProvider(oauth.ensure_valid_token)
    if settings.backup_dir is not None:
        return LocalFileProvider(LocalPaths(root=settings.backup_dir))
    raise ValueError(
        "No storage configured: set BITEBUDGET_FUNCTIONS_URL/ANON_KEY/USER_ID "
        "or BITEBUDGET_BACKUP_DIR"
    )


async def run_sync_command(
    store: SQLiteStore, settings: ServiceSettings, command: str
) -> int:
    coordinator = SyncCoordinator(store, build_provider(settings))
    coordinator.configure(settings.passphrase)
    coordinator.start()
    try:
        if command == "push":
            result = await coordinator.push()
        elif command == "pull":
            result = await coordinator.pull()
        elif command == "pull_if_newer":
            result = await coordinator.pull_if_newer()
        else:
            result = await coordinator.sync()
    finally:
        coordinator.stop()
    return report(result)


def report(result: SyncResult) -> int:
    if result.ok:
        print(f"OK: {result.message} (+{result.inserted} / ~{result.updated})")
        return 0
    print(f"ERROR: {result.message}")
    if result.error_kind == AUTH:
        print("Reconecta la cuenta con: bitebudget connect")
        return 2
    return 1


async def run_connect(settings: ServiceSettings, ns: argparse.Namespace) -> int:
    if ns.code is None:
        if not ns.client_id:
            print("ERROR: --client-id es obligatorio para generar la URL")
            return 1
        verifier = generate_code_verifier()
        print(f"Abrir: {authorization_url(ns.client_id, ns.redirect_uri, verifier)}")
        print(f"Luego: bitebudget connect --redirect-uri {ns.redirect_uri} "
              f"--verifier {verifier} --code <CODE>")
        return 0

    if not settings.drive_configured or not ns.verifier:
        print("ERROR: falta configuracion del broker OAuth o --verifier")
        return 1
    oauth = OAuthClient(
        str(settings.functions_url), str(settings.anon_key), str(settings.user_id)
    )
    try:
        token = await oauth.exchange_code(ns.code, ns.redirect_uri, ns.verifier)
    except SyncError as exc:
        print(f"ERROR: {exc}")
        return 2 if exc.error_kind == AUTH else 1
    print(f"OK: conectado, token valido hasta {token.expires_at:%Y-%m-%d %H:%M}")
    return 0
