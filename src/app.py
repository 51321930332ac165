"""Application entry point for the socialwatch daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from art import tprint
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

import settings
from adapters.config_file import ConfigFileSource
from adapters.health_file import read_health_file
from core.errors import ConfigError, FatalError, LedgerError
from core.models import CollectorState

NAME = "SOCIALWATCH"
FONT = "tarty-1"

DIR_SIZE_ALARM_BYTES = 10 * 1024 ** 3
STALE_HEALTH_SECONDS = 60
OK = "[green]✓[/green]"
FAIL = "[red]✗[/red]"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", ["API_HASH", "BOT_API", "2FA"]):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _logging_section(config_path: str) -> dict:
    try:
        raw = settings.load_json_config(config_path)
    except (OSError, ValueError):
        # The daemon reports the config problem itself once logging is up.
        return {}
    section = raw.get("logging", {}) if isinstance(raw, dict) else {}
    return section if isinstance(section, dict) else {}


def _configure_logging(config_path: str) -> None:
    config = _logging_section(config_path)

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/socialwatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # Telethon is chatty at INFO.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))


def _paths(args: argparse.Namespace):
    from daemon import DaemonPaths

    state_dir = args.state_dir or settings.STATE_DIR
    db_path = os.path.join(state_dir, os.path.basename(settings.DB_PATH)) if args.state_dir else settings.DB_PATH
    return DaemonPaths(
        config=args.config or settings.CONFIG_PATH,
        last_good_config=os.path.join(state_dir, os.path.basename(settings.LAST_GOOD_CONFIG_PATH)),
        db=db_path,
        health=os.path.join(state_dir, os.path.basename(settings.HEALTH_PATH)),
    )


def _run(args: argparse.Namespace) -> int:
    import daemon

    _print_banner()
    paths = _paths(args)
    _configure_logging(paths.config)
    logger = logging.getLogger(__name__)
    logger.info("Starting socialwatch")
    try:
        asyncio.run(daemon.run(paths))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


def directory_size(path: str) -> int:
    """Total size in bytes of the regular files under ``path``."""

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def _format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def render_health(console: Console, paths, now: Optional[datetime] = None) -> bool:
    """Print the health report; return True when every check passed."""

    now = now or datetime.now(timezone.utc)
    healthy = True

    try:
        snapshot = ConfigFileSource(paths.config).read()
    except ConfigError as exc:
        console.print(f"{FAIL} config {paths.config}: {exc}")
        healthy = False
    else:
        enabled = ", ".join(sorted(snapshot.enabled_platforms())) or "none"
        console.print(f"{OK} config {paths.config} (enabled: {enabled})")

    health = read_health_file(paths.health)
    if health is None:
        console.print(f"{FAIL} no health file at {paths.health}; is the daemon running?")
        healthy = False
    else:
        age = (now - health.written_at).total_seconds()
        if age > STALE_HEALTH_SECONDS:
            console.print(f"{FAIL} health file is {age:.0f}s old; the daemon may be stopped")
            healthy = False
        else:
            console.print(f"{OK} daemon running (config version {health.config_version})")

        table = Table(title="Platforms")
        for column in ("", "platform", "state", "restarts", "failures", "last success", "last error"):
            table.add_column(column)
        for name, record in sorted(health.platforms.items()):
            ok = record.state is CollectorState.RUNNING and record.consecutive_failures == 0
            if record.state is not CollectorState.STOPPED and not ok:
                healthy = False
            table.add_row(
                OK if ok else FAIL,
                name,
                record.state.value,
                str(record.restart_count),
                str(record.consecutive_failures),
                _format_time(record.last_success),
                record.last_error or "-",
            )
        console.print(table)

        destinations = Table(title="Destinations")
        for column in ("", "destination", "failures", "last success", "last error"):
            destinations.add_column(column)
        for name, record in sorted(health.destinations.items()):
            ok = record.consecutive_failures == 0
            healthy = healthy and ok
            destinations.add_row(
                OK if ok else FAIL,
                name,
                str(record.consecutive_failures),
                _format_time(record.last_success),
                record.last_error or "-",
            )
        console.print(destinations)

    state_dir = os.path.dirname(os.path.abspath(paths.health))
    size = directory_size(state_dir)
    if size > DIR_SIZE_ALARM_BYTES:
        limit = _format_bytes(DIR_SIZE_ALARM_BYTES)
        console.print(f"{FAIL} {state_dir}: {_format_bytes(size)} (above {limit})")
        healthy = False
    else:
        console.print(f"{OK} {state_dir}: {_format_bytes(size)}")
    return healthy


def _health(args: argparse.Namespace) -> int:
    return 0 if render_health(Console(), _paths(args)) else 1


def _check_config(args: argparse.Namespace) -> int:
    paths = _paths(args)
    snapshot = ConfigFileSource(paths.config).read()
    console = Console()
    console.print(f"{OK} {paths.config} is valid")
    for name, section in sorted(snapshot.platforms.items()):
        console.print(f"  {name}: {'enabled' if section.enabled else 'disabled'}")
    notifications = snapshot.notifications
    console.print(f"  delivery method: {notifications.method}")
    console.print(f"  alerts -> {notifications.alerts_destination}")
    console.print(f"  output -> {notifications.output_destination}")
    return 0


def _prune(args: argparse.Namespace) -> int:
    from daemon import open_ledger

    paths = _paths(args)
    _configure_logging(paths.config)
    snapshot = ConfigFileSource(paths.config).read()
    ledger = open_ledger(paths.db)
    removed = ledger.prune(snapshot.notifications.dedup_retention)
    print(f"Removed {removed} expired dedup record(s), {ledger.count()} kept")
    return 0


def _login(args: argparse.Namespace) -> int:
    from get_session import login

    _print_banner()
    label = asyncio.run(login(args.session))
    print(f"Logged in as: {label}")
    return 0


def _dialog_type(dialog: Any) -> str:
    if getattr(dialog, "is_channel", False):
        entity = getattr(dialog, "entity", None)
        if getattr(entity, "megagroup", False):
            return "group"
        return "channel"
    if getattr(dialog, "is_group", False):
        return "group"
    return "chat"


def _channel_key_from_dialog(dialog: Any) -> str:
    entity = getattr(dialog, "entity", None)
    username = getattr(entity, "username", None)
    if username:
        return f"@{str(username).lower()}"
    dialog_id = getattr(dialog, "id", None) or getattr(entity, "id", None)
    return f"chat_id:{dialog_id}"


def _discover(args: argparse.Namespace) -> int:
    """List groups and channels with the keys to paste into poll/info channel lists."""

    from client import build_client

    client = build_client(args.session)

    async def _run_discover() -> None:
        await client.connect()
        try:
            if not await client.is_user_authorized():
                raise ConfigError("Telegram session is not authorized; run `socialwatch login` first")
            table = Table(title="Channels")
            for column in ("type", "title", "channel key"):
                table.add_column(column)
            async for dialog in client.iter_dialogs(archived=args.archived):
                if dialog.is_user:
                    continue
                table.add_row(_dialog_type(dialog), str(dialog.name or "-"), _channel_key_from_dialog(dialog))
            Console().print(table)
        finally:
            await client.disconnect()

    asyncio.run(_run_discover())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="socialwatch")
    parser.add_argument("--config", help="Path to the JSON config file")
    parser.add_argument("--state-dir", help="Directory for the ledger, health file and last-good config")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the daemon (default)")
    subparsers.add_parser("health", help="Show collector, delivery and storage health")
    subparsers.add_parser("check-config", help="Validate the config file")
    subparsers.add_parser("prune", help="Remove expired dedup records")
    login_parser = subparsers.add_parser("login", help="Authorize a Telegram session")
    login_parser.add_argument("--session", help="Session name (defaults to SESSION_NAME)")
    discover_parser = subparsers.add_parser("discover", help="List channels and their channel keys")
    discover_parser.add_argument("--session", help="Session name (defaults to SESSION_NAME)")
    discover_parser.add_argument("--archived", action="store_true", help="List archived dialogs only")
    return parser


COMMANDS = {
    "run": _run,
    "health": _health,
    "check-config": _check_config,
    "prune": _prune,
    "login": _login,
    "discover": _discover,
}


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command = COMMANDS[args.command or "run"]
    try:
        return command(args)
    except (ConfigError, FatalError, LedgerError) as exc:
        print(f"socialwatch: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
