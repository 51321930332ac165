"""Daemon wiring.

Builds the components in dependency order and runs them on one event loop:

- the Supervisor (collectors);
- the config file watcher (publishes into the Config Store);
- the health file writer (for the separate ``health`` command);
- hourly dedup pruning (in a worker thread, off the event loop).

Startup failures that would break a guarantee (no readable config, no
ledger) raise before any collector runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Mapping, Optional

import settings
from adapters.config_file import ConfigFileSource
from adapters.health_file import write_health_file, write_periodically
from adapters.log_notifier import LogDelivery
from adapters.sqlite_storage import SQLiteDedupLedger
from adapters.telegram_bot_notifier import TelegramBotDelivery
from adapters.telegram_channel_collector import TelegramChannelCollector
from adapters.telegram_dm_collector import TelegramDMCollector
from adapters.telegram_notifier import TelegramClientDelivery
from client import build_client
from core.collector import CollectorFactory
from core.config import NotificationConfig
from core.config_store import ConfigStore
from core.errors import ConfigError, FatalError, LedgerError
from core.health import HealthRegistry
from core.notifier import Notifier
from core.supervisor import Supervisor

LOGGER = logging.getLogger(__name__)

PRUNE_INTERVAL_SECONDS = 3600.0
DELIVERY_SESSION_ENV = "DELIVERY_SESSION_NAME"
DEFAULT_DELIVERY_SESSION = "socialwatch-delivery"

COLLECTOR_FACTORIES: Mapping[str, CollectorFactory] = {
    "telegram_dms": TelegramDMCollector,
    "telegram_channels": TelegramChannelCollector,
}


@dataclass(frozen=True)
class DaemonPaths:
    config: str = settings.CONFIG_PATH
    last_good_config: str = settings.LAST_GOOD_CONFIG_PATH
    db: str = settings.DB_PATH
    health: str = settings.HEALTH_PATH


def open_ledger(db_path: str) -> SQLiteDedupLedger:
    """Open the dedup ledger; raises ``LedgerUnavailableError`` on failure."""

    ledger = SQLiteDedupLedger(db_path)
    ledger.init_db()
    return ledger


def build_delivery(notifications: NotificationConfig):
    """Select the delivery adapter for ``notifications.method``.

    The method is read once at startup; changing it requires a restart.
    """

    if notifications.method == "bot":
        bot_token = os.getenv("BOT_API")
        if not bot_token:
            raise ConfigError("BOT_API is required when notifications.method is 'bot'")
        return TelegramBotDelivery(bot_token=bot_token)
    if notifications.method == "client":
        # A separate session file: Telethon sessions cannot be shared between clients.
        session = os.getenv(DELIVERY_SESSION_ENV, DEFAULT_DELIVERY_SESSION)
        return TelegramClientDelivery(build_client(session))
    return LogDelivery()


async def prune_periodically(
    ledger: SQLiteDedupLedger,
    store: ConfigStore,
    interval: float = PRUNE_INTERVAL_SECONDS,
) -> None:
    """Drop expired dedup records every ``interval`` seconds."""

    while True:
        retention = store.current().notifications.dedup_retention
        try:
            await asyncio.to_thread(ledger.prune, retention)
        except LedgerError:
            LOGGER.exception("Dedup pruning failed; retrying in %.0fs", interval)
        await asyncio.sleep(interval)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform; KeyboardInterrupt still ends asyncio.run().
            pass


async def run(
    paths: DaemonPaths = DaemonPaths(),
    factories: Optional[Mapping[str, CollectorFactory]] = None,
    delivery=None,
) -> None:
    """Run the daemon until SIGINT/SIGTERM or a fatal error."""

    source = ConfigFileSource(paths.config, paths.last_good_config)
    snapshot = source.load_initial()
    ledger = open_ledger(paths.db)

    store = ConfigStore(snapshot)
    health = HealthRegistry()
    if delivery is None:
        delivery = build_delivery(snapshot.notifications)
    LOGGER.info("Selected notification method - %s", snapshot.notifications.method)

    notifier = Notifier(store, ledger, delivery, health)
    supervisor = Supervisor(store, notifier, health, factories or COLLECTOR_FACTORIES)

    stop = asyncio.Event()
    _install_signal_handlers(stop)

    supervisor_task = asyncio.create_task(supervisor.run(), name="supervisor")
    background = [
        asyncio.create_task(source.watch(store), name="config-watch"),
        asyncio.create_task(
            write_periodically(paths.health, health, lambda: store.current().version),
            name="health-writer",
        ),
        asyncio.create_task(prune_periodically(ledger, store), name="dedup-prune"),
    ]
    stop_task = asyncio.create_task(stop.wait(), name="stop-signal")

    finished: set = set()
    try:
        finished, _ = await asyncio.wait(
            {supervisor_task, stop_task, *background}, return_when=asyncio.FIRST_COMPLETED
        )
        if stop.is_set():
            LOGGER.info("Shutdown requested")
    finally:
        stop_task.cancel()
        for task in background:
            task.cancel()
        if not supervisor_task.done():
            supervisor_task.cancel()
        await asyncio.gather(stop_task, *background, supervisor_task, return_exceptions=True)
        try:
            write_health_file(paths.health, health, store.current().version)
        except OSError:
            LOGGER.exception("Failed to write final health file")
        close = getattr(delivery, "close", None)
        if close is not None:
            await close()
        LOGGER.info("socialwatch stopped")

    if supervisor_task.done() and not supervisor_task.cancelled():
        # Only invariant violations end the Supervisor on its own.
        supervisor_task.result()
    for task in background:
        if task in finished and not task.cancelled():
            # Background loops never finish on their own while the daemon runs.
            task.result()
            raise FatalError(f"Background task {task.get_name()} stopped unexpectedly")
