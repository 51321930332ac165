from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

import daemon
from adapters.health_file import read_health_file
from adapters.log_notifier import LogDelivery
from adapters.sqlite_storage import SQLiteDedupLedger
from core.collector import BaseCollector
from core.config import snapshot_from_mapping
from core.dedup import make_dedup_key
from core.errors import ConfigError
from core.models import Channel, CollectorState, Event


class OneShotCollector(BaseCollector):
    async def run(self) -> None:
        await self.submit(
            Event(
                platform=self.platform,
                dedup_key=make_dedup_key("once"),
                channel=Channel.OUTPUT,
                text="hello",
            )
        )
        await self.wait_cancelled()


def _paths(tmp_path) -> daemon.DaemonPaths:
    state = tmp_path / "state"
    return daemon.DaemonPaths(
        config=str(tmp_path / "config.json"),
        last_good_config=str(state / "last-good.json"),
        db=str(state / "ledger.db"),
        health=str(state / "health.json"),
    )


def _write_config(tmp_path, **notifications) -> None:
    section = {"alerts_destination": "a", "output_destination": "o", "method": "log"}
    section.update(notifications)
    document = {"platforms": {"oneshot": {"enabled": True}}, "notifications": section}
    (tmp_path / "config.json").write_text(json.dumps(document), encoding="utf-8")


def test_daemon_delivers_and_shuts_down_cleanly(tmp_path) -> None:
    _write_config(tmp_path)
    paths = _paths(tmp_path)
    delivery = LogDelivery()

    async def scenario():
        factories = {"oneshot": OneShotCollector}
        runner = asyncio.create_task(daemon.run(paths, factories=factories, delivery=delivery))
        for _ in range(200):
            if delivery.sent:
                break
            await asyncio.sleep(0.01)
        runner.cancel()
        await asyncio.gather(runner, return_exceptions=True)

    asyncio.run(scenario())

    assert [destination for destination, _ in delivery.sent] == ["o"]
    ledger = SQLiteDedupLedger(paths.db)
    assert ledger.has_recent("oneshot", make_dedup_key("once"), timedelta(days=1))
    health = read_health_file(paths.health)
    assert health is not None
    assert health.platforms["oneshot"].state is CollectorState.STOPPED


def test_invalid_config_fails_before_anything_runs(tmp_path) -> None:
    (tmp_path / "config.json").write_text("{}", encoding="utf-8")
    paths = _paths(tmp_path)

    with pytest.raises(ConfigError):
        asyncio.run(daemon.run(paths, factories={}, delivery=LogDelivery()))
    assert not (tmp_path / "state" / "ledger.db").exists()


def test_bot_method_requires_token(monkeypatch) -> None:
    monkeypatch.delenv("BOT_API", raising=False)
    snapshot = snapshot_from_mapping(
        {"notifications": {"alerts_destination": "a", "output_destination": "o", "method": "bot"}}
    )
    with pytest.raises(ConfigError, match="BOT_API"):
        daemon.build_delivery(snapshot.notifications)


def test_log_method_builds_log_delivery() -> None:
    snapshot = snapshot_from_mapping(
        {"notifications": {"alerts_destination": "a", "output_destination": "o", "method": "log"}}
    )
    assert isinstance(daemon.build_delivery(snapshot.notifications), LogDelivery)


def test_background_task_failure_ends_the_run(tmp_path, monkeypatch) -> None:
    _write_config(tmp_path)
    paths = _paths(tmp_path)

    async def broken_prune(ledger, store, interval=3600.0):
        raise RuntimeError("prune loop crashed")

    monkeypatch.setattr(daemon, "prune_periodically", broken_prune)

    async def scenario():
        await asyncio.wait_for(
            daemon.run(paths, factories={"oneshot": OneShotCollector}, delivery=LogDelivery()), timeout=5
        )

    with pytest.raises(RuntimeError, match="prune loop crashed"):
        asyncio.run(scenario())
    health = read_health_file(paths.health)
    assert health is not None
