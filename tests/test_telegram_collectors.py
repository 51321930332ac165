from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from adapters.telegram_channel_collector import TelegramChannelCollector, build_channel_event
from adapters.telegram_dm_collector import TelegramDMCollector, build_dm_events
from adapters.telegram_mapper import MessageInfo, expand_channel_keys
from adapters.rules_engine import build_rules
from core.collector import CollectorContext, SubmitHandle
from core.config import snapshot_from_mapping
from core.errors import CollectorError, LedgerError
from core.models import Channel, Outcome

DATE = datetime(2024, 1, 1, tzinfo=timezone.utc)
NO_CHANNELS: frozenset = frozenset()
PLATFORM = "telegram_channels"


class DummySender:
    def __init__(self, username=None, first_name=None, user_id=1) -> None:
        self.username = username
        self.first_name = first_name
        self.last_name = None
        self.id = user_id


class DummyMessage:
    def __init__(self, text: str, chat_id: int = 42, message_id: int = 7) -> None:
        self.raw_text = text
        self.chat_id = chat_id
        self.id = message_id
        self.date = DATE


class FakeNotifier:
    def __init__(self, fail_with: "Exception | None" = None) -> None:
        self.submitted = []
        self.fail_with = fail_with

    async def submit(self, event):
        if self.fail_with is not None:
            raise self.fail_with
        self.submitted.append(event)
        return Outcome.DELIVERED


class FakeClient:
    def __init__(self, authorized: bool = True) -> None:
        self.authorized = authorized
        self.handlers = []
        self.connected = False
        self.disconnected = asyncio.Event()

    async def connect(self) -> None:
        self.connected = True

    async def is_user_authorized(self) -> bool:
        return self.authorized

    def is_connected(self) -> bool:
        return self.connected

    async def disconnect(self) -> None:
        self.connected = False

    def add_event_handler(self, callback, event_builder) -> None:
        self.handlers.append(callback)

    async def run_until_disconnected(self) -> None:
        await self.disconnected.wait()


class FakeEvent:
    def __init__(self, message, sender, is_private: bool = True) -> None:
        self.message = message
        self._sender = sender
        self.is_private = is_private

    async def get_sender(self):
        return self._sender


def _context(platform: str, options: dict, notifier: FakeNotifier) -> CollectorContext:
    snapshot = snapshot_from_mapping(
        {
            "platforms": {platform: {"enabled": True, "options": options}},
            "notifications": {"alerts_destination": "a", "output_destination": "o"},
        }
    )
    return CollectorContext(
        platform=platform,
        snapshot=snapshot,
        notifier=SubmitHandle(notifier, platform, lambda _platform: None),
        cancelled=asyncio.Event(),
    )


def test_ping_goes_to_alerts() -> None:
    events = build_dm_events(
        "telegram_dms", DummyMessage("hey /ping"), DummySender("bob"), "/ping", frozenset()
    )
    assert len(events) == 1
    assert events[0].channel is Channel.ALERTS
    assert events[0].text == "Ping from @bob, Telegram"
    assert events[0].event_class == "ping"


def test_monitored_user_is_policy_routed_with_subject() -> None:
    events = build_dm_events(
        "telegram_dms", DummyMessage("hello"), DummySender("Alice"), "/ping", frozenset({"alice"})
    )
    assert len(events) == 1
    assert events[0].channel is Channel.POLICY
    assert events[0].subject == "@alice"
    assert events[0].event_class == "monitored_user"


def test_ping_from_monitored_user_notifies_once() -> None:
    events = build_dm_events(
        "telegram_dms", DummyMessage("/ping hi"), DummySender("alice"), "/ping", frozenset({"alice"})
    )
    assert len(events) == 1
    assert events[0].event_class == "ping"
    assert events[0].channel is Channel.ALERTS


def test_ping_command_matches_inside_words() -> None:
    events = build_dm_events(
        "telegram_dms", DummyMessage("/ping!"), DummySender("bob"), "/ping", frozenset()
    )
    assert [event.event_class for event in events] == ["ping"]


def test_dm_dedup_key_is_stable_across_restarts() -> None:
    first = build_dm_events("telegram_dms", DummyMessage("/ping"), DummySender("bob"), "/ping", frozenset())
    second = build_dm_events("telegram_dms", DummyMessage("/ping"), DummySender("bob"), "/ping", frozenset())
    assert first[0].dedup_key == second[0].dedup_key


def test_unrelated_dm_produces_nothing() -> None:
    assert build_dm_events("telegram_dms", DummyMessage("hi"), DummySender("eve"), "/ping", frozenset()) == []


def test_dm_collector_hot_reloads_monitored_users() -> None:
    notifier = FakeNotifier()
    context = _context("telegram_dms", {"monitored_users": ["@alice"]}, notifier)
    collector = TelegramDMCollector(context, client_factory=lambda _session: FakeClient())
    assert collector.monitored_users == frozenset({"alice"})

    updated = snapshot_from_mapping(
        {
            "platforms": {"telegram_dms": {"enabled": True, "options": {"monitored_users": ["bob"]}}},
            "notifications": {"alerts_destination": "a", "output_destination": "o"},
        }
    )
    collector.apply_config(updated)
    assert collector.monitored_users == frozenset({"bob"})


def test_dm_collector_stops_when_cancelled() -> None:
    notifier = FakeNotifier()
    context = _context("telegram_dms", {"monitored_users": ["alice"]}, notifier)
    client = FakeClient()
    collector = TelegramDMCollector(context, client_factory=lambda _session: client)

    async def scenario():
        runner = asyncio.create_task(collector.run())
        for _ in range(10):
            await asyncio.sleep(0)
        handler = client.handlers[0]
        await handler(FakeEvent(DummyMessage("hi"), DummySender("alice")))
        await handler(FakeEvent(DummyMessage("hi", message_id=8), DummySender("alice"), is_private=False))
        context.cancelled.set()
        await asyncio.wait_for(runner, timeout=1)

    asyncio.run(scenario())
    assert len(notifier.submitted) == 1
    assert not client.connected


def test_unauthorized_session_fails_the_run() -> None:
    context = _context("telegram_dms", {}, FakeNotifier())
    collector = TelegramDMCollector(context, client_factory=lambda _session: FakeClient(authorized=False))

    with pytest.raises(CollectorError, match="not authorized"):
        asyncio.run(collector.run())


def test_disconnect_fails_the_run() -> None:
    context = _context("telegram_dms", {}, FakeNotifier())
    client = FakeClient()
    collector = TelegramDMCollector(context, client_factory=lambda _session: client)

    async def scenario():
        runner = asyncio.create_task(collector.run())
        await asyncio.sleep(0)
        client.disconnected.set()
        await runner

    with pytest.raises(CollectorError, match="disconnected"):
        asyncio.run(scenario())


def test_ledger_failure_in_a_handler_crashes_the_run() -> None:
    context = _context("telegram_dms", {}, FakeNotifier(fail_with=LedgerError("disk full")))
    client = FakeClient()
    collector = TelegramDMCollector(context, client_factory=lambda _session: client)

    async def scenario():
        runner = asyncio.create_task(collector.run())
        for _ in range(10):
            await asyncio.sleep(0)
        await client.handlers[0](FakeEvent(DummyMessage("/ping"), DummySender("bob")))
        await runner

    with pytest.raises(LedgerError):
        asyncio.run(scenario())


def _info(key: str, text: str = "", has_media: bool = False) -> MessageInfo:
    return MessageInfo(
        channel_key=key,
        base_channel_key=key,
        topic_id=None,
        chat_id=-100123,
        message_id=5,
        date=DATE,
        text=text,
        title="News",
        permalink="https://t.me/news/5",
        has_media=has_media,
    )


def test_poll_channel_media_goes_to_output() -> None:
    event = build_channel_event(
        "telegram_channels", _info("@news", "vote!", has_media=True), frozenset({"@news"}), frozenset(), []
    )
    assert event is not None
    assert event.channel is Channel.OUTPUT
    assert event.link == "https://t.me/news/5"


def test_poll_channel_text_only_is_ignored() -> None:
    event = build_channel_event(
        "telegram_channels", _info("@news", "just text"), frozenset({"@news"}), frozenset(), []
    )
    assert event is None


def test_info_channel_requires_a_rule_match() -> None:
    rules = build_rules([{"name": "jobs", "keywords": ["hiring"]}])
    keys = expand_channel_keys(["chat_id:-100123"])

    hit = build_channel_event(PLATFORM, _info("chat_id:123", "We are hiring"), NO_CHANNELS, keys, rules)
    miss = build_channel_event(PLATFORM, _info("chat_id:123", "Nothing here"), NO_CHANNELS, keys, rules)

    assert hit is not None and "jobs: keyword(s): hiring" in hit.text
    assert miss is None


def test_channel_collector_is_not_hot_reloadable() -> None:
    context = _context(
        "telegram_channels",
        {"poll_channels": ["@News"], "info_channels": [], "rules": [{"name": "r", "keywords": ["x"]}]},
        FakeNotifier(),
    )
    collector = TelegramChannelCollector(context, client_factory=lambda _session: FakeClient())
    assert not collector.supports_hot_reload
    assert collector.poll_channels == frozenset({"@news"})
    assert len(collector.rules) == 1
