from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from core.config import snapshot_from_mapping
from core.config_store import ConfigStore
from core.errors import DeliveryError, DeliveryFailed, RoutingError
from core.health import HealthRegistry
from core.models import Channel, Event, Notification, Outcome
from core.notifier import Notifier

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeLedger:
    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.records: dict[tuple[str, bytes], datetime] = {}

    def has_recent(self, platform: str, dedup_key: bytes, window: timedelta) -> bool:
        delivered_at = self.records.get((platform, dedup_key))
        return delivered_at is not None and self._clock() - delivered_at <= window

    def record(self, platform: str, dedup_key: bytes, delivered_at: datetime) -> None:
        self.records[(platform, dedup_key)] = delivered_at


class FakeDelivery:
    def __init__(self) -> None:
        self.sent: list[tuple[str, Notification]] = []
        self.fail_with: Optional[str] = None

    async def deliver(self, destination_id: str, notification: Notification) -> None:
        if self.fail_with:
            raise DeliveryError(self.fail_with)
        self.sent.append((destination_id, notification))


def _store(**notifications) -> ConfigStore:
    section = {
        "alerts_destination": "alerts-chat",
        "output_destination": "output-chat",
        "throttled_classes": ["ping", "monitored_user"],
    }
    section.update(notifications)
    return ConfigStore(snapshot_from_mapping({"platforms": {}, "notifications": section}))


def _event(key: str, channel: Channel = Channel.ALERTS, **kwargs) -> Event:
    return Event(platform="telegram", dedup_key=key.encode(), channel=channel, text=f"text {key}", **kwargs)


def _notifier(store: Optional[ConfigStore] = None, health: Optional[HealthRegistry] = None):
    clock = FakeClock()
    ledger = FakeLedger(clock)
    delivery = FakeDelivery()
    notifier = Notifier(store or _store(), ledger, delivery, health=health, clock=clock)
    return notifier, clock, ledger, delivery


def test_dedup_and_throttle_sequence() -> None:
    notifier, clock, _, delivery = _notifier()

    async def scenario() -> list[Outcome]:
        outcomes = [await notifier.submit(_event("msg-1")), await notifier.submit(_event("msg-1"))]
        outcomes.append(await notifier.submit(_event("msg-2", event_class="ping", subject="userX")))
        clock.advance(minutes=2)
        outcomes.append(await notifier.submit(_event("msg-3", event_class="ping", subject="userX")))
        clock.advance(minutes=14)
        outcomes.append(await notifier.submit(_event("msg-4", event_class="ping", subject="userX")))
        return outcomes

    outcomes = asyncio.run(scenario())
    assert outcomes == [
        Outcome.DELIVERED,
        Outcome.SUPPRESSED,
        Outcome.DELIVERED,
        Outcome.SUPPRESSED,
        Outcome.DELIVERED,
    ]
    assert [destination for destination, _ in delivery.sent] == ["alerts-chat"] * 3


def test_throttle_is_per_subject() -> None:
    notifier, _, _, delivery = _notifier()

    async def scenario():
        await notifier.submit(_event("a", event_class="ping", subject="userX"))
        return await notifier.submit(_event("b", event_class="ping", subject="userY"))

    assert asyncio.run(scenario()) is Outcome.DELIVERED
    assert len(delivery.sent) == 2


def test_failed_delivery_leaves_event_eligible() -> None:
    health = HealthRegistry()
    notifier, _, ledger, delivery = _notifier(health=health)
    delivery.fail_with = "bot api down"

    async def scenario():
        with pytest.raises(DeliveryFailed) as excinfo:
            await notifier.submit(_event("msg-1", event_class="ping", subject="userX"))
        assert excinfo.value.destination == "alerts"
        delivery.fail_with = None
        return await notifier.submit(_event("msg-1", event_class="ping", subject="userX"))

    assert asyncio.run(scenario()) is Outcome.DELIVERED
    assert len(ledger.records) == 1
    record = health.destination_snapshot()["alerts"]
    assert record.consecutive_failures == 0
    assert record.last_success == START


def test_delivery_failures_are_counted_per_destination() -> None:
    health = HealthRegistry()
    notifier, _, _, delivery = _notifier(health=health)
    delivery.fail_with = "timeout"

    async def scenario():
        for key in ("a", "b"):
            with pytest.raises(DeliveryFailed):
                await notifier.submit(_event(key, channel=Channel.OUTPUT))

    asyncio.run(scenario())
    record = health.destination_snapshot()["output"]
    assert record.consecutive_failures == 2
    assert record.last_error == "timeout"
    assert "alerts" not in health.destination_snapshot()


def test_policy_routing_uses_routes_then_default() -> None:
    store = _store(routes={"monitored_user": "alerts"}, default_route="output")
    notifier, _, _, delivery = _notifier(store)

    async def scenario():
        await notifier.submit(_event("a", Channel.POLICY, event_class="monitored_user", subject="@alice"))
        await notifier.submit(_event("b", Channel.POLICY, event_class="mention"))

    asyncio.run(scenario())
    assert [destination for destination, _ in delivery.sent] == ["alerts-chat", "output-chat"]


def test_policy_without_route_is_a_routing_error() -> None:
    notifier, _, ledger, delivery = _notifier()

    with pytest.raises(RoutingError):
        asyncio.run(notifier.submit(_event("a", Channel.POLICY, event_class="mention")))
    assert not delivery.sent
    assert not ledger.records


def test_throttled_class_requires_subject() -> None:
    notifier, _, _, delivery = _notifier()

    with pytest.raises(RoutingError):
        asyncio.run(notifier.submit(_event("a", event_class="monitored_user")))
    assert not delivery.sent


def test_empty_dedup_key_is_rejected() -> None:
    notifier, _, _, _ = _notifier()
    event = Event(platform="telegram", dedup_key=b"", channel=Channel.ALERTS, text="x")

    with pytest.raises(RoutingError):
        asyncio.run(notifier.submit(event))


def test_config_reload_changes_destination_immediately() -> None:
    store = _store()
    notifier, _, _, delivery = _notifier(store)

    async def scenario():
        await notifier.submit(_event("a"))
        candidate = snapshot_from_mapping(
            {"notifications": {"alerts_destination": "new-alerts", "output_destination": "output-chat"}}
        )
        store.replace(candidate)
        await notifier.submit(_event("b"))

    asyncio.run(scenario())
    assert [destination for destination, _ in delivery.sent] == ["alerts-chat", "new-alerts"]


def test_text_is_trimmed_to_snippet_length() -> None:
    notifier, _, _, delivery = _notifier(_store(snippet_chars=5))
    asyncio.run(notifier.submit(_event("long-key")))
    assert delivery.sent[0][1].text == "text"


def test_slow_destination_does_not_block_the_other() -> None:
    class SlowAlerts(FakeDelivery):
        def __init__(self) -> None:
            super().__init__()
            self.gate: Optional[asyncio.Event] = None

        async def deliver(self, destination_id: str, notification: Notification) -> None:
            if destination_id == "alerts-chat":
                await self.gate.wait()
            await super().deliver(destination_id, notification)

    clock = FakeClock()
    delivery = SlowAlerts()
    notifier = Notifier(_store(), FakeLedger(clock), delivery, clock=clock)

    async def scenario():
        delivery.gate = asyncio.Event()
        slow = asyncio.create_task(notifier.submit(_event("a")))
        await asyncio.sleep(0)
        fast = await asyncio.wait_for(notifier.submit(_event("b", Channel.OUTPUT)), timeout=1)
        assert not slow.done()
        delivery.gate.set()
        return fast, await slow

    assert asyncio.run(scenario()) == (Outcome.DELIVERED, Outcome.DELIVERED)
    assert [destination for destination, _ in delivery.sent] == ["output-chat", "alerts-chat"]
