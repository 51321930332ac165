"""Notification router.

This module is integration-agnostic. It only relies on ports for the dedup
ledger and outbound delivery. Every collector submits through one Notifier,
which enforces a strict order per event:

1) Validate the event and resolve its destination
2) Dedup ledger check for (platform, dedup key)
3) Throttle check for throttle-eligible classes
4) Deliver
5) On success only: record dedup + throttle state

Steps 2-5 run inside a per-destination lock, so decisions and delivery order
for one destination are linearizable while different destinations proceed
concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from core.config import NotificationConfig
from core.config_store import ConfigStore
from core.dedup import fingerprint
from core.errors import DeliveryError, DeliveryFailed, RoutingError
from core.health import HealthRegistry
from core.models import Channel, Destination, DestinationHealth, Event, Notification, Outcome, utcnow
from core.ports import DedupLedgerPort, DeliveryPort
from core.throttle import ThrottleState

LOGGER = logging.getLogger(__name__)


class Notifier:
    """Deduplicates, throttles and routes events to Alerts or Output."""

    def __init__(
        self,
        config_store: ConfigStore,
        ledger: DedupLedgerPort,
        delivery: DeliveryPort,
        health: Optional[HealthRegistry] = None,
        throttle: Optional[ThrottleState] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config_store = config_store
        self._ledger = ledger
        self._delivery = delivery
        self._health = health
        self._throttle = throttle if throttle is not None else ThrottleState()
        self._clock = clock
        self._locks = {destination: asyncio.Lock() for destination in Destination}

    @property
    def throttle(self) -> ThrottleState:
        return self._throttle

    def resolve(self, event: Event, routing: NotificationConfig) -> Destination:
        """Map the event's channel hint to a destination or raise ``RoutingError``."""

        if not event.platform:
            raise RoutingError("Event has no platform")
        if not isinstance(event.dedup_key, bytes) or not event.dedup_key:
            raise RoutingError(f"Event from {event.platform} has an empty or non-bytes dedup key")

        if event.channel is Channel.ALERTS:
            return Destination.ALERTS
        if event.channel is Channel.OUTPUT:
            return Destination.OUTPUT
        if event.channel is Channel.POLICY:
            destination = routing.route_for(event.event_class)
            if destination is None:
                raise RoutingError(
                    f"No route for class {event.event_class!r} from {event.platform} and no default_route"
                )
            return destination
        raise RoutingError(f"Unknown channel hint {event.channel!r} from {event.platform}")

    async def submit(self, event: Event) -> Outcome:
        """Route one event. Returns DELIVERED or SUPPRESSED.

        Raises ``RoutingError`` for events that cannot be routed and
        ``DeliveryFailed`` when the transport failed; in the latter case no
        dedup or throttle state is written, so a later retry can succeed.
        """

        routing = self._config_store.current().notifications
        destination = self.resolve(event, routing)

        window = routing.throttle_window_for(event.event_class)
        throttle_key = None
        if window is not None:
            if not event.subject:
                raise RoutingError(
                    f"Throttled class {event.event_class!r} from {event.platform} requires a subject"
                )
            throttle_key = (event.subject, event.event_class)

        key_id = fingerprint(event.platform, event.dedup_key)
        async with self._locks[destination]:
            if self._ledger.has_recent(event.platform, event.dedup_key, routing.dedup_retention):
                LOGGER.debug("Dedup skip for %s (%s)", event.platform, key_id)
                return Outcome.SUPPRESSED

            if throttle_key is not None and self._throttle.is_throttled(throttle_key, self._clock(), window):
                LOGGER.info(
                    "Throttled %s notification for %s from %s",
                    event.event_class,
                    event.subject,
                    event.platform,
                )
                return Outcome.SUPPRESSED

            notification = Notification.from_event(event, routing.snippet_chars)
            destination_id = routing.destination_id(destination)
            try:
                await self._delivery.deliver(destination_id, notification)
            except DeliveryError as exc:
                self._report_delivery(destination, error=str(exc))
                LOGGER.warning(
                    "Delivery to %s failed for %s (%s): %s", destination.value, event.platform, key_id, exc
                )
                raise DeliveryFailed(destination.value, str(exc)) from exc

            delivered_at = self._clock()
            # Record only after a confirmed delivery.
            self._ledger.record(event.platform, event.dedup_key, delivered_at)
            if throttle_key is not None:
                self._throttle.mark(throttle_key, delivered_at)
            self._report_delivery(destination, error=None)

        LOGGER.info(
            "Delivered %s event from %s to %s (%s)",
            event.event_class or "plain",
            event.platform,
            destination.value,
            key_id,
        )
        return Outcome.DELIVERED

    def _report_delivery(self, destination: Destination, error: Optional[str]) -> None:
        if self._health is None:
            return
        now = self._clock()
        previous = self._health.destination_snapshot().get(destination.value)
        if error is None:
            record = DestinationHealth(updated_at=now, last_success=now)
        else:
            record = DestinationHealth(
                updated_at=now,
                last_success=previous.last_success if previous else None,
                last_error=error,
                consecutive_failures=(previous.consecutive_failures if previous else 0) + 1,
            )
        self._health.report_destination(destination.value, record)
