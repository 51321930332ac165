"""Collector contract.

A collector watches one external platform and turns what it sees into
``Event`` objects submitted to the Notifier. The Supervisor constructs it
from a ``CollectorContext`` and awaits ``run()``:

- returning after the cancellation event is set is a deliberate stop;
- raising (or returning on its own) is a failure that triggers backoff.

Collectors that can take new configuration in place set
``supports_hot_reload = True`` and implement ``apply_config``; all others are
restarted when their platform section changes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from core.config import ConfigSnapshot, PlatformConfig
from core.errors import DeliveryFailed, RoutingError
from core.models import Event, Outcome

LOGGER = logging.getLogger(__name__)


class Collector(Protocol):
    supports_hot_reload: bool

    async def run(self) -> None:
        ...

    def apply_config(self, snapshot: ConfigSnapshot) -> None:
        ...


class SubmitHandle:
    """Per-platform handle to ``Notifier.submit`` owned by the Supervisor.

    Successful submissions (delivered or suppressed) count as liveness for
    the platform's health record.
    """

    def __init__(self, notifier: Any, platform: str, on_alive: Callable[[str], None]) -> None:
        self._notifier = notifier
        self._platform = platform
        self._on_alive = on_alive

    @property
    def platform(self) -> str:
        return self._platform

    async def submit(self, event: Event) -> Outcome:
        if event.platform != self._platform:
            raise RoutingError(f"Collector {self._platform} submitted an event for {event.platform}")
        outcome = await self._notifier.submit(event)
        self._on_alive(self._platform)
        return outcome

    def heartbeat(self) -> None:
        """Report liveness without submitting an event."""

        self._on_alive(self._platform)


@dataclass(frozen=True)
class CollectorContext:
    """Everything a collector receives at construction."""

    platform: str
    snapshot: ConfigSnapshot
    notifier: SubmitHandle
    cancelled: asyncio.Event

    @property
    def section(self) -> PlatformConfig:
        return self.snapshot.platform(self.platform)


@dataclass(frozen=True)
class CollectorOutcome:
    """How a collector run ended."""

    deliberate: bool
    error: Optional[str] = None

    @classmethod
    def stopped(cls) -> "CollectorOutcome":
        return cls(deliberate=True)

    @classmethod
    def failed(cls, error: BaseException) -> "CollectorOutcome":
        description = str(error) or type(error).__name__
        return cls(deliberate=False, error=f"{type(error).__name__}: {description}")


CollectorFactory = Callable[[CollectorContext], Collector]


class BaseCollector:
    """Convenience base with the submit policy shared by shipped collectors."""

    supports_hot_reload = False

    def __init__(self, context: CollectorContext) -> None:
        self.context = context
        self.platform = context.platform
        self.section = context.section

    async def run(self) -> None:
        raise NotImplementedError

    def apply_config(self, snapshot: ConfigSnapshot) -> None:
        self.section = snapshot.platform(self.platform)

    @property
    def cancelled(self) -> bool:
        return self.context.cancelled.is_set()

    async def wait_cancelled(self) -> None:
        await self.context.cancelled.wait()

    async def submit(self, event: Event) -> Optional[Outcome]:
        """Submit an event; routing and delivery failures do not stop the collector.

        Routing errors are contract violations: they are logged loudly and
        the event is dropped. Delivery failures leave the event eligible, so
        the same occurrence may be submitted again later.
        """

        try:
            return await self.context.notifier.submit(event)
        except RoutingError:
            LOGGER.exception("Dropping unroutable event from %s", self.platform)
        except DeliveryFailed as exc:
            LOGGER.warning("Event from %s not delivered: %s", self.platform, exc)
        return None
