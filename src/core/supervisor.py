"""Collector supervisor.

Runs one task per enabled platform and keeps it alive. Each platform has a
``CollectorHandle`` driven through an explicit state machine:

    STARTING -> RUNNING -> (error) BACKOFF -> STARTING -> ...
    RUNNING -> STOPPING -> STOPPED   (shutdown or platform disabled)

Every exception raised by a collector is caught at the task boundary and
turned into a backoff decision; one collector crashing never affects the
others. Only violations of the Supervisor's own invariants escape ``run()``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Awaitable, Callable, Mapping, Optional

from core.collector import Collector, CollectorContext, CollectorFactory, CollectorOutcome, SubmitHandle
from core.config import ConfigSnapshot
from core.config_store import ConfigStore
from core.errors import CollectorError, FatalError
from core.health import HealthRegistry
from core.models import CollectorState, HealthRecord, utcnow

LOGGER = logging.getLogger(__name__)

_ACTIVE_STATES = (CollectorState.STARTING, CollectorState.RUNNING, CollectorState.STOPPING)


@dataclass
class CollectorHandle:
    """Supervisor-owned record for one platform."""

    platform: str
    state: CollectorState = CollectorState.STOPPED
    last_started: Optional[float] = None
    consecutive_failures: int = 0
    restart_count: int = 0
    last_delay: float = 0.0
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    collector: Optional[Collector] = None


class Supervisor:
    """Starts, restarts and stops collectors according to the live config."""

    def __init__(
        self,
        config_store: ConfigStore,
        notifier,
        health: HealthRegistry,
        factories: Mapping[str, CollectorFactory],
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = config_store
        self._notifier = notifier
        self._health = health
        self._factories = dict(factories)
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._rng = rng
        self._snapshot = config_store.current()
        self._handles: dict[str, CollectorHandle] = {}
        self._closing = False

    @property
    def handles(self) -> Mapping[str, CollectorHandle]:
        return MappingProxyType(self._handles)

    def handle(self, platform: str) -> Optional[CollectorHandle]:
        return self._handles.get(platform)

    def _grace_period(self) -> float:
        return self._store.current().supervisor.grace_period

    async def run(self) -> None:
        """Start enabled collectors and follow configuration changes until cancelled."""

        subscription = self._store.subscribe()
        self._snapshot = self._store.current()
        enabled = sorted(self._snapshot.enabled_platforms())
        LOGGER.info("Supervisor starting %s collector(s): %s", len(enabled), ", ".join(enabled) or "-")
        for platform in enabled:
            await self.start(platform)
        try:
            while True:
                snapshot = await subscription.next()
                await self.on_config_changed(snapshot)
        finally:
            await self.shutdown()

    async def start(self, platform: str) -> None:
        """Construct the platform's collector with the current snapshot and run it."""

        if self._closing:
            return
        handle = self._handles.get(platform)
        if handle is None:
            handle = CollectorHandle(platform=platform)
            self._handles[platform] = handle
        if handle.state in _ACTIVE_STATES:
            LOGGER.debug("Collector %s already %s", platform, handle.state.value)
            return
        if handle.state is CollectorState.BACKOFF and handle.task is not asyncio.current_task():
            # Explicit start while waiting out a backoff: skip the remaining delay.
            if handle.task is not None:
                handle.task.cancel()

        snapshot = self._store.current()
        factory = self._factories.get(platform)
        if factory is None:
            LOGGER.error("No collector registered for platform %s", platform)
            handle.state = CollectorState.STOPPED
            handle.last_error = "no collector registered for this platform"
            self._report(handle)
            return
        if platform not in snapshot.platforms:
            LOGGER.error("Platform %s has no configuration section", platform)
            handle.state = CollectorState.STOPPED
            handle.last_error = "platform missing from configuration"
            self._report(handle)
            return

        handle.state = CollectorState.STARTING
        handle.cancel = asyncio.Event()
        handle.last_started = self._clock()
        handle.task = None
        self._report(handle)

        context = CollectorContext(
            platform=platform,
            snapshot=snapshot,
            notifier=SubmitHandle(self._notifier, platform, self._mark_alive),
            cancelled=handle.cancel,
        )
        try:
            collector = factory(context)
        except Exception as exc:
            LOGGER.exception("Failed to construct collector for %s", platform)
            self.on_collector_exit(platform, CollectorOutcome.failed(exc))
            return

        handle.collector = collector
        handle.state = CollectorState.RUNNING
        handle.task = asyncio.create_task(
            self._run_collector(handle, collector), name=f"collector:{platform}"
        )
        self._report(handle)
        LOGGER.info("Collector %s running (restarts so far: %s)", platform, handle.restart_count)

    async def _run_collector(self, handle: CollectorHandle, collector: Collector) -> None:
        try:
            await collector.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not handle.cancel.is_set():
                LOGGER.error(
                    "Collector %s crashed (attempt %s)",
                    handle.platform,
                    handle.consecutive_failures + 1,
                    exc_info=True,
                )
            outcome = CollectorOutcome.failed(exc)
        else:
            if handle.cancel.is_set():
                outcome = CollectorOutcome.stopped()
            else:
                outcome = CollectorOutcome.failed(CollectorError("collector returned without being stopped"))

        if handle.task is not asyncio.current_task():
            return
        self.on_collector_exit(handle.platform, outcome)

    def on_collector_exit(self, platform: str, outcome: CollectorOutcome) -> Optional[float]:
        """Record how a run ended; schedule a restart after backoff on failure.

        Returns the backoff delay, or ``None`` for a deliberate stop.
        """

        handle = self._handles[platform]
        handle.collector = None
        if outcome.deliberate or handle.cancel.is_set() or self._closing:
            handle.state = CollectorState.STOPPED
            handle.task = None
            self._report(handle)
            LOGGER.info("Collector %s stopped", platform)
            return None

        policy = self._store.current().supervisor.backoff_policy()
        if handle.last_started is not None and policy.should_reset(self._clock() - handle.last_started):
            handle.consecutive_failures = 0
            handle.last_delay = 0.0

        handle.consecutive_failures += 1
        handle.restart_count += 1
        handle.last_error = outcome.error
        delay = policy.next_delay(handle.consecutive_failures, handle.last_delay, self._rng)
        handle.last_delay = delay
        handle.state = CollectorState.BACKOFF
        self._report(handle)
        LOGGER.warning(
            "Collector %s failed (attempt %s): %s. Restarting in %.1fs",
            platform,
            handle.consecutive_failures,
            outcome.error,
            delay,
        )
        handle.task = asyncio.create_task(self._restart_later(handle, delay), name=f"backoff:{platform}")
        return delay

    async def _restart_later(self, handle: CollectorHandle, delay: float) -> None:
        await self._sleep(delay)
        if handle.state is CollectorState.BACKOFF and not self._closing:
            await self.start(handle.platform)

    async def stop(self, platform: str) -> None:
        """Signal cancellation, wait up to the grace period, then force termination."""

        handle = self._handles.get(platform)
        if handle is None or handle.state is CollectorState.STOPPED:
            return
        previous = handle.state
        handle.state = CollectorState.STOPPING
        handle.cancel.set()
        self._report(handle)

        grace = self._grace_period()
        task = handle.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            if previous is CollectorState.BACKOFF:
                task.cancel()
                await asyncio.wait({task}, timeout=grace)
            else:
                done, _ = await asyncio.wait({task}, timeout=grace)
                if not done:
                    LOGGER.error(
                        "Collector %s did not stop within %.1fs; forcing termination", platform, grace
                    )
                    task.cancel()
                    done, _ = await asyncio.wait({task}, timeout=grace)
                    if not done:
                        LOGGER.error("Collector %s ignored forced termination; abandoning its task", platform)

        handle.state = CollectorState.STOPPED
        handle.task = None
        handle.collector = None
        self._report(handle)
        LOGGER.info("Collector %s stopped", platform)

    async def restart(self, platform: str) -> None:
        await self.stop(platform)
        await self.start(platform)

    async def on_config_changed(self, snapshot: ConfigSnapshot) -> None:
        """Apply a newly published snapshot to the running collectors."""

        previous = self._snapshot
        if snapshot.version <= previous.version:
            raise FatalError(
                f"Configuration store published version {snapshot.version} after {previous.version}"
            )
        self._snapshot = snapshot

        old_enabled = previous.enabled_platforms()
        new_enabled = snapshot.enabled_platforms()
        disabled = sorted(old_enabled - new_enabled)
        enabled = sorted(new_enabled - old_enabled)
        if disabled or enabled:
            LOGGER.info(
                "Config v%s: disabling [%s], enabling [%s]",
                snapshot.version,
                ", ".join(disabled),
                ", ".join(enabled),
            )

        await asyncio.gather(*(self.stop(platform) for platform in disabled))
        for platform in enabled:
            await self.start(platform)

        for platform in sorted(old_enabled & new_enabled):
            handle = self._handles.get(platform)
            if handle is None or handle.state is CollectorState.STOPPED:
                await self.start(platform)
                continue
            if handle.state is not CollectorState.RUNNING:
                # Backoff restarts construct from the store's current snapshot.
                continue
            collector = handle.collector
            if getattr(collector, "supports_hot_reload", False):
                try:
                    collector.apply_config(snapshot)
                except Exception:
                    LOGGER.exception(
                        "Collector %s rejected configuration v%s; restarting", platform, snapshot.version
                    )
                    await self.restart(platform)
                else:
                    LOGGER.debug("Collector %s reloaded configuration v%s", platform, snapshot.version)
            elif previous.platforms.get(platform) != snapshot.platforms.get(platform):
                LOGGER.info("Restarting %s for configuration v%s", platform, snapshot.version)
                await self.restart(platform)

    async def shutdown(self) -> None:
        """Stop every collector with the grace period; best effort, never raises."""

        self._closing = True
        active = [
            platform
            for platform, handle in self._handles.items()
            if handle.state is not CollectorState.STOPPED
        ]
        if active:
            LOGGER.info("Stopping %s collector(s)", len(active))
        await asyncio.gather(*(self.stop(platform) for platform in active))

    def _mark_alive(self, platform: str) -> None:
        handle = self._handles.get(platform)
        if handle is None:
            return
        handle.last_success = self._wall_clock()
        policy = self._store.current().supervisor.backoff_policy()
        if (
            handle.consecutive_failures
            and handle.state is CollectorState.RUNNING
            and handle.last_started is not None
            and policy.should_reset(self._clock() - handle.last_started)
        ):
            handle.consecutive_failures = 0
            handle.last_delay = 0.0
        self._report(handle)

    def _report(self, handle: CollectorHandle) -> None:
        self._health.report(
            handle.platform,
            HealthRecord(
                state=handle.state,
                updated_at=self._wall_clock(),
                last_success=handle.last_success,
                last_error=handle.last_error,
                restart_count=handle.restart_count,
                consecutive_failures=handle.consecutive_failures,
            ),
        )
