"""Live configuration store.

Holds exactly one published ``ConfigSnapshot``. Replacement validates the
candidate first and swaps a single reference under a lock, so readers see
either the old or the new snapshot and never anything in between.

Subscribers are latest-wins: each subscription remembers the last version
it handed out, and ``next()`` returns whatever is current once that version
is outdated. Intermediate snapshots may be skipped; the newest never is.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from typing import Optional

from core.config import ConfigSnapshot
from core.errors import ConfigError

LOGGER = logging.getLogger(__name__)


class ConfigSubscription:
    """A reader that is woken once per successful replacement."""

    def __init__(self, store: "ConfigStore") -> None:
        self._store = store
        self._seen_version = store.current().version
        self._wakeup = asyncio.Event()

    def poll(self) -> Optional[ConfigSnapshot]:
        """Return the current snapshot if it is newer than the last one seen."""

        snapshot = self._store.current()
        if snapshot.version <= self._seen_version:
            return None
        self._seen_version = snapshot.version
        return snapshot

    async def next(self) -> ConfigSnapshot:
        """Wait for the next snapshot newer than the last one seen."""

        while True:
            snapshot = self.poll()
            if snapshot is not None:
                return snapshot
            self._wakeup.clear()
            await self._wakeup.wait()

    def _notify(self) -> None:
        self._wakeup.set()


class ConfigStore:
    """Single source of truth for configuration, observable without restart.

    ``replace`` is expected to run on the event loop thread (the file watcher
    does); ``current`` is safe from any thread.
    """

    def __init__(self, initial: ConfigSnapshot) -> None:
        initial.validate()
        self._lock = threading.Lock()
        self._snapshot = initial.with_version(1)
        self._subscriptions: "weakref.WeakSet[ConfigSubscription]" = weakref.WeakSet()

    def current(self) -> ConfigSnapshot:
        """Return the published snapshot (immutable, no locking needed by callers)."""

        return self._snapshot

    def replace(self, candidate: ConfigSnapshot) -> ConfigSnapshot:
        """Validate and publish ``candidate`` as the next version.

        An invalid candidate raises ``ConfigError`` and leaves the previous
        snapshot active; subscribers are not woken.
        """

        try:
            candidate.validate()
        except ConfigError:
            LOGGER.error("Rejected configuration candidate; keeping version %s", self._snapshot.version)
            raise

        with self._lock:
            published = candidate.with_version(self._snapshot.version + 1)
            self._snapshot = published
            subscribers = list(self._subscriptions)

        LOGGER.info("Configuration version %s published", published.version)
        for subscription in subscribers:
            subscription._notify()
        return published

    def subscribe(self) -> ConfigSubscription:
        """Create a subscription starting at the current version."""

        subscription = ConfigSubscription(self)
        self._subscriptions.add(subscription)
        return subscription
