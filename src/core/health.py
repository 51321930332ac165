"""Process-wide health registry.

Writers build a new dict and swap the reference under a lock; readers take
the current reference without locking. A snapshot is therefore a consistent
point-in-time copy and reading never blocks a writer.
"""

from __future__ import annotations

import threading
from types import MappingProxyType
from typing import Mapping

from core.models import DestinationHealth, HealthRecord


class HealthRegistry:
    """Per-platform collector health plus per-destination delivery health.

    Platform records are written by the Supervisor only. Destination records
    are written by the Notifier.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._platforms: Mapping[str, HealthRecord] = MappingProxyType({})
        self._destinations: Mapping[str, DestinationHealth] = MappingProxyType({})

    def report(self, platform: str, record: HealthRecord) -> None:
        """Overwrite the record for ``platform``."""

        with self._write_lock:
            updated = dict(self._platforms)
            updated[platform] = record
            self._platforms = MappingProxyType(updated)

    def snapshot(self) -> Mapping[str, HealthRecord]:
        """Point-in-time mapping of platform -> HealthRecord."""

        return self._platforms

    def report_destination(self, destination: str, record: DestinationHealth) -> None:
        with self._write_lock:
            updated = dict(self._destinations)
            updated[destination] = record
            self._destinations = MappingProxyType(updated)

    def destination_snapshot(self) -> Mapping[str, DestinationHealth]:
        return self._destinations
