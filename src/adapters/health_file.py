"""Health snapshot file shared between the daemon and the ``health`` command.

The daemon owns the in-memory HealthRegistry; the health command runs in a
separate process, so the daemon periodically dumps a snapshot to JSON.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from adapters.config_file import write_json_atomic
from core.health import HealthRegistry
from core.models import DestinationHealth, HealthRecord

LOGGER = logging.getLogger(__name__)

DEFAULT_WRITE_INTERVAL_SECONDS = 15.0


@dataclass(frozen=True)
class HealthFile:
    """Parsed contents of the health file."""

    written_at: datetime
    config_version: Optional[int] = None
    platforms: dict[str, HealthRecord] = field(default_factory=dict)
    destinations: dict[str, DestinationHealth] = field(default_factory=dict)


def health_payload(registry: HealthRegistry, config_version: Optional[int] = None) -> dict:
    return {
        "written_at": datetime.now(timezone.utc).isoformat(),
        "config_version": config_version,
        "platforms": {name: record.to_dict() for name, record in sorted(registry.snapshot().items())},
        "destinations": {
            name: record.to_dict() for name, record in sorted(registry.destination_snapshot().items())
        },
    }


def write_health_file(path: str, registry: HealthRegistry, config_version: Optional[int] = None) -> None:
    """Atomically write the current registry snapshot to ``path``."""

    write_json_atomic(path, health_payload(registry, config_version))


def read_health_file(path: str) -> Optional[HealthFile]:
    """Return the parsed health file, or ``None`` when the daemon never wrote one."""

    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as handle:
        raw = json.load(handle)
    return HealthFile(
        written_at=datetime.fromisoformat(raw["written_at"]),
        config_version=raw.get("config_version"),
        platforms={name: HealthRecord.from_dict(data) for name, data in raw.get("platforms", {}).items()},
        destinations={
            name: DestinationHealth.from_dict(data) for name, data in raw.get("destinations", {}).items()
        },
    )


async def write_periodically(
    path: str,
    registry: HealthRegistry,
    version_source=None,
    interval: float = DEFAULT_WRITE_INTERVAL_SECONDS,
) -> None:
    """Dump the registry every ``interval`` seconds until cancelled."""

    while True:
        version = version_source() if version_source is not None else None
        try:
            write_health_file(path, registry, version)
        except OSError:
            LOGGER.exception("Failed to write health file %s", path)
        await asyncio.sleep(interval)
