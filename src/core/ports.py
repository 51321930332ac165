"""Ports (interfaces) used by the core.

Ports define the minimal contracts for persistence and delivery adapters so
that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from core.models import Notification


class DedupLedgerPort(Protocol):
    """Durable record of delivered (platform, dedup key) pairs."""

    def has_recent(self, platform: str, dedup_key: bytes, window: timedelta) -> bool:
        ...

    def record(self, platform: str, dedup_key: bytes, delivered_at: datetime) -> None:
        ...


class DeliveryPort(Protocol):
    """Outbound transport. Raises ``DeliveryError`` on failure, returns None on success."""

    async def deliver(self, destination_id: str, notification: Notification) -> None:
        ...
