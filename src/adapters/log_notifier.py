"""Dry-run delivery adapter that writes notifications to the log."""

from __future__ import annotations

import logging

from adapters.notification_formatting import format_notification
from core.models import Notification

LOGGER = logging.getLogger(__name__)


class LogDelivery:
    """Delivery adapter for ``notifications.method = "log"``."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Notification]] = []

    async def deliver(self, destination_id: str, notification: Notification) -> None:
        self.sent.append((destination_id, notification))
        LOGGER.info("[dry-run -> %s] %s", destination_id, format_notification(notification, mode="plain"))
