"""Telegram user-client delivery adapter.

Formats a human-readable Markdown message and sends it through the user's
own Telethon session. A destination of ``"me"`` is Saved Messages.
"""

from __future__ import annotations

from telethon import errors

from adapters.notification_formatting import format_notification
from core.errors import DeliveryError
from core.models import Notification


def _resolve_destination(destination_id: str):
    """Numeric ids are passed as ints so Telethon does not treat them as usernames."""

    try:
        return int(destination_id)
    except ValueError:
        return destination_id


class TelegramClientDelivery:
    """Delivery adapter that sends messages with a connected Telethon client."""

    def __init__(self, client) -> None:
        self._client = client

    async def deliver(self, destination_id: str, notification: Notification) -> None:
        """Send the formatted notification to ``destination_id``."""

        message = format_notification(notification, mode="markdown")
        try:
            if not self._client.is_connected():
                await self._client.connect()
            await self._client.send_message(
                _resolve_destination(destination_id),
                message,
                parse_mode="md",
                link_preview=False,
            )
        except (errors.RPCError, ConnectionError, ValueError) as exc:
            raise DeliveryError(f"Telegram client send failed: {exc}") from exc

    async def close(self) -> None:
        if self._client.is_connected():
            await self._client.disconnect()
