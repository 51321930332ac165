"""Telegram Bot API delivery adapter.

Uses the Bot API ``sendMessage`` method so Alerts and Output can be two
different chats or channels the bot is a member of.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request

from adapters.notification_formatting import format_notification
from core.errors import DeliveryError
from core.models import Notification

REQUEST_TIMEOUT_SECONDS = 10


class TelegramBotDelivery:
    """Delivery adapter that sends messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, timeout: float = REQUEST_TIMEOUT_SECONDS) -> None:
        if not bot_token:
            raise ValueError("bot_token is required for Bot API delivery")
        self._bot_token = bot_token
        self._timeout = timeout

    def _endpoint(self) -> str:
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    def _post(self, payload: dict) -> None:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout):
                pass
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise DeliveryError(f"Bot API error {e.code}: {body}") from e
        except (urllib.error.URLError, OSError) as e:
            raise DeliveryError(f"Bot API unreachable: {e}") from e

    async def deliver(self, destination_id: str, notification: Notification) -> None:
        """Send the formatted notification via the Bot API."""

        payload = {
            "chat_id": destination_id,
            "text": format_notification(notification, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        # urllib blocks; run it in a worker thread so other destinations keep flowing.
        await asyncio.to_thread(self._post, payload)
