"""Telegram private-message collector (platform ``telegram_dms``).

Two kinds of events come out of incoming private messages:

- a message containing the ping command produces a ``ping`` event for
  Alerts ("Ping from @user, Telegram");
- any message from a monitored user produces a ``monitored_user`` event
  routed by policy and throttled per sender.

``monitored_users`` and ``ping_command`` are hot-reloadable.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from telethon import events

from adapters.telethon_collector import TelethonCollector
from core.config import ConfigSnapshot, PlatformConfig
from core.dedup import make_dedup_key
from core.errors import LedgerError
from core.models import Channel, Event

LOGGER = logging.getLogger(__name__)

PLATFORM = "telegram_dms"
DEFAULT_PING_COMMAND = "/ping"


def _normalize_username(value: Any) -> str:
    return str(value).strip().lstrip("@").lower()


def monitored_users_from(section: PlatformConfig) -> frozenset:
    return frozenset(_normalize_username(user) for user in section.option("monitored_users", ()) if user)


def sender_label(sender) -> Optional[str]:
    """``@username`` when the sender has one, otherwise the display name."""

    username = getattr(sender, "username", None)
    if username:
        return f"@{username}"
    first = getattr(sender, "first_name", None) or ""
    last = getattr(sender, "last_name", None) or ""
    name = f"{first} {last}".strip()
    if name:
        return name
    sender_id = getattr(sender, "id", None)
    return f"id:{sender_id}" if sender_id is not None else None


def build_dm_events(
    platform: str,
    message,
    sender,
    ping_command: str,
    monitored_users: frozenset,
) -> list[Event]:
    """Map one private message to at most one event.

    A message containing the ping command is a ping even when it comes from a
    monitored user; it never produces a second, throttled notification.
    """

    text = getattr(message, "raw_text", None) or ""
    label = sender_label(sender)
    username = _normalize_username(getattr(sender, "username", None) or "")
    occurred_at = message.date
    produced: list[Event] = []

    if ping_command and ping_command in text:
        produced.append(
            Event(
                platform=platform,
                dedup_key=make_dedup_key("ping", message.chat_id, message.id),
                channel=Channel.ALERTS,
                text=f"Ping from {label or 'unknown sender'}, Telegram",
                occurred_at=occurred_at,
                event_class="ping",
                subject=label,
            )
        )
    elif username and username in monitored_users:
        produced.append(
            Event(
                platform=platform,
                dedup_key=make_dedup_key("dm", message.chat_id, message.id),
                channel=Channel.POLICY,
                text=text or "(no text)",
                occurred_at=occurred_at,
                event_class="monitored_user",
                subject=f"@{username}",
            )
        )
    return produced


class TelegramDMCollector(TelethonCollector):
    """Watches incoming private messages on the user's Telegram account."""

    supports_hot_reload = True

    def __init__(self, context, **kwargs) -> None:
        super().__init__(context, **kwargs)
        self._load_options(self.section)

    def _load_options(self, section: PlatformConfig) -> None:
        self.monitored_users = monitored_users_from(section)
        self.ping_command = str(section.option("ping_command", DEFAULT_PING_COMMAND))

    def apply_config(self, snapshot: ConfigSnapshot) -> None:
        super().apply_config(snapshot)
        self._load_options(self.section)
        LOGGER.info("Telegram DMs now monitoring %s user(s)", len(self.monitored_users))

    def register(self, client) -> None:
        client.add_event_handler(self.on_message, events.NewMessage(incoming=True))

    async def on_message(self, event) -> None:
        if not event.is_private:
            return
        try:
            sender = await event.get_sender()
            for produced in build_dm_events(
                self.platform, event.message, sender, self.ping_command, self.monitored_users
            ):
                await self.submit(produced)
        except LedgerError as exc:
            self.fail(exc)
