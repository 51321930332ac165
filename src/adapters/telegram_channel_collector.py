"""Telegram channel collector (platform ``telegram_channels``).

- ``poll_channels``: messages carrying media (including polls) are forwarded
  to Output.
- ``info_channels``: messages matching at least one keyword/regex rule are
  forwarded to Output together with the match reason.

Channel lists and rules are compiled at construction; the Supervisor
restarts this collector when its section changes.
"""

from __future__ import annotations

import logging
from typing import Optional

from telethon import events

from adapters.rules_engine import Rule, build_rules, match_rules
from adapters.telegram_mapper import MessageInfo, expand_channel_keys, message_info
from adapters.telethon_collector import TelethonCollector
from core.dedup import make_dedup_key
from core.errors import LedgerError
from core.models import Channel, Event, utcnow

LOGGER = logging.getLogger(__name__)

PLATFORM = "telegram_channels"


def _matches(info: MessageInfo, keys: frozenset) -> bool:
    return info.channel_key in keys or info.base_channel_key in keys


def build_channel_event(
    platform: str,
    info: MessageInfo,
    poll_channels: frozenset,
    info_channels: frozenset,
    rules: list[Rule],
) -> Optional[Event]:
    """Return the Output event for a channel message, or ``None`` to ignore it."""

    dedup_key = make_dedup_key("channel", info.chat_id, info.message_id)
    if _matches(info, poll_channels) and info.has_media:
        return Event(
            platform=platform,
            dedup_key=dedup_key,
            channel=Channel.OUTPUT,
            text=f"New post in {info.title}\n{info.text}".strip(),
            link=info.permalink,
            occurred_at=info.date or utcnow(),
            event_class="channel_media",
            subject=info.title,
        )

    if _matches(info, info_channels) and info.text:
        hits = match_rules(info.text, rules)
        if not hits:
            return None
        reasons = "\n".join(f"{hit.rule_name}: {hit.reason}" for hit in hits)
        return Event(
            platform=platform,
            dedup_key=dedup_key,
            channel=Channel.OUTPUT,
            text=f"{info.title}\n{info.text}\n\nMatched {reasons}",
            link=info.permalink,
            occurred_at=info.date or utcnow(),
            event_class="channel_match",
            subject=info.title,
        )
    return None


class TelegramChannelCollector(TelethonCollector):
    """Forwards media posts and rule matches from watched channels."""

    def __init__(self, context, **kwargs) -> None:
        super().__init__(context, **kwargs)
        self.poll_channels = expand_channel_keys(self.section.option("poll_channels", ()))
        self.info_channels = expand_channel_keys(self.section.option("info_channels", ()))
        self.rules = build_rules(self.section.option("rules", ()))
        LOGGER.info(
            "Watching %s poll channel key(s) and %s info channel key(s) with %s rule(s)",
            len(self.poll_channels),
            len(self.info_channels),
            len(self.rules),
        )

    def register(self, client) -> None:
        client.add_event_handler(self.on_message, events.NewMessage())

    def event_for(self, message) -> Optional[Event]:
        return build_channel_event(
            self.platform, message_info(message), self.poll_channels, self.info_channels, self.rules
        )

    async def on_message(self, event) -> None:
        if event.is_private:
            return
        produced = self.event_for(event.message)
        if produced is None:
            return
        try:
            await self.submit(produced)
        except LedgerError as exc:
            self.fail(exc)
