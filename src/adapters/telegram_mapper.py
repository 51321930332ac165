"""Telethon message helpers.

This keeps Telethon-specific details (peers, forum topics, permalinks) out
of the collectors. Channels are identified by a *channel key*:

- ``@username`` for public chats and channels (lower-cased);
- ``chat_id:<id>`` otherwise, optionally with a ``#topic:<id>`` suffix for
  forum topics.

Telegram exposes the same chat under several numeric ids (peer id, bare
channel id, ``-100`` prefixed id), so configured keys are expanded to all
equivalent variants before matching.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Tuple

from telethon.tl.types import PeerChannel, PeerChat

TOPIC_SUFFIX = "#topic:"


@dataclass(frozen=True)
class MessageInfo:
    """The parts of a channel message the collectors care about."""

    channel_key: str
    base_channel_key: str
    topic_id: Optional[int]
    chat_id: int
    message_id: int
    date: Optional[datetime]
    text: str
    title: str
    permalink: Optional[str]
    has_media: bool


def build_channel_key(base_key: str, topic_id: Optional[int]) -> str:
    """Return the effective key, adding a topic suffix when needed."""

    if topic_id is None:
        return base_key
    return f"{base_key}{TOPIC_SUFFIX}{topic_id}"


def split_channel_key(channel_key: str) -> Tuple[str, Optional[int]]:
    """Split a channel key into (base_key, topic_id)."""

    base_key, sep, topic_part = channel_key.partition(TOPIC_SUFFIX)
    if not sep or not base_key:
        return channel_key, None
    try:
        return base_key, int(topic_part)
    except ValueError:
        return channel_key, None


def _chat_id_variants(raw_chat_id: int) -> set[int]:
    variants: set[int] = {raw_chat_id}
    if raw_chat_id < 0:
        raw_text = str(raw_chat_id)
        if raw_text.startswith("-100"):
            # Channel/supergroup peer id: -100<channel_id>
            channel_part = raw_text[4:]
            if channel_part.isdigit():
                variants.add(int(channel_part))
        else:
            variants.add(-raw_chat_id)
        return variants

    variants.add(-raw_chat_id)
    variants.add(-1000000000000 - raw_chat_id)
    return variants


def expand_channel_key_variants(channel_key: str) -> set[str]:
    """Expand a configured key to every equivalent chat id form."""

    base_key, topic_id = split_channel_key(channel_key)
    if base_key.startswith("@"):
        return {build_channel_key(base_key.lower(), topic_id)}
    if not base_key.startswith("chat_id:"):
        return {channel_key}
    try:
        raw_chat_id = int(base_key[len("chat_id:"):])
    except ValueError:
        return {channel_key}
    return {build_channel_key(f"chat_id:{variant}", topic_id) for variant in _chat_id_variants(raw_chat_id)}


def expand_channel_keys(channel_keys: Iterable[str]) -> frozenset:
    expanded: set[str] = set()
    for key in channel_keys:
        expanded.update(expand_channel_key_variants(str(key)))
    return frozenset(expanded)


def base_key_from_message(message) -> str:
    chat = getattr(message, "chat", None)
    username = getattr(chat, "username", None)
    if isinstance(username, str) and username:
        return f"@{username.lower()}"
    return f"chat_id:{message.chat_id}"


def topic_id_from_message(message) -> Optional[int]:
    reply_to = getattr(message, "reply_to", None)
    if not reply_to or not getattr(reply_to, "forum_topic", False):
        return None
    top_id = getattr(reply_to, "reply_to_top_id", None)
    if top_id:
        return top_id
    return getattr(reply_to, "reply_to_msg_id", None)


def permalink_for(message, message_id: Optional[int] = None) -> Optional[str]:
    """Public ``t.me/<name>/<id>`` or private ``t.me/c/<id>/<id>`` link; ``None`` for DMs."""

    target_id = message.id if message_id is None else message_id
    chat = getattr(message, "chat", None)
    username = getattr(chat, "username", None)
    if username:
        return f"https://t.me/{username}/{target_id}"
    peer_id = getattr(message, "peer_id", None)
    if isinstance(peer_id, PeerChannel):
        return f"https://t.me/c/{peer_id.channel_id}/{target_id}"
    if isinstance(peer_id, PeerChat):
        return f"https://t.me/c/{peer_id.chat_id}/{target_id}"
    return None


def chat_title(message) -> str:
    chat = getattr(message, "chat", None)
    title = getattr(chat, "title", None) or getattr(chat, "username", None)
    return title or str(message.chat_id)


def message_info(message) -> MessageInfo:
    """Build a MessageInfo from a Telethon message."""

    base_key = base_key_from_message(message)
    topic_id = topic_id_from_message(message)
    return MessageInfo(
        channel_key=build_channel_key(base_key, topic_id),
        base_channel_key=base_key,
        topic_id=topic_id,
        chat_id=message.chat_id,
        message_id=message.id,
        date=getattr(message, "date", None),
        text=getattr(message, "raw_text", None) or "",
        title=chat_title(message),
        permalink=permalink_for(message),
        has_media=getattr(message, "media", None) is not None,
    )
