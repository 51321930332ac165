from __future__ import annotations

from datetime import datetime, timezone

from telethon.tl.types import PeerChannel, PeerUser

from adapters.telegram_mapper import (
    TOPIC_SUFFIX,
    build_channel_key,
    expand_channel_key_variants,
    expand_channel_keys,
    message_info,
    split_channel_key,
)


class DummyChat:
    def __init__(self, username: "str | None" = None, title: "str | None" = None) -> None:
        self.username = username
        self.title = title


class DummyReply:
    def __init__(
        self,
        forum_topic: bool,
        reply_to_top_id: "int | None",
        reply_to_msg_id: "int | None",
    ) -> None:
        self.forum_topic = forum_topic
        self.reply_to_top_id = reply_to_top_id
        self.reply_to_msg_id = reply_to_msg_id


class DummyMessage:
    def __init__(
        self,
        *,
        chat_id: int,
        message_id: int,
        text: str,
        chat: "DummyChat | None" = None,
        peer_id=None,
        reply_to=None,
        media=None,
    ) -> None:
        self.chat_id = chat_id
        self.id = message_id
        self.raw_text = text
        self.chat = chat
        self.peer_id = peer_id
        self.reply_to = reply_to
        self.media = media
        self.date = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_build_and_split_channel_key() -> None:
    assert build_channel_key("@group", None) == "@group"
    assert build_channel_key("@group", 123) == f"@group{TOPIC_SUFFIX}123"
    assert split_channel_key(f"@group{TOPIC_SUFFIX}123") == ("@group", 123)
    assert split_channel_key("@group") == ("@group", None)
    assert split_channel_key(f"@group{TOPIC_SUFFIX}abc") == (f"@group{TOPIC_SUFFIX}abc", None)


def test_expand_chat_id_variants_positive() -> None:
    variants = expand_channel_key_variants("chat_id:123")
    assert {"chat_id:123", "chat_id:-123", "chat_id:-1000000000123"} <= variants


def test_expand_chat_id_variants_negative_100() -> None:
    variants = expand_channel_key_variants("chat_id:-100987654321")
    assert {"chat_id:-100987654321", "chat_id:987654321"} <= variants


def test_expand_chat_id_variants_keep_topic_suffix() -> None:
    variants = expand_channel_key_variants("chat_id:42#topic:7")
    assert {"chat_id:42#topic:7", "chat_id:-42#topic:7", "chat_id:-1000000000042#topic:7"} <= variants


def test_usernames_are_case_insensitive() -> None:
    assert expand_channel_keys(["@News", "@other"]) == frozenset({"@news", "@other"})


def test_public_channel_message_info() -> None:
    message = DummyMessage(
        chat_id=-100123,
        message_id=10,
        text="hello",
        chat=DummyChat(username="DailyNews", title="Daily News"),
        peer_id=PeerChannel(channel_id=123),
        media=object(),
    )
    info = message_info(message)
    assert info.channel_key == "@dailynews"
    assert info.permalink == "https://t.me/DailyNews/10"
    assert info.title == "Daily News"
    assert info.has_media


def test_private_forum_topic_from_reply_to_top_id() -> None:
    message = DummyMessage(
        chat_id=-100123,
        message_id=10,
        text="hello",
        chat=DummyChat(),
        peer_id=PeerChannel(channel_id=123),
        reply_to=DummyReply(forum_topic=True, reply_to_top_id=555, reply_to_msg_id=111),
    )
    info = message_info(message)
    assert info.topic_id == 555
    assert info.channel_key == "chat_id:-100123#topic:555"
    assert info.base_channel_key == "chat_id:-100123"
    assert info.permalink == "https://t.me/c/123/10"
    assert not info.has_media


def test_topic_id_falls_back_to_reply_to_msg_id() -> None:
    message = DummyMessage(
        chat_id=-100123,
        message_id=10,
        text="hello",
        peer_id=PeerChannel(channel_id=123),
        reply_to=DummyReply(forum_topic=True, reply_to_top_id=None, reply_to_msg_id=777),
    )
    assert message_info(message).topic_id == 777


def test_direct_messages_have_no_permalink() -> None:
    message = DummyMessage(chat_id=42, message_id=1, text="hi", peer_id=PeerUser(user_id=42))
    info = message_info(message)
    assert info.permalink is None
    assert info.title == "42"
