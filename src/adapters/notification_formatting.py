"""Shared notification formatting helpers.

Keeping formatting here prevents drift between delivery adapters and keeps
messages consistent regardless of which transport sends them.
"""

from __future__ import annotations

import html

from core.models import Notification

DIVIDER = "──────────────"

PLATFORM_LABELS = {
    "telegram_dms": "Telegram",
    "telegram_channels": "Telegram channels",
    "discord_dms": "Discord",
    "twitter": "Twitter",
    "youtube": "YouTube",
    "email": "Email",
}


def format_platform_label(platform: str) -> str:
    """Return a human-friendly platform label."""

    return PLATFORM_LABELS.get(platform, platform)


def _header(notification: Notification) -> str:
    label = format_platform_label(notification.platform)
    if notification.event_class:
        label = f"{label} · {notification.event_class.replace('_', ' ')}"
    return label


def _timestamp(notification: Notification) -> str:
    return notification.occurred_at.astimezone().strftime("%H:%M:%S %d-%m-%Y").strip()


def _format_markdown(notification: Notification) -> str:
    """Create the Markdown body used by the Telethon client adapter."""

    def escape_md(value: str) -> str:
        for ch in r"*[`_":
            value = value.replace(ch, f"\\{ch}")
        return value

    lines = [
        f"[{_timestamp(notification)}]",
        f"**{escape_md(_header(notification))}**",
    ]
    if notification.subject:
        lines.append(f"**From:** {escape_md(notification.subject)}")
    lines.extend([DIVIDER, "", escape_md(notification.text)])
    if notification.link:
        lines.extend(["", "**Link:**", notification.link])
    lines.append(DIVIDER)
    return "\n".join(lines)


def _format_html(notification: Notification) -> str:
    """Create the HTML body used by the Bot API adapter."""

    parts = [
        f"[{html.escape(_timestamp(notification))}]",
        f"<b>{html.escape(_header(notification))}</b>",
    ]
    if notification.subject:
        parts.append(f"<b>From:</b> {html.escape(notification.subject)}")
    parts.extend([DIVIDER, "", html.escape(notification.text)])
    if notification.link:
        safe_link = html.escape(notification.link)
        parts.extend(["", "<b>Link:</b>", f"<a href=\"{safe_link}\">{safe_link}</a>"])
    parts.append(DIVIDER)
    return "\n".join(parts)


def _format_plain(notification: Notification) -> str:
    parts = [f"[{_timestamp(notification)}] {_header(notification)}"]
    if notification.subject:
        parts.append(f"from {notification.subject}")
    parts.append(notification.text)
    if notification.link:
        parts.append(notification.link)
    return " | ".join(parts)


def format_notification(notification: Notification, mode: str) -> str:
    """Return the notification formatted for the requested mode."""

    if mode == "markdown":
        return _format_markdown(notification)
    if mode == "html":
        return _format_html(notification)
    if mode == "plain":
        return _format_plain(notification)
    raise ValueError(f"Unsupported notification format: {mode}")
