"""Telegram client factory for socialwatch.

Collectors explicitly manage the client's lifecycle (connect, wait for
disconnect or cancellation, disconnect) so it is obvious when a session is
in use. This avoids implicit context-manager behavior for long-running
watchers that the Supervisor may restart.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from telethon import TelegramClient

from core.errors import ConfigError

DEFAULT_SESSION_NAME = "socialwatch"


def telegram_credentials() -> tuple[int, str]:
    """Read API_ID/API_HASH via python-dotenv to keep secrets out of the config file."""

    load_dotenv()
    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    if not api_id or not api_hash:
        raise ConfigError("Missing API_ID or API_HASH in environment")
    try:
        return int(api_id), api_hash
    except ValueError as exc:
        raise ConfigError("API_ID must be an integer") from exc


def session_name_for(credentials: Optional[str] = None) -> str:
    """A platform's ``credentials`` names its session file; SESSION_NAME is the fallback."""

    load_dotenv()
    return credentials or os.getenv("SESSION_NAME") or DEFAULT_SESSION_NAME


def build_client(session_name: Optional[str] = None) -> TelegramClient:
    """Create a Telethon client for ``session_name`` (a local .session file)."""

    api_id, api_hash = telegram_credentials()
    name = session_name_for(session_name)
    logging.getLogger(__name__).info("Initializing Telegram client (session %s)", name)
    return TelegramClient(name, api_id, api_hash)
