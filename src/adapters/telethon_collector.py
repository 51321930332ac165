"""Shared lifecycle for collectors built on a Telethon user session.

A run connects the client, registers the subclass's event handlers and then
waits for whichever comes first:

- the Supervisor's cancellation event (deliberate stop, returns normally);
- the client disconnecting (raises ``CollectorError``);
- a handler hitting an unrecoverable error such as a ledger failure
  (re-raised so the Supervisor backs off and restarts the collector).

Telethon swallows exceptions raised inside event handlers, so handlers
report failures through ``fail()`` instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from client import build_client
from core.collector import BaseCollector, CollectorContext
from core.errors import CollectorError

LOGGER = logging.getLogger(__name__)


class TelethonCollector(BaseCollector):
    """Base class; subclasses implement ``register(client)``."""

    def __init__(self, context: CollectorContext, client_factory: Callable = build_client) -> None:
        super().__init__(context)
        self._client_factory = client_factory
        self._client = None
        self._failure: Optional[BaseException] = None
        self._failed = asyncio.Event()

    def register(self, client) -> None:
        raise NotImplementedError

    def fail(self, exc: BaseException) -> None:
        """Record an unrecoverable handler error and end the run."""

        if self._failure is None:
            self._failure = exc
        self._failed.set()

    async def _connect(self):
        client = self._client_factory(self.section.credentials)
        try:
            await client.connect()
            authorized = await client.is_user_authorized()
        except (ConnectionError, OSError) as exc:
            raise CollectorError(f"Telegram connection failed: {exc}") from exc
        if not authorized:
            await client.disconnect()
            raise CollectorError("Telegram session is not authorized; run `socialwatch login` first")
        return client

    async def run(self) -> None:
        client = await self._connect()
        self._client = client
        self.register(client)
        self.context.notifier.heartbeat()
        LOGGER.info("Collector %s connected to Telegram", self.platform)

        waiters = {
            asyncio.ensure_future(self.wait_cancelled()),
            asyncio.ensure_future(client.run_until_disconnected()),
            asyncio.ensure_future(self._failed.wait()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)
            if client.is_connected():
                await client.disconnect()
            self._client = None

        if self._failure is not None:
            raise self._failure
        if self.cancelled:
            return
        raise CollectorError("Telegram client disconnected")
