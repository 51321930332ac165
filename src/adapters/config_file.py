"""JSON configuration file source.

The live file is the user-editable document. Every document that validates
is also copied to a last-known-good file, so a broken edit made while the
daemon is down does not keep it from starting again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Optional

from core.config import ConfigSnapshot, snapshot_from_mapping
from core.config_store import ConfigStore
from core.errors import ConfigError, FatalError

LOGGER = logging.getLogger(__name__)

DEFAULT_WATCH_INTERVAL_SECONDS = 60.0


def write_json_atomic(path: str, payload: Any) -> None:
    """Write ``payload`` as JSON to a temp file in the same directory, then rename."""

    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class ConfigFileSource:
    """Reads, validates and watches the JSON configuration file."""

    def __init__(self, path: str, last_good_path: Optional[str] = None) -> None:
        self.path = path
        self.last_good_path = last_good_path
        self._last_mtime: Optional[float] = None

    def _load_raw(self, path: str) -> Any:
        if not os.path.exists(path):
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except (ValueError, RecursionError) as exc:
            raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise ConfigError(f"Config file {path} cannot be read: {exc}") from exc

    def _mtime(self) -> Optional[float]:
        try:
            return os.stat(self.path).st_mtime
        except OSError:
            return None

    def read_raw(self) -> Any:
        return self._load_raw(self.path)

    def read(self) -> ConfigSnapshot:
        """Parse and validate the live file."""

        return snapshot_from_mapping(self.read_raw())

    def load_initial(self) -> ConfigSnapshot:
        """Return the startup snapshot.

        The live file wins when it is valid (and becomes the new
        last-known-good). Otherwise the last-known-good document is used.
        If neither is usable the live file's ``ConfigError`` is raised.
        """

        self._last_mtime = self._mtime()
        try:
            raw = self.read_raw()
            snapshot = snapshot_from_mapping(raw)
        except ConfigError as live_error:
            if not self.last_good_path or not os.path.exists(self.last_good_path):
                raise
            LOGGER.error("Config file %s rejected: %s", self.path, live_error)
            try:
                snapshot = snapshot_from_mapping(self._load_raw(self.last_good_path))
            except ConfigError:
                LOGGER.error("Last-known-good config %s is unusable too", self.last_good_path)
                raise live_error
            LOGGER.warning("Starting from last-known-good config %s", self.last_good_path)
            return snapshot
        self.save_last_good(raw)
        return snapshot

    def save_last_good(self, raw: Any) -> None:
        if not self.last_good_path:
            return
        try:
            write_json_atomic(self.last_good_path, raw)
        except OSError:
            LOGGER.exception("Failed to persist last-known-good config to %s", self.last_good_path)

    def reload_into(self, store: ConfigStore) -> Optional[ConfigSnapshot]:
        """Re-read the live file and publish it; ``None`` if it was rejected."""

        try:
            raw = self.read_raw()
            published = store.replace(snapshot_from_mapping(raw))
        except ConfigError as exc:
            LOGGER.error("Config reload rejected, keeping version %s: %s", store.current().version, exc)
            return None
        self.save_last_good(raw)
        LOGGER.info("Config reloaded from %s (version %s)", self.path, published.version)
        return published

    async def watch(self, store: ConfigStore, interval: float = DEFAULT_WATCH_INTERVAL_SECONDS) -> None:
        """Poll the file's modification time and reload on change, forever."""

        if self._last_mtime is None:
            self._last_mtime = self._mtime()
        while True:
            await asyncio.sleep(interval)
            mtime = self._mtime()
            if mtime is None or mtime == self._last_mtime:
                continue
            self._last_mtime = mtime
            try:
                self.reload_into(store)
            except FatalError:
                raise
            except Exception:
                LOGGER.exception(
                    "Config reload of %s failed, keeping version %s", self.path, store.current().version
                )
