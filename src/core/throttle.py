"""In-memory notification throttle.

Throttle state is not persisted: after a restart the first
notification for every subject goes through again.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Optional, Tuple

ThrottleKey = Tuple[str, str]


class ThrottleState:
    """Last delivery time per (subject, notification class)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last: dict[ThrottleKey, datetime] = {}

    def last_notified(self, key: ThrottleKey) -> Optional[datetime]:
        with self._lock:
            return self._last.get(key)

    def is_throttled(self, key: ThrottleKey, now: datetime, window: timedelta) -> bool:
        """True when the previous delivery for ``key`` is less than ``window`` ago."""

        last = self.last_notified(key)
        if last is None:
            return False
        return now - last < window

    def mark(self, key: ThrottleKey, when: datetime) -> None:
        with self._lock:
            self._last[key] = when

