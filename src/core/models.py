"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    """Target-channel hint carried by an event."""

    ALERTS = "alerts"
    OUTPUT = "output"
    POLICY = "policy"


class Destination(str, Enum):
    """The two logical outbound notification targets."""

    ALERTS = "alerts"
    OUTPUT = "output"


class Outcome(str, Enum):
    """Successful result of ``Notifier.submit``."""

    DELIVERED = "delivered"
    SUPPRESSED = "suppressed"


class CollectorState(str, Enum):
    """Lifecycle state of a supervised collector."""

    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Event:
    """Normalized occurrence produced by a collector.

    ``dedup_key`` identifies the logical occurrence within its platform and
    must be rebuilt identically for the same occurrence after a restart.
    ``event_class`` and ``subject`` are only needed for policy routing and
    throttling.
    """

    platform: str
    dedup_key: bytes
    channel: Channel
    text: str
    link: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)
    event_class: Optional[str] = None
    subject: Optional[str] = None


@dataclass(frozen=True)
class Notification:
    """Display payload handed to the delivery interface."""

    platform: str
    text: str
    link: Optional[str]
    occurred_at: datetime
    event_class: Optional[str] = None
    subject: Optional[str] = None

    @classmethod
    def from_event(cls, event: Event, snippet_chars: int) -> "Notification":
        return cls(
            platform=event.platform,
            text=event.text[:snippet_chars].strip(),
            link=event.link,
            occurred_at=event.occurred_at,
            event_class=event.event_class,
            subject=event.subject,
        )


@dataclass(frozen=True)
class HealthRecord:
    """Per-platform health as published by the Supervisor."""

    state: CollectorState
    updated_at: datetime
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    restart_count: int = 0
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "updated_at": self.updated_at.isoformat(),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "restart_count": self.restart_count,
            "consecutive_failures": self.consecutive_failures,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthRecord":
        last_success = data.get("last_success")
        return cls(
            state=CollectorState(data["state"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_success=datetime.fromisoformat(last_success) if last_success else None,
            last_error=data.get("last_error"),
            restart_count=int(data.get("restart_count", 0)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
        )


@dataclass(frozen=True)
class DestinationHealth:
    """Delivery status for one destination, written by the Notifier."""

    updated_at: datetime
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "updated_at": self.updated_at.isoformat(),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DestinationHealth":
        last_success = data.get("last_success")
        return cls(
            updated_at=datetime.fromisoformat(data["updated_at"]),
            last_success=datetime.fromisoformat(last_success) if last_success else None,
            last_error=data.get("last_error"),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
        )
