"""Error taxonomy shared by the core and the adapters.

Adapters translate their library-specific failures (sqlite3, urllib,
Telethon) into these types so the core never has to know which backend
raised them.
"""

from __future__ import annotations


class SocialWatchError(Exception):
    """Base class for every error raised on purpose by socialwatch."""


class ConfigError(SocialWatchError):
    """Configuration is unreadable or invalid; the previous snapshot stays active."""

    def __init__(self, message: str, problems: "list[str] | None" = None) -> None:
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: " + "; ".join(self.problems)
        super().__init__(message)


class CollectorError(SocialWatchError):
    """A platform collector failed (I/O or protocol). Recovered by the Supervisor."""


class NotifyError(SocialWatchError):
    """Base class for errors returned by ``Notifier.submit``."""


class RoutingError(NotifyError):
    """The event cannot be routed to a destination (malformed event or unknown route)."""


class DeliveryFailed(NotifyError):
    """The outbound transport failed; the event was not marked as delivered."""

    def __init__(self, destination: str, reason: str) -> None:
        self.destination = destination
        self.reason = reason
        super().__init__(f"Delivery to {destination} failed: {reason}")


class DeliveryError(SocialWatchError):
    """Raised by delivery adapters when a message could not be sent."""


class LedgerError(SocialWatchError):
    """The dedup ledger could not be read or written."""


class FatalError(SocialWatchError):
    """The daemon cannot continue without violating its consistency guarantees."""


class LedgerUnavailableError(FatalError):
    """The dedup ledger could not be opened at startup."""
