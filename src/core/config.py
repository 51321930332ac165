"""Core configuration snapshot.

We keep config file handling outside the core, but these dataclasses define
the shape the core expects. A snapshot is built from the raw JSON mapping in
one pass and is either fully valid or rejected with every problem listed.
Snapshots are never mutated; reloads produce a new one.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from datetime import timedelta
from types import MappingProxyType
from typing import Any, Mapping, Optional

from core.backoff import BackoffPolicy
from core.errors import ConfigError
from core.models import Destination

DEFAULT_THROTTLE_MINUTES = 15
DEFAULT_DEDUP_RETENTION_DAYS = 30
DEFAULT_SNIPPET_CHARS = 400
DELIVERY_METHODS = ("bot", "client", "log")


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


def _freeze(value: Any) -> Any:
    """Recursively convert dicts/lists into read-only mappings/tuples."""

    if isinstance(value, Mapping):
        return MappingProxyType({str(key): _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of ``_freeze`` for serialization."""

    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class PlatformConfig:
    """One platform section: enable flag, credentials reference, options."""

    name: str
    enabled: bool
    credentials: Optional[str] = None
    options: Mapping[str, Any] = field(default_factory=_empty)

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)


@dataclass(frozen=True)
class NotificationConfig:
    """Routing, dedup and throttle settings consumed by the Notifier."""

    alerts_destination: str
    output_destination: str
    throttle_window: timedelta = timedelta(minutes=DEFAULT_THROTTLE_MINUTES)
    throttle_windows: Mapping[str, timedelta] = field(default_factory=_empty)
    throttled_classes: frozenset = frozenset({"monitored_user"})
    routes: Mapping[str, Destination] = field(default_factory=_empty)
    default_route: Optional[Destination] = None
    dedup_retention: timedelta = timedelta(days=DEFAULT_DEDUP_RETENTION_DAYS)
    method: str = "bot"
    snippet_chars: int = DEFAULT_SNIPPET_CHARS

    def destination_id(self, destination: Destination) -> str:
        if destination is Destination.ALERTS:
            return self.alerts_destination
        return self.output_destination

    def route_for(self, event_class: Optional[str]) -> Optional[Destination]:
        if event_class is not None and event_class in self.routes:
            return self.routes[event_class]
        return self.default_route

    def throttle_window_for(self, event_class: Optional[str]) -> Optional[timedelta]:
        """Window for a throttle-eligible class, ``None`` when not throttled."""

        if event_class is None or event_class not in self.throttled_classes:
            return None
        return self.throttle_windows.get(event_class, self.throttle_window)


@dataclass(frozen=True)
class SupervisorConfig:
    """Restart policy and shutdown grace period."""

    backoff_floor: float = 1.0
    backoff_cap: float = 600.0
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.1
    reset_after: float = 300.0
    grace_period: float = 10.0

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            floor=self.backoff_floor,
            cap=self.backoff_cap,
            multiplier=self.backoff_multiplier,
            jitter=self.backoff_jitter,
            reset_after=self.reset_after,
        )


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable, versioned configuration. ``version`` is assigned by the store."""

    notifications: NotificationConfig
    platforms: Mapping[str, PlatformConfig] = field(default_factory=_empty)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    version: int = 0

    def enabled_platforms(self) -> frozenset:
        return frozenset(name for name, section in self.platforms.items() if section.enabled)

    def platform(self, name: str) -> PlatformConfig:
        return self.platforms[name]

    def with_version(self, version: int) -> "ConfigSnapshot":
        return dataclasses.replace(self, version=version)

    def validate(self) -> None:
        """Re-check invariants of a snapshot built outside ``snapshot_from_mapping``."""

        problems: list[str] = []
        notifications = self.notifications
        if not notifications.alerts_destination:
            problems.append("notifications.alerts_destination is required")
        if not notifications.output_destination:
            problems.append("notifications.output_destination is required")
        if notifications.throttle_window <= timedelta(0):
            problems.append("notifications.throttle_window must be positive")
        if notifications.dedup_retention <= timedelta(0):
            problems.append("notifications.dedup_retention must be positive")
        if notifications.method not in DELIVERY_METHODS:
            problems.append(f"notifications.method must be one of {', '.join(DELIVERY_METHODS)}")
        if notifications.snippet_chars <= 0:
            problems.append("notifications.snippet_chars must be positive")
        supervisor = self.supervisor
        for field_name, value in dataclasses.asdict(supervisor).items():
            if not math.isfinite(value):
                problems.append(f"supervisor.{field_name} must be a finite number")
        if supervisor.backoff_floor <= 0:
            problems.append("supervisor.backoff_floor_seconds must be positive")
        if supervisor.backoff_cap < supervisor.backoff_floor:
            problems.append("supervisor.backoff_cap_seconds must be >= backoff_floor_seconds")
        if supervisor.backoff_multiplier < 1:
            problems.append("supervisor.backoff_multiplier must be >= 1")
        if not 0 <= supervisor.backoff_jitter <= 1:
            problems.append("supervisor.backoff_jitter must be between 0 and 1")
        if supervisor.reset_after <= 0:
            problems.append("supervisor.reset_after_seconds must be positive")
        if supervisor.grace_period <= 0:
            problems.append("supervisor.grace_period_seconds must be positive")
        for name, section in self.platforms.items():
            if name != section.name:
                problems.append(f"platform section {name!r} has mismatched name {section.name!r}")
        if problems:
            raise ConfigError("Invalid configuration", problems)


class _Reader:
    """Collects type problems while reading a raw mapping."""

    def __init__(self) -> None:
        self.problems: list[str] = []

    def section(self, raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
        value = raw.get(key, {})
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.problems.append(f"{key} must be an object")
            return {}
        return value

    def number(self, raw: Mapping[str, Any], key: str, default: float, where: str) -> float:
        value = raw.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.problems.append(f"{where}.{key} must be a number")
            return default
        try:
            parsed = float(value)
        except OverflowError:
            parsed = math.inf
        if not math.isfinite(parsed):
            self.problems.append(f"{where}.{key} must be a finite number")
            return default
        return parsed

    def duration(self, where: str, **amount: float) -> Optional[timedelta]:
        try:
            return timedelta(**amount)
        except OverflowError:
            self.problems.append(f"{where} is out of range")
            return None

    def string(self, raw: Mapping[str, Any], key: str, where: str, required: bool = False) -> Optional[str]:
        value = raw.get(key)
        if value is None:
            if required:
                self.problems.append(f"{where}.{key} is required")
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            self.problems.append(f"{where}.{key} must be a string")
            return None
        return str(value)

    def destination(self, value: Any, where: str) -> Optional[Destination]:
        try:
            return Destination(str(value).lower())
        except ValueError:
            self.problems.append(f"{where} must be 'alerts' or 'output', got {value!r}")
            return None


def _read_platforms(reader: _Reader, raw: Mapping[str, Any]) -> dict[str, PlatformConfig]:
    platforms: dict[str, PlatformConfig] = {}
    for name, section in reader.section(raw, "platforms").items():
        where = f"platforms.{name}"
        if not isinstance(section, Mapping):
            reader.problems.append(f"{where} must be an object")
            continue
        enabled = section.get("enabled", True)
        if not isinstance(enabled, bool):
            reader.problems.append(f"{where}.enabled must be true or false")
            continue
        options = section.get("options", {}) or {}
        if not isinstance(options, Mapping):
            reader.problems.append(f"{where}.options must be an object")
            continue
        platforms[name] = PlatformConfig(
            name=name,
            enabled=enabled,
            credentials=reader.string(section, "credentials", where),
            options=_freeze(options),
        )
    return platforms


def _read_notifications(reader: _Reader, raw: Mapping[str, Any]) -> Optional[NotificationConfig]:
    where = "notifications"
    section = reader.section(raw, where)
    alerts = reader.string(section, "alerts_destination", where, required=True)
    output = reader.string(section, "output_destination", where, required=True)

    window_minutes = reader.number(section, "throttle_window_minutes", DEFAULT_THROTTLE_MINUTES, where)
    throttle_window = reader.duration(f"{where}.throttle_window_minutes", minutes=window_minutes)
    windows: dict[str, timedelta] = {}
    overrides = reader.section(section, "throttle_windows_minutes")
    for event_class in overrides:
        minutes = reader.number(overrides, event_class, 0, f"{where}.throttle_windows_minutes")
        if minutes <= 0:
            reader.problems.append(
                f"{where}.throttle_windows_minutes.{event_class} must be a positive number"
            )
            continue
        window = reader.duration(f"{where}.throttle_windows_minutes.{event_class}", minutes=minutes)
        if window is not None:
            windows[event_class] = window

    throttled = section.get("throttled_classes", ["monitored_user"])
    if not isinstance(throttled, list) or not all(isinstance(item, str) for item in throttled):
        reader.problems.append(f"{where}.throttled_classes must be a list of strings")
        throttled = []

    routes: dict[str, Destination] = {}
    for event_class, target in reader.section(section, "routes").items():
        destination = reader.destination(target, f"{where}.routes.{event_class}")
        if destination is not None:
            routes[event_class] = destination
    default_route = None
    if section.get("default_route") is not None:
        default_route = reader.destination(section["default_route"], f"{where}.default_route")

    retention_days = reader.number(section, "dedup_retention_days", DEFAULT_DEDUP_RETENTION_DAYS, where)
    dedup_retention = reader.duration(f"{where}.dedup_retention_days", days=retention_days)
    snippet_chars = reader.number(section, "snippet_chars", DEFAULT_SNIPPET_CHARS, where)
    method = reader.string(section, "method", where) or "bot"

    if alerts is None or output is None or throttle_window is None or dedup_retention is None:
        return None
    return NotificationConfig(
        alerts_destination=alerts,
        output_destination=output,
        throttle_window=throttle_window,
        throttle_windows=MappingProxyType(windows),
        throttled_classes=frozenset(throttled),
        routes=MappingProxyType(routes),
        default_route=default_route,
        dedup_retention=dedup_retention,
        method=method,
        snippet_chars=int(snippet_chars),
    )


def _read_supervisor(reader: _Reader, raw: Mapping[str, Any]) -> SupervisorConfig:
    where = "supervisor"
    section = reader.section(raw, where)
    defaults = SupervisorConfig()
    return SupervisorConfig(
        backoff_floor=reader.number(section, "backoff_floor_seconds", defaults.backoff_floor, where),
        backoff_cap=reader.number(section, "backoff_cap_seconds", defaults.backoff_cap, where),
        backoff_multiplier=reader.number(section, "backoff_multiplier", defaults.backoff_multiplier, where),
        backoff_jitter=reader.number(section, "backoff_jitter", defaults.backoff_jitter, where),
        reset_after=reader.number(section, "reset_after_seconds", defaults.reset_after, where),
        grace_period=reader.number(section, "grace_period_seconds", defaults.grace_period, where),
    )


def snapshot_from_mapping(raw: Any) -> ConfigSnapshot:
    """Build and validate a snapshot from the raw config document.

    Raises ``ConfigError`` listing every problem found; nothing is returned
    for a partially valid document.
    """

    if not isinstance(raw, Mapping):
        raise ConfigError("Configuration root must be an object")

    reader = _Reader()
    platforms = _read_platforms(reader, raw)
    notifications = _read_notifications(reader, raw)
    supervisor = _read_supervisor(reader, raw)
    if reader.problems or notifications is None:
        raise ConfigError("Invalid configuration", reader.problems)

    snapshot = ConfigSnapshot(
        notifications=notifications,
        platforms=MappingProxyType(platforms),
        supervisor=supervisor,
    )
    snapshot.validate()
    return snapshot
