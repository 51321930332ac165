"""Deduplication helpers (core domain)."""

from __future__ import annotations

import hashlib

_KEY_SEPARATOR = "\x1f"


def make_dedup_key(*parts: object) -> bytes:
    """Build a stable dedup key from identity parts (ids, usernames, kinds).

    Parts are stringified and joined with a unit separator, so
    ``("a", "bc")`` and ``("ab", "c")`` never collide.
    """

    if not parts:
        raise ValueError("make_dedup_key needs at least one part")
    return _KEY_SEPARATOR.join(str(part) for part in parts).encode("utf-8")


def fingerprint(platform: str, dedup_key: bytes) -> str:
    """Short printable identifier for log lines (keys may be binary)."""

    payload = platform.encode("utf-8") + b"\n" + dedup_key
    return hashlib.sha256(payload).hexdigest()[:12]
