"""SQLite dedup ledger adapter.

Implements the core DedupLedgerPort using a simple SQLite database. Each
call opens its own connection, so the ledger can be used from the event
loop and from the pruning worker thread at the same time; WAL mode lets
readers proceed while a prune batch is being written.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.errors import LedgerError, LedgerUnavailableError

LOGGER = logging.getLogger(__name__)

PRUNE_BATCH_SIZE = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class SQLiteDedupLedger:
    """Thin SQLite wrapper that satisfies the DedupLedgerPort contract."""

    def __init__(self, db_path: str, clock: Callable[[], datetime] = _utcnow) -> None:
        self._db_path = db_path
        self._clock = clock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - dedup_records: (platform, dedup_key) -> delivered_at for every
          successfully delivered notification

        Raises ``LedgerUnavailableError`` when the database cannot be opened;
        running without the ledger would break the dedup guarantee.
        """

        directory = os.path.dirname(self._db_path)
        try:
            if directory:
                os.makedirs(directory, exist_ok=True)
            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                # Fields:
                # - platform: collector platform name
                # - dedup_key: raw key bytes chosen by the collector
                # - delivered_at: UTC ISO timestamp of the successful delivery
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS dedup_records (
                        platform TEXT NOT NULL,
                        dedup_key BLOB NOT NULL,
                        delivered_at TIMESTAMP NOT NULL,
                        PRIMARY KEY (platform, dedup_key)
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_dedup_delivered_at ON dedup_records (delivered_at)"
                )
        except (sqlite3.Error, OSError) as exc:
            raise LedgerUnavailableError(f"Dedup ledger at {self._db_path} is unavailable: {exc}") from exc
        LOGGER.info("Dedup ledger ready at %s", self._db_path)

    def has_recent(self, platform: str, dedup_key: bytes, window: timedelta) -> bool:
        """True if (platform, key) was delivered within ``window`` of now."""

        cutoff = _stamp(self._clock() - window)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT 1 FROM dedup_records
                    WHERE platform = ? AND dedup_key = ? AND delivered_at >= ?
                    """,
                    (platform, sqlite3.Binary(dedup_key), cutoff),
                ).fetchone()
        except sqlite3.Error as exc:
            raise LedgerError(f"Dedup lookup failed: {exc}") from exc
        return row is not None

    def record(self, platform: str, dedup_key: bytes, delivered_at: datetime) -> None:
        """Upsert the delivery timestamp for (platform, key)."""

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO dedup_records (platform, dedup_key, delivered_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(platform, dedup_key) DO UPDATE SET delivered_at = excluded.delivered_at
                    """,
                    (platform, sqlite3.Binary(dedup_key), _stamp(delivered_at)),
                )
        except sqlite3.Error as exc:
            raise LedgerError(f"Dedup record failed: {exc}") from exc

    def last_delivered(self, platform: str, dedup_key: bytes) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT delivered_at FROM dedup_records WHERE platform = ? AND dedup_key = ?",
                (platform, sqlite3.Binary(dedup_key)),
            ).fetchone()
        return datetime.fromisoformat(row["delivered_at"]) if row else None

    def prune(self, retention: timedelta, batch_size: int = PRUNE_BATCH_SIZE) -> int:
        """Delete records older than ``retention`` and return the number removed.

        Deletes in small batches, each in its own transaction, so the write
        lock is never held for long.
        """

        cutoff = _stamp(self._clock() - retention)
        removed = 0
        while True:
            try:
                with self._connect() as conn:
                    cur = conn.execute(
                        """
                        DELETE FROM dedup_records WHERE rowid IN (
                            SELECT rowid FROM dedup_records WHERE delivered_at < ? LIMIT ?
                        )
                        """,
                        (cutoff, batch_size),
                    )
                    deleted = cur.rowcount
            except sqlite3.Error as exc:
                raise LedgerError(f"Dedup prune failed after removing {removed} records: {exc}") from exc
            removed += deleted
            if deleted < batch_size:
                break
        if removed:
            LOGGER.info("Dedup prune removed %s records", removed)
        return removed

    def count(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM dedup_records").fetchone()
        return int(row["n"])
