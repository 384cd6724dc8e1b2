"""Write-once replay cache for mutating commands keyed by (command, key)."""

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 7 * 24 * 3600


@dataclass
class IdempotencyRecord:
    """A stored outcome: the exit status and the exact envelope bytes written."""
    command: str
    key: str
    exit_code: int
    envelope: bytes
    created_at: float


class IdempotencyStore:
    """
    SQLite-backed idempotency entries.

    The (command, key) primary key plus INSERT OR IGNORE makes concurrent
    recorders resolve first-writer-wins; every caller gets back the stored row.
    """

    def __init__(
        self,
        db_path: str,
        retention_seconds: float = RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.retention_seconds = retention_seconds
        self._clock = clock

        self._conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self):
        with self._db_lock:
            conn = self._get_conn()
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_entries (
                    command TEXT NOT NULL,
                    key TEXT NOT NULL,
                    exit_code INTEGER NOT NULL,
                    envelope BLOB NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (command, key)
                )
                """
            )
            conn.commit()

    def close(self):
        with self._db_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _cutoff(self) -> float:
        return self._clock() - self.retention_seconds

    def _select(self, conn: sqlite3.Connection, command: str, key: str) -> Optional[IdempotencyRecord]:
        row = conn.execute(
            "SELECT exit_code, envelope, created_at FROM idempotency_entries WHERE command = ? AND key = ?",
            (command, key),
        ).fetchone()
        if row is None:
            return None
        exit_code, envelope, created_at = row
        if created_at <= self._cutoff() or not envelope:
            return None
        return IdempotencyRecord(command, key, exit_code, bytes(envelope), created_at)

    def lookup(self, command: str, key: str) -> Optional[IdempotencyRecord]:
        """Return the live record for (command, key), or None. Blank inputs never hit storage."""
        command = (command or "").strip()
        key = (key or "").strip()
        if not command or not key:
            return None
        with self._db_lock:
            return self._select(self._get_conn(), command, key)

    def record(self, command: str, key: str, exit_code: int, envelope: bytes) -> Optional[IdempotencyRecord]:
        """
        Persist an outcome unless one already exists.

        Returns:
            The stored record (which is someone else's if they won the race),
            or None when key is blank.

        Raises:
            ValueError: envelope is empty
        """
        command = (command or "").strip()
        key = (key or "").strip()
        if not command or not key:
            return None
        if not envelope:
            raise ValueError("idempotency envelope cannot be empty")

        now = self._clock()
        with self._db_lock:
            conn = self._get_conn()
            # Expired entries must not block a fresh record under the same key
            pruned = conn.execute(
                "DELETE FROM idempotency_entries WHERE created_at <= ?", (self._cutoff(),)
            ).rowcount
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO idempotency_entries (command, key, exit_code, envelope, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (command, key, exit_code, sqlite3.Binary(envelope), now),
            )
            conn.commit()
            if pruned:
                logger.debug(f"Pruned {pruned} expired idempotency entries")
            if cursor.rowcount == 0:
                logger.info(f"Idempotency key {command}|{key} already recorded; keeping first outcome")
            return self._select(conn, command, key)
