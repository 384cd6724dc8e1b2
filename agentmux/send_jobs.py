"""Durable store for send jobs plus the per-session FIFO execution queue."""

import logging
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import InvalidInputError, JobFailedError, JobNotFoundError, JobWaitTimeoutError, QueueTurnTimeoutError
from .lock_manager import FileLock, hashed_lock_path
from .models import SendJob, SendJobStatus, allowed_sources, can_transition

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 7 * 24 * 3600
STALE_AFTER_SECONDS = 15 * 60

_TERMINAL = tuple(s.value for s in SendJobStatus if s.is_terminal)
_QUEUED = tuple(s.value for s in SendJobStatus if s.is_queued)

_COLUMNS = "id, command, session_name, agent_id, status, error, created_at, updated_at, completed_at, sequence"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def new_job_id() -> str:
    """Generate a job id: ``sj_<base36 nanoseconds>_<random hex>``."""
    return f"sj_{_base36(time.time_ns())}_{secrets.token_hex(6)}"


def _row_to_job(row) -> SendJob:
    return SendJob(
        id=row[0],
        command=row[1],
        session_name=row[2],
        agent_id=row[3] or None,
        status=SendJobStatus(row[4]),
        error=row[5] or "",
        created_at=row[6],
        updated_at=row[7],
        completed_at=row[8],
        sequence=row[9],
    )


class SendJobStore:
    """
    SQLite-backed send jobs shared by every CLI process and detached worker.

    Status changes are conditional UPDATEs (``WHERE status IN (...)``) so a
    terminal state can never be overwritten, whichever process gets there first.
    """

    def __init__(
        self,
        db_path: str,
        config: Optional[dict] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_dir = self.db_path.parent
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic

        config = config or {}
        job_config = config.get("timeouts", {}).get("send_jobs", {})
        self.retention_seconds = job_config.get("retention_seconds", RETENTION_SECONDS)
        self.stale_after_seconds = job_config.get("stale_after_seconds", STALE_AFTER_SECONDS)
        self.queue_poll_seconds = job_config.get("queue_poll_seconds", 0.02)
        self.queue_max_poll_seconds = job_config.get("queue_max_poll_seconds", 1.0)
        self.queue_max_wait_seconds = job_config.get("queue_max_wait_seconds", 2 * self.stale_after_seconds)

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
            cursor = conn.cursor()
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS send_jobs (
                    id TEXT PRIMARY KEY,
                    command TEXT NOT NULL,
                    session_name TEXT NOT NULL,
                    agent_id TEXT,
                    status TEXT NOT NULL,
                    error TEXT NOT NULL DEFAULT '',
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    completed_at REAL,
                    sequence INTEGER NOT NULL
                )
                """
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_send_jobs_session_status ON send_jobs(session_name, status)"
            )
            conn.commit()

    def close(self):
        with self._db_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def _reconcile_stale(self, conn: sqlite3.Connection) -> int:
        """Fail queued jobs whose processor stopped updating them."""
        now = self._clock()
        cursor = conn.execute(
            f"""
            UPDATE send_jobs
            SET error = CASE WHEN error = '' THEN
                    'job marked failed after stale ' || status || ' timeout; processor may have exited'
                    ELSE error END,
                status = ?,
                updated_at = ?,
                completed_at = ?
            WHERE status IN ({",".join("?" * len(_QUEUED))}) AND updated_at <= ?
            """,
            (SendJobStatus.FAILED.value, now, now, *_QUEUED, now - self.stale_after_seconds),
        )
        if cursor.rowcount:
            logger.warning(f"Marked {cursor.rowcount} stale send job(s) failed")
        return cursor.rowcount

    def _prune(self, conn: sqlite3.Connection) -> int:
        cursor = conn.execute(
            f"DELETE FROM send_jobs WHERE status IN ({','.join('?' * len(_TERMINAL))}) AND updated_at <= ?",
            (*_TERMINAL, self._clock() - self.retention_seconds),
        )
        if cursor.rowcount:
            logger.debug(f"Pruned {cursor.rowcount} expired send job(s)")
        return cursor.rowcount

    def _select(self, conn: sqlite3.Connection, job_id: str) -> Optional[SendJob]:
        row = conn.execute(f"SELECT {_COLUMNS} FROM send_jobs WHERE id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create(self, session_name: str, agent_id: Optional[str] = None) -> SendJob:
        """Insert a new pending job for ``session_name``."""
        now = self._clock()
        job_id = new_job_id()
        with self._db_lock:
            conn = self._get_conn()
            self._reconcile_stale(conn)
            self._prune(conn)
            conn.execute(
                f"""
                INSERT INTO send_jobs ({_COLUMNS})
                VALUES (?, 'agent.send', ?, ?, ?, '', ?, ?, NULL,
                        (SELECT COALESCE(MAX(sequence), 0) + 1 FROM send_jobs))
                """,
                (job_id, session_name, agent_id or None, SendJobStatus.PENDING.value, now, now),
            )
            conn.commit()
            job = self._select(conn, job_id)
        logger.info(f"Created send job {job_id} for {session_name}")
        return job

    def get(self, job_id: str) -> Optional[SendJob]:
        with self._db_lock:
            conn = self._get_conn()
            if self._reconcile_stale(conn):
                conn.commit()
            return self._select(conn, job_id)

    def set_status(self, job_id: str, status: SendJobStatus, error: str = "") -> SendJob:
        """
        Move a job to ``status`` if the transition is allowed.

        A disallowed transition (including anything out of a terminal state)
        leaves the row untouched and returns it as stored.

        Raises:
            JobNotFoundError: unknown job id
        """
        sources = [s.value for s in allowed_sources(status)]
        now = self._clock()
        with self._db_lock:
            conn = self._get_conn()
            self._reconcile_stale(conn)
            changed = 0
            if sources:
                changed = conn.execute(
                    f"""
                    UPDATE send_jobs
                    SET status = ?, error = ?, updated_at = ?,
                        completed_at = CASE WHEN ? THEN ? ELSE completed_at END
                    WHERE id = ? AND status IN ({",".join("?" * len(sources))})
                    """,
                    (status.value, error.strip(), now, status.is_terminal, now, job_id, *sources),
                ).rowcount
            conn.commit()
            job = self._select(conn, job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found", details={"job_id": job_id})
        if changed:
            logger.info(f"Send job {job_id} -> {status.value}")
        elif not can_transition(job.status, status):
            logger.debug(f"Ignored send job {job_id} transition {job.status.value} -> {status.value}")
        return job

    def cancel(self, job_id: str) -> tuple[SendJob, bool]:
        """
        Cancel a pending job.

        Returns:
            (job, was_canceled); was_canceled is False when the job had
            already left ``pending``

        Raises:
            JobNotFoundError: unknown job id
        """
        now = self._clock()
        with self._db_lock:
            conn = self._get_conn()
            self._reconcile_stale(conn)
            canceled = conn.execute(
                """
                UPDATE send_jobs SET status = ?, updated_at = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (SendJobStatus.CANCELED.value, now, now, job_id, SendJobStatus.PENDING.value),
            ).rowcount == 1
            conn.commit()
            job = self._select(conn, job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found", details={"job_id": job_id})
        if canceled:
            logger.info(f"Canceled send job {job_id}")
        return job, canceled

    def wait(
        self,
        job_id: str,
        timeout: float = 30.0,
        poll_interval: float = 0.2,
        deadline: Optional[float] = None,
    ) -> SendJob:
        """
        Poll until the job is terminal.

        Args:
            deadline: Optional overall monotonic deadline; the earlier of it and
                ``timeout`` wins

        Returns:
            The completed or canceled job

        Raises:
            InvalidInputError: timeout or poll_interval <= 0
            JobNotFoundError: unknown job id
            JobFailedError: job ended in ``failed``
            JobWaitTimeoutError: no terminal status before the deadline
        """
        if timeout <= 0 or poll_interval <= 0:
            raise InvalidInputError(
                "timeout and interval must be > 0",
                details={"timeout": timeout, "interval": poll_interval},
            )
        end = self._monotonic() + timeout
        if deadline is not None:
            end = min(end, deadline)

        while True:
            job = self.get(job_id)
            if job is None:
                raise JobNotFoundError(f"job {job_id} not found", details={"job_id": job_id})
            if job.status.is_terminal:
                if job.status == SendJobStatus.FAILED:
                    raise JobFailedError(job)
                return job
            remaining = end - self._monotonic()
            if remaining <= 0:
                raise JobWaitTimeoutError(job_id, job.status.value)
            self._sleep(min(poll_interval, remaining))

    # -------------------------------------------------------------------------
    # Per-session FIFO
    # -------------------------------------------------------------------------

    def queue_lock_path(self, session_name: str) -> Path:
        return hashed_lock_path(self.lock_dir, "send-queue-", session_name)

    def _is_queued_for_session(self, session_name: str, job_id: str) -> bool:
        job = self.get(job_id)
        return job is not None and job.session_name.strip() == session_name.strip() and job.status.is_queued

    def next_queued_job(self, session_name: str) -> Optional[SendJob]:
        """Head of a session's queue: running jobs first, then oldest."""
        with self._db_lock:
            conn = self._get_conn()
            if self._reconcile_stale(conn):
                conn.commit()
            row = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM send_jobs
                WHERE session_name = ? AND status IN ({",".join("?" * len(_QUEUED))})
                ORDER BY CASE WHEN status = ? THEN 0 ELSE 1 END, created_at, sequence, id
                LIMIT 1
                """,
                (session_name.strip(), *_QUEUED, SendJobStatus.RUNNING.value),
            ).fetchone()
        return _row_to_job(row) if row else None

    def acquire_queue_turn(self, session_name: str, job_id: str) -> FileLock:
        """
        Block until ``job_id`` heads its session's queue, holding the queue lock.

        The caller must release the returned lock. A job that is no longer
        queued (canceled, already finished) gets the lock immediately so the
        caller can observe its state and return.

        Raises:
            QueueTurnTimeoutError: the job did not reach the head in time
        """
        start = self._monotonic()
        delay = self.queue_poll_seconds
        while True:
            lock = FileLock(self.queue_lock_path(session_name))
            lock.acquire()
            try:
                if not job_id or not self._is_queued_for_session(session_name, job_id):
                    return lock
                head = self.next_queued_job(session_name)
                if head is None or head.id == job_id:
                    return lock
            except BaseException:
                lock.release()
                raise
            lock.release()

            logger.debug(f"Send job {job_id} waiting behind {head.id} on {session_name}")
            if self.queue_max_wait_seconds > 0 and self._monotonic() - start >= self.queue_max_wait_seconds:
                raise QueueTurnTimeoutError(
                    f"timed out waiting for send queue turn for job {job_id}",
                    details={"job_id": job_id, "session_name": session_name},
                )
            self._sleep(delay)
            delay = min(delay * 2, self.queue_max_poll_seconds)

    @contextmanager
    def queue_turn(self, session_name: str, job_id: str) -> Iterator[FileLock]:
        lock = self.acquire_queue_turn(session_name, job_id)
        try:
            yield lock
        finally:
            lock.release()
