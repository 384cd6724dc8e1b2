"""Lock file management for cross-process coordination.

Each CLI invocation is its own process, so anything that must be serialized
(a workspace record rewrite, a session's send queue) is guarded by an
``fcntl.flock`` on a dedicated lock file next to the data it protects.
"""

import fcntl
import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class FileLock:
    """An exclusive advisory lock on a lock file (created if missing)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file = None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a+")
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_EX)
        except OSError:
            self._file.close()
            self._file = None
            raise
        logger.debug(f"Acquired lock {self.path}")

    def release(self):
        if self._file is None:
            return
        try:
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None
        logger.debug(f"Released lock {self.path}")

    @property
    def held(self) -> bool:
        return self._file is not None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


@contextmanager
def file_lock(path: Path) -> Iterator[FileLock]:
    """
    Hold a lock on ``path`` for the duration of the block.

    The lock is released when the block exits, even if an exception occurs.
    """
    lock = FileLock(path)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


def hashed_lock_path(directory: Path, prefix: str, key: str, suffix: Optional[str] = ".lock") -> Path:
    """Lock file path for an arbitrary key (session names may contain path separators)."""
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]
    return Path(directory) / f"{prefix}{digest}{suffix or ''}"
