"""
Exclusive lock guarding the state document.

A sibling ``<state>.lock`` file is locked with ``flock`` and tagged with
the owner's PID. ``flock`` locks belong to the open file description, so
the kernel releases them when the owning process dies; a lock file left
behind by a dead process is therefore reclaimed on the next attempt, and
the dead PID is only reported.

The lock is re-entrant per thread: nested ``with lock:`` blocks in the
same thread share one acquisition.
"""

from __future__ import annotations

import fcntl
import logging
import os
import random
import threading
import time
from pathlib import Path

from serversh.core.constants import TIMEOUT_STATE_OPERATION
from serversh.core.errors import LockError

logger = logging.getLogger(__name__)

_MIN_DELAY_MSEC = 50
_MAX_DELAY_MSEC = 250


def _try_lock_exclusively(fileno: int) -> bool:
    try:
        fcntl.flock(fileno, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def read_owner(lock_path: Path) -> int | None:
    """PID recorded in a lock file, or None if absent or unreadable."""
    try:
        text = lock_path.read_text(encoding="ascii").strip()
    except (OSError, UnicodeDecodeError):
        return None
    return int(text) if text.isdigit() else None


class StateLock:
    """Inter-process exclusive lock with bounded, jittered waiting.

    Usage::

        lock = StateLock(Path("/var/lib/serversh/state.json.lock"))
        with lock:
            ...  # read-modify-write the state document
    """

    def __init__(self, path: Path, timeout: float = TIMEOUT_STATE_OPERATION):
        self._path = Path(path)
        self._timeout = timeout
        self._local = threading.local()
        self._mutex = threading.Lock()
        self._fd: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        """Whether the calling thread holds the lock."""
        return getattr(self._local, "depth", 0) > 0

    def acquire(self) -> None:
        """Acquire the lock, waiting up to ``timeout`` seconds.

        Raises:
            LockError: If the lock is still held elsewhere after the timeout.
        """
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            return

        # Threads sharing this object serialize here before touching flock
        if not self._mutex.acquire(timeout=self._timeout):
            raise LockError(f"Timed out waiting for state lock {self._path}")

        try:
            self._fd = self._wait_locked()
        except BaseException:
            self._mutex.release()
            raise
        self._local.depth = 1

    def release(self) -> None:
        depth = getattr(self._local, "depth", 0)
        if depth == 0:
            raise LockError(f"State lock {self._path} released without being held")
        if depth > 1:
            self._local.depth = depth - 1
            return

        self._local.depth = 0
        fd, self._fd = self._fd, None
        try:
            if fd is not None:
                os.ftruncate(fd, 0)
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
                logger.debug("%s is released", self._path)
        finally:
            self._mutex.release()

    def __enter__(self) -> StateLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def _wait_locked(self) -> int:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        end_at = time.monotonic() + self._timeout
        reported_stale = False

        while True:
            fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
            if _try_lock_exclusively(fd):
                previous = read_owner(self._path)
                if previous is not None and previous != os.getpid() and not _pid_alive(previous):
                    logger.warning(
                        "Reclaiming stale state lock %s (holder PID %d is gone)",
                        self._path, previous,
                    )
                os.ftruncate(fd, 0)
                os.write(fd, f"{os.getpid()}\n".encode("ascii"))
                logger.debug("%s locked exclusively", self._path)
                return fd
            os.close(fd)

            owner = read_owner(self._path)
            if owner is not None and not _pid_alive(owner) and not reported_stale:
                logger.warning("State lock %s names dead PID %d, still waiting", self._path, owner)
                reported_stale = True

            sec_left = end_at - time.monotonic()
            if sec_left <= 0:
                holder = f" (held by PID {owner})" if owner else ""
                raise LockError(
                    f"Could not acquire state lock {self._path} "
                    f"after {self._timeout:g}s{holder}"
                )
            factor = sec_left / self._timeout
            delay_msec = random.randint(0, int(_MAX_DELAY_MSEC * factor)) + _MIN_DELAY_MSEC
            time.sleep(min(delay_msec / 1000, sec_left))
