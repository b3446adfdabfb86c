"""Advisory file locks shared by the daemon and the one-shot commands.

On macOS/Linux uses ``fcntl.flock``; on Windows uses ``msvcrt.locking``.
Locks are non-blocking: a contended lock is retried a bounded number of
times and then fails fast with ``LockHeld`` instead of waiting forever.

Two locks exist:

- the *state lock* (``state.json.lock``), held only for the
  load-modify-save window of a State Store mutation;
- the *instance lock* (``daemon.lock``), held for the lifetime of
  ``lastsignal run`` so two daemons never drive the same state file.

Lock files are left on disk after release: removing them would let a third
process lock a fresh inode while a second one still holds the old one.
"""

from __future__ import annotations

import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from lastsignal.errors import InstanceAlreadyRunning

logger = logging.getLogger(__name__)


class LockHeld(RuntimeError):
    """Raised when another process holds the requested lock."""

    def __init__(self, lock_path: Path, owner_pid: str = "unknown") -> None:
        super().__init__(f"Lock {lock_path} is held by another process (pid={owner_pid})")
        self.lock_path = lock_path
        self.owner_pid = owner_pid


@contextmanager
def file_lock(
    lock_path: Path,
    *,
    retries: int = 0,
    backoff_seconds: float = 0.0,
    write_pid: bool = False,
) -> Generator[Path, None, None]:
    """Hold an exclusive advisory lock on *lock_path* for the ``with`` body.

    Args:
        lock_path: Lock file; created if missing.
        retries: Extra attempts after the first one fails.
        backoff_seconds: Linear backoff between attempts.
        write_pid: Record our PID in the lock file for diagnostics.

    Raises:
        LockHeld: If the lock is still held after all attempts.
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
    try:
        for attempt in range(1, retries + 2):
            if _try_lock(fd):
                break
            if attempt > retries:
                raise LockHeld(lock_path, _read_owner(lock_path))
            logger.debug("[LOCK] %s busy; retrying (%s/%s)", lock_path.name, attempt, retries)
            time.sleep(backoff_seconds * attempt)

        try:
            if write_pid:
                os.lseek(fd, 0, os.SEEK_SET)
                os.ftruncate(fd, 0)
                os.write(fd, f"{os.getpid()}\n".encode())
            yield lock_path
        finally:
            _unlock(fd)
    finally:
        os.close(fd)


@contextmanager
def acquire_instance_lock(lock_path: Path) -> Generator[Path, None, None]:
    """Context manager that holds the daemon lock for the process lifetime.

    Raises:
        InstanceAlreadyRunning: If another daemon already holds the lock.
    """
    try:
        with file_lock(lock_path, write_pid=True) as held:
            logger.info("[LOCK] Instance lock acquired: %s (pid=%s)", held, os.getpid())
            try:
                yield held
            finally:
                logger.info("[LOCK] Instance lock released.")
    except LockHeld as exc:
        raise InstanceAlreadyRunning(
            f"Another LastSignal daemon is already running (pid={exc.owner_pid}). "
            f"Lock file: {exc.lock_path}"
        ) from exc


# ---------------------------------------------------------------------------
# Platform-specific lock helpers
# ---------------------------------------------------------------------------

def _try_lock(fd: int) -> bool:
    if sys.platform == "win32":
        return _try_lock_windows(fd)
    return _try_lock_posix(fd)


def _try_lock_posix(fd: int) -> bool:
    import fcntl
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, PermissionError):
        return False
    return True


def _try_lock_windows(fd: int) -> bool:
    import msvcrt
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    except OSError:
        return False
    return True


def _unlock(fd: int) -> None:
    if sys.platform == "win32":
        import msvcrt
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl
        fcntl.flock(fd, fcntl.LOCK_UN)


def _read_owner(lock_path: Path) -> str:
    try:
        return lock_path.read_text().strip() or "unknown"
    except OSError:
        return "unknown"
