"""Write lock for the state directory.

Exactly one process may hold the lock at a time. Two strategies are
available and one is chosen by platform capability:

- ``FlockLockStrategy``: kernel advisory lock (``fcntl.flock``) on a lock
  file. The lock dies with the process, so a crashed holder never blocks
  the next acquirer.
- ``DirectoryLockStrategy``: atomic ``mkdir`` of a lock directory, for
  platforms without ``fcntl``.

Both record the owner (pid, host, acquisition time) inside the lock
artifact. The owner record is informational only; a lock is never reclaimed
automatically.
"""

from __future__ import annotations

import atexit
import importlib
import importlib.util
import json
import logging
import os
import socket
import time
import weakref
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path

from aipm.errors import LockNotHeldError, LockUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0
POLL_INTERVAL = 0.5

# Managers currently holding a lock; released at interpreter exit.
_held_managers: "weakref.WeakSet[LockManager]" = weakref.WeakSet()


@atexit.register
def _release_held_locks() -> None:
    for manager in list(_held_managers):
        manager.release()


def _owner_record() -> dict:
    return {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "acquiredAt": datetime.now(timezone.utc).isoformat(),
    }


class LockStrategy(ABC):
    """One non-blocking attempt at taking or dropping the lock."""

    name = "abstract"

    def __init__(self, lock_path: str | Path):
        self.lock_path = Path(lock_path)

    @abstractmethod
    def try_acquire(self) -> bool:
        """Take the lock without waiting. Return True on success."""

    @abstractmethod
    def release(self) -> None:
        """Drop the lock. Must be safe to call when not held."""

    @abstractmethod
    def owner(self) -> dict | None:
        """Return the recorded owner of the lock, if any."""


class FlockLockStrategy(LockStrategy):
    name = "flock"

    def __init__(self, lock_path: str | Path):
        super().__init__(lock_path)
        self._fcntl = importlib.import_module("fcntl")
        self._fd: int | None = None

    def try_acquire(self) -> bool:
        if self._fd is not None:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            self._fcntl.flock(fd, self._fcntl.LOCK_EX | self._fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            return False

        # The previous holder unlinks the file on release; if we locked an
        # inode that is no longer at lock_path, someone else may hold the new one.
        try:
            on_disk = os.stat(self.lock_path).st_ino
        except FileNotFoundError:
            on_disk = None
        if on_disk != os.fstat(fd).st_ino:
            self._fcntl.flock(fd, self._fcntl.LOCK_UN)
            os.close(fd)
            return False

        os.ftruncate(fd, 0)
        os.write(fd, json.dumps(_owner_record()).encode("utf-8"))
        self._fd = fd
        return True

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            self.lock_path.unlink()
        except OSError:
            pass
        try:
            self._fcntl.flock(fd, self._fcntl.LOCK_UN)
        except OSError:
            pass
        try:
            os.close(fd)
        except OSError:
            pass

    def owner(self) -> dict | None:
        try:
            return json.loads(self.lock_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None


class DirectoryLockStrategy(LockStrategy):
    name = "directory"

    OWNER_FILE = "owner.json"

    def __init__(self, lock_path: str | Path):
        super().__init__(lock_path)
        self._held = False

    def try_acquire(self) -> bool:
        if self._held:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.lock_path)
        except FileExistsError:
            return False
        self._held = True
        try:
            (self.lock_path / self.OWNER_FILE).write_text(
                json.dumps(_owner_record()), encoding="utf-8"
            )
        except OSError as e:
            logger.debug("Could not record lock owner: %s", e)
        return True

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            (self.lock_path / self.OWNER_FILE).unlink()
        except OSError:
            pass
        try:
            os.rmdir(self.lock_path)
        except OSError as e:
            logger.error("Failed to remove lock directory %s: %s", self.lock_path, e)

    def owner(self) -> dict | None:
        try:
            return json.loads((self.lock_path / self.OWNER_FILE).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None


def select_lock_strategy(lock_path: str | Path) -> LockStrategy:
    """Pick the strongest lock the platform offers."""
    lock_path = Path(lock_path)
    if importlib.util.find_spec("fcntl") is not None:
        return FlockLockStrategy(lock_path)
    return DirectoryLockStrategy(lock_path.with_name(lock_path.name + ".dir"))


class LockManager:
    """Bounded-wait exclusive lock over the state directory.

    Usable as a context manager::

        with LockManager(state_dir / "workspace.lock"):
            ...  # raises LockUnavailableError on timeout
    """

    def __init__(
        self,
        lock_path: str | Path,
        strategy: LockStrategy | None = None,
        default_timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.lock_path = Path(lock_path)
        self.strategy = strategy or select_lock_strategy(self.lock_path)
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self, timeout: float | None = None) -> bool:
        """Wait up to ``timeout`` seconds for the lock.

        Returns False on timeout; nothing is written in that case.
        """
        if self._held:
            return True
        if timeout is None:
            timeout = self.default_timeout

        deadline = time.monotonic() + max(timeout, 0.0)
        attempts = 0
        while True:
            attempts += 1
            if self.strategy.try_acquire():
                self._held = True
                _held_managers.add(self)
                logger.debug("Acquired %s lock %s after %d attempt(s)",
                             self.strategy.name, self.lock_path, attempts)
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug("Timed out waiting for lock %s (owner: %s)",
                             self.lock_path, self.strategy.owner())
                return False
            time.sleep(min(self.poll_interval, remaining))

    def release(self) -> None:
        """Release the lock. Idempotent and never raises."""
        if not self._held:
            return
        self._held = False
        _held_managers.discard(self)
        try:
            self.strategy.release()
        except Exception as e:  # called from finally/atexit paths
            logger.error("Error releasing lock %s: %s", self.lock_path, e)

    def validate_held(self) -> None:
        if not self._held:
            raise LockNotHeldError(f"Lock not held: {self.lock_path}")

    def owner(self) -> dict | None:
        """Diagnostic owner record of whoever holds the lock right now."""
        return self.strategy.owner()

    def __enter__(self) -> "LockManager":
        if not self.acquire():
            raise LockUnavailableError(
                f"Could not acquire state lock {self.lock_path} "
                f"within {self.default_timeout:g}s (owner: {self.owner()})"
            )
        return self

    def __exit__(self, *exc) -> None:
        self.release()
