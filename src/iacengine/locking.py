"""Exclusive advisory locks, one per workspace.

Acquisition is an atomic conditional create of the workspace's lock key: it
either creates the lock or fails with LockHeldError carrying the existing
lock's holder information. By default a held lock fails fast. A timeout
retries with exponential backoff until the deadline; that is the only retry
loop in the engine and it only runs when explicitly requested.

OWNERSHIP:
- ``release`` only removes the lock if the caller still holds it; releasing
  a lock that is gone or owned by someone else logs a warning and returns
- ``force_unlock`` bypasses the ownership check but requires the exact lock
  id, so an operator cannot remove a lock they have not inspected
"""

from __future__ import annotations

import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError

from .config import LOCK_RETRY_BACKOFF_BASE_SECONDS, LOCK_RETRY_BACKOFF_MAX_SECONDS
from .models import Lock, LockHolder
from .state import locked_file
from .workspace import KeyLayout

logger = logging.getLogger(__name__)


class LockError(Exception):
    """Base class for locking errors."""

    pass


class LockHeldError(LockError):
    """Raised when a workspace is already locked.

    Attributes:
        lock: The lock currently held, if it could be read.
    """

    def __init__(self, workspace: str, lock: Lock | None) -> None:
        detail = lock.describe() if lock else "lock information unavailable"
        super().__init__(f"Workspace '{workspace}' is locked. Lock info: {detail}")
        self.workspace = workspace
        self.lock = lock


class LockLostError(LockError):
    """Raised when a session no longer holds the lock it acquired."""

    pass


class LockManager(ABC):
    """Acquire, inspect and release workspace locks.

    Args:
        layout: Workspace to key mapping.
        sleep: Sleep function used between retries (injectable for tests).
    """

    def __init__(
        self,
        layout: KeyLayout | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.layout = layout or KeyLayout()
        self._sleep = sleep

    # Backend primitives
    @abstractmethod
    def _create(self, lock: Lock) -> None:
        """Atomically create the lock record.

        Raises:
            LockHeldError: If a lock record already exists.
        """

    @abstractmethod
    def _remove(self, lock: Lock) -> bool:
        """Remove the lock record if it still is this lock. Returns whether it was removed."""

    @abstractmethod
    def current(self, workspace: str) -> Lock | None:
        """Get the lock currently held on a workspace, if any."""

    def acquire(self, workspace: str, holder: LockHolder, timeout: float | None = None) -> Lock:
        """Acquire the workspace lock.

        Args:
            workspace: Workspace to lock.
            holder: Identity and purpose of the caller.
            timeout: Seconds to keep retrying while the lock is held. None or
                0 fails immediately.

        Returns:
            The acquired lock; pass it to release.

        Raises:
            LockHeldError: If the lock is held (after the timeout, if any).
        """
        self.layout.resolve(workspace)
        deadline = time.monotonic() + timeout if timeout else None
        attempt = 0
        while True:
            lock = Lock.for_holder(workspace, holder)
            try:
                self._create(lock)
            except LockHeldError as e:
                remaining = deadline - time.monotonic() if deadline is not None else 0.0
                if remaining <= 0:
                    logger.warning(
                        "Workspace is locked",
                        extra={
                            "workspace": workspace,
                            "held_by": e.lock.holder_id if e.lock else None,
                            "lock_id": e.lock.lock_id if e.lock else None,
                        },
                    )
                    raise
                delay = min(
                    LOCK_RETRY_BACKOFF_BASE_SECONDS * (2**attempt),
                    LOCK_RETRY_BACKOFF_MAX_SECONDS,
                    remaining,
                )
                attempt += 1
                logger.info(
                    "Waiting for workspace lock",
                    extra={"workspace": workspace, "attempt": attempt, "delay_seconds": delay},
                )
                self._sleep(delay)
                continue

            logger.info(
                "Acquired workspace lock",
                extra={
                    "workspace": workspace,
                    "lock_id": lock.lock_id,
                    "holder_id": lock.holder_id,
                    "operation": lock.operation.value,
                },
            )
            return lock

    def release(self, lock: Lock) -> None:
        """Release a lock held by the caller. Idempotent."""
        existing = self.current(lock.workspace)
        if existing is None:
            logger.debug("Lock already released", extra={"workspace": lock.workspace, "lock_id": lock.lock_id})
            return
        if existing.lock_id != lock.lock_id:
            logger.warning(
                "Not releasing lock held by another holder",
                extra={
                    "workspace": lock.workspace,
                    "lock_id": lock.lock_id,
                    "current_lock_id": existing.lock_id,
                    "current_holder_id": existing.holder_id,
                },
            )
            return
        if self._remove(existing):
            logger.info("Released workspace lock", extra={"workspace": lock.workspace, "lock_id": lock.lock_id})

    def verify(self, lock: Lock) -> None:
        """Ensure lock is still held.

        Raises:
            LockLostError: If the lock was removed or replaced.
        """
        existing = self.current(lock.workspace)
        if existing is None or existing.lock_id != lock.lock_id:
            raise LockLostError(
                f"Lock {lock.lock_id} on workspace '{lock.workspace}' is no longer held"
                + (f" (now held by {existing.holder_id})" if existing else "")
            )

    def force_unlock(self, workspace: str, lock_id: str) -> Lock:
        """Remove a lock regardless of who holds it.

        Args:
            workspace: Locked workspace.
            lock_id: Exact id of the lock to remove.

        Returns:
            The removed lock.

        Raises:
            LockError: If no lock is held or the id does not match.
        """
        existing = self.current(workspace)
        if existing is None:
            raise LockError(f"Workspace '{workspace}' is not locked")
        if existing.lock_id != lock_id:
            raise LockError(
                f"Lock ID mismatch for workspace '{workspace}': given {lock_id}, "
                f"held {existing.lock_id}"
            )
        if not self._remove(existing):
            raise LockError(f"Lock {lock_id} on workspace '{workspace}' changed while unlocking")
        # SECURITY: force-unlock overrides another session's ownership
        logger.warning(
            "Force-unlocked workspace",
            extra={"workspace": workspace, "lock_id": lock_id, "holder_id": existing.holder_id},
        )
        return existing


# =============================================================================
# In-memory backend
# =============================================================================


class MemoryLockManager(LockManager):
    """Thread-safe in-process locks."""

    def __init__(
        self,
        layout: KeyLayout | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(layout, sleep)
        self._locks: dict[str, Lock] = {}
        self._mutex = threading.Lock()

    def _create(self, lock: Lock) -> None:
        with self._mutex:
            existing = self._locks.get(lock.workspace)
            if existing is not None:
                raise LockHeldError(lock.workspace, existing)
            self._locks[lock.workspace] = lock

    def _remove(self, lock: Lock) -> bool:
        with self._mutex:
            existing = self._locks.get(lock.workspace)
            if existing is None or existing.lock_id != lock.lock_id:
                return False
            del self._locks[lock.workspace]
            return True

    def current(self, workspace: str) -> Lock | None:
        with self._mutex:
            return self._locks.get(workspace)


# =============================================================================
# Local filesystem backend
# =============================================================================


class LocalLockManager(LockManager):
    """Lock files created with O_CREAT | O_EXCL next to the state files."""

    def __init__(
        self,
        root: Path,
        layout: KeyLayout | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(layout, sleep)
        self._root = root

    def _path(self, workspace: str) -> Path:
        return self._root / self.layout.resolve(workspace).lock_key

    def _create(self, lock: Lock) -> None:
        path = self._path(lock.workspace)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            try:
                existing = self.current(lock.workspace)
            except LockError:
                existing = None
            raise LockHeldError(lock.workspace, existing) from None
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(lock.model_dump_json())
            handle.flush()
            os.fsync(handle.fileno())

    def _remove(self, lock: Lock) -> bool:
        path = self._path(lock.workspace)
        with locked_file(path):
            existing = self.current(lock.workspace)
            if existing is None or existing.lock_id != lock.lock_id:
                return False
            path.unlink(missing_ok=True)
            return True

    def current(self, workspace: str) -> Lock | None:
        path = self._path(workspace)
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return Lock.model_validate_json(data)
        except ValidationError as e:
            # A half-written lock file is still a held lock
            logger.warning(
                "Unreadable lock file",
                extra={"workspace": workspace, "path": str(path), "error": str(e)},
            )
            raise LockError(f"Unreadable lock file {path}") from e
