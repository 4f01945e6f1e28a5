"""Tests for workspace locks."""

from pathlib import Path

import pytest

from iacengine.locking import (
    LocalLockManager,
    LockError,
    LockHeldError,
    LockLostError,
    LockManager,
    MemoryLockManager,
)
from iacengine.models import LockHolder, LockOperation
from iacengine.workspace import KeyLayout


class RecordingSleep:
    """Sleep replacement that records delays instead of sleeping."""

    def __init__(self, on_sleep=None) -> None:
        self.delays: list[float] = []
        self._on_sleep = on_sleep

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._on_sleep:
            self._on_sleep(len(self.delays))


@pytest.fixture(params=["memory", "local"])
def locks(request: pytest.FixtureRequest, tmp_path: Path) -> LockManager:
    if request.param == "memory":
        return MemoryLockManager()
    return LocalLockManager(tmp_path)


def _holder(name: str = "alice@host:1", operation: LockOperation = LockOperation.APPLY) -> LockHolder:
    return LockHolder(holder_id=name, operation=operation, info="test")


class TestLockManagerContract:
    """Lock semantics shared by every backend."""

    def test_acquire_and_release(self, locks: LockManager) -> None:
        """Test the basic lock lifecycle."""
        lock = locks.acquire("default", _holder())

        assert locks.current("default") == lock
        locks.release(lock)
        assert locks.current("default") is None

    def test_held_lock_fails_fast(self, locks: LockManager) -> None:
        """Test that a second holder gets the existing lock's information."""
        first = locks.acquire("default", _holder("alice@host:1"))

        with pytest.raises(LockHeldError) as exc_info:
            locks.acquire("default", _holder("bob@host:2"))

        assert exc_info.value.lock == first
        assert "alice@host:1" in str(exc_info.value)
        assert first.lock_id in str(exc_info.value)

    def test_workspaces_lock_independently(self, locks: LockManager) -> None:
        """Test that locking one workspace does not block another."""
        locks.acquire("dev", _holder())

        other = locks.acquire("prod", _holder("bob@host:2"))

        assert other.workspace == "prod"

    def test_release_is_idempotent(self, locks: LockManager) -> None:
        """Test releasing a lock twice."""
        lock = locks.acquire("default", _holder())
        locks.release(lock)
        locks.release(lock)

        assert locks.current("default") is None

    def test_release_does_not_remove_foreign_lock(self, locks: LockManager) -> None:
        """Test that a stale handle cannot release a newer lock."""
        old = locks.acquire("default", _holder("alice@host:1"))
        locks.force_unlock("default", old.lock_id)
        new = locks.acquire("default", _holder("bob@host:2"))

        locks.release(old)

        assert locks.current("default") == new

    def test_verify(self, locks: LockManager) -> None:
        """Test detecting a lost lock."""
        lock = locks.acquire("default", _holder())
        locks.verify(lock)

        locks.force_unlock("default", lock.lock_id)

        with pytest.raises(LockLostError):
            locks.verify(lock)

    def test_force_unlock_requires_matching_id(self, locks: LockManager) -> None:
        """Test that force-unlock needs the exact lock id."""
        lock = locks.acquire("default", _holder())

        with pytest.raises(LockError, match="Lock ID mismatch"):
            locks.force_unlock("default", "not-the-id")

        removed = locks.force_unlock("default", lock.lock_id)
        assert removed == lock
        assert locks.current("default") is None

    def test_force_unlock_unlocked_workspace(self, locks: LockManager) -> None:
        """Test force-unlocking a workspace that is not locked."""
        with pytest.raises(LockError, match="not locked"):
            locks.force_unlock("default", "anything")


class TestLockTimeout:
    """Tests for the explicit retry window."""

    def test_retries_with_backoff_until_released(self) -> None:
        """Test that a waiting holder acquires the lock once it is released."""
        first_holder: list = []

        def release_after_two_waits(count: int) -> None:
            if count == 2:
                manager.release(first_holder[0])

        sleep = RecordingSleep(release_after_two_waits)
        manager = MemoryLockManager(sleep=sleep)
        first_holder.append(manager.acquire("default", _holder("alice@host:1")))

        lock = manager.acquire("default", _holder("bob@host:2"), timeout=60)

        assert lock.holder_id == "bob@host:2"
        assert sleep.delays == [1, 2]

    def test_gives_up_after_timeout(self) -> None:
        """Test that the deadline bounds the retries."""
        sleep = RecordingSleep()
        manager = MemoryLockManager(sleep=sleep)
        manager.acquire("default", _holder("alice@host:1"))

        with pytest.raises(LockHeldError):
            manager.acquire("default", _holder("bob@host:2"), timeout=0.01)

        # Delays never exceed the remaining window
        assert sleep.delays
        assert all(delay <= 0.01 for delay in sleep.delays)

    def test_no_timeout_never_sleeps(self) -> None:
        """Test that the default is fail-fast."""
        sleep = RecordingSleep()
        manager = MemoryLockManager(sleep=sleep)
        manager.acquire("default", _holder("alice@host:1"))

        with pytest.raises(LockHeldError):
            manager.acquire("default", _holder("bob@host:2"))

        assert sleep.delays == []


class TestLocalLockManager:
    """Tests specific to lock files."""

    def test_lock_file_next_to_state(self, tmp_path: Path) -> None:
        """Test the lock file location."""
        manager = LocalLockManager(tmp_path, KeyLayout())

        manager.acquire("staging", _holder())

        assert (tmp_path / "env:" / "staging" / "terraform.tfstate.tflock").is_file()

    def test_unreadable_lock_file_is_still_held(self, tmp_path: Path) -> None:
        """Test that a corrupt lock file blocks acquisition."""
        (tmp_path / "terraform.tfstate.tflock").write_text("garbage", encoding="utf-8")
        manager = LocalLockManager(tmp_path)

        with pytest.raises(LockHeldError) as exc_info:
            manager.acquire("default", _holder())

        assert exc_info.value.lock is None
        assert "lock information unavailable" in str(exc_info.value)
