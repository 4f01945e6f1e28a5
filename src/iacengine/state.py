"""State storage with compare-and-swap semantics.

Every backend persists one JSON document per workspace (the exact
``StateSnapshot.to_json()`` output) and implements the same contract:

- ``write`` succeeds only if the stored serial equals ``expected_serial``
  and the lineage matches; otherwise it raises ConflictError
- ``expected_serial=None`` means "create": the workspace must not exist yet
- rewriting a byte-identical snapshot at the stored serial is a no-op
- snapshots are written whole; a reader never sees a partial document
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from .config import DEFAULT_WORKSPACE, MAX_STATE_SIZE_BYTES
from .models import StateSnapshot
from .workspace import KeyLayout

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"


class StateError(Exception):
    """Base class for state storage errors."""

    pass


class StateNotFoundError(StateError):
    """Raised when a workspace has no state."""

    pass


class CorruptStateError(StateError):
    """Raised when stored state cannot be parsed."""

    pass


class ConflictError(StateError):
    """Raised when a write would overwrite a snapshot the writer never saw.

    Attributes:
        workspace: Workspace the write targeted.
        expected_serial: Serial the writer based its snapshot on.
        actual_serial: Serial currently stored, None if absent.
    """

    def __init__(
        self,
        message: str,
        workspace: str,
        expected_serial: int | None = None,
        actual_serial: int | None = None,
    ) -> None:
        super().__init__(message)
        self.workspace = workspace
        self.expected_serial = expected_serial
        self.actual_serial = actual_serial


class LineageMismatchError(ConflictError):
    """Raised when a write belongs to a different state history."""

    pass


def check_write(
    workspace: str,
    current: StateSnapshot | None,
    current_json: str | None,
    snapshot: StateSnapshot,
    expected_serial: int | None,
) -> bool:
    """Validate a conditional write against the stored snapshot.

    Returns:
        True if the snapshot must be written, False for an identical rewrite.

    Raises:
        ConflictError: If the write is stale or the state was created meanwhile.
        LineageMismatchError: If the lineages differ.
    """
    if current is None:
        if expected_serial is not None:
            raise ConflictError(
                f"State for workspace '{workspace}' does not exist (expected serial {expected_serial})",
                workspace,
                expected_serial,
            )
        return True

    if expected_serial is None:
        raise ConflictError(
            f"State for workspace '{workspace}' already exists at serial {current.serial}",
            workspace,
            None,
            current.serial,
        )
    if current.lineage != snapshot.lineage:
        raise LineageMismatchError(
            f"Lineage mismatch for workspace '{workspace}': "
            f"stored {current.lineage}, writing {snapshot.lineage}",
            workspace,
            expected_serial,
            current.serial,
        )
    if current.serial != expected_serial:
        raise ConflictError(
            f"State for workspace '{workspace}' changed: expected serial {expected_serial}, "
            f"found {current.serial}",
            workspace,
            expected_serial,
            current.serial,
        )
    if snapshot.serial == current.serial and current_json == snapshot.to_json():
        return False
    if snapshot.serial <= current.serial:
        raise ConflictError(
            f"Serial must increase: stored {current.serial}, writing {snapshot.serial}",
            workspace,
            expected_serial,
            current.serial,
        )
    return True


def parse_snapshot(workspace: str, data: bytes | str) -> StateSnapshot:
    """Parse stored state.

    Raises:
        CorruptStateError: If the document is too large or invalid.
    """
    if len(data) > MAX_STATE_SIZE_BYTES:
        raise CorruptStateError(
            f"State for workspace '{workspace}' exceeds {MAX_STATE_SIZE_BYTES} bytes"
        )
    try:
        return StateSnapshot.from_json(data)
    except ValidationError as e:
        raise CorruptStateError(f"Invalid state for workspace '{workspace}': {e}") from e


class StateStore(ABC):
    """Durable, conditionally-written snapshot storage keyed by workspace."""

    def __init__(self, layout: KeyLayout | None = None) -> None:
        self.layout = layout or KeyLayout()

    @abstractmethod
    def read(self, workspace: str) -> StateSnapshot:
        """Read the current snapshot.

        Raises:
            StateNotFoundError: If the workspace has no state.
            CorruptStateError: If the stored state is invalid.
        """

    @abstractmethod
    def write(self, workspace: str, snapshot: StateSnapshot, expected_serial: int | None) -> None:
        """Conditionally write a snapshot.

        Raises:
            ConflictError: If the stored serial is not expected_serial.
            LineageMismatchError: If the stored lineage differs.
        """

    @abstractmethod
    def exists(self, workspace: str) -> bool: ...

    @abstractmethod
    def delete(self, workspace: str) -> None:
        """Delete a workspace's state. Idempotent."""

    @abstractmethod
    def _state_keys(self) -> list[str]:
        """Every stored state key."""

    def list_workspaces(self) -> list[str]:
        names = {DEFAULT_WORKSPACE}
        for key in self._state_keys():
            name = self.layout.workspace_for(key)
            if name is not None:
                names.add(name)
        return sorted(names)

    def initialize(self, workspace: str) -> StateSnapshot:
        """Return the workspace's snapshot, creating an empty one if absent."""
        try:
            return self.read(workspace)
        except StateNotFoundError:
            pass
        snapshot = StateSnapshot.empty()
        try:
            self.write(workspace, snapshot, expected_serial=None)
        except ConflictError:
            # Somebody else created it first
            return self.read(workspace)
        logger.info(
            "Initialized state",
            extra={"workspace": workspace, "lineage": snapshot.lineage},
        )
        return snapshot


# =============================================================================
# In-memory backend
# =============================================================================


class MemoryStateStore(StateStore):
    """Thread-safe in-process store, used for tests and dry runs."""

    def __init__(self, layout: KeyLayout | None = None) -> None:
        super().__init__(layout)
        self._blobs: dict[str, str] = {}
        self._mutex = threading.Lock()

    def read(self, workspace: str) -> StateSnapshot:
        key = self.layout.resolve(workspace).state_key
        with self._mutex:
            data = self._blobs.get(key)
        if data is None:
            raise StateNotFoundError(f"No state for workspace '{workspace}'")
        return parse_snapshot(workspace, data)

    def write(self, workspace: str, snapshot: StateSnapshot, expected_serial: int | None) -> None:
        key = self.layout.resolve(workspace).state_key
        with self._mutex:
            current_json = self._blobs.get(key)
            current = parse_snapshot(workspace, current_json) if current_json is not None else None
            if check_write(workspace, current, current_json, snapshot, expected_serial):
                self._blobs[key] = snapshot.to_json()

    def exists(self, workspace: str) -> bool:
        key = self.layout.resolve(workspace).state_key
        with self._mutex:
            return key in self._blobs

    def delete(self, workspace: str) -> None:
        key = self.layout.resolve(workspace).state_key
        with self._mutex:
            self._blobs.pop(key, None)

    def _state_keys(self) -> list[str]:
        with self._mutex:
            return list(self._blobs)


# =============================================================================
# Local filesystem backend
# =============================================================================


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive flock on a ``.lock`` sidecar of path.

    The sidecar keeps the lock handle valid while the data file itself is
    atomically replaced.
    """
    lock_path = path.with_name(path.name + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to a temp file in the same directory, then os.replace it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class LocalStateStore(StateStore):
    """One JSON file per workspace under a local directory.

    The CAS check and the replace run under a sidecar flock, so concurrent
    processes on the same host serialize their writes.
    """

    def __init__(self, root: Path, layout: KeyLayout | None = None) -> None:
        super().__init__(layout)
        self._root = root

    def _path(self, workspace: str) -> Path:
        return self._root / self.layout.resolve(workspace).state_key

    def _read_text(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def read(self, workspace: str) -> StateSnapshot:
        data = self._read_text(self._path(workspace))
        if data is None:
            raise StateNotFoundError(f"No state for workspace '{workspace}'")
        return parse_snapshot(workspace, data)

    def write(self, workspace: str, snapshot: StateSnapshot, expected_serial: int | None) -> None:
        path = self._path(workspace)
        with locked_file(path):
            current_json = self._read_text(path)
            current = parse_snapshot(workspace, current_json) if current_json is not None else None
            if not check_write(workspace, current, current_json, snapshot, expected_serial):
                return
            atomic_write_text(path, snapshot.to_json())
        logger.debug(
            "Wrote state",
            extra={"workspace": workspace, "serial": snapshot.serial, "path": str(path)},
        )

    def exists(self, workspace: str) -> bool:
        return self._path(workspace).is_file()

    def delete(self, workspace: str) -> None:
        path = self._path(workspace)
        with locked_file(path):
            path.unlink(missing_ok=True)
        path.with_name(path.name + _LOCK_SUFFIX).unlink(missing_ok=True)

    def _state_keys(self) -> list[str]:
        keys: list[str] = []
        if (self._root / self.layout.state_key).is_file():
            keys.append(self.layout.state_key)
        prefix_dir = self._root / self.layout.prefix
        if prefix_dir.is_dir():
            for path in prefix_dir.glob(f"*/{self.layout.state_key}"):
                keys.append(path.relative_to(self._root).as_posix())
        return keys
