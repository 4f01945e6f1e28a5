"""Workspace management.

A workspace is a named, isolated binding of one environment to its own state
key and lock key in the shared backend:

- ``default`` uses the base state key (``terraform.tfstate``)
- any other workspace uses ``{prefix}/{name}/{state_key}``
  (``env:/staging/terraform.tfstate``)

The currently selected workspace is a local, per-checkout setting stored in
``<state_dir>/environment``; it never lives in the shared backend.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .config import (
    DEFAULT_STATE_KEY,
    DEFAULT_WORKSPACE,
    DEFAULT_WORKSPACE_KEY_PREFIX,
    VALID_WORKSPACE_PATTERN,
    EngineConfig,
)
from .models import LockHolder, LockOperation

if TYPE_CHECKING:
    from .locking import LockManager
    from .state import StateStore

logger = logging.getLogger(__name__)

# File under the state directory holding the selected workspace name
ENVIRONMENT_FILE = "environment"

# Environment variable overriding the selected workspace
WORKSPACE_ENV_VAR = "IACE_WORKSPACE"


class WorkspaceError(Exception):
    """Raised when a workspace operation is not allowed."""

    pass


def validate_workspace_name(name: str) -> str:
    """Validate a workspace name.

    Raises:
        WorkspaceError: If the name is invalid.
    """
    if not re.match(VALID_WORKSPACE_PATTERN, name):
        raise WorkspaceError(
            f"Invalid workspace name '{name}': must match {VALID_WORKSPACE_PATTERN}"
        )
    return name


@dataclass(frozen=True)
class Workspace:
    """A workspace and the backend keys it maps to."""

    name: str
    state_key: str
    lock_key: str

    @property
    def is_default(self) -> bool:
        return self.name == DEFAULT_WORKSPACE


@dataclass(frozen=True)
class KeyLayout:
    """Maps workspace names to backend keys and back."""

    state_key: str = DEFAULT_STATE_KEY
    prefix: str = DEFAULT_WORKSPACE_KEY_PREFIX

    @classmethod
    def from_config(cls, config: EngineConfig) -> KeyLayout:
        return cls(state_key=config.state_key, prefix=config.workspace_key_prefix)

    def resolve(self, name: str) -> Workspace:
        """Get the Workspace for a name.

        Raises:
            WorkspaceError: If the name is invalid.
        """
        validate_workspace_name(name)
        if name == DEFAULT_WORKSPACE:
            state_key = self.state_key
        else:
            state_key = f"{self.prefix}/{name}/{self.state_key}"
        return Workspace(name=name, state_key=state_key, lock_key=f"{state_key}.tflock")

    def workspace_for(self, key: str) -> str | None:
        """Reverse mapping from a state key to a workspace name, if it is one."""
        if key == self.state_key:
            return DEFAULT_WORKSPACE
        parts = key.split("/")
        if len(parts) == 3 and parts[0] == self.prefix and parts[2] == self.state_key:
            if re.match(VALID_WORKSPACE_PATTERN, parts[1]):
                return parts[1]
        return None


class WorkspaceManager:
    """Creates, selects, lists and deletes workspaces.

    Args:
        store: State store shared by all workspaces.
        locks: Lock manager shared by all workspaces.
        state_dir: Local directory holding the selection file.
        holder_id: Identity recorded on locks taken for workspace operations.
    """

    def __init__(
        self,
        store: StateStore,
        locks: LockManager,
        state_dir: Path,
        holder_id: str,
    ) -> None:
        self._store = store
        self._locks = locks
        self._state_dir = state_dir
        self._holder_id = holder_id

    @property
    def _environment_file(self) -> Path:
        return self._state_dir / ENVIRONMENT_FILE

    def current(self) -> str:
        """Name of the selected workspace.

        ``IACE_WORKSPACE`` overrides the selection file; with neither present
        the default workspace is selected.
        """
        override = os.environ.get(WORKSPACE_ENV_VAR)
        if override:
            return validate_workspace_name(override)
        try:
            name = self._environment_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return DEFAULT_WORKSPACE
        return validate_workspace_name(name) if name else DEFAULT_WORKSPACE

    def list(self) -> list[str]:
        """All workspaces with state in the backend, always including default."""
        return self._store.list_workspaces()

    def exists(self, name: str) -> bool:
        validate_workspace_name(name)
        return name == DEFAULT_WORKSPACE or self._store.exists(name)

    def create(self, name: str) -> Workspace:
        """Create a workspace with empty state. Idempotent.

        Raises:
            WorkspaceError: If the name is invalid.
            LockHeldError: If the workspace is locked by someone else.
        """
        workspace = self._store.layout.resolve(name)
        if self._store.exists(name):
            logger.debug("Workspace already exists", extra={"workspace": name})
            return workspace
        lock = self._locks.acquire(name, self._holder(f"create workspace {name}"))
        try:
            snapshot = self._store.initialize(name)
        finally:
            self._locks.release(lock)
        logger.info(
            "Created workspace",
            extra={"workspace": name, "state_key": workspace.state_key, "lineage": snapshot.lineage},
        )
        return workspace

    def select(self, name: str) -> Workspace:
        """Make a workspace the current one.

        Raises:
            WorkspaceError: If the workspace does not exist.
        """
        if not self.exists(name):
            raise WorkspaceError(
                f"Workspace '{name}' does not exist. Create it first with 'workspace new {name}'"
            )
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._environment_file.write_text(name + "\n", encoding="utf-8")
        logger.info("Selected workspace", extra={"workspace": name})
        return self._store.layout.resolve(name)

    def delete(self, name: str, force: bool = False) -> None:
        """Delete a workspace and its state.

        Args:
            name: Workspace to delete.
            force: Delete even if the state still records resources.

        Raises:
            WorkspaceError: If the workspace is the default or current one, does
                not exist, or still has resources and force is not set.
            LockHeldError: If the workspace is locked by someone else.
        """
        validate_workspace_name(name)
        if name == DEFAULT_WORKSPACE:
            raise WorkspaceError("Cannot delete the default workspace")
        if name == self.current():
            raise WorkspaceError(
                f"Cannot delete the currently selected workspace '{name}'. Select another one first"
            )
        if not self._store.exists(name):
            raise WorkspaceError(f"Workspace '{name}' does not exist")

        lock = self._locks.acquire(name, self._holder(f"delete workspace {name}"))
        try:
            snapshot = self._store.read(name)
            if not snapshot.is_empty and not force:
                raise WorkspaceError(
                    f"Workspace '{name}' still manages {len(snapshot.entities)} resource(s). "
                    "Destroy them first or use force to delete the state anyway"
                )
            self._store.delete(name)
        finally:
            self._locks.release(lock)

        # SAFETY: a forced delete abandons real infrastructure; make it loud
        log = logger.warning if force and not snapshot.is_empty else logger.info
        log(
            "Deleted workspace",
            extra={"workspace": name, "forced": force, "abandoned_resources": len(snapshot.entities)},
        )

    def _holder(self, info: str) -> LockHolder:
        return LockHolder(holder_id=self._holder_id, operation=LockOperation.WORKSPACE, info=info)
