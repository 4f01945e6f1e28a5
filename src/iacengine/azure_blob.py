"""Azure Blob Storage backend for state and locks.

State blobs are written with ETag preconditions, so the serial check and the
write are a single atomic compare-and-swap on the service side. Lock blobs
are created with ``overwrite=False`` (If-None-Match: *) and deleted with an
ETag precondition, so two sessions can never both believe they hold a lock.

Blob layout inside the container:
    terraform.tfstate                      default workspace state
    terraform.tfstate.tflock               default workspace lock
    env:/<workspace>/terraform.tfstate     other workspaces
    env:/<workspace>/terraform.tfstate.tflock
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from azure.core import MatchConditions
from azure.core.exceptions import (
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)
from azure.storage.blob import BlobClient, ContainerClient
from pydantic import ValidationError

from .config import ConfigurationError, EngineConfig
from .credentials import get_storage_credential
from .locking import LockError, LockHeldError, LockManager
from .models import Lock, StateSnapshot
from .state import (
    ConflictError,
    StateNotFoundError,
    StateStore,
    check_write,
    parse_snapshot,
)
from .workspace import KeyLayout

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


def create_container_client(config: EngineConfig) -> ContainerClient:
    """Create the container client for the configured storage account.

    Raises:
        ConfigurationError: If the storage account URL or container is missing.
        SecretlessViolationError: If credential secrets are in the environment.
    """
    if not config.storage_account_url or not config.storage_container:
        raise ConfigurationError(
            "Azure Blob backend requires AZURE_STORAGE_ACCOUNT_URL and AZURE_STORAGE_CONTAINER"
        )
    credential = get_storage_credential(config.managed_identity_client_id)
    logger.info(
        "Using Azure Blob state backend",
        extra={"account_url": config.storage_account_url, "container": config.storage_container},
    )
    return ContainerClient(
        account_url=config.storage_account_url,
        container_name=config.storage_container,
        credential=credential,
    )


def _download(blob: BlobClient) -> tuple[bytes, str] | None:
    """Download a blob with its ETag, None if it does not exist."""
    try:
        downloader = blob.download_blob()
        data = downloader.readall()
    except ResourceNotFoundError:
        return None
    return data, downloader.properties.etag


class BlobStateStore(StateStore):
    """State snapshots as JSON blobs in one container."""

    def __init__(self, container: ContainerClient, layout: KeyLayout | None = None) -> None:
        super().__init__(layout)
        self._container = container

    def _blob(self, workspace: str) -> BlobClient:
        return self._container.get_blob_client(self.layout.resolve(workspace).state_key)

    def read(self, workspace: str) -> StateSnapshot:
        downloaded = _download(self._blob(workspace))
        if downloaded is None:
            raise StateNotFoundError(f"No state for workspace '{workspace}'")
        return parse_snapshot(workspace, downloaded[0])

    def write(self, workspace: str, snapshot: StateSnapshot, expected_serial: int | None) -> None:
        blob = self._blob(workspace)
        downloaded = _download(blob)
        current = current_json = None
        if downloaded is not None:
            current_json = downloaded[0].decode("utf-8")
            current = parse_snapshot(workspace, current_json)
        if not check_write(workspace, current, current_json, snapshot, expected_serial):
            return

        data = snapshot.to_json().encode("utf-8")
        try:
            if downloaded is None:
                blob.upload_blob(data, overwrite=False)
            else:
                blob.upload_blob(
                    data,
                    overwrite=True,
                    etag=downloaded[1],
                    match_condition=MatchConditions.IfNotModified,
                )
        except (ResourceExistsError, ResourceModifiedError, ResourceNotFoundError) as e:
            # Someone wrote between our read and our conditional upload
            raise ConflictError(
                f"State for workspace '{workspace}' changed during write",
                workspace,
                expected_serial,
            ) from e
        logger.debug(
            "Wrote state blob",
            extra={"workspace": workspace, "serial": snapshot.serial, "blob": blob.blob_name},
        )

    def exists(self, workspace: str) -> bool:
        return bool(self._blob(workspace).exists())

    def delete(self, workspace: str) -> None:
        try:
            self._blob(workspace).delete_blob()
        except ResourceNotFoundError:
            logger.debug("State blob already deleted", extra={"workspace": workspace})

    def _state_keys(self) -> list[str]:
        return [blob.name for blob in self._container.list_blobs()]


class BlobLockManager(LockManager):
    """Workspace locks as conditionally created blobs."""

    def __init__(
        self,
        container: ContainerClient,
        layout: KeyLayout | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(layout, sleep)
        self._container = container

    def _blob(self, workspace: str) -> BlobClient:
        return self._container.get_blob_client(self.layout.resolve(workspace).lock_key)

    def _create(self, lock: Lock) -> None:
        try:
            self._blob(lock.workspace).upload_blob(lock.model_dump_json().encode("utf-8"), overwrite=False)
        except ResourceExistsError:
            try:
                existing = self.current(lock.workspace)
            except LockError:
                existing = None
            raise LockHeldError(lock.workspace, existing) from None

    def _read(self, workspace: str) -> tuple[Lock, str] | None:
        downloaded = _download(self._blob(workspace))
        if downloaded is None:
            return None
        try:
            return Lock.model_validate_json(downloaded[0]), downloaded[1]
        except ValidationError as e:
            raise LockError(f"Unreadable lock blob for workspace '{workspace}'") from e

    def _remove(self, lock: Lock) -> bool:
        found = self._read(lock.workspace)
        if found is None or found[0].lock_id != lock.lock_id:
            return False
        try:
            self._blob(lock.workspace).delete_blob(etag=found[1], match_condition=MatchConditions.IfNotModified)
        except (ResourceModifiedError, ResourceNotFoundError):
            return False
        return True

    def current(self, workspace: str) -> Lock | None:
        found = self._read(workspace)
        return found[0] if found else None
