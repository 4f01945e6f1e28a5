"""In-memory Azure Blob container.

Implements the subset of ``ContainerClient`` / ``BlobClient`` the blob
backend uses, with the service's conditional request semantics:

- ``upload_blob(overwrite=False)`` fails with ResourceExistsError when the
  blob exists (If-None-Match: *)
- ``etag`` + ``MatchConditions.IfNotModified`` fails with
  ResourceModifiedError when the blob changed (If-Match)

Errors are the real azure.core exception types so the backend's handling
is exercised unchanged.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from azure.core import MatchConditions
from azure.core.exceptions import (
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
)


@dataclass(frozen=True)
class MockBlobProperties:
    """Blob properties as returned by list_blobs and downloads."""

    name: str
    etag: str


class MockDownloader:
    """Mimics StorageStreamDownloader."""

    def __init__(self, data: bytes, properties: MockBlobProperties) -> None:
        self._data = data
        self.properties = properties

    def readall(self) -> bytes:
        return self._data


class MockContainerClient:
    """Thread-safe in-memory container.

    Attributes:
        before_write: Optional hook called with the blob name right before a
            conditional write is checked; tests use it to simulate another
            writer racing in between read and write.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, tuple[bytes, str]] = {}
        self._mutex = threading.Lock()
        self.before_write: Callable[[str], None] | None = None
        self.upload_count = 0

    def get_blob_client(self, blob: str) -> MockBlobClient:
        return MockBlobClient(self, blob)

    def list_blobs(self) -> Iterator[MockBlobProperties]:
        with self._mutex:
            items = sorted(self._blobs.items())
        for name, (_, etag) in items:
            yield MockBlobProperties(name=name, etag=etag)

    def get(self, name: str) -> bytes | None:
        """Raw blob contents, for assertions."""
        with self._mutex:
            entry = self._blobs.get(name)
        return entry[0] if entry else None

    def put(self, name: str, data: bytes) -> str:
        """Write a blob unconditionally, as another client would."""
        etag = f'"{uuid.uuid4().hex}"'
        with self._mutex:
            self._blobs[name] = (data, etag)
        return etag


class MockBlobClient:
    """Mimics BlobClient for a single blob."""

    def __init__(self, container: MockContainerClient, blob_name: str) -> None:
        self._container = container
        self.blob_name = blob_name

    def exists(self) -> bool:
        return self._container.get(self.blob_name) is not None

    def download_blob(self) -> MockDownloader:
        with self._container._mutex:
            entry = self._container._blobs.get(self.blob_name)
        if entry is None:
            raise ResourceNotFoundError(f"The specified blob does not exist: {self.blob_name}")
        return MockDownloader(entry[0], MockBlobProperties(name=self.blob_name, etag=entry[1]))

    def upload_blob(
        self,
        data: bytes,
        overwrite: bool = False,
        etag: str | None = None,
        match_condition: MatchConditions | None = None,
    ) -> dict[str, str]:
        if self._container.before_write is not None:
            self._container.before_write(self.blob_name)
        with self._container._mutex:
            existing = self._container._blobs.get(self.blob_name)
            if existing is not None and not overwrite:
                raise ResourceExistsError(f"The specified blob already exists: {self.blob_name}")
            self._check_condition(existing, etag, match_condition)
            new_etag = f'"{uuid.uuid4().hex}"'
            self._container._blobs[self.blob_name] = (bytes(data), new_etag)
            self._container.upload_count += 1
        return {"etag": new_etag}

    def delete_blob(self, etag: str | None = None, match_condition: MatchConditions | None = None) -> None:
        with self._container._mutex:
            existing = self._container._blobs.get(self.blob_name)
            if existing is None:
                raise ResourceNotFoundError(f"The specified blob does not exist: {self.blob_name}")
            self._check_condition(existing, etag, match_condition)
            del self._container._blobs[self.blob_name]

    def _check_condition(
        self,
        existing: tuple[bytes, str] | None,
        etag: str | None,
        match_condition: MatchConditions | None,
    ) -> None:
        if match_condition != MatchConditions.IfNotModified:
            return
        if existing is None:
            raise ResourceNotFoundError(f"The specified blob does not exist: {self.blob_name}")
        if existing[1] != etag:
            raise ResourceModifiedError("The condition specified using HTTP conditional header(s) is not met.")
