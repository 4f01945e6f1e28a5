"""Azure Storage mock for backend testing.

Provides an in-memory implementation of the Blob Storage client surface
used by the state and lock backends, so conditional writes can be tested
without Azure connectivity.

Usage:
    from azure_mock import MockContainerClient

    container = MockContainerClient()
    store = BlobStateStore(container)
    lock_manager = BlobLockManager(container)
"""

from .blob import MockBlobClient, MockBlobProperties, MockContainerClient, MockDownloader

__all__ = [
    "MockBlobClient",
    "MockBlobProperties",
    "MockContainerClient",
    "MockDownloader",
]
