"""Artifact object storage."""

from __future__ import annotations

from relay_core.config import RelaySettings, StorageBackend
from relay_core.storage.object_store import (
    FilesystemObjectStore,
    InMemoryObjectStore,
    ObjectStore,
    StoredObject,
    artifact_key,
)


def build_object_store(settings: RelaySettings) -> ObjectStore:
    """Instantiate the store selected by ``storage_backend``."""
    if settings.storage_backend is StorageBackend.MEMORY:
        return InMemoryObjectStore()
    return FilesystemObjectStore(settings.storage_root)


__all__ = [
    "FilesystemObjectStore",
    "InMemoryObjectStore",
    "ObjectStore",
    "StoredObject",
    "artifact_key",
    "build_object_store",
]
