"""Object storage for rendered artifacts, addressed by slash-separated keys.

Keys are built by :func:`artifact_key` as ``<tenant>/<invoice>/<file>``.
Each key segment is restricted to a safe character set and the resolved
filesystem path must stay under the store root.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from relay_core.errors import StorageError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key validation
# ---------------------------------------------------------------------------

_SAFE_SEGMENT_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_key(key: str) -> list[str]:
    """Split *key* and reject unsafe segments.

    Raises
    ------
    StorageError
        If any segment is empty, ``.``/``..``, or contains characters
        outside the safe set.
    """
    segments = key.split("/")
    for segment in segments:
        if segment in ("", ".", "..") or not _SAFE_SEGMENT_RE.match(segment):
            raise StorageError(f"Invalid storage key {key!r}")
    return segments


def artifact_key(tenant_id: str, invoice_id: str, filename: str) -> str:
    key = f"{tenant_id}/{invoice_id}/{filename}"
    _validate_key(key)
    return key


class StoredObject(BaseModel):
    key: str
    size: int
    content_type: str


class ObjectStore(Protocol):
    """Protocol for artifact storage."""

    async def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject: ...

    async def get_object(self, key: str) -> bytes: ...

    async def delete_object(self, key: str) -> bool: ...

    async def list_keys(self, prefix: str = "") -> list[str]: ...


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class FilesystemObjectStore:
    """Stores each object as a file under *root*.

    Blocking file I/O runs in a worker thread.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).resolve()

    def _resolve(self, key: str) -> Path:
        segments = _validate_key(key)
        full_path = self._root.joinpath(*segments).resolve()
        if not full_path.is_relative_to(self._root):
            raise StorageError("Path traversal detected")
        return full_path

    async def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject:
        path = self._resolve(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)

        await asyncio.to_thread(_write)
        logger.info("Stored object %s (%d bytes)", key, len(data))
        return StoredObject(key=key, size=len(data), content_type=content_type)

    async def get_object(self, key: str) -> bytes:
        path = self._resolve(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {key}") from exc

    async def delete_object(self, key: str) -> bool:
        path = self._resolve(key)

        def _delete() -> bool:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            return True

        return await asyncio.to_thread(_delete)

    async def list_keys(self, prefix: str = "") -> list[str]:
        def _walk() -> list[str]:
            if not self._root.exists():
                return []
            keys = [p.relative_to(self._root).as_posix() for p in self._root.rglob("*") if p.is_file()]
            return sorted(k for k in keys if k.startswith(prefix) and not k.endswith(".tmp"))

        return await asyncio.to_thread(_walk)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryObjectStore:
    """Dict-backed store for tests and ephemeral local runs."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}

    async def put_object(self, key: str, data: bytes, content_type: str) -> StoredObject:
        _validate_key(key)
        self._objects[key] = (bytes(data), content_type)
        return StoredObject(key=key, size=len(data), content_type=content_type)

    async def get_object(self, key: str) -> bytes:
        try:
            return self._objects[key][0]
        except KeyError as exc:
            raise StorageError(f"Object not found: {key}") from exc

    async def delete_object(self, key: str) -> bool:
        return self._objects.pop(key, None) is not None

    async def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._objects if k.startswith(prefix))
