"""Object storage collaborator for finalized evidence blobs.

The core only relies on ``put(bytes) -> storage_ref`` and
``get(storage_ref) -> bytes``.  Two backends ship here: a process-local
store for development and tests, and a content-addressed directory store.
Backend failures are converted to :class:`StorageUnavailableError`; an
unknown reference raises :class:`NotFoundError`.
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Protocol, runtime_checkable
from uuid import uuid4

import structlog

from saferelay.services.errors import NotFoundError, StorageUnavailableError

logger = structlog.get_logger(__name__)


@runtime_checkable
class ObjectStorage(Protocol):
    """Async blob storage interface."""

    async def put(self, data: bytes) -> str: ...

    async def get(self, storage_ref: str) -> bytes: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryObjectStorage:
    """Dict-backed storage. References look like ``mem://<uuid>``."""

    __slots__ = ("_blobs", "_lock")

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, data: bytes) -> str:
        ref = f"mem://{uuid4().hex}"
        async with self._lock:
            self._blobs[ref] = bytes(data)
        return ref

    async def get(self, storage_ref: str) -> bytes:
        async with self._lock:
            blob = self._blobs.get(storage_ref)
        if blob is None:
            raise NotFoundError(f"no object stored under {storage_ref}")
        return blob

    @property
    def size(self) -> int:
        return len(self._blobs)


# ---------------------------------------------------------------------------
# Filesystem backend
# ---------------------------------------------------------------------------


class FileSystemObjectStorage:
    """Write-once files under *root*, sharded by the first hash byte.

    References look like ``file://<sha256>/<uuid>`` so two uploads of the
    same bytes never overwrite each other.
    """

    __slots__ = ("_root",)

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, storage_ref: str) -> Path:
        if not storage_ref.startswith("file://"):
            raise NotFoundError(f"not a filesystem reference: {storage_ref}")
        digest, _, name = storage_ref.removeprefix("file://").partition("/")
        if not digest or not name or "/" in name or ".." in name:
            raise NotFoundError(f"malformed reference: {storage_ref}")
        return self._root / digest[:2] / f"{digest}-{name}"

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("xb") as fh:
            fh.write(data)

    async def put(self, data: bytes) -> str:
        digest = hashlib.sha256(data).hexdigest()
        ref = f"file://{digest}/{uuid4().hex}"
        try:
            await asyncio.to_thread(self._write, self._path_for(ref), data)
        except OSError as exc:
            logger.error("object_storage.write_failed", ref=ref, exc_info=True)
            raise StorageUnavailableError(f"could not write evidence blob: {exc}") from exc
        return ref

    async def get(self, storage_ref: str) -> bytes:
        path = self._path_for(storage_ref)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise NotFoundError(f"no object stored under {storage_ref}") from exc
        except OSError as exc:
            logger.error("object_storage.read_failed", ref=storage_ref, exc_info=True)
            raise StorageUnavailableError(f"could not read evidence blob: {exc}") from exc
