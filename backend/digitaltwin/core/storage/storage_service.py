"""
Blob storage abstraction.

Every asset byte goes through ``StorageService``. Two backends exist:

- ``LocalStorageService``: files under a root directory (development, tests)
- ``MinIOStorageService``: objects in one S3-compatible bucket

``get_storage_service()`` picks the backend from ``STORAGE_BACKEND``.

All paths are relative, ``/``-separated keys. Keys that would escape the
storage root (absolute paths, ``..`` walking above the root) are rejected
with ``StoragePathError`` before any I/O happens.
"""

import asyncio
import logging
import posixpath
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Iterable, List

from digitaltwin.config import settings
from digitaltwin.core.errors import StoragePathError

logger = logging.getLogger("digitaltwin.storage")


def normalize_storage_path(path: str) -> str:
    """
    Normalize a storage key and reject traversal outside the root.

    ``a/b/../c.json`` becomes ``a/c.json``; ``../x`` and ``/etc/passwd`` raise.
    """
    if not path or not path.strip():
        raise StoragePathError(path or "")
    candidate = path.replace("\\", "/")
    if candidate.startswith("/"):
        raise StoragePathError(path)
    cleaned = posixpath.normpath(candidate)
    if cleaned in (".", "..") or cleaned.startswith("../"):
        raise StoragePathError(path)
    return cleaned


class StorageService(ABC):
    """Async contract shared by the storage backends."""

    @abstractmethod
    async def save(self, data: bytes, folder: str, filename: str) -> str:
        """Store ``data`` as ``folder/filename`` and return the stored path."""

    @abstractmethod
    async def save_with_path(self, data: bytes, path: str) -> str:
        """Store ``data`` at an explicit path and return it."""

    @abstractmethod
    async def retrieve(self, path: str) -> bytes:
        """Read a stored blob. Raises ``NotFoundError`` when absent."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete a blob. Deleting a missing blob is not an error."""

    @abstractmethod
    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every blob under ``prefix`` and return how many were removed."""

    @abstractmethod
    def get_public_url(self, path: str) -> str:
        """Public URL clients use to fetch ``path`` directly."""

    async def delete_batch(self, paths: Iterable[str]) -> int:
        """
        Best-effort delete of many blobs.

        Failures are logged, not raised; returns the number of blobs deleted.
        """
        targets: List[str] = list(paths)
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self.delete(path) for path in targets),
            return_exceptions=True,
        )
        deleted = 0
        for path, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to delete {path}: {result}")
            else:
                deleted += 1
        logger.info(f"Batch delete: {deleted}/{len(targets)} blobs removed")
        return deleted


@lru_cache()
def get_storage_service() -> StorageService:
    """
    Build the configured storage backend (cached for the process).

    Raises:
        ValueError: If ``STORAGE_BACKEND`` names an unknown backend
    """
    backend = settings.storage_backend.strip().lower()
    if backend == "local":
        from digitaltwin.core.storage.local_storage import LocalStorageService

        return LocalStorageService(settings.local_storage_dir, settings.local_public_base_url)
    if backend == "minio":
        from digitaltwin.core.storage.minio_service import MinIOStorageService

        return MinIOStorageService.from_settings(settings)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")
