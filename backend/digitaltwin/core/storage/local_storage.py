"""
Filesystem storage backend.

Blobs live under ``LOCAL_STORAGE_DIR`` and are served by the API under
``LOCAL_PUBLIC_BASE_URL``. Blocking file I/O runs in worker threads.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Union

from digitaltwin.core.errors import NotFoundError, StoragePathError
from digitaltwin.core.storage.storage_service import StorageService, normalize_storage_path

logger = logging.getLogger("digitaltwin.storage.local")


class LocalStorageService(StorageService):
    def __init__(self, base_dir: Union[str, Path], public_base_url: str = ""):
        self.base_dir = Path(base_dir).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        """Map a storage key to a file under ``base_dir``, refusing escapes."""
        key = normalize_storage_path(path)
        target = (self.base_dir / key).resolve()
        if target != self.base_dir and self.base_dir not in target.parents:
            raise StoragePathError(path)
        return target

    def _write(self, target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def save(self, data: bytes, folder: str, filename: str) -> str:
        return await self.save_with_path(data, f"{folder.rstrip('/')}/{filename}")

    async def save_with_path(self, data: bytes, path: str) -> str:
        target = self._resolve(path)
        await asyncio.to_thread(self._write, target, data)
        key = normalize_storage_path(path)
        logger.debug(f"Stored {key} ({len(data)} bytes)")
        return key

    async def retrieve(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise NotFoundError(f"File not found: {path}")

    async def delete(self, path: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(target.unlink, True)

    async def delete_by_prefix(self, prefix: str) -> int:
        target = self._resolve(prefix)
        if target == self.base_dir:
            raise StoragePathError(prefix)
        return await asyncio.to_thread(self._delete_tree, target)

    def _delete_tree(self, target: Path) -> int:
        if target.is_file():
            target.unlink()
            return 1
        if not target.exists():
            return 0
        count = sum(1 for p in target.rglob("*") if p.is_file())
        shutil.rmtree(target)
        logger.info(f"Deleted {count} files under {target.relative_to(self.base_dir)}")
        return count

    def get_public_url(self, path: str) -> str:
        return f"{self.public_base_url}/{normalize_storage_path(path)}"
