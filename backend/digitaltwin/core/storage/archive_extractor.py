# ============================================================================
# backend/digitaltwin/core/storage/archive_extractor.py
# ============================================================================
"""
ZIP archive extraction into blob storage.

Takes a tileset archive (ZIP bytes), finds its root ``tileset.json`` and
writes every file under a base prefix in the blob store:

    archive entry   city/tiles/0/0.b3dm
    stored as       <base_path>/tiles/0/0.b3dm   (shared "city/" folder stripped)

Uploads run in sequential batches of ``UPLOAD_BATCH_SIZE`` concurrent writes.
If any write fails, every path stored so far is deleted (best effort) and the
original error is re-raised, so a failed extraction leaves nothing behind
except when the blob store itself is unreachable during rollback.

Usage:
    result = await extract_and_store_archive(zip_bytes, storage, "tilesets/1712345678901")
    tileset_url = storage.get_public_url(f"tilesets/1712345678901/{result.root_file}")
"""

import asyncio
import logging
import posixpath
import time
import uuid
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, List, Optional, Sequence

from digitaltwin.core.errors import BadRequestError
from digitaltwin.core.shared.safe_async import safe_cleanup
from digitaltwin.core.storage.storage_service import StorageService

logger = logging.getLogger("digitaltwin.archive")

ROOT_FILE_NAME = "tileset.json"
UPLOAD_BATCH_SIZE = 10

MISSING_ROOT_MESSAGE = f"Invalid tileset: no {ROOT_FILE_NAME} found in the ZIP archive"


@dataclass
class ExtractedArchive:
    """Outcome of a successful extraction."""
    root_file: str
    file_count: int
    stored_paths: List[str] = field(default_factory=list)


def new_base_path(folder: str) -> str:
    """Unique storage prefix for one extracted tileset."""
    return f"{folder.rstrip('/')}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def open_archive(zip_bytes: bytes) -> zipfile.ZipFile:
    """
    Open ZIP bytes, mapping corrupt input to a 400.

    Raises:
        BadRequestError: If the bytes are not a readable ZIP archive
    """
    try:
        return zipfile.ZipFile(BytesIO(zip_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
        raise BadRequestError(f"Invalid ZIP archive: {e}")


def list_archive_files(archive: zipfile.ZipFile) -> List[str]:
    """Names of the non-directory entries, in archive order."""
    return [info.filename for info in archive.infolist() if not info.is_dir()]


def normalize_archive_paths(files: Sequence[str]) -> Dict[str, str]:
    """
    Map archive names to storage-relative names.

    When every entry sits under the same top-level folder (the usual result of
    zipping a directory), that folder is stripped. Otherwise names are kept.
    """
    if not files:
        return {}

    first_parts = [name.split("/", 1)[0] for name in files]
    common_root: Optional[str] = first_parts[0] or None
    if any(part != common_root for part in first_parts):
        common_root = None

    mapping: Dict[str, str] = {}
    for name in files:
        if common_root and name.startswith(common_root + "/"):
            mapping[name] = name[len(common_root) + 1:]
        else:
            mapping[name] = name
    return mapping


def detect_root_file(paths: Sequence[str]) -> Optional[str]:
    """
    Pick the tileset root among normalized paths.

    Priority: top-level ``tileset.json``, then one folder deep, then any path
    ending in ``tileset.json``. Matching is case-insensitive; the first match
    in archive order wins within a tier.
    """
    lowered = [(path, path.lower()) for path in paths]

    for path, lower in lowered:
        if lower == ROOT_FILE_NAME:
            return path
    for path, lower in lowered:
        if lower.count("/") == 1 and posixpath.basename(lower) == ROOT_FILE_NAME:
            return path
    for path, lower in lowered:
        if lower.endswith(ROOT_FILE_NAME):
            return path
    return None


async def _read_entries(archive: zipfile.ZipFile, names: Sequence[str]) -> List[bytes]:
    # ZipFile is not safe for concurrent reads; read a batch in one thread hop
    try:
        return await asyncio.to_thread(lambda: [archive.read(name) for name in names])
    except (zipfile.BadZipFile, NotImplementedError) as e:
        raise BadRequestError(f"Invalid ZIP archive: {e}")


async def extract_and_store_archive(
    zip_bytes: bytes,
    storage: StorageService,
    base_path: str,
) -> ExtractedArchive:
    """
    Extract a tileset archive into ``storage`` under ``base_path``.

    Args:
        zip_bytes: Raw archive content
        storage: Blob store receiving the files
        base_path: Prefix for every stored file (no trailing slash)

    Returns:
        ExtractedArchive with the normalized root file path and file count

    Raises:
        BadRequestError: Unreadable archive, empty archive, or no root file.
            Raised before anything is written.
        Exception: Any storage error, after stored files were rolled back
    """
    base_path = base_path.rstrip("/")
    archive = open_archive(zip_bytes)

    with archive:
        files = list_archive_files(archive)
        if not files:
            raise BadRequestError("Invalid ZIP archive: archive contains no files")

        path_map = normalize_archive_paths(files)
        root_file = detect_root_file(list(path_map.values()))
        if root_file is None:
            raise BadRequestError(MISSING_ROOT_MESSAGE)

        entries = list(path_map.items())
        total_files = len(entries)
        total_batches = (total_files + UPLOAD_BATCH_SIZE - 1) // UPLOAD_BATCH_SIZE
        log_interval = max(1, total_batches // 10)
        stored_paths: List[str] = []

        logger.info(f"Extracting {total_files} files to {base_path}")

        try:
            for batch_index in range(total_batches):
                batch = entries[batch_index * UPLOAD_BATCH_SIZE:(batch_index + 1) * UPLOAD_BATCH_SIZE]
                contents = await _read_entries(archive, [original for original, _ in batch])

                results = await asyncio.gather(
                    *(
                        storage.save_with_path(data, f"{base_path}/{normalized}")
                        for (_, normalized), data in zip(batch, contents)
                    ),
                    return_exceptions=True,
                )

                first_error: Optional[BaseException] = None
                for result in results:
                    if isinstance(result, BaseException):
                        first_error = first_error or result
                    else:
                        stored_paths.append(result)
                if first_error is not None:
                    raise first_error

                batch_number = batch_index + 1
                if batch_number % log_interval == 0 or batch_number == total_batches:
                    done = len(stored_paths)
                    percent = round(done / total_files * 100)
                    logger.info(f"Progress: {percent}% ({done}/{total_files} files)")
        except Exception:
            if stored_paths:
                logger.warning(
                    f"Extraction into {base_path} failed, cleaning up {len(stored_paths)} stored files"
                )
                await safe_cleanup(
                    (f"rollback of {base_path}", lambda: storage.delete_batch(stored_paths)),
                )
            raise

    return ExtractedArchive(root_file=root_file, file_count=len(stored_paths), stored_paths=stored_paths)
