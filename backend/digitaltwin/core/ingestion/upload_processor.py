# ============================================================================
# backend/digitaltwin/core/ingestion/upload_processor.py
# ============================================================================
"""
Background processing of queued tileset uploads.

Runs inside the Celery worker (see ``digitaltwin.tasks``). The request that
accepted the upload created a ``pending`` record and staged the archive in a
temp file; this module drives the record through the state machine:

    pending -> processing -> completed   (extraction succeeded)
                          -> failed      (any error, with upload_error set)
    pending -> failed                    (staged file gone before start)

On failure, everything the job wrote is removed and the temp file deleted,
both fire-and-log, and the original error is re-raised so Celery records it.
The record itself is kept so clients polling the status endpoint see why.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from digitaltwin.core.errors import NotFoundError
from digitaltwin.core.ingestion.upload_status import (
    UploadStatus,
    effective_status,
    validate_transition,
)
from digitaltwin.core.shared.metadata_store import MetadataStore
from digitaltwin.core.shared.safe_async import remove_temp_file, safe_async, safe_cleanup
from digitaltwin.core.storage.archive_extractor import extract_and_store_archive, new_base_path
from digitaltwin.core.storage.storage_service import StorageService

logger = logging.getLogger("digitaltwin.upload_processor")


@dataclass
class TilesetUploadJob:
    """Payload carried by the queue message."""
    record_id: int
    temp_file_path: str
    component_name: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "temp_file_path": self.temp_file_path,
            "component_name": self.component_name,
        }


async def mark_upload_failed(store: MetadataStore, record_id: int, error: str) -> bool:
    """
    Move a record to ``failed`` if the state machine allows it.

    Returns:
        True if the record was updated
    """
    record = await store.get_by_id(record_id)
    if record is None:
        return False
    status = effective_status(record.upload_status)
    if status in (UploadStatus.COMPLETED, UploadStatus.FAILED):
        return False
    validate_transition(status, UploadStatus.FAILED)
    await store.update_by_id(record_id, {
        "upload_status": UploadStatus.FAILED.value,
        "upload_error": error,
    })
    logger.info(f"Tileset {record_id} marked failed: {error}")
    return True


async def process_tileset_upload(
    job: TilesetUploadJob,
    storage: StorageService,
    store: MetadataStore,
) -> Optional[Dict[str, Any]]:
    """
    Extract a staged tileset archive and complete its record.

    Returns:
        Dict with ``tileset_url`` and ``file_count``, or None when the record
        was already in a terminal state (duplicate delivery)

    Raises:
        NotFoundError: The record no longer exists
        Exception: Whatever made the upload fail, after cleanup
    """
    record = await store.get_by_id(job.record_id)
    if record is None:
        await safe_cleanup((f"temp file {job.temp_file_path}", lambda: remove_temp_file(job.temp_file_path)))
        raise NotFoundError(f"Tileset record {job.record_id} not found")

    status = effective_status(record.upload_status)
    if status in (UploadStatus.COMPLETED, UploadStatus.FAILED):
        logger.warning(f"Tileset {job.record_id} already {status.value}, skipping job")
        return None

    if status == UploadStatus.PENDING and not os.path.exists(job.temp_file_path):
        message = "Upload file is no longer available"
        await mark_upload_failed(store, job.record_id, message)
        raise FileNotFoundError(f"{message}: {job.temp_file_path}")

    base_path: Optional[str] = None
    try:
        validate_transition(status, UploadStatus.PROCESSING)
        await store.update_by_id(job.record_id, {"upload_status": UploadStatus.PROCESSING.value})

        try:
            zip_bytes = await asyncio.to_thread(Path(job.temp_file_path).read_bytes)
        except OSError as e:
            raise RuntimeError(f"Failed to read temp file: {e}")

        base_path = new_base_path(job.component_name)
        result = await extract_and_store_archive(zip_bytes, storage, base_path)

        tileset_url = storage.get_public_url(f"{base_path}/{result.root_file}")
        validate_transition(UploadStatus.PROCESSING, UploadStatus.COMPLETED)
        await store.update_by_id(job.record_id, {
            "url": base_path,
            "tileset_url": tileset_url,
            "upload_status": UploadStatus.COMPLETED.value,
            "upload_error": None,
        })

        await safe_cleanup((f"temp file {job.temp_file_path}", lambda: remove_temp_file(job.temp_file_path)))
        logger.info(f"Tileset {job.record_id} uploaded: {result.file_count} files")
        return {"tileset_url": tileset_url, "file_count": result.file_count}

    except Exception as e:
        message = str(e) or e.__class__.__name__
        logger.error(f"Tileset {job.record_id} upload failed: {message}")

        await safe_async(
            lambda: mark_upload_failed(store, job.record_id, message),
            "update record status to failed",
        )

        steps = [(f"temp file {job.temp_file_path}", lambda: remove_temp_file(job.temp_file_path))]
        if base_path:
            prefix = base_path
            steps.append((f"storage prefix {prefix}", lambda: storage.delete_by_prefix(prefix)))
        await safe_cleanup(*steps)
        raise
