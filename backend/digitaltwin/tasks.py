"""
Celery tasks for the asset pipeline.

``process_tileset_upload_task`` extracts a staged tileset archive queued by
``TilesetVariant``. The heavy lifting is in
``digitaltwin.core.ingestion.upload_processor``; this module only adapts it
to Celery: one event loop per task via ``asyncio.run`` and a failure hook
that makes sure the record does not stay ``pending`` forever.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from celery import Task

from digitaltwin.celery_app import app
from digitaltwin.core.ingestion.upload_processor import (
    TilesetUploadJob,
    mark_upload_failed,
    process_tileset_upload,
)
from digitaltwin.core.shared.database_service import database_service
from digitaltwin.core.shared.metadata_store import SQLAlchemyMetadataStore
from digitaltwin.core.storage.storage_service import get_storage_service

logger = logging.getLogger("digitaltwin.tasks")


class UploadTask(Task):
    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo):
        record_id = kwargs.get("record_id") or (args[0] if args else None)
        logger.error(f"Upload task {task_id} failed for record {record_id}: {exc}")
        if record_id is None:
            return
        try:
            store = SQLAlchemyMetadataStore(database_service)
            asyncio.run(mark_upload_failed(store, int(record_id), str(exc) or exc.__class__.__name__))
        except Exception as e:
            logger.warning(f"Could not mark record {record_id} failed after task error: {e}")

    def on_success(self, retval: Any, task_id: str, args: Any, kwargs: Any):
        if retval:
            logger.info(f"Upload task {task_id} stored {retval.get('file_count')} files")


@app.task(bind=True, base=UploadTask, name="digitaltwin.tasks.process_tileset_upload")
def process_tileset_upload_task(
    self,
    record_id: int,
    temp_file_path: str,
    component_name: str,
) -> Optional[Dict[str, Any]]:
    logger.info(f"Processing tileset upload {self.request.id} for record {record_id}")
    job = TilesetUploadJob(
        record_id=record_id,
        temp_file_path=temp_file_path,
        component_name=component_name,
    )
    return asyncio.run(
        process_tileset_upload(
            job,
            get_storage_service(),
            SQLAlchemyMetadataStore(database_service),
        )
    )
