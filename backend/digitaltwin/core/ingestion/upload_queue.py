"""
Job queue adapter for background tileset uploads.

Managers only see ``UploadQueue.enqueue``; the Celery implementation is the
production one. ``get_upload_queue`` returns None when ``USE_CELERY`` is off,
which routes every upload synchronously.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from digitaltwin.config import settings

logger = logging.getLogger("digitaltwin.queue")


@dataclass(frozen=True)
class QueuedJob:
    id: str


def tileset_job_id(record_id: int) -> str:
    return f"tileset-upload-{record_id}"


class UploadQueue(ABC):
    @abstractmethod
    async def enqueue(self, job_id: str, payload: Dict[str, Any]) -> QueuedJob:
        """Submit a job. Raises if the queue transport is unavailable."""


class CeleryUploadQueue(UploadQueue):
    """Publishes ``process_tileset_upload_task`` on the uploads queue."""

    def __init__(self, queue_name: Optional[str] = None):
        self.queue_name = queue_name or settings.celery_upload_queue

    async def enqueue(self, job_id: str, payload: Dict[str, Any]) -> QueuedJob:
        from digitaltwin.tasks import process_tileset_upload_task

        result = await asyncio.to_thread(
            process_tileset_upload_task.apply_async,
            kwargs=payload,
            task_id=job_id,
            queue=self.queue_name,
        )
        logger.info(f"Enqueued {job_id} on {self.queue_name}")
        return QueuedJob(id=result.id)


def get_upload_queue() -> Optional[UploadQueue]:
    if not settings.use_celery:
        return None
    return CeleryUploadQueue()
