"""
Celery application setup for the asset pipeline.

The API and the workers share broker and result backend through
``digitaltwin.config.settings``. Tasks live in ``digitaltwin.tasks``.

Queue Architecture:
- uploads: background extraction of large tileset archives

Worker tuning is env-driven (``CELERY_*``) with defaults suited to long,
memory-heavy extraction jobs: one prefetched task per worker and late acks so
a crashed worker's job is redelivered.
"""
import logging
import os

from celery import Celery
from celery.signals import worker_ready
from kombu import Queue

from digitaltwin.config import settings

logger = logging.getLogger("digitaltwin.celery")


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


app = Celery(
    "digitaltwin",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["digitaltwin.tasks"],
)

app.conf.task_queues = (
    Queue(settings.celery_upload_queue, routing_key=settings.celery_upload_queue),
)

app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    task_reject_on_worker_lost=_bool(os.getenv("CELERY_REJECT_ON_WORKER_LOST", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "20")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "1800")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "2100")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),  # 1 day
    task_default_queue=settings.celery_upload_queue,
    task_routes={
        "digitaltwin.tasks.process_tileset_upload": {"queue": settings.celery_upload_queue},
    },
)


@worker_ready.connect
def on_worker_ready(sender=None, **kwargs):
    logger.info(f"Upload worker ready, consuming '{settings.celery_upload_queue}'")
