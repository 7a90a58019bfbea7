"""
Sync/async routing for tileset uploads.

Large archives that are already staged on disk go to the background queue;
everything else is extracted inside the request.
"""

from enum import Enum

# 50 MiB
ASYNC_UPLOAD_THRESHOLD = 50 * 1024 * 1024


class UploadMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


def choose_upload_mode(size: int, disk_backed: bool, queue_available: bool) -> UploadMode:
    """
    Async iff a queue is configured, the payload is a staged file, and it is
    at least ``ASYNC_UPLOAD_THRESHOLD`` bytes. In-memory payloads never go
    async because the worker can only read from disk.
    """
    if queue_available and disk_backed and size >= ASYNC_UPLOAD_THRESHOLD:
        return UploadMode.ASYNC
    return UploadMode.SYNC
