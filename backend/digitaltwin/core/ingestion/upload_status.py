"""
Upload state machine for background tileset uploads.

    pending ──> processing ──> completed
       │             │
       └─────────────┴──────> failed

``pending -> failed`` covers jobs that die before they start. Completed and
failed are terminal. A NULL status means the record was stored synchronously
and counts as completed.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from digitaltwin.core.errors import ConflictError


class UploadStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Mapping[UploadStatus, FrozenSet[UploadStatus]] = {
    UploadStatus.PENDING: frozenset({UploadStatus.PROCESSING, UploadStatus.FAILED}),
    UploadStatus.PROCESSING: frozenset({UploadStatus.COMPLETED, UploadStatus.FAILED}),
    UploadStatus.COMPLETED: frozenset(),
    UploadStatus.FAILED: frozenset(),
}

IN_FLIGHT: FrozenSet[UploadStatus] = frozenset({UploadStatus.PENDING, UploadStatus.PROCESSING})

DEFAULT_FAILURE_MESSAGE = "Upload failed"


class InvalidTransitionError(ConflictError):
    def __init__(self, current: UploadStatus, target: UploadStatus):
        super().__init__(f"Invalid upload status transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def effective_status(value: Optional[Union[str, UploadStatus]]) -> UploadStatus:
    if value is None or value == "":
        return UploadStatus.COMPLETED
    return UploadStatus(value)


def is_in_flight(value: Optional[Union[str, UploadStatus]]) -> bool:
    return effective_status(value) in IN_FLIGHT


def can_transition(current: Optional[Union[str, UploadStatus]], target: UploadStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[effective_status(current)]


def validate_transition(current: Optional[Union[str, UploadStatus]], target: UploadStatus) -> UploadStatus:
    """
    Raises:
        InvalidTransitionError: ``target`` is not reachable from ``current``
    """
    status = effective_status(current)
    if target not in ALLOWED_TRANSITIONS[status]:
        raise InvalidTransitionError(status, target)
    return target


def status_payload(record: Any) -> Dict[str, Any]:
    """Body of the status polling endpoint for a record."""
    status = effective_status(record.upload_status)
    if status == UploadStatus.COMPLETED:
        return {"id": record.id, "status": status.value, "tileset_url": record.tileset_url}
    if status == UploadStatus.FAILED:
        return {
            "id": record.id,
            "status": status.value,
            "error": record.upload_error or DEFAULT_FAILURE_MESSAGE,
        }
    return {"id": record.id, "status": status.value, "job_id": record.upload_job_id}
