# ============================================================================
# backend/digitaltwin/core/ingestion/batch_service.py
# ============================================================================
"""
Batch coordinator for multi-item uploads and deletes.

Each item runs independently: one failing item never stops the others. The
outcome of every item lands in a ``BatchReport`` at the item's input
position, so results come back in request order even though items run
concurrently (bounded by a semaphore).

Response shape:
    {
        "message": "2/3 assets uploaded successfully",
        "results": [
            {"filename": "a.glb", "success": true},
            {"filename": "b.glb", "success": false, "error": "..."},
            ...
        ]
    }

HTTP status is 200 when every item succeeded and 207 otherwise.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from digitaltwin.core.errors import AssetPipelineError

logger = logging.getLogger("digitaltwin.batch")

T = TypeVar("T")

STATUS_ALL_SUCCEEDED = 200
STATUS_PARTIAL = 207


@dataclass
class BatchItemResult:
    key: Any
    success: bool
    error: Optional[str] = None


class BatchReport:
    """Ordered accumulator of per-item outcomes."""

    def __init__(self, key_field: str, size: int):
        self.key_field = key_field
        self._results: List[Optional[BatchItemResult]] = [None] * size

    def record_success(self, index: int, key: Any) -> None:
        self._results[index] = BatchItemResult(key=key, success=True)

    def record_failure(self, index: int, key: Any, error: str) -> None:
        self._results[index] = BatchItemResult(key=key, success=False, error=error)

    @property
    def results(self) -> List[BatchItemResult]:
        return [result for result in self._results if result is not None]

    @property
    def total(self) -> int:
        return len(self._results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def all_succeeded(self) -> bool:
        return self.succeeded == self.total

    @property
    def status_code(self) -> int:
        return STATUS_ALL_SUCCEEDED if self.all_succeeded else STATUS_PARTIAL

    def to_response(self, verb: str) -> Dict[str, Any]:
        items = []
        for result in self.results:
            item: Dict[str, Any] = {self.key_field: result.key, "success": result.success}
            if result.error is not None:
                item["error"] = result.error
            items.append(item)
        return {
            "message": f"{self.succeeded}/{self.total} assets {verb} successfully",
            "results": items,
        }


def _error_message(error: Exception) -> str:
    if isinstance(error, AssetPipelineError):
        return error.message
    return str(error) or error.__class__.__name__


async def run_batch(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[Any]],
    key_of: Callable[[T], Any],
    key_field: str,
    concurrency: int = 5,
) -> BatchReport:
    """
    Run ``operation`` on every item and collect the outcomes.

    Args:
        items: Work items, in request order
        operation: Coroutine function applied to each item
        key_of: Extracts the identifier echoed in each result (filename, id)
        key_field: Name of that identifier in the response
        concurrency: Maximum items in flight at once

    Returns:
        BatchReport with one result per item, in input order
    """
    report = BatchReport(key_field, len(items))
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _run(index: int, item: T) -> None:
        key = key_of(item)
        async with semaphore:
            try:
                await operation(item)
                report.record_success(index, key)
            except AssetPipelineError as e:
                logger.info(f"Batch item {key} rejected: {e.message}")
                report.record_failure(index, key, e.message)
            except Exception as e:
                logger.error(f"Batch item {key} failed: {e}", exc_info=True)
                report.record_failure(index, key, _error_message(e))

    await asyncio.gather(*(_run(index, item) for index, item in enumerate(items)))

    logger.info(f"Batch finished: {report.succeeded}/{report.total} succeeded")
    return report
