# backend/digitaltwin/core/shared/safe_async.py
"""
Fire-and-log helpers for best-effort work.

Cleanup after a failed upload (deleting partially written blobs, removing a
staged temp file, marking a record as failed) must never mask the original
error. Every such step goes through ``safe_cleanup``, which runs the steps,
logs each failure at WARNING and never raises.

Usage:
    await safe_cleanup(
        ("tileset prefix", lambda: storage.delete_by_prefix(base_path)),
        ("temp file", lambda: remove_temp_file(temp_path)),
    )
"""

import asyncio
import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar, Union

logger = logging.getLogger("digitaltwin.cleanup")

T = TypeVar("T")

CleanupStep = Tuple[str, Callable[[], Union[Awaitable[Any], Any]]]


async def _run_step(operation: Callable[[], Union[Awaitable[Any], Any]]) -> Any:
    result = operation()
    if inspect.isawaitable(result):
        result = await result
    return result


async def safe_async(
    operation: Callable[[], Awaitable[T]],
    context: str,
    default: Optional[T] = None,
) -> Optional[T]:
    """
    Run a non-critical async operation, returning ``default`` when it fails.
    """
    try:
        return await _run_step(operation)
    except Exception as e:
        logger.warning(f"Non-critical error in {context}: {e}")
        return default


async def safe_cleanup(*steps: CleanupStep) -> int:
    """
    Run every cleanup step concurrently, logging failures.

    Steps may be sync or async callables. All steps are attempted even if
    some fail.

    Returns:
        Number of steps that failed
    """
    if not steps:
        return 0

    results = await asyncio.gather(
        *(_run_step(operation) for _, operation in steps),
        return_exceptions=True,
    )

    failures = 0
    for (context, _), result in zip(steps, results):
        if isinstance(result, BaseException):
            failures += 1
            logger.warning(f"Cleanup failed for {context}: {result}")

    if failures:
        logger.warning(f"{failures}/{len(steps)} cleanup operations failed")
    return failures


def remove_temp_file(path: Optional[str]) -> bool:
    """
    Delete a staged upload file. A file that is already gone is not an error.

    Returns:
        True if a file was removed
    """
    if not path:
        return False
    try:
        os.unlink(path)
        logger.debug(f"Removed temp file {path}")
        return True
    except FileNotFoundError:
        return False
