# ============================================================================
# backend/digitaltwin/core/ingestion/upload_intake.py
# ============================================================================
"""
Upload intake: validation and normalization of incoming uploads.

An upload arrives in one of three shapes, exactly one of which is present:

- a multipart file staged to a temp file on disk (``file_path``)
- an in-memory buffer (``payload``)
- a base64 string inside a JSON body (batch items, JSON uploads)

``build_upload_descriptor`` validates the common fields and produces an
``UploadDescriptor`` that the variants store. Validation order matters for the
error a client sees: missing fields, then filename, then extension, then
source URL.

Staged temp files belong to the request: ``staged_upload`` removes them on
exit, whatever happened in between, unless the file was handed off to a
background job.
"""

import asyncio
import base64
import binascii
import logging
import os
import re
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Sequence
from urllib.parse import urlparse

from digitaltwin.core.errors import BadRequestError
from digitaltwin.core.shared.safe_async import remove_temp_file, safe_cleanup

logger = logging.getLogger("digitaltwin.intake")

_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")
_SCHEME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*$")
_TRUE_STRINGS = {"1", "true", "yes", "on"}
_COPY_CHUNK = 1024 * 1024


@dataclass
class UploadDescriptor:
    """Validated upload, ready to be stored by a variant."""
    description: str
    filename: str
    source: Optional[str] = None
    is_public: bool = True
    payload: Optional[bytes] = None
    file_path: Optional[str] = None
    size: int = 0

    @property
    def disk_backed(self) -> bool:
        return self.file_path is not None

    async def read_payload(self) -> bytes:
        """Bytes of the upload, reading the staged file when disk-backed."""
        if self.payload is not None:
            return self.payload
        if self.file_path is None:
            raise BadRequestError("No file data available")
        try:
            return await asyncio.to_thread(Path(self.file_path).read_bytes)
        except OSError as e:
            raise BadRequestError(f"Failed to read uploaded file: {e}")


def coerce_bool(value: Any, default: bool = True) -> bool:
    """
    Interpret form/JSON visibility flags.

    None means ``default``; strings are true only for 1/true/yes/on in any
    case; anything else goes through ``bool()``.
    """
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)


def is_valid_source_url(source: Any) -> bool:
    """Absolute URL with a scheme, e.g. ``https://example.org/data``."""
    if not isinstance(source, str) or not source.strip():
        return False
    parsed = urlparse(source.strip())
    if not parsed.scheme or not _SCHEME_PATTERN.match(parsed.scheme):
        return False
    return bool(parsed.netloc or parsed.path)


def validate_source_url(source: Any) -> str:
    if not is_valid_source_url(source):
        raise BadRequestError("Invalid source URL")
    return source.strip()


def normalize_extension(extension: Optional[str]) -> Optional[str]:
    if not extension:
        return None
    return extension if extension.startswith(".") else f".{extension}"


def has_valid_extension(filename: str, extension: Optional[str]) -> bool:
    """Case-insensitive suffix check; no configured extension accepts anything."""
    required = normalize_extension(extension)
    if required is None:
        return True
    return filename.lower().endswith(required.lower())


def is_valid_base64(data: Any) -> bool:
    """
    Strict base64 check: alphabet, padding, length multiple of 4, and the
    decoded bytes must re-encode to exactly the (trimmed) input.
    """
    if not isinstance(data, str):
        return False
    trimmed = data.strip()
    if not trimmed or len(trimmed) % 4 != 0 or not _BASE64_PATTERN.match(trimmed):
        return False
    try:
        decoded = base64.b64decode(trimmed, validate=True)
    except (binascii.Error, ValueError):
        return False
    return base64.b64encode(decoded).decode("ascii") == trimmed


def decode_base64_file(data: Any, filename: str) -> bytes:
    if not is_valid_base64(data):
        raise BadRequestError(
            f"Invalid base64 data for file: {filename}. File must be a valid base64-encoded string."
        )
    return base64.b64decode(data.strip())


def build_upload_descriptor(
    *,
    description: Any,
    source: Any,
    filename: Optional[str],
    is_public: Any = None,
    payload: Optional[bytes] = None,
    file_path: Optional[str] = None,
    size: Optional[int] = None,
    extension: Optional[str] = None,
    require_source: bool = True,
) -> UploadDescriptor:
    """
    Validate an upload and build its descriptor.

    Raises:
        BadRequestError: Missing fields, undeterminable filename, wrong
            extension, or an invalid source URL
    """
    has_file = payload is not None or file_path is not None
    if payload is not None and file_path is not None:
        raise BadRequestError("Provide either an uploaded file or inline data, not both")

    missing = not has_file or not description or (require_source and not source)
    if missing:
        fields = "description, source, file" if require_source else "description, file"
        raise BadRequestError(f"Missing required fields: {fields}")

    if not filename:
        raise BadRequestError("Filename could not be determined from uploaded file")

    if not has_valid_extension(filename, extension):
        raise BadRequestError(f"Invalid file extension. Expected: {extension}")

    clean_source = validate_source_url(source) if source else None

    if size is None:
        size = len(payload) if payload is not None else os.path.getsize(file_path)

    return UploadDescriptor(
        description=str(description),
        source=clean_source,
        filename=filename,
        is_public=coerce_bool(is_public),
        payload=payload,
        file_path=file_path,
        size=size,
    )


def validate_batch_items(items: Sequence[Any], extension: Optional[str]) -> None:
    """
    Reject a batch upload before anything is written.

    Every item must carry description, source, filename and file; every file
    must be valid base64 and every filename must match the extension.

    Raises:
        BadRequestError: On the first invalid item
    """
    if not isinstance(items, (list, tuple)) or not items:
        raise BadRequestError("Requests array is required and must not be empty")

    for item in items:
        if not isinstance(item, dict) or not all(
            item.get(key) for key in ("description", "source", "filename", "file")
        ):
            raise BadRequestError("Each request must have description, source, filename, and file")
        if not is_valid_base64(item["file"]):
            raise BadRequestError(
                f"Invalid base64 data for file: {item['filename']}. "
                "File must be a valid base64-encoded string."
            )
        if not has_valid_extension(item["filename"], extension):
            raise BadRequestError(f"Invalid file extension for {item['filename']}. Expected: {extension}")


async def stage_stream_to_temp_file(
    reader,
    tmp_dir: str,
    suffix: str = "",
) -> tuple:
    """
    Copy an async file-like object (``UploadFile``) to a temp file.

    Returns:
        Tuple of (path, size in bytes)
    """
    directory = Path(tmp_dir)
    await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
    path = directory / f"upload-{uuid.uuid4().hex}{suffix}"

    size = 0
    handle = await asyncio.to_thread(open, path, "wb")
    try:
        while True:
            chunk = await reader.read(_COPY_CHUNK)
            if not chunk:
                break
            size += len(chunk)
            await asyncio.to_thread(handle.write, chunk)
    except Exception:
        handle.close()
        remove_temp_file(str(path))
        raise
    handle.close()
    logger.debug(f"Staged upload to {path} ({size} bytes)")
    return str(path), size


class TempFileLease:
    """
    Ownership of a staged temp file.

    The request owns the file until ``hand_off`` passes it to a background
    job, which then becomes responsible for deleting it.
    """

    def __init__(self, path: Optional[str]):
        self.path = path
        self.handed_off = False

    def hand_off(self) -> Optional[str]:
        self.handed_off = True
        return self.path


@asynccontextmanager
async def staged_upload(path: Optional[str]) -> AsyncIterator[TempFileLease]:
    """Scope that removes a staged temp file on exit unless it was handed off."""
    lease = TempFileLease(path)
    try:
        yield lease
    finally:
        if path and not lease.handed_off:
            await safe_cleanup((f"temp file {path}", lambda: remove_temp_file(path)))
