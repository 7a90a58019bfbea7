# backend/digitaltwin/api/v1/routers/assets.py
"""
Asset API router factory.

``create_assets_router`` builds the endpoints of one ``AssetsManager``:

    GET    /{endpoint}                  list visible assets
    POST   /{endpoint}                  upload (200 sync, 202 queued)
    POST   /{endpoint}/batch            batch upload (200 / 207)
    DELETE /{endpoint}/batch            batch delete (200 / 207)
    GET    /{endpoint}/{id}             asset content
    GET    /{endpoint}/{id}/download    asset content as attachment
    GET    /{endpoint}/{id}/status      background upload status (tilesets only)
    PUT    /{endpoint}/{id}             update metadata
    DELETE /{endpoint}/{id}             delete asset

Uploads accept multipart/form-data (the file is staged to disk) or a JSON
body with a base64 ``file`` field. Errors raised by the manager are turned
into JSON by the exception handlers in ``digitaltwin.main``.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, Response
from starlette.datastructures import UploadFile as StarletteUploadFile

from digitaltwin.api.v1.schemas import (
    AssetUpdateRequest,
    BatchDeleteRequest,
    BatchResponse,
    BatchUploadRequest,
    MessageResponse,
    UploadStatusResponse,
)
from digitaltwin.config import settings
from digitaltwin.core.assets.manager import AssetsManager
from digitaltwin.core.errors import BadRequestError
from digitaltwin.core.ingestion.upload_intake import stage_stream_to_temp_file, staged_upload

logger = logging.getLogger("digitaltwin.api.assets")


def _parse_ids(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


async def _read_json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise BadRequestError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    return data


def create_assets_router(manager: AssetsManager, tmp_dir: Optional[str] = None) -> APIRouter:
    config = manager.config
    staging_dir = tmp_dir or settings.upload_tmp_dir
    router = APIRouter(prefix=f"/{config.endpoint}", tags=config.tags or [config.name])

    @router.get(
        "",
        summary=f"List {config.name} assets",
        description=config.description,
    )
    async def list_assets(request: Request):
        return await manager.list_assets(request.headers)

    @router.post(
        "",
        summary=f"Upload a {config.name} asset",
        description="Multipart upload (file, description, source, is_public) or JSON with base64 file.",
    )
    async def upload_asset(request: Request):
        content_type = request.headers.get("content-type", "")
        file_path: Optional[str] = None
        filename: Optional[str] = None
        size: Optional[int] = None

        if content_type.startswith("multipart/form-data") or content_type.startswith(
            "application/x-www-form-urlencoded"
        ):
            form = await request.form()
            try:
                fields: Dict[str, Any] = {}
                upload: Optional[StarletteUploadFile] = None
                for key, value in form.multi_items():
                    if isinstance(value, StarletteUploadFile):
                        if key == "file" and upload is None:
                            upload = value
                    else:
                        fields[key] = value

                if upload is not None:
                    filename = upload.filename or None
                    suffix = os.path.splitext(filename or "")[1]
                    file_path, size = await stage_stream_to_temp_file(upload, staging_dir, suffix)
            finally:
                await form.close()
        else:
            fields = await _read_json_body(request)

        async with staged_upload(file_path) as lease:
            result = await manager.upload(
                request.headers,
                fields,
                file_path=file_path,
                filename=filename,
                size=size,
                lease=lease,
            )
        return JSONResponse(result.body, status_code=result.status_code)

    # Batch routes are registered before /{record_id} so "batch" is not parsed as an id
    @router.post(
        "/batch",
        response_model=BatchResponse,
        summary=f"Batch upload {config.name} assets",
        description="Upload several base64-encoded files. 207 when some items fail.",
    )
    async def upload_batch(request: Request, body: Optional[BatchUploadRequest] = None):
        requests = body.requests if body else None
        report = await manager.upload_batch(request.headers, requests)
        return JSONResponse(report.to_response("uploaded"), status_code=report.status_code)

    @router.delete(
        "/batch",
        response_model=BatchResponse,
        summary=f"Batch delete {config.name} assets",
        description="Delete several assets by id (ids=1,2,3 or JSON body). 207 when some items fail.",
    )
    async def delete_batch(
        request: Request,
        ids: Optional[str] = Query(default=None, description="Comma-separated ids"),
        body: Optional[BatchDeleteRequest] = None,
    ):
        id_list: List[Any] = _parse_ids(ids)
        if not id_list and body and body.ids:
            id_list = list(body.ids)
        report = await manager.delete_batch(request.headers, id_list)
        return JSONResponse(report.to_response("deleted"), status_code=report.status_code)

    @router.get(
        "/{record_id}",
        summary=f"Get {config.name} asset content",
    )
    async def get_asset(record_id: int, request: Request):
        content = await manager.get_asset(record_id, request.headers)
        return Response(content=content.data, media_type=content.content_type)

    @router.get(
        "/{record_id}/download",
        summary=f"Download {config.name} asset",
    )
    async def download_asset(record_id: int, request: Request):
        content = await manager.get_asset(record_id, request.headers)
        safe_name = content.filename.replace('"', "")
        return Response(
            content=content.data,
            media_type=content.content_type,
            headers={"Content-Disposition": f'attachment; filename="{safe_name}"'},
        )

    if getattr(manager.variant, "tracks_upload_status", False):
        @router.get(
            "/{record_id}/status",
            response_model=UploadStatusResponse,
            response_model_exclude_none=True,
            summary=f"Upload status of a {config.name} asset",
        )
        async def get_upload_status(record_id: int, request: Request):
            return await manager.get_upload_status(record_id, request.headers)

    @router.put(
        "/{record_id}",
        response_model=MessageResponse,
        summary=f"Update {config.name} asset metadata",
    )
    async def update_asset(record_id: int, request: Request, body: Optional[AssetUpdateRequest] = None):
        changes = body.model_dump(exclude_none=True) if body else {}
        return await manager.update_asset(record_id, request.headers, changes)

    @router.delete(
        "/{record_id}",
        response_model=MessageResponse,
        summary=f"Delete {config.name} asset",
    )
    async def delete_asset(record_id: int, request: Request):
        return await manager.delete_asset(record_id, request.headers)

    return router
