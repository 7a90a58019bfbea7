# ============================================================================
# backend/digitaltwin/core/assets/variants.py
# ============================================================================
"""
Per-type behaviour plugged into ``AssetsManager``.

Hooks every variant provides:

- ``build_descriptor``: turn the request body (and staged file) into a
  validated ``UploadDescriptor``
- ``store``: write blobs and the metadata record, return the HTTP result
- ``format``: list/JSON representation of a record
- ``fetch``: content served by ``GET /{endpoint}/{id}``
- ``check_deletable`` / ``delete_blobs``: delete preconditions and cleanup

Variants:

- ``SimpleAssetVariant``: one blob per record
- ``TilesetVariant``: ZIP archive extracted under a prefix, sync or queued
- ``MapLayerVariant``: JSON layer object with derived layer metadata
"""

import json
import logging
import os
import time
import uuid
from typing import Any, Dict, Mapping, Optional

from digitaltwin.core.database.models import AssetRecord
from digitaltwin.core.errors import BadRequestError, ConflictError, InternalError
from digitaltwin.core.ingestion.upload_intake import (
    TempFileLease,
    UploadDescriptor,
    build_upload_descriptor,
    decode_base64_file,
)
from digitaltwin.core.ingestion.upload_queue import tileset_job_id
from digitaltwin.core.ingestion.upload_processor import TilesetUploadJob
from digitaltwin.core.ingestion.upload_routing import UploadMode, choose_upload_mode
from digitaltwin.core.ingestion.upload_status import UploadStatus, is_in_flight, status_payload
from digitaltwin.core.assets.manager import AssetContent, UploadResult
from digitaltwin.core.assets.map_layers import analyze_layer_content, layer_filename
from digitaltwin.core.shared.safe_async import remove_temp_file, safe_cleanup
from digitaltwin.core.storage.archive_extractor import extract_and_store_archive, new_base_path

logger = logging.getLogger("digitaltwin.assets.variants")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def stored_blob_name(filename: str) -> str:
    """Collision-free storage name keeping the client's extension."""
    extension = os.path.splitext(filename)[1].lower()
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{extension}"


class SimpleAssetVariant:
    kind = "asset"
    require_source = True
    tracks_upload_status = False
    deleted_message = "Asset deleted successfully"
    uploaded_message = "Asset uploaded successfully"

    # -- intake ---------------------------------------------------------

    def build_descriptor(
        self,
        manager,
        fields: Mapping[str, Any],
        file_path: Optional[str] = None,
        filename: Optional[str] = None,
        size: Optional[int] = None,
    ) -> UploadDescriptor:
        raw = fields.get("file") if file_path is None else None
        descriptor = build_upload_descriptor(
            description=fields.get("description"),
            source=fields.get("source"),
            filename=filename or fields.get("filename"),
            is_public=fields.get("is_public"),
            payload=b"" if raw else None,
            file_path=file_path,
            size=size if file_path else 0,
            extension=manager.config.extension,
            require_source=self.require_source,
        )
        if raw:
            descriptor.payload = decode_base64_file(raw, descriptor.filename)
            descriptor.size = len(descriptor.payload)
        return descriptor

    # -- storage --------------------------------------------------------

    async def store(
        self,
        manager,
        descriptor: UploadDescriptor,
        owner_id: Optional[int],
        lease: Optional[TempFileLease],
    ) -> UploadResult:
        data = await descriptor.read_payload()
        path = await manager.storage.save(data, manager.config.name, stored_blob_name(descriptor.filename))

        try:
            record = await manager.create_record(
                url=path,
                description=descriptor.description,
                source=descriptor.source,
                filename=descriptor.filename,
                owner_id=owner_id,
                is_public=descriptor.is_public,
            )
        except Exception:
            await safe_cleanup((f"blob {path}", lambda: manager.storage.delete(path)))
            raise

        return UploadResult(200, {"message": self.uploaded_message, "id": record.id})

    async def fetch(self, manager, record: AssetRecord) -> AssetContent:
        if not record.url:
            raise InternalError("Asset has no stored content")
        data = await manager.storage.retrieve(record.url)
        return AssetContent(
            data=data,
            content_type=record.content_type or manager.config.content_type,
            filename=record.filename or f"asset_{record.id}",
        )

    def check_deletable(self, record: AssetRecord) -> None:
        if is_in_flight(record.upload_status):
            raise ConflictError(f"Cannot delete {self.kind} while upload is in progress")

    async def delete_blobs(self, manager, record: AssetRecord) -> None:
        if record.url:
            path = record.url
            await safe_cleanup((f"blob {path}", lambda: manager.storage.delete(path)))

    # -- presentation ---------------------------------------------------

    def format(self, manager, record: AssetRecord) -> Dict[str, Any]:
        endpoint = manager.config.endpoint
        return {
            "id": record.id,
            "name": record.name,
            "date": _iso(record.date),
            "contentType": record.content_type,
            "description": record.description or "",
            "source": record.source or "",
            "owner_id": record.owner_id,
            "filename": record.filename or "",
            "is_public": record.is_public if record.is_public is not None else True,
            "url": f"/{endpoint}/{record.id}",
            "download_url": f"/{endpoint}/{record.id}/download",
        }


class TilesetVariant(SimpleAssetVariant):
    """
    ZIP archives extracted into a storage prefix.

    The record's ``url`` is the prefix (the unit deleted later) and
    ``tileset_url`` the public URL of the root ``tileset.json``. Large staged
    uploads are handed to the queue and tracked through ``upload_status``.
    """

    kind = "tileset"
    require_source = False
    tracks_upload_status = True
    deleted_message = "Tileset deleted successfully"

    async def store(
        self,
        manager,
        descriptor: UploadDescriptor,
        owner_id: Optional[int],
        lease: Optional[TempFileLease],
    ) -> UploadResult:
        mode = choose_upload_mode(descriptor.size, descriptor.disk_backed, manager.queue is not None)
        if mode == UploadMode.ASYNC:
            return await self._store_async(manager, descriptor, owner_id, lease)
        return await self._store_sync(manager, descriptor, owner_id)

    async def _store_sync(self, manager, descriptor: UploadDescriptor, owner_id: Optional[int]) -> UploadResult:
        zip_bytes = await descriptor.read_payload()
        base_path = new_base_path(manager.config.name)

        result = await extract_and_store_archive(zip_bytes, manager.storage, base_path)
        tileset_url = manager.storage.get_public_url(f"{base_path}/{result.root_file}")

        try:
            record = await manager.create_record(
                url=base_path,
                tileset_url=tileset_url,
                description=descriptor.description,
                source=descriptor.source,
                filename=descriptor.filename,
                owner_id=owner_id,
                is_public=descriptor.is_public,
                upload_status=UploadStatus.COMPLETED.value,
            )
        except Exception:
            await safe_cleanup((f"storage prefix {base_path}", lambda: manager.storage.delete_by_prefix(base_path)))
            raise

        return UploadResult(200, {
            "message": "Tileset uploaded successfully",
            "id": record.id,
            "tileset_url": tileset_url,
            "file_count": result.file_count,
        })

    async def _store_async(
        self,
        manager,
        descriptor: UploadDescriptor,
        owner_id: Optional[int],
        lease: Optional[TempFileLease],
    ) -> UploadResult:
        temp_path = descriptor.file_path
        record_id: Optional[int] = None

        try:
            record = await manager.create_record(
                url="",
                tileset_url="",
                description=descriptor.description,
                source=descriptor.source,
                filename=descriptor.filename,
                owner_id=owner_id,
                is_public=descriptor.is_public,
                upload_status=UploadStatus.PENDING.value,
            )
            record_id = record.id

            job = TilesetUploadJob(
                record_id=record_id,
                temp_file_path=temp_path,
                component_name=manager.config.name,
            )
            queued = await manager.queue.enqueue(tileset_job_id(record_id), job.to_payload())
            await manager.store.update_by_id(record_id, {"upload_job_id": queued.id})
        except Exception:
            steps = [(f"temp file {temp_path}", lambda: remove_temp_file(temp_path))]
            if record_id is not None:
                rid = record_id
                steps.append((f"pending record {rid}", lambda: manager.store.delete(rid)))
            await safe_cleanup(*steps)
            if lease is not None:
                lease.hand_off()
            raise

        if lease is not None:
            lease.hand_off()
        logger.info(f"Tileset {record_id} queued as {queued.id} ({descriptor.size} bytes)")

        return UploadResult(202, {
            "message": "Tileset upload accepted, processing in background",
            "id": record_id,
            "job_id": queued.id,
            "status": UploadStatus.PENDING.value,
            "status_url": f"/{manager.config.endpoint}/{record_id}/status",
        })

    def status(self, manager, record: AssetRecord) -> Dict[str, Any]:
        return status_payload(record)

    async def fetch(self, manager, record: AssetRecord) -> AssetContent:
        body = json.dumps(self.format(manager, record)).encode("utf-8")
        return AssetContent(data=body, content_type="application/json", filename=f"tileset_{record.id}.json")

    async def delete_blobs(self, manager, record: AssetRecord) -> None:
        legacy_files = (record.file_index or {}).get("files") or []
        if legacy_files:
            logger.info(f"Deleting {len(legacy_files)} files of tileset {record.id} (legacy index)")
            await safe_cleanup(*(
                (f"blob {entry['path']}", lambda p=entry["path"]: manager.storage.delete(p))
                for entry in legacy_files
                if isinstance(entry, dict) and entry.get("path")
            ))
        elif record.url:
            prefix = record.url
            await safe_cleanup((f"storage prefix {prefix}", lambda: manager.storage.delete_by_prefix(prefix)))

    def format(self, manager, record: AssetRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "description": record.description or "",
            "filename": record.filename or "",
            "date": _iso(record.date),
            "owner_id": record.owner_id,
            "is_public": record.is_public if record.is_public is not None else True,
            "tileset_url": record.tileset_url or "",
            "upload_status": record.upload_status or UploadStatus.COMPLETED.value,
        }


class MapLayerVariant(SimpleAssetVariant):
    """
    JSON map layers sent inline as ``{"layer": {...}, "description": ...}``.

    The layer is analyzed on store; its type, name, geometry and property
    count are kept on the record.
    """

    kind = "map layer"
    require_source = False
    uploaded_message = "Layer uploaded successfully"

    def build_descriptor(
        self,
        manager,
        fields: Mapping[str, Any],
        file_path: Optional[str] = None,
        filename: Optional[str] = None,
        size: Optional[int] = None,
    ) -> UploadDescriptor:
        if file_path is not None:
            raise BadRequestError("Map layers must be sent as a JSON body with a 'layer' object")

        layer = fields.get("layer")
        if layer is None:
            raise BadRequestError("Missing required field: layer (JSON object)")
        if isinstance(layer, str):
            try:
                layer = json.loads(layer)
            except ValueError:
                raise BadRequestError("Layer must be a valid JSON object")
        if not isinstance(layer, dict):
            raise BadRequestError("Layer must be a valid JSON object")

        info = analyze_layer_content(layer)
        payload = json.dumps(layer, indent=2).encode("utf-8")
        return build_upload_descriptor(
            description=fields.get("description") or info.description or "Map layer",
            source=fields.get("source"),
            filename=layer_filename(info.layer_name, int(time.time() * 1000)),
            is_public=fields.get("is_public"),
            payload=payload,
            extension=manager.config.extension,
            require_source=False,
        )

    async def store(
        self,
        manager,
        descriptor: UploadDescriptor,
        owner_id: Optional[int],
        lease: Optional[TempFileLease],
    ) -> UploadResult:
        payload = await descriptor.read_payload()
        try:
            layer = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise BadRequestError(f"Layer file {descriptor.filename} is not valid JSON")
        if not isinstance(layer, dict):
            raise BadRequestError("Layer must be a valid JSON object")

        info = analyze_layer_content(layer)
        path = await manager.storage.save(payload, manager.config.name, descriptor.filename)

        try:
            record = await manager.create_record(
                url=path,
                description=descriptor.description,
                source=descriptor.source,
                filename=descriptor.filename,
                owner_id=owner_id,
                is_public=descriptor.is_public,
                layer_type=info.layer_type,
                layer_name=info.layer_name,
                geometry_type=info.geometry_type,
                properties_count=info.properties_count,
            )
        except Exception:
            await safe_cleanup((f"blob {path}", lambda: manager.storage.delete(path)))
            raise

        return UploadResult(200, {
            "message": self.uploaded_message,
            "id": record.id,
            "layer_name": info.layer_name,
            "geometry_type": info.geometry_type,
            "properties_count": info.properties_count,
        })

    def format(self, manager, record: AssetRecord) -> Dict[str, Any]:
        body = super().format(manager, record)
        body.update({
            "layer_type": record.layer_type or "",
            "layer_name": record.layer_name or "",
            "geometry_type": record.geometry_type,
            "properties_count": record.properties_count or 0,
        })
        return body
