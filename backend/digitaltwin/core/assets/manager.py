# ============================================================================
# backend/digitaltwin/core/assets/manager.py
# ============================================================================
"""
Assets manager: shared CRUD with access control for one asset type.

One ``AssetsManager`` exists per configured endpoint (``/assets``,
``/tilesets``, ``/maps``...). The behaviour common to every asset type lives
here: authentication, the access-control checks, metadata updates, batch
coordination and record lookup. What differs per type (how an upload is
validated and stored, how a record is formatted and fetched, what delete must
clean up) is delegated to the injected ``AssetVariant``.

Every record a manager touches must carry the manager's ``name``; a record of
another type is reported as not found.

Usage:
    manager = AssetsManager(
        AssetsManagerConfig(name="tilesets", endpoint="tilesets", extension=".zip", ...),
        TilesetVariant(),
        store=SQLAlchemyMetadataStore(database_service),
        storage=get_storage_service(),
        resolver=CallerResolver(AuthPolicy.from_settings(settings), UserService(database_service)),
        queue=get_upload_queue(),
    )
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from digitaltwin.core.auth.access_control import Action, Caller, check_access, filter_visible
from digitaltwin.core.auth.auth_policy import CallerResolver
from digitaltwin.core.database.models import AssetRecord
from digitaltwin.core.errors import BadRequestError, NotFoundError
from digitaltwin.core.ingestion.batch_service import BatchReport, run_batch
from digitaltwin.core.ingestion.upload_intake import (
    TempFileLease,
    build_upload_descriptor,
    coerce_bool,
    decode_base64_file,
    validate_batch_items,
    validate_source_url,
)
from digitaltwin.core.ingestion.upload_queue import UploadQueue
from digitaltwin.core.shared.metadata_store import MetadataStore
from digitaltwin.core.storage.storage_service import StorageService

logger = logging.getLogger("digitaltwin.assets")

LIST_RANGE_START = datetime(1970, 1, 1)
LIST_RANGE_END = datetime(2099, 12, 31, 23, 59, 59)

UPDATABLE_FIELDS = ("description", "source", "is_public")


@dataclass
class AssetsManagerConfig:
    name: str
    description: str
    endpoint: str
    content_type: str = "application/octet-stream"
    extension: Optional[str] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class UploadResult:
    """HTTP status and JSON body of an upload."""
    status_code: int
    body: Dict[str, Any]


@dataclass
class AssetContent:
    data: bytes
    content_type: str
    filename: str


class AssetsManager:
    def __init__(
        self,
        config: AssetsManagerConfig,
        variant,
        store: MetadataStore,
        storage: StorageService,
        resolver: CallerResolver,
        queue: Optional[UploadQueue] = None,
        batch_concurrency: int = 5,
        list_limit: int = 1000,
    ):
        self.config = config
        self.variant = variant
        self.store = store
        self.storage = storage
        self.resolver = resolver
        self.queue = queue
        self.batch_concurrency = batch_concurrency
        self.list_limit = list_limit

    @property
    def admin_role(self) -> str:
        return self.resolver.admin_role

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def get_record(self, record_id: int) -> AssetRecord:
        """
        Raises:
            NotFoundError: Missing record, or a record owned by another manager
        """
        record = await self.store.get_by_id(record_id)
        if record is None or record.name != self.config.name:
            raise NotFoundError("Asset not found")
        return record

    async def create_record(self, **fields: Any) -> AssetRecord:
        record = AssetRecord(
            name=self.config.name,
            content_type=self.config.content_type,
            date=datetime.utcnow(),
            **fields,
        )
        saved = await self.store.save(record)
        logger.info(f"Created {self.config.name} record {saved.id}")
        return saved

    def format_record(self, record: AssetRecord) -> Dict[str, Any]:
        return self.variant.format(self, record)

    # ------------------------------------------------------------------
    # List / fetch
    # ------------------------------------------------------------------

    async def visible_records(self, headers: Mapping[str, str]) -> List[AssetRecord]:
        """Records visible to the caller, newest first."""
        caller = await self.resolver.optional(headers)
        records = await self.store.get_by_date_range(
            self.config.name, LIST_RANGE_START, LIST_RANGE_END, self.list_limit
        )
        records = sorted(records, key=lambda r: (r.date, r.id), reverse=True)
        return filter_visible(caller, records, self.admin_role)

    async def list_assets(self, headers: Mapping[str, str]) -> List[Dict[str, Any]]:
        return [self.format_record(record) for record in await self.visible_records(headers)]

    async def _readable_record(self, record_id: int, headers: Mapping[str, str]) -> AssetRecord:
        record = await self.get_record(record_id)
        caller: Optional[Caller] = None
        if record.is_public is False:
            caller = await self.resolver.for_private_read(headers)
        check_access(caller, record, Action.READ, self.admin_role)
        return record

    async def get_asset(self, record_id: int, headers: Mapping[str, str]) -> AssetContent:
        record = await self._readable_record(record_id, headers)
        return await self.variant.fetch(self, record)

    async def get_upload_status(self, record_id: int, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not self.variant.tracks_upload_status:
            raise NotFoundError(f"{self.config.name} uploads are not tracked")
        record = await self._readable_record(record_id, headers)
        return self.variant.status(self, record)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(
        self,
        headers: Mapping[str, str],
        fields: Mapping[str, Any],
        file_path: Optional[str] = None,
        filename: Optional[str] = None,
        size: Optional[int] = None,
        lease: Optional[TempFileLease] = None,
    ) -> UploadResult:
        """
        Authenticate, validate and store one upload.

        ``fields`` holds the form or JSON body; a multipart file arrives as
        ``file_path``/``filename``/``size`` with the ``lease`` owning the temp file.
        """
        caller = await self.resolver.require(headers)
        descriptor = self.variant.build_descriptor(self, fields, file_path=file_path, filename=filename, size=size)
        return await self.variant.store(self, descriptor, caller.user_id, lease)

    async def upload_batch(self, headers: Mapping[str, str], requests: Any) -> BatchReport:
        """
        Validate every item up front, then store each independently.

        Raises:
            BadRequestError: Any invalid item; nothing is written in that case
        """
        caller = await self.resolver.require(headers)
        validate_batch_items(requests, self.config.extension)

        async def _store(item: Dict[str, Any]) -> None:
            descriptor = build_upload_descriptor(
                description=item["description"],
                source=item["source"],
                filename=item["filename"],
                is_public=item.get("is_public"),
                payload=decode_base64_file(item["file"], item["filename"]),
                extension=self.config.extension,
            )
            await self.variant.store(self, descriptor, caller.user_id, None)

        return await run_batch(
            requests,
            _store,
            key_of=lambda item: item["filename"],
            key_field="filename",
            concurrency=self.batch_concurrency,
        )

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    async def update_asset(
        self,
        record_id: int,
        headers: Mapping[str, str],
        changes: Mapping[str, Any],
    ) -> Dict[str, Any]:
        caller = await self.resolver.require(headers)

        updates: Dict[str, Any] = {}
        if changes.get("description"):
            updates["description"] = str(changes["description"])
        if changes.get("source"):
            updates["source"] = validate_source_url(changes["source"])
        if changes.get("is_public") is not None:
            updates["is_public"] = coerce_bool(changes["is_public"])
        if not updates:
            raise BadRequestError(
                "At least one field (description, source, or is_public) must be provided for update"
            )

        record = await self.get_record(record_id)
        check_access(caller, record, Action.WRITE, self.admin_role, verb="modify")

        await self.store.update_by_id(record.id, updates)
        logger.info(f"Updated {self.config.name} record {record.id}: {sorted(updates)}")
        return {"message": "Asset metadata updated successfully"}

    async def _delete_for(self, caller: Caller, record_id: int) -> None:
        record = await self.get_record(record_id)
        check_access(caller, record, Action.WRITE, self.admin_role, verb="delete")
        self.variant.check_deletable(record)

        await self.variant.delete_blobs(self, record)
        await self.store.delete(record.id)
        logger.info(f"Deleted {self.config.name} record {record.id}")

    async def delete_asset(self, record_id: int, headers: Mapping[str, str]) -> Dict[str, Any]:
        caller = await self.resolver.require(headers)
        await self._delete_for(caller, record_id)
        return {"message": self.variant.deleted_message}

    async def delete_batch(self, headers: Mapping[str, str], ids: Optional[Sequence[Any]]) -> BatchReport:
        """
        Delete each id independently; no up-front validation beyond a
        non-empty list. A repeated id is reported as not found after its
        first occurrence.
        """
        caller = await self.resolver.require(headers)
        if not ids:
            raise BadRequestError("IDs array is required and must not be empty")

        claimed = set()

        async def _delete(raw_id: Any) -> None:
            try:
                record_id = int(raw_id)
            except (TypeError, ValueError):
                raise NotFoundError("Asset not found")
            # Claimed before the first await so concurrent duplicates cannot both pass
            if record_id in claimed:
                raise NotFoundError("Asset not found")
            claimed.add(record_id)
            await self._delete_for(caller, record_id)

        return await run_batch(
            list(ids),
            _delete,
            key_of=lambda raw_id: raw_id,
            key_field="id",
            concurrency=self.batch_concurrency,
        )
