# backend/digitaltwin/core/shared/metadata_store.py
"""
Metadata store adapter for asset records.

The pipeline talks to the relational store through the narrow
``MetadataStore`` interface so that managers, the upload worker and tests can
swap the backing implementation. ``SQLAlchemyMetadataStore`` is the
production implementation on top of ``DatabaseService``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select

from digitaltwin.core.database.models import AssetRecord
from digitaltwin.core.shared.database_service import DatabaseService

logger = logging.getLogger("digitaltwin.metadata")


class MetadataStore(ABC):
    """Persistence contract for ``AssetRecord`` rows."""

    @abstractmethod
    async def save(self, record: AssetRecord) -> AssetRecord:
        """Insert a record and return it with its assigned id."""

    @abstractmethod
    async def get_by_id(self, record_id: int) -> Optional[AssetRecord]:
        """Fetch a record by primary key, whatever manager owns it."""

    @abstractmethod
    async def update_by_id(self, record_id: int, fields: Dict[str, Any]) -> Optional[AssetRecord]:
        """Apply ``fields`` to a record. ``id``, ``name`` and ``date`` are never rewritten."""

    @abstractmethod
    async def delete(self, record_id: int) -> bool:
        """Delete a record. Returns False when it did not exist."""

    @abstractmethod
    async def get_by_date_range(
        self,
        name: str,
        start: datetime,
        end: datetime,
        limit: int = 1000,
    ) -> List[AssetRecord]:
        """Records of one manager created in ``[start, end]``, newest first."""


def strip_immutable_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if k not in AssetRecord.IMMUTABLE_FIELDS}


class SQLAlchemyMetadataStore(MetadataStore):
    """
    ``MetadataStore`` backed by the async SQLAlchemy session factory.

    Each call opens its own session; ``DatabaseService.get_session`` commits on
    success and rolls back on error.
    """

    def __init__(self, db: DatabaseService):
        self._db = db

    async def save(self, record: AssetRecord) -> AssetRecord:
        async with self._db.get_session() as session:
            session.add(record)
            await session.flush()
            await session.refresh(record)
        logger.debug(f"Saved {record.name} record {record.id}")
        return record

    async def get_by_id(self, record_id: int) -> Optional[AssetRecord]:
        async with self._db.get_session() as session:
            return await session.get(AssetRecord, record_id)

    async def update_by_id(self, record_id: int, fields: Dict[str, Any]) -> Optional[AssetRecord]:
        changes = strip_immutable_fields(fields)
        async with self._db.get_session() as session:
            record = await session.get(AssetRecord, record_id)
            if record is None:
                return None
            for key, value in changes.items():
                if not hasattr(AssetRecord, key):
                    raise ValueError(f"Unknown asset field: {key}")
                setattr(record, key, value)
            await session.flush()
            await session.refresh(record)
        return record

    async def delete(self, record_id: int) -> bool:
        async with self._db.get_session() as session:
            result = await session.execute(delete(AssetRecord).where(AssetRecord.id == record_id))
            deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.debug(f"Deleted record {record_id}")
        return deleted

    async def get_by_date_range(
        self,
        name: str,
        start: datetime,
        end: datetime,
        limit: int = 1000,
    ) -> List[AssetRecord]:
        async with self._db.get_session() as session:
            result = await session.execute(
                select(AssetRecord)
                .where(
                    AssetRecord.name == name,
                    AssetRecord.date >= start,
                    AssetRecord.date <= end,
                )
                .order_by(AssetRecord.date.desc(), AssetRecord.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
