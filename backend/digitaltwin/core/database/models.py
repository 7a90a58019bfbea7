# backend/digitaltwin/core/database/models.py
"""
SQLAlchemy ORM models for the asset metadata store.

Models:
    - AssetRecord: One row per stored asset, tileset or map layer. The
      ``name`` column is the discriminator holding the owning manager's name.
    - User: Identity-provider subjects mapped to numeric owner ids.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
)

from .base import Base


class User(Base):
    """
    User model linking an external identity to a numeric owner id.

    Attributes:
        id: Numeric id stored in ``AssetRecord.owner_id``
        external_id: Subject from the identity provider (gateway header or JWT claim)
        roles: Roles reported by the identity provider on the last request
        created_at: Timestamp when the user was first seen
        updated_at: Timestamp of the last role sync
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_id = Column(String(255), nullable=False, unique=True, index=True)
    roles = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, external_id={self.external_id})>"


class AssetRecord(Base):
    """
    Metadata for one stored asset.

    Attributes:
        id: Store-assigned primary key
        name: Manager name owning the record (type discriminator)
        content_type: MIME type served on fetch
        filename: Original file name
        description: Human description
        source: Provenance URL
        owner_id: Owning user id, or NULL for unowned legacy rows
        is_public: Whether anonymous callers may read the asset
        url: Blob path (simple assets) or storage prefix (tilesets)
        tileset_url: Public URL of the root tileset.json
        upload_status: pending | processing | completed | failed, NULL means completed
        upload_job_id: Queue job id for background uploads
        upload_error: Failure message for failed background uploads
        file_index: Legacy per-file listing for old tilesets
        layer_type / layer_name / geometry_type / properties_count: Map-layer extras
        date: Creation timestamp, immutable once set
        updated_at: Timestamp of the last metadata update
    """

    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, index=True)
    content_type = Column(String(255), nullable=False, default="application/octet-stream")
    filename = Column(String(512), nullable=True)
    description = Column(Text, nullable=True)
    source = Column(Text, nullable=True)

    # Ownership and visibility
    owner_id = Column(Integer, nullable=True, index=True)
    is_public = Column(Boolean, nullable=False, default=True)

    # Storage
    url = Column(Text, nullable=True)
    tileset_url = Column(Text, nullable=True)
    file_index = Column(JSON, nullable=True)

    # Background upload tracking
    upload_status = Column(String(20), nullable=True, index=True)
    upload_job_id = Column(String(255), nullable=True)
    upload_error = Column(Text, nullable=True)

    # Map layer metadata
    layer_type = Column(String(50), nullable=True)
    layer_name = Column(String(255), nullable=True)
    geometry_type = Column(String(50), nullable=True)
    properties_count = Column(Integer, nullable=True)

    date = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_assets_name_date", "name", "date"),
    )

    # Columns that callers may never rewrite through update_by_id
    IMMUTABLE_FIELDS = frozenset({"id", "date", "name"})

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict of every column, used by formatters and tests."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    def __repr__(self) -> str:
        return f"<AssetRecord(id={self.id}, name={self.name}, status={self.upload_status})>"
