# backend/digitaltwin/core/database/__init__.py
"""
Database package for the asset metadata store.

Provides the SQLAlchemy declarative base and the ORM models.
"""

from .base import Base
from .models import AssetRecord, User

__all__ = [
    "Base",
    "AssetRecord",
    "User",
]
