"""
Blob storage backends and tileset archive extraction.
"""

from .storage_service import StorageService, get_storage_service, normalize_storage_path

__all__ = [
    "StorageService",
    "get_storage_service",
    "normalize_storage_path",
]
