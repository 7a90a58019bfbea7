"""
Asset managers: shared CRUD and access control composed with a per-type
variant (simple asset, tileset, map layer).
"""

from .manager import AssetsManager, AssetsManagerConfig, UploadResult
from .variants import MapLayerVariant, SimpleAssetVariant, TilesetVariant

__all__ = [
    "AssetsManager",
    "AssetsManagerConfig",
    "MapLayerVariant",
    "SimpleAssetVariant",
    "TilesetVariant",
    "UploadResult",
]
