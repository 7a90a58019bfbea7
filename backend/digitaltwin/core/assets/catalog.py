# ============================================================================
# backend/digitaltwin/core/assets/catalog.py
# ============================================================================
"""
Catalog of every asset across all managers.

Backs ``GET /assets/all``. Each manager contributes the records its caller
may see (same visibility filter as its own list endpoint); the entries are
tagged with the manager name and merged newest first.
"""

import logging
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from digitaltwin.core.assets.manager import AssetsManager
from digitaltwin.core.database.models import AssetRecord
from digitaltwin.core.errors import AssetPipelineError

logger = logging.getLogger("digitaltwin.assets.catalog")


def catalog_entry(manager: AssetsManager, record: AssetRecord) -> Dict[str, Any]:
    endpoint = manager.config.endpoint
    return {
        "id": record.id,
        "component": manager.config.name,
        "date": record.date.isoformat() if record.date is not None else None,
        "contentType": record.content_type,
        "description": record.description or "",
        "source": record.source or "",
        "owner_id": record.owner_id,
        "filename": record.filename or "",
        "is_public": record.is_public if record.is_public is not None else True,
        "url": f"/{endpoint}/{record.id}",
        "download_url": f"/{endpoint}/{record.id}/download",
    }


async def list_all_assets(
    managers: Sequence[AssetsManager],
    headers: Mapping[str, str],
) -> Dict[str, Any]:
    """
    Merge the visible records of every manager.

    A manager whose store fails is skipped with a warning so one broken
    asset type does not hide the others.

    Returns:
        {"total": n, "assets": [...]} sorted by date, newest first
    """
    collected: List[Tuple[AssetRecord, Dict[str, Any]]] = []
    for manager in managers:
        try:
            records = await manager.visible_records(headers)
        except AssetPipelineError:
            raise
        except Exception as e:
            logger.warning(f"Skipping {manager.config.name} in asset catalog: {e}")
            continue
        collected.extend((record, catalog_entry(manager, record)) for record in records)

    collected.sort(key=lambda pair: (pair[0].date, pair[0].id), reverse=True)
    assets = [entry for _, entry in collected]
    return {"total": len(assets), "assets": assets}
