"""
Cross-manager asset listing.

Must be included before the per-manager routers: ``/assets/all`` would
otherwise be captured by ``/assets/{record_id}``.
"""

from typing import Sequence

from fastapi import APIRouter, Request

from digitaltwin.core.assets.catalog import list_all_assets
from digitaltwin.core.assets.manager import AssetsManager


def create_global_assets_router(managers: Sequence[AssetsManager]) -> APIRouter:
    router = APIRouter(tags=["assets", "global"])

    @router.get(
        "/assets/all",
        summary="List assets of every type",
        description="Visible assets from all managers, tagged by component, newest first.",
    )
    async def list_every_asset(request: Request):
        return await list_all_assets(managers, request.headers)

    return router
