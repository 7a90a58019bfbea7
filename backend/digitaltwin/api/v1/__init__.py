from typing import Iterable

from fastapi import APIRouter

from .routers import health
from .routers.assets import create_assets_router
from .routers.global_assets import create_global_assets_router


def build_api_router(managers: Iterable) -> APIRouter:
    """Aggregate the health router, the global listing and one asset router per manager."""
    managers = list(managers)
    api_router = APIRouter()
    api_router.include_router(health.router)
    # Before the per-manager routes so /assets/all is not read as an id
    api_router.include_router(create_global_assets_router(managers))
    for manager in managers:
        api_router.include_router(create_assets_router(manager))
    return api_router


__all__ = ["build_api_router", "create_assets_router", "create_global_assets_router"]
