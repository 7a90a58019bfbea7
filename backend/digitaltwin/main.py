# ============================================================================
# Digital Twin Assets - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for the asset ingestion service.

This module sets up the FastAPI application with:
- CORS middleware configuration
- Startup/shutdown handlers (database tables, storage directories)
- Exception handlers mapping the pipeline's error taxonomy to JSON
- One asset router per configured manager

Default managers:
    /assets     any file, stored as a single blob
    /tilesets   3D Tiles ZIP archives, extracted (queued when large)
    /maps       JSON map layers

Usage:
    Direct: python -m digitaltwin.main
    Docker: uvicorn digitaltwin.main:app --host 0.0.0.0 --port 8000
"""

import logging
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from digitaltwin.api.v1 import build_api_router
from digitaltwin.config import settings
from digitaltwin.core.assets import (
    AssetsManager,
    AssetsManagerConfig,
    MapLayerVariant,
    SimpleAssetVariant,
    TilesetVariant,
)
from digitaltwin.core.auth.auth_policy import AuthPolicy, CallerResolver
from digitaltwin.core.auth.user_service import UserService
from digitaltwin.core.errors import AssetPipelineError
from digitaltwin.core.ingestion.upload_queue import get_upload_queue
from digitaltwin.core.shared.database_service import database_service
from digitaltwin.core.shared.metadata_store import SQLAlchemyMetadataStore
from digitaltwin.core.storage.storage_service import get_storage_service

logger = logging.getLogger("digitaltwin.main")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_default_managers() -> List[AssetsManager]:
    """Wire the default managers to the configured store, storage, queue and auth."""
    store = SQLAlchemyMetadataStore(database_service)
    storage = get_storage_service()
    resolver = CallerResolver(AuthPolicy.from_settings(settings), UserService(database_service))
    queue = get_upload_queue()

    common = dict(
        store=store,
        storage=storage,
        resolver=resolver,
        batch_concurrency=settings.batch_concurrency,
        list_limit=settings.max_list_assets,
    )
    return [
        AssetsManager(
            AssetsManagerConfig(
                name="assets",
                description="Generic binary assets",
                endpoint="assets",
                tags=["Assets"],
            ),
            SimpleAssetVariant(),
            **common,
        ),
        AssetsManager(
            AssetsManagerConfig(
                name="tilesets",
                description="3D Tiles tilesets uploaded as ZIP archives",
                endpoint="tilesets",
                content_type="application/json",
                extension=".zip",
                tags=["Tilesets"],
            ),
            TilesetVariant(),
            queue=queue,
            **common,
        ),
        AssetsManager(
            AssetsManagerConfig(
                name="maps",
                description="Map layers (GeoJSON and custom JSON layers)",
                endpoint="maps",
                content_type="application/json",
                extension=".json",
                tags=["Maps"],
            ),
            MapLayerVariant(),
            **common,
        ),
    ]


def create_app(managers: Optional[List[AssetsManager]] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        managers: Asset managers to expose; defaults to ``build_default_managers()``
    """
    if managers is None:
        managers = build_default_managers()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=(
            "Asset ingestion and access-control pipeline for digital twin data: "
            "single-file assets, 3D Tiles archives and map layers."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # ========================================================================
    # MIDDLEWARE CONFIGURATION
    # ========================================================================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # ========================================================================
    # ERROR HANDLERS
    # ========================================================================
    @app.exception_handler(AssetPipelineError)
    async def pipeline_error_handler(request: Request, exc: AssetPipelineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
            for error in exc.errors()
        )
        return JSONResponse(status_code=400, content={"error": f"Invalid request: {details}"})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # ========================================================================
    # EVENT HANDLERS
    # ========================================================================
    @app.on_event("startup")
    async def startup_event() -> None:
        configure_logging()
        logger.info(f"Starting {settings.api_title} {settings.api_version}")
        Path(settings.upload_tmp_dir).mkdir(parents=True, exist_ok=True)
        await database_service.init_db()
        logger.info(f"Serving managers: {', '.join(m.config.endpoint for m in managers)}")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await database_service.close()
        logger.info("Shutdown complete")

    # ========================================================================
    # ROUTES
    # ========================================================================
    app.include_router(build_api_router(managers))

    if settings.storage_backend.strip().lower() == "local":
        storage_dir = Path(settings.local_storage_dir)
        storage_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/storage", StaticFiles(directory=str(storage_dir)), name="storage")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(
        "digitaltwin.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
