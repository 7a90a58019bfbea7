# backend/digitaltwin/api/v1/routers/health.py
"""
Liveness endpoint.
"""

from datetime import datetime

from fastapi import APIRouter

from digitaltwin.config import settings
from digitaltwin.core.shared.database_service import database_service

router = APIRouter(prefix="/api", tags=["system"])


@router.get("/health", summary="Service health")
async def health():
    database = await database_service.health_check()
    return {
        "status": "ok" if database["status"] == "healthy" else "degraded",
        "version": settings.api_version,
        "timestamp": datetime.utcnow().isoformat(),
        "database": database,
    }
