"""Liveness and readiness endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from catalog_importer.api.dependencies.services import get_app_settings
from catalog_importer.core.config import Settings
from catalog_importer.utils.redis_client import create_redis_client, redis_available

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "catalog-importer-api"


@router.get("/live", summary="Liveness probe")
async def live() -> dict[str, str]:
    """Indicates the API process is running."""
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/ready", summary="Readiness probe")
def ready(request: Request, settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Check the database (required) and Redis (optional: only live progress depends on it)."""
    checks: dict[str, Any] = {"status": "ok", "service": SERVICE_NAME, "checks": {}}

    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        checks["checks"]["database"] = {"status": "healthy"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        checks["checks"]["database"] = {"status": "unhealthy", "message": str(e)}
        checks["status"] = "unhealthy"

    client = create_redis_client(settings.redis_url, decode_responses=True)
    try:
        healthy = redis_available(client)
    finally:
        client.close()
    checks["checks"]["redis"] = {"status": "healthy" if healthy else "degraded"}
    if not healthy:
        logger.warning("Redis unreachable: live progress relay degraded")

    if checks["status"] != "ok":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=checks)
    return checks
