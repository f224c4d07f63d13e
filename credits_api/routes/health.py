"""
Health Check Endpoints
======================

Provides health and status endpoints for monitoring.
"""

import structlog
from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from credits_api.config import get_settings
from credits_api.database import get_db
from credits_api.models.db_models import utcnow
from credits_api.models.schemas import HealthResponse

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["Health"])


async def _database_status(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Database health check failed", error=str(exc))
        return "unhealthy"
    return "healthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check the health status of the API and its database.",
)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    settings = get_settings()
    database = await _database_status(db)

    return HealthResponse(
        status="healthy" if database == "healthy" else "degraded",
        version=settings.api_version,
        database=database,
        timestamp=utcnow(),
    )


@router.get(
    "/",
    summary="Root",
    description="API root endpoint with basic information.",
)
async def root():
    """Root endpoint with API information."""
    settings = get_settings()
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "docs": "/docs",
        "health": "/health",
    }


@router.get(
    "/ready",
    summary="Readiness Check",
    description="Kubernetes-style readiness probe.",
)
async def readiness_check(response: Response, db: AsyncSession = Depends(get_db)):
    """
    Readiness check for container orchestration.

    Returns 200 if ready to accept traffic, 503 otherwise.
    """
    if await _database_status(db) != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}

    return {"status": "ready"}


@router.get(
    "/live",
    summary="Liveness Check",
    description="Kubernetes-style liveness probe.",
)
async def liveness_check():
    """
    Liveness check for container orchestration.

    Returns 200 if the service is alive.
    """
    return {"status": "alive"}
