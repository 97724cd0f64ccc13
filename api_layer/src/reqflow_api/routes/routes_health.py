"""Health check endpoints for monitoring application status."""

from datetime import datetime
from datetime import timezone

from fastapi import APIRouter
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse
from loguru import logger

ROUTER_HEALTH = APIRouter(tags=["Health"])


@ROUTER_HEALTH.get(
    "/health",
    summary="Health check endpoint",
    description="Basic health check that returns application status and metadata",
    responses={
        status.HTTP_200_OK: {
            "description": "Application is healthy",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "timestamp": "2026-01-05T12:00:00.000000Z",
                        "service": "reqflow-api",
                        "version": "v1",
                        "store_backend": "memory",
                    }
                }
            },
        }
    },
)
async def health_check(request: Request):
    """
    Basic health check endpoint.

    Returns application status and metadata. This endpoint is lightweight
    and does not perform any external dependency checks.
    """
    settings = request.app.state.settings

    response_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.service_name,
        "version": "v1",
        "store_backend": settings.store_backend,
    }

    logger.debug("Health check requested", status="healthy")

    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=response_data,
    )


@ROUTER_HEALTH.get(
    "/health/db",
    summary="Database health check",
    responses={
        status.HTTP_200_OK: {"description": "Store reachable"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Store unreachable"},
    },
)
async def database_health_check(request: Request):
    """
    Check the request document store.

    The in-memory backend is always healthy; PostgreSQL runs a pool health query.
    """
    pool = getattr(request.app.state, "domain_db_pool", None)
    if pool is None:
        return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "healthy", "backend": "memory"})

    healthy = await pool.health_check()
    if not healthy:
        logger.warning("Database health check failed")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "backend": "postgres"},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "healthy", "backend": "postgres"})
