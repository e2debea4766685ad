"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from tokenwise_api import __version__
from tokenwise_api.db.redis_client import get_redis
from tokenwise_api.db.session import engine

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error("health.database.down", extra={"error_type": type(e).__name__})
        return f"down: {type(e).__name__}"


def check_redis() -> str:
    """Check Redis connectivity (free-daily grant marker store).

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        get_redis().ping()
        return "up"
    except Exception as e:
        logger.error("health.redis.down", extra={"error_type": type(e).__name__})
        return f"down: {type(e).__name__}"


def _collect_services() -> dict[str, str]:
    return {
        "api": "up",
        "database": check_database(),
        "redis": check_redis(),
    }


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint.

    Returns service status and dependency health.
    Always returns 200 OK (use /readyz for dependency gating).
    """
    return HealthResponse(status="healthy", version=__version__, services=_collect_services())


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    """
    Readiness check endpoint.

    Returns 503 if the database or Redis is down.
    """
    services = _collect_services()

    if any(svc_status.startswith("down") for svc_status in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=__version__, services=services)

    return HealthResponse(status="ready", version=__version__, services=services)
