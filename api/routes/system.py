"""
System Routes: Health Check and Monitoring Endpoints

Provides system-level endpoints for health monitoring and Prometheus
metrics collection.
"""

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from api.dependencies import (
    get_database_dependency,
    get_metrics_dependency,
    get_redis_dependency,
)
from api.schemas import HealthCheckResponse
from config.settings import settings
from infrastructure.database import DatabaseManager
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient

router = APIRouter(prefix="/system", tags=["System"])


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check endpoint",
    description="System health check with dependency status",
)
async def health_check(
    request: Request,
    db: DatabaseManager = Depends(get_database_dependency),
    redis: RedisClient = Depends(get_redis_dependency),
) -> HealthCheckResponse:
    """
    System health check with dependency status.

    The database is required; Redis only backs caches, so a Redis outage
    reports ``degraded`` rather than ``unhealthy``.
    """
    dependencies: Dict[str, str] = {}

    try:
        await db.health_check()
        dependencies["database"] = "healthy"
    except Exception as e:
        dependencies["database"] = f"unhealthy: {e}"

    try:
        ok = await redis.ping()
        dependencies["redis"] = "healthy" if ok else "unhealthy"
    except Exception as e:
        dependencies["redis"] = f"unhealthy: {e}"

    if dependencies["database"] != "healthy":
        overall_status = "unhealthy"
    elif all(v == "healthy" for v in dependencies.values()):
        overall_status = "healthy"
    else:
        overall_status = "degraded"

    return HealthCheckResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version=settings.app_version,
        dependencies=dependencies,
    )


@router.get(
    "/metrics",
    summary="System metrics (Prometheus format)",
    description="Export metrics in Prometheus format for monitoring systems",
)
async def get_system_metrics(
    metrics: MetricsCollector = Depends(get_metrics_dependency),
) -> Response:
    """
    Export metrics in Prometheus format.

    Includes vendor calls and tokens, cost, cache hit rate, admission
    decisions, security events, warmer pings and batch job outcomes.
    """
    return Response(content=metrics.export_metrics(), media_type=metrics.get_content_type())
