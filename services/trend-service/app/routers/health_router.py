"""
Health check and monitoring router.

Provides the liveness endpoint and Prometheus metrics.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel

from ..core.logging_config import get_logger
from ..dependencies import ServiceContainer, get_container
from ..metrics import metrics_endpoint

logger = get_logger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: str
    service: str
    store: str
    period_cache: dict
    report_cache: dict


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns 200 while the service runs; reports the key-value store state",
)
async def health_check(container: ServiceContainer = Depends(get_container)):
    """
    Basic health check.

    The service stays up without its store (reads fall back to rebuilding),
    so a failed ping degrades the status instead of failing the check.
    """
    try:
        store_ok = await container.store.ping()
    except Exception as e:
        logger.warning("store_ping_failed", error=str(e))
        store_ok = False

    return HealthResponse(
        status="healthy" if store_ok else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
        service=container.settings.SERVICE_NAME,
        store="healthy" if store_ok else "unavailable",
        period_cache=container.period_cache.stats(),
        report_cache=container.report_cache.stats(),
    )


@router.get("/metrics", summary="Prometheus metrics")
async def metrics() -> Response:
    return metrics_endpoint()
