"""
Trend endpoints.

Serves the shared all-store trend payload and triggers its rebuild.
"""

from fastapi import APIRouter, Depends, Query

from ..cache.report_cache import ReportCache
from ..core.config import Settings, settings
from ..dependencies import get_coordinator, get_report_cache, get_settings, get_trend_service
from ..services.rebuild_service import RebuildCoordinator
from ..services.trend_service import TrendService

router = APIRouter(tags=["trend"])


@router.get("/api/trend", summary="Weekly trend of every store")
async def get_trend(coordinator: RebuildCoordinator = Depends(get_coordinator)):
    """
    Never waits on upstream: a missing payload answers with status "building"
    while a rebuild runs in the background.
    """
    return await coordinator.read_trend()


@router.get("/api/trend/{entity_id}", summary="Weekly trend of one store")
async def get_entity_trend(
    entity_id: str,
    weeks: int = Query(settings.TREND_PERIODS, ge=1, le=settings.TREND_MAX_PERIODS),
    coordinator: RebuildCoordinator = Depends(get_coordinator),
    trend_service: TrendService = Depends(get_trend_service),
    reports: ReportCache = Depends(get_report_cache),
    config: Settings = Depends(get_settings),
):
    if weeks == coordinator.periods:
        cached = await coordinator.get_cached_entity_trend(entity_id)
        if cached is not None:
            return {"id": entity_id, "source": "cache", **cached}

    async def live():
        entity = await trend_service.get_entity(entity_id)
        slots = await trend_service.get_trend(entity_id, weeks)
        return {
            "id": entity.id,
            "name": entity.name,
            "source": "live",
            "error": next((slot.error for slot in slots if slot.error), None),
            "periods": [slot.to_dict() for slot in slots],
        }

    return await reports.get_or_compute(
        f"trend:{entity_id}:{weeks}",
        config.REPORT_TTL_TREND,
        live,
        should_cache=lambda response: response["error"] is None,
    )


@router.api_route(
    "/internal/rebuild-trend-cache",
    methods=["GET", "POST"],
    summary="Rebuild the shared trend payload",
)
async def rebuild_trend_cache(coordinator: RebuildCoordinator = Depends(get_coordinator)):
    """Runs one rebuild and reports its outcome; skipped when another holds the lease."""
    result = await coordinator.trigger_rebuild()
    return result.to_dict()
