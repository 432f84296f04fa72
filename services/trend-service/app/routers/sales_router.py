"""
Sales report endpoints.

Per-store summaries, breakdowns, top products and the dashboard. Responses
are kept in the report cache for a few minutes per query; responses that
carry an upstream error are not cached.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..cache.report_cache import ReportCache
from ..core.config import Settings
from ..dependencies import get_report_cache, get_settings, get_trend_service
from ..domain.entities import Period
from ..domain.exceptions import ValidationException
from ..services.trend_service import TrendService

router = APIRouter(prefix="/api", tags=["sales"])


def _range(trend_service: TrendService, start: Optional[date], end: Optional[date]) -> Period:
    """Requested range; either bound defaults to the current week."""
    this_week = trend_service.calculator.week_range(0)
    start = start or this_week.start
    end = end or this_week.end
    if end < start:
        raise ValidationException("end", end.isoformat(), "end must not precede start")
    return Period(start=start, end=end)


def _all_stores_ok(response: dict) -> bool:
    return all(not slot.get("error") for slot in response["stores"].values())


def _dashboard_ok(response: dict) -> bool:
    return all(not row.get("error") for row in response["entities"])


@router.get("/stores", summary="List stores")
async def list_stores(trend_service: TrendService = Depends(get_trend_service)):
    entities = await trend_service.list_entities()
    return {"stores": [entity.to_dict() for entity in entities]}


@router.get("/sales", summary="Sales summary for one or every store")
async def get_sales(
    start: Optional[date] = None,
    end: Optional[date] = None,
    store: Optional[str] = None,
    trend_service: TrendService = Depends(get_trend_service),
    reports: ReportCache = Depends(get_report_cache),
    settings: Settings = Depends(get_settings),
):
    period = _range(trend_service, start, end)
    key = f"sales:{store or 'all'}:{period.start}:{period.end}"

    if store:
        async def one_store():
            summary = await trend_service.get_summary(store, period.start, period.end)
            return {"id": store, **period.to_dict(), "summary": summary.to_dict(), "error": None}

        return await reports.get_or_compute(key, settings.REPORT_TTL_SALES, one_store)

    async def every_store():
        slots = await trend_service.get_all_summaries(period.start, period.end)
        return {
            **period.to_dict(),
            "stores": {entity_id: slot.to_dict() for entity_id, slot in slots.items()},
        }

    return await reports.get_or_compute(
        key, settings.REPORT_TTL_SALES, every_store, should_cache=_all_stores_ok
    )


@router.get("/products", summary="Top products of one store")
async def get_products(
    store: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = Query(15, ge=1, le=100),
    trend_service: TrendService = Depends(get_trend_service),
    reports: ReportCache = Depends(get_report_cache),
    settings: Settings = Depends(get_settings),
):
    period = _range(trend_service, start, end)

    async def compute():
        products = await trend_service.get_top_products(store, period.start, period.end, limit=limit)
        return {"id": store, **period.to_dict(), "products": [p.to_dict() for p in products]}

    key = f"products:{store}:{period.start}:{period.end}:{limit}"
    return await reports.get_or_compute(key, settings.REPORT_TTL_DETAIL, compute)


@router.get("/categories", summary="Category breakdown of one store")
async def get_categories(
    store: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    trend_service: TrendService = Depends(get_trend_service),
    reports: ReportCache = Depends(get_report_cache),
    settings: Settings = Depends(get_settings),
):
    period = _range(trend_service, start, end)

    async def compute():
        summary = await trend_service.get_summary(store, period.start, period.end)
        return {
            "id": store,
            **period.to_dict(),
            "categories": [c.to_dict() for c in summary.categories],
        }

    key = f"categories:{store}:{period.start}:{period.end}"
    return await reports.get_or_compute(key, settings.REPORT_TTL_DETAIL, compute)


@router.get("/employees", summary="Employee breakdown of one store")
async def get_employees(
    store: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    trend_service: TrendService = Depends(get_trend_service),
    reports: ReportCache = Depends(get_report_cache),
    settings: Settings = Depends(get_settings),
):
    period = _range(trend_service, start, end)

    async def compute():
        summary = await trend_service.get_summary(store, period.start, period.end)
        return {
            "id": store,
            **period.to_dict(),
            "employees": [e.to_dict() for e in summary.employees],
        }

    key = f"employees:{store}:{period.start}:{period.end}"
    return await reports.get_or_compute(key, settings.REPORT_TTL_DETAIL, compute)


@router.get("/dashboard", summary="Today, this week and last week for every store")
async def get_dashboard(
    trend_service: TrendService = Depends(get_trend_service),
    reports: ReportCache = Depends(get_report_cache),
    settings: Settings = Depends(get_settings),
):
    return await reports.get_or_compute(
        "dashboard",
        settings.REPORT_TTL_DASHBOARD,
        trend_service.get_dashboard,
        should_cache=_dashboard_ok,
    )


@router.post("/cache/clear", summary="Drop every cached report")
async def clear_report_cache(reports: ReportCache = Depends(get_report_cache)):
    """Closed-period summaries and the shared trend payload are left untouched."""
    return {"cleared": reports.clear()}
