"""
Per-entity trend assembly.

Chooses between two fetch strategies for a trend:
1. Fast path: every closed period is cached, so only the open period(s)
   are fetched upstream.
2. Bulk path: some closed period is missing, so the whole range is fetched
   once, bucketed per period, and the closed buckets are cached.
"""

import asyncio
import time
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Sequence

from ..core.logging_config import get_logger
from ..domain.entities import Entity, EntityTrend, Period, ProductSales, Summary, TrendSlot
from ..domain.exceptions import EntityNotFoundException, UpstreamError, ValidationException
from ..domain.periods import PeriodCalculator
from ..infrastructure.commerce_client import CommerceAPIClient
from ..metrics import trend_fetch_path_total, upstream_fetch_duration_seconds
from ..repositories.period_cache import PeriodCache
from .bucketing import summarize_buckets
from .summarizer import top_products

logger = get_logger(__name__)


class TrendService:
    """
    Sales summaries and trends for every entity.

    Entities are processed concurrently up to `concurrency`; within an entity
    every fetch is a single (paginated) upstream call.
    """

    def __init__(
        self,
        client: CommerceAPIClient,
        cache: PeriodCache,
        calculator: PeriodCalculator,
        concurrency: int = 2,
        max_periods: int = 52,
    ):
        """
        Initialize trend service.

        Args:
            client: Upstream commerce API
            cache: Closed-period summary cache
            calculator: Period boundaries in the fixed timezone
            concurrency: Entities processed at the same time
            max_periods: Upper bound on periods per trend
        """
        self.client = client
        self.cache = cache
        self.calculator = calculator
        self.concurrency = concurrency
        self.max_periods = max_periods

    async def get_entity(self, entity_id: str) -> Entity:
        """
        Raises:
            EntityNotFoundException: If the id is not a known entity
        """
        entity = await self.client.get_entity(entity_id)
        if entity is None:
            raise EntityNotFoundException(entity_id)
        return entity

    async def list_entities(self) -> List[Entity]:
        return await self.client.list_entities()

    async def _fetch_summaries(self, entity: Entity, periods: Sequence[Period]) -> Dict[Period, Summary]:
        """One upstream fetch spanning `periods`, summarized per period."""
        start = min(p.start for p in periods)
        end = max(p.end for p in periods)
        with upstream_fetch_duration_seconds.time():
            records = await self.client.fetch_records(entity, start, end)
        return summarize_buckets(records, periods, self.calculator.local_date)

    async def get_summary(self, entity_id: str, start: date, end: date) -> Summary:
        """
        Summary of one entity over an arbitrary date range.

        Raises:
            ValidationException: If end precedes start
            EntityNotFoundException: If the entity is unknown
            UpstreamError: If the fetch fails
        """
        if end < start:
            raise ValidationException("end", end.isoformat(), "end must not precede start")
        entity = await self.get_entity(entity_id)
        period = Period(start=start, end=end)
        summaries = await self._fetch_summaries(entity, [period])
        return summaries[period]

    def _validate_periods_back(self, periods_back: int) -> None:
        if not 1 <= periods_back <= self.max_periods:
            raise ValidationException(
                "periods_back", periods_back, f"must be between 1 and {self.max_periods}"
            )

    async def get_trend(self, entity_id: str, periods_back: int) -> List[TrendSlot]:
        """
        Weekly trend of one entity, oldest first, exactly `periods_back` long.

        Raises:
            ValidationException: If periods_back is out of range
            EntityNotFoundException: If the entity is unknown
        """
        self._validate_periods_back(periods_back)
        entity = await self.get_entity(entity_id)
        return await self.trend_for_entity(entity, self.calculator.recent_weeks(periods_back))

    async def trend_for_entity(self, entity: Entity, periods: Sequence[Period]) -> List[TrendSlot]:
        """
        Build trend slots for explicit periods.

        An upstream failure only affects the slots that needed the failed
        fetch; cached closed periods are still served.
        """
        cached: Dict[Period, Summary] = {}
        uncached_closed: List[Period] = []
        open_periods: List[Period] = []

        for period in periods:
            if self.calculator.is_closed(period):
                summary = self.cache.get(entity.id, period)
                if summary is not None:
                    cached[period] = summary
                else:
                    uncached_closed.append(period)
            else:
                open_periods.append(period)

        if uncached_closed:
            path = "bulk"
            to_fetch: Sequence[Period] = periods
        else:
            path = "fast"
            to_fetch = open_periods
        trend_fetch_path_total.labels(path=path).inc()

        fetched: Dict[Period, Summary] = {}
        error: Optional[str] = None
        if to_fetch:
            try:
                fetched = await self._fetch_summaries(entity, to_fetch)
            except UpstreamError as e:
                error = e.message
                logger.warning("trend_fetch_failed", entity=entity.id, path=path, error=error)

        written = 0
        for period in uncached_closed:
            if period in fetched and self.cache.put(entity.id, period, fetched[period]):
                written += 1

        logger.debug(
            "trend_assembled",
            entity=entity.id,
            path=path,
            cached=len(cached),
            fetched=len(fetched),
            cache_writes=written,
        )

        slots = []
        for period in periods:
            if period in cached:
                slots.append(TrendSlot(period=period, summary=cached[period]))
            elif period in fetched:
                slots.append(TrendSlot(period=period, summary=fetched[period]))
            else:
                slots.append(TrendSlot(period=period, error=error or "not fetched"))
        return slots

    async def _for_each_entity(self, entities: Sequence[Entity], worker) -> list:
        """Run `worker(entity)` for every entity under the concurrency bound."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(entity: Entity):
            async with semaphore:
                return await worker(entity)

        return await asyncio.gather(*(run(entity) for entity in entities))

    async def get_all_trend(self, periods_back: int) -> Dict[str, EntityTrend]:
        """
        Weekly trend of every entity.

        A failing entity is reported through EntityTrend.error and does not
        affect the others.
        """
        self._validate_periods_back(periods_back)
        return await self.build_all_trends(self.calculator.recent_weeks(periods_back))

    async def build_all_trends(self, periods: Sequence[Period]) -> Dict[str, EntityTrend]:
        """Trend of every entity over explicit periods."""
        entities = await self.client.list_entities()

        async def build(entity: Entity) -> EntityTrend:
            started = time.perf_counter()
            try:
                slots = await self.trend_for_entity(entity, periods)
            except Exception as e:
                logger.error("entity_trend_failed", entity=entity.id, error=str(e))
                return EntityTrend(entity=entity, error=str(e))
            error = next((slot.error for slot in slots if slot.error), None)
            logger.info(
                "entity_trend_built",
                entity=entity.id,
                elapsed_ms=int((time.perf_counter() - started) * 1000),
                error=error,
            )
            return EntityTrend(entity=entity, slots=tuple(slots), error=error)

        trends = await self._for_each_entity(entities, build)
        return {trend.entity.id: trend for trend in trends}

    async def get_all_summaries(self, start: date, end: date) -> Dict[str, TrendSlot]:
        """Summary of every entity over one date range, errors isolated per entity."""
        if end < start:
            raise ValidationException("end", end.isoformat(), "end must not precede start")
        entities = await self.client.list_entities()
        period = Period(start=start, end=end)

        async def summarize(entity: Entity) -> TrendSlot:
            try:
                summaries = await self._fetch_summaries(entity, [period])
            except UpstreamError as e:
                return TrendSlot(period=period, error=e.message)
            return TrendSlot(period=period, summary=summaries[period])

        slots = await self._for_each_entity(entities, summarize)
        return {entity.id: slot for entity, slot in zip(entities, slots)}

    async def get_dashboard(self) -> dict:
        """
        Today, this week and last week for every entity.

        This week and today share one fetch; last week comes from the period
        cache when it has been cached.
        """
        entities = await self.client.list_entities()
        this_week = self.calculator.week_range(0)
        last_week = self.calculator.week_range(1)
        today = self.calculator.day_range()

        async def build(entity: Entity) -> dict:
            errors = []
            row = {**entity.to_dict(), "this_week": None, "last_week": None, "today": None}

            try:
                records = await self.client.fetch_records(entity, this_week.start, this_week.end)
                local_date = self.calculator.local_date
                row["this_week"] = summarize_buckets(records, [this_week], local_date)[this_week].to_dict()
                row["today"] = summarize_buckets(records, [today], local_date)[today].to_dict()
            except UpstreamError as e:
                errors.append(e.message)

            (last,) = await self.trend_for_entity(entity, [last_week])
            if last.summary is not None:
                row["last_week"] = last.summary.to_dict()
            elif last.error:
                errors.append(last.error)

            row["error"] = "; ".join(errors) if errors else None
            return row

        rows = await self._for_each_entity(entities, build)
        return {
            "meta": {
                "fetched_at": datetime.now(timezone.utc).isoformat(),
                "date_ranges": {
                    "this_week": this_week.to_dict(),
                    "last_week": last_week.to_dict(),
                    "today": today.to_dict(),
                    "ytd": self.calculator.year_to_date_range().to_dict(),
                },
            },
            "entities": rows,
        }

    async def get_top_products(
        self, entity_id: str, start: date, end: date, limit: int = 15
    ) -> List[ProductSales]:
        """Best-selling products of one entity over a date range."""
        if end < start:
            raise ValidationException("end", end.isoformat(), "end must not precede start")
        entity = await self.get_entity(entity_id)
        records = await self.client.fetch_records(entity, start, end)
        period = Period(start=start, end=end)
        in_range = [r for r in records if period.contains(self.calculator.local_date(r.timestamp))]
        return top_products(in_range, limit=limit)
