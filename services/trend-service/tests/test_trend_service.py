"""
Tests for the trend assembler.

Covers:
- Fast path vs bulk path selection and upstream call counts
- Period cache population and monotonicity
- Error isolation per slot and per entity
- Concurrency bound across entities
- Summary, dashboard and top products reports
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.domain.entities import Entity
from app.domain.exceptions import EntityNotFoundException, ValidationException
from app.services.summarizer import summarize_orders
from app.services.trend_service import TrendService

from .factories import local_time, make_item, make_record


@pytest.fixture
def service(commerce, period_cache, calculator):
    return TrendService(commerce, period_cache, calculator, concurrency=2, max_periods=52)


def seed_weekly_sales(commerce, calculator, entity_id: str, weeks: int = 12, amount: str = "10"):
    """One sale on the Wednesday of each of the last `weeks` weeks."""
    for week in calculator.recent_weeks(weeks):
        day = min(week.start + timedelta(days=2), calculator.today())
        commerce.add(entity_id, make_record(f"{entity_id}-{day}", local_time(day, hour=9), [make_item(amount)]))


def warm_cache(period_cache, calculator, entity_id: str, weeks: int = 12, amount: str = "10"):
    for week in calculator.recent_weeks(weeks)[:-1]:
        record = make_record("cached", local_time(week.start), [make_item(amount)])
        period_cache.put(entity_id, week, summarize_orders([record]))


class TestFastPath:
    """Test trends served from the period cache."""

    @pytest.mark.asyncio
    async def test_eleven_cached_weeks_need_one_call(self, service, commerce, period_cache, calculator):
        warm_cache(period_cache, calculator, "downtown")
        seed_weekly_sales(commerce, calculator, "downtown", amount="25")

        slots = await service.get_trend("downtown", 12)

        this_week = calculator.week_range(0)
        assert commerce.fetches == [("downtown", this_week.start, this_week.end)]
        assert len(slots) == 12
        assert [s.period for s in slots] == calculator.recent_weeks(12)
        assert all(s.summary.net_sales == Decimal("10.00") for s in slots[:-1])
        assert slots[-1].summary.net_sales == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_only_closed_periods_make_no_call(self, service, commerce, period_cache, calculator):
        warm_cache(period_cache, calculator, "downtown")
        closed = calculator.recent_weeks(12)[:-1]

        slots = await service.trend_for_entity(commerce.entities[0], closed)

        assert commerce.fetches == []
        assert len(slots) == 11

    @pytest.mark.asyncio
    async def test_open_period_failure_keeps_cached_slots(self, service, commerce, period_cache, calculator):
        warm_cache(period_cache, calculator, "downtown")
        commerce.failing.add("downtown")

        slots = await service.get_trend("downtown", 12)

        assert all(s.summary is not None and s.error is None for s in slots[:-1])
        assert slots[-1].summary is None
        assert "Upstream unavailable" in slots[-1].error


class TestBulkPath:
    """Test trends that need a fetch of the whole range."""

    @pytest.mark.asyncio
    async def test_cold_cache_makes_one_bulk_call(self, service, commerce, calculator):
        seed_weekly_sales(commerce, calculator, "downtown")

        slots = await service.get_trend("downtown", 12)

        weeks = calculator.recent_weeks(12)
        assert commerce.fetches == [("downtown", weeks[0].start, weeks[-1].end)]
        assert [s.summary.net_sales for s in slots] == [Decimal("10.00")] * 12

    @pytest.mark.asyncio
    async def test_bulk_path_populates_cache(self, service, commerce, period_cache, calculator):
        seed_weekly_sales(commerce, calculator, "downtown")

        await service.get_trend("downtown", 12)

        assert len(period_cache) == 11

    @pytest.mark.asyncio
    async def test_cached_weeks_never_refetched(self, service, commerce, calculator):
        seed_weekly_sales(commerce, calculator, "downtown")
        this_week = calculator.week_range(0)

        first = await service.get_trend("downtown", 12)
        for _ in range(3):
            again = await service.get_trend("downtown", 12)

        assert commerce.fetches[1:] == [("downtown", this_week.start, this_week.end)] * 3
        assert again == first

    @pytest.mark.asyncio
    async def test_zero_sales_week_is_refetched(self, service, commerce, period_cache, calculator):
        seed_weekly_sales(commerce, calculator, "downtown")
        empty_week = calculator.week_range(5)
        commerce.records["downtown"] = [
            r for r in commerce.records["downtown"]
            if not empty_week.contains(calculator.local_date(r.timestamp))
        ]

        first = await service.get_trend("downtown", 12)
        await service.get_trend("downtown", 12)

        assert first[6].summary.net_sales == Decimal("0.00")
        assert len(period_cache) == 10
        assert len(commerce.fetches) == 2
        assert commerce.fetches[1][1] == calculator.recent_weeks(12)[0].start

    @pytest.mark.asyncio
    async def test_bulk_failure_serves_cached_slots(self, service, commerce, period_cache, calculator):
        warm_cache(period_cache, calculator, "downtown")
        missing = calculator.week_range(3)
        period_cache._entries.pop(next(k for k in period_cache._entries if k.period_start == missing.start))
        commerce.failing.add("downtown")

        slots = await service.get_trend("downtown", 12)

        errors = [s.period for s in slots if s.error]
        assert errors == [missing, calculator.week_range(0)]
        assert sum(1 for s in slots if s.summary is not None) == 10


class TestValidation:
    """Test input validation."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("periods_back", [0, 53])
    async def test_periods_back_bounds(self, service, periods_back):
        with pytest.raises(ValidationException):
            await service.get_trend("downtown", periods_back)

    @pytest.mark.asyncio
    async def test_unknown_entity(self, service):
        with pytest.raises(EntityNotFoundException):
            await service.get_trend("nowhere", 12)

    @pytest.mark.asyncio
    async def test_inverted_summary_range(self, service):
        with pytest.raises(ValidationException):
            await service.get_summary("downtown", date(2024, 6, 9), date(2024, 6, 3))


class TestAllEntities:
    """Test multi-entity trends."""

    @pytest.mark.asyncio
    async def test_failing_entity_is_isolated(self, service, commerce, calculator):
        seed_weekly_sales(commerce, calculator, "downtown")
        commerce.failing.add("eastside")

        trends = await service.get_all_trend(12)

        assert trends["downtown"].error is None
        assert len(trends["downtown"].slots) == 12
        assert trends["eastside"].error is not None
        assert all(s.error for s in trends["eastside"].slots)

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, commerce, period_cache, calculator, entities):
        commerce.entities = entities + [
            Entity(id=f"store{i}", name=f"Store {i}", upstream_id=f"x{i}") for i in range(4)
        ]
        commerce.records.update({e.id: [] for e in commerce.entities})
        commerce.delay = 0.01
        service = TrendService(commerce, period_cache, calculator, concurrency=2)

        trends = await service.get_all_trend(4)

        assert len(trends) == 6
        assert commerce.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_get_all_summaries(self, service, commerce, calculator):
        seed_weekly_sales(commerce, calculator, "downtown", weeks=1, amount="40")
        commerce.failing.add("eastside")
        week = calculator.week_range(0)

        slots = await service.get_all_summaries(week.start, week.end)

        assert slots["downtown"].summary.net_sales == Decimal("40.00")
        assert slots["eastside"].summary is None
        assert slots["eastside"].error


class TestReports:
    """Test summary, dashboard and product reports."""

    @pytest.mark.asyncio
    async def test_get_summary_single_fetch(self, service, commerce, calculator):
        seed_weekly_sales(commerce, calculator, "downtown", weeks=4)
        start = calculator.week_range(3).start
        end = calculator.week_range(1).end

        summary = await service.get_summary("downtown", start, end)

        assert summary.net_sales == Decimal("30.00")
        assert commerce.fetches == [("downtown", start, end)]

    @pytest.mark.asyncio
    async def test_dashboard(self, service, commerce, calculator):
        seed_weekly_sales(commerce, calculator, "downtown", weeks=2)
        commerce.add(
            "downtown",
            make_record("today", local_time(calculator.today(), hour=8), [make_item("5")]),
        )

        dashboard = await service.get_dashboard()

        row = next(r for r in dashboard["entities"] if r["id"] == "downtown")
        assert row["this_week"]["net_sales"] == 15.0
        assert row["today"]["net_sales"] == 15.0
        assert row["last_week"]["net_sales"] == 10.0
        assert row["error"] is None
        assert set(dashboard["meta"]["date_ranges"]) == {"this_week", "last_week", "today", "ytd"}

    @pytest.mark.asyncio
    async def test_dashboard_reports_entity_error(self, service, commerce):
        commerce.failing.add("eastside")

        dashboard = await service.get_dashboard()

        row = next(r for r in dashboard["entities"] if r["id"] == "eastside")
        assert row["this_week"] is None
        assert row["error"]

    @pytest.mark.asyncio
    async def test_top_products(self, service, commerce, calculator):
        today = calculator.today()
        commerce.add("downtown", make_record("a", local_time(today), [make_item("30", name="Cart")]))
        commerce.add("downtown", make_record("b", local_time(today), [make_item("10", name="Gummies")]))

        products = await service.get_top_products("downtown", today, today, limit=1)

        assert [p.name for p in products] == ["Cart"]
