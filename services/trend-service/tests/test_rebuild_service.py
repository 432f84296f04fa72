"""
Tests for the shared trend rebuild.

Covers:
- Lease exclusivity across processes and within one process
- Partial failure publishing
- Lease release on error and timeout
- Stale-while-revalidate reads
- Periodic scheduler
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.domain.entities import RebuildStatus
from app.domain.exceptions import CacheWriteFailure
from app.services.rebuild_service import CoordinatorState, RebuildCoordinator, RebuildScheduler
from app.services.trend_service import TrendService

from .factories import FIXED_NOW, local_time, make_item, make_record


@pytest.fixture
def now():
    return [FIXED_NOW]


@pytest.fixture
def trend_service(commerce, period_cache, calculator):
    return TrendService(commerce, period_cache, calculator)


@pytest.fixture
def coordinator(trend_service, store, calculator, now):
    return RebuildCoordinator(
        trend_service, store, calculator, periods=4, lease_ttl=5, clock=lambda: now[0]
    )


@pytest.fixture
def seeded(commerce, calculator):
    for entity in commerce.entities:
        for week in calculator.recent_weeks(4):
            commerce.add(entity.id, make_record(f"{entity.id}-{week.start}", local_time(week.start), [make_item("20")]))
    return commerce


class TestTriggerRebuild:
    """Test a single rebuild."""

    @pytest.mark.asyncio
    async def test_publishes_payload(self, coordinator, store, seeded, calculator):
        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.OK
        assert result.entity_count == 2
        assert result.published is True

        payload = await store.get("trend:4w:all")
        assert payload["period_starts"] == [w.start.isoformat() for w in calculator.recent_weeks(4)]
        assert payload["generated_at"] == FIXED_NOW.isoformat()
        downtown = payload["entities"]["downtown"]
        assert downtown["name"] == "Downtown"
        assert downtown["error"] is None
        assert [p["summary"]["net_sales"] for p in downtown["periods"]] == [20.0] * 4
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_failing_entity_published_with_error(self, coordinator, store, seeded):
        seeded.failing.add("eastside")

        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.OK
        payload = await store.get("trend:4w:all")
        assert payload["entities"]["downtown"]["error"] is None
        assert payload["entities"]["downtown"]["periods"][0]["summary"]["net_sales"] == 20.0
        assert payload["entities"]["eastside"]["error"]
        assert len(payload["entities"]["eastside"]["periods"]) == 4

    @pytest.mark.asyncio
    async def test_entity_listing_failure_is_error(self, coordinator, store, commerce):
        commerce.list_error = RuntimeError("locations down")

        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.ERROR
        assert "locations down" in result.error
        assert await store.get("trend:4w:all") is None
        assert await store.acquire_lease("trend:4w:lock", 5, "other")

    @pytest.mark.asyncio
    async def test_publish_failure_is_not_fatal(self, coordinator, store, seeded):
        store.set = AsyncMock(side_effect=CacheWriteFailure("trend:4w:all", "down"))

        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.OK
        assert result.published is False

    @pytest.mark.asyncio
    async def test_timeout_releases_lease(self, trend_service, store, calculator, seeded):
        seeded.delay = 0.5
        coordinator = RebuildCoordinator(trend_service, store, calculator, periods=4, lease_ttl=0.05)

        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.ERROR
        assert "timed out" in result.error
        assert coordinator.state is CoordinatorState.IDLE
        assert await store.acquire_lease(coordinator.lease_key, 5, "other")

    @pytest.mark.parametrize("lease_ttl,expected", [(120, 115), (10, 8), (0.05, 0.04)])
    def test_rebuild_deadline_is_inside_the_lease(
        self, trend_service, store, calculator, lease_ttl, expected
    ):
        coordinator = RebuildCoordinator(
            trend_service, store, calculator, periods=4, lease_ttl=lease_ttl
        )

        assert coordinator.rebuild_timeout == pytest.approx(expected)
        assert 0 < coordinator.rebuild_timeout < lease_ttl

    @pytest.mark.asyncio
    async def test_timeout_fires_before_lease_expiry(self, trend_service, store, calculator, seeded):
        seeded.delay = 5
        coordinator = RebuildCoordinator(trend_service, store, calculator, periods=4, lease_ttl=1)

        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.ERROR
        assert "timed out after 0.8s" in result.error
        assert result.duration_ms < 1000


class TestLeaseExclusivity:
    """Test that only one rebuild runs at a time."""

    @pytest.mark.asyncio
    async def test_two_processes_one_ok_one_skipped(self, trend_service, store, calculator, seeded):
        seeded.delay = 0.05
        first = RebuildCoordinator(trend_service, store, calculator, periods=4)
        second = RebuildCoordinator(trend_service, store, calculator, periods=4)

        results = await asyncio.wait_for(
            asyncio.gather(first.trigger_rebuild(), second.trigger_rebuild()), timeout=5
        )

        assert sorted(r.status.value for r in results) == ["ok", "skipped"]

    @pytest.mark.asyncio
    async def test_same_process_concurrent_calls(self, coordinator, seeded):
        seeded.delay = 0.05

        results = await asyncio.gather(coordinator.trigger_rebuild(), coordinator.trigger_rebuild())

        assert sorted(r.status.value for r in results) == ["ok", "skipped"]
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.asyncio
    async def test_held_lease_skips(self, coordinator, store, seeded):
        await store.acquire_lease(coordinator.lease_key, 60, "someone-else")

        result = await coordinator.trigger_rebuild()

        assert result.status is RebuildStatus.SKIPPED
        assert seeded.fetches == []

    @pytest.mark.asyncio
    async def test_lease_released_after_success(self, coordinator, seeded):
        first = await coordinator.trigger_rebuild()
        second = await coordinator.trigger_rebuild()

        assert first.status is RebuildStatus.OK
        assert second.status is RebuildStatus.OK


class TestReadTrend:
    """Test stale-while-revalidate reads."""

    @pytest.mark.asyncio
    async def test_missing_payload_reports_building(self, coordinator, store, seeded):
        response = await coordinator.read_trend()

        assert response["status"] == "building"
        await coordinator.wait_for_background()
        assert await store.get("trend:4w:all") is not None

    @pytest.mark.asyncio
    async def test_fresh_payload_served_without_rebuild(self, coordinator, seeded):
        await coordinator.trigger_rebuild()
        fetches = len(seeded.fetches)

        response = await coordinator.read_trend()
        await coordinator.wait_for_background()

        assert response["status"] == "ok"
        assert response["stale"] is False
        assert set(response["entities"]) == {"downtown", "eastside"}
        assert len(seeded.fetches) == fetches

    @pytest.mark.asyncio
    async def test_stale_payload_served_and_refreshed(self, coordinator, store, seeded, now):
        await coordinator.trigger_rebuild()
        now[0] = FIXED_NOW + timedelta(seconds=601)

        response = await coordinator.read_trend()

        assert response["stale"] is True
        assert response["generated_at"] == FIXED_NOW.isoformat()
        await coordinator.wait_for_background()
        payload = await store.get("trend:4w:all")
        assert payload["generated_at"] == now[0].isoformat()

    @pytest.mark.asyncio
    async def test_corrupt_payload_reads_as_missing(self, coordinator, store):
        store.set_raw("trend:4w:all", "{broken")

        assert await coordinator.get_cached_trend() is None

    @pytest.mark.asyncio
    async def test_background_rebuild_is_deduplicated(self, coordinator, seeded):
        seeded.delay = 0.05

        assert coordinator.trigger_background_rebuild()
        assert not coordinator.trigger_background_rebuild()
        await coordinator.wait_for_background()

    @pytest.mark.asyncio
    async def test_cached_entity_trend(self, coordinator, seeded):
        await coordinator.trigger_rebuild()

        entry = await coordinator.get_cached_entity_trend("downtown")

        assert entry["name"] == "Downtown"
        assert await coordinator.get_cached_entity_trend("missing") is None


class TestRebuildScheduler:
    """Test the periodic rebuild worker."""

    @pytest.mark.asyncio
    async def test_start_runs_rebuild_and_stop_cancels(self, coordinator, store, seeded):
        scheduler = RebuildScheduler(coordinator, interval_seconds=3600)

        await scheduler.start()
        for _ in range(50):
            if await store.get("trend:4w:all") is not None:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert await store.get("trend:4w:all") is not None
        assert scheduler.task is None
        assert not scheduler.running
