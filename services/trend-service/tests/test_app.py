"""
Tests for the HTTP surface.

Runs the full stack (lifespan, container, routers) against an in-process
store and a mocked upstream.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from app.app import create_app
from app.core.config import Settings
from app.repositories.kv_store import MemoryKeyValueStore

from .factories import FIXED_NOW

TEST_SETTINGS = Settings(
    REDIS_URL=None,
    UPSTREAM_BASE_URL="https://upstream.test",
    UPSTREAM_MIN_CALL_GAP_MS=0,
    UPSTREAM_MAX_ATTEMPTS=2,
    TREND_PERIODS=4,
    REBUILD_ON_STARTUP=False,
    REBUILD_INTERVAL_SECONDS=0,
)

LOCATIONS = [
    {"name": "Downtown", "locationId": "loc-1"},
    {"name": "East Side", "locationId": "loc-2"},
]

ORDER = {
    "_id": "o1",
    "createdAt": "2024-06-11T19:00:00Z",
    "customerType": "medical",
    "budtender": "Alex",
    "itemsInCart": [
        {
            "productName": "Blue Dream",
            "brand": "Acme",
            "category": "Flower",
            "quantity": 2,
            "unitPrice": 20,
            "totalPrice": 40,
            "discountTotal": 5,
        }
    ],
}


@pytest.fixture
def upstream():
    state = {"fail_orders": False, "order_calls": 0}

    def handler(request):
        if request.url.path == "/v0/clientsLocations":
            return httpx.Response(200, json=LOCATIONS)
        state["order_calls"] += 1
        if state["fail_orders"]:
            return httpx.Response(403, text="forbidden")
        return httpx.Response(200, json={"orders": [ORDER], "total": 1})

    return state, httpx.MockTransport(handler)


@pytest.fixture
def client(upstream):
    _, transport = upstream
    app = create_app(
        settings=TEST_SETTINGS,
        store=MemoryKeyValueStore(),
        transport=transport,
        clock=lambda: FIXED_NOW,
    )
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """Test health and metrics endpoints."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "trend-service"
        assert data["period_cache"]["entries"] == 0
        assert data["report_cache"]["size"] == 0

    def test_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "trend_upstream_requests_total" in response.text


class TestSalesRoutes:
    """Test summary and breakdown routes."""

    def test_stores(self, client):
        response = client.get("/api/stores")

        assert response.status_code == 200
        assert response.json()["stores"] == [
            {"id": "downtown", "name": "Downtown"},
            {"id": "east_side", "name": "East Side"},
        ]

    def test_sales_for_one_store_defaults_to_this_week(self, client):
        response = client.get("/api/sales", params={"store": "downtown"})

        assert response.status_code == 200
        data = response.json()
        assert data["start"] == "2024-06-10"
        assert data["end"] == "2024-06-16"
        assert data["summary"]["net_sales"] == 35.0
        assert data["summary"]["customer_types"] == {"rec": 0, "med": 1}

    def test_sales_for_every_store(self, client):
        response = client.get("/api/sales", params={"start": "2024-06-10", "end": "2024-06-16"})

        assert response.status_code == 200
        assert set(response.json()["stores"]) == {"downtown", "east_side"}

    def test_unknown_store_is_404(self, client):
        response = client.get("/api/sales", params={"store": "nowhere"})
        assert response.status_code == 404

    def test_inverted_range_is_400(self, client):
        response = client.get(
            "/api/sales", params={"store": "downtown", "start": "2024-06-10", "end": "2024-06-01"}
        )
        assert response.status_code == 400

    def test_upstream_failure_is_502(self, client, upstream):
        state, _ = upstream
        state["fail_orders"] = True

        response = client.get("/api/sales", params={"store": "downtown"})

        assert response.status_code == 502
        assert response.json()["upstream_status"] == 403

    def test_breakdowns_and_products(self, client):
        categories = client.get("/api/categories", params={"store": "downtown"}).json()
        employees = client.get("/api/employees", params={"store": "downtown"}).json()
        products = client.get("/api/products", params={"store": "downtown"}).json()

        assert categories["categories"][0]["name"] == "Flower"
        assert employees["employees"][0]["name"] == "Alex"
        assert products["products"][0]["units_sold"] == 2.0

    def test_dashboard(self, client):
        response = client.get("/api/dashboard")

        assert response.status_code == 200
        rows = response.json()["entities"]
        assert {row["id"] for row in rows} == {"downtown", "east_side"}
        assert rows[0]["this_week"]["net_sales"] == 35.0


class TestTrendRoutes:
    """Test trend and rebuild routes."""

    def test_trend_without_payload_is_building(self, client):
        response = client.get("/api/trend")

        assert response.status_code == 200
        assert response.json()["status"] == "building"

    def test_rebuild_then_read(self, client):
        rebuild = client.post("/internal/rebuild-trend-cache")

        assert rebuild.status_code == 200
        assert rebuild.json()["status"] == "ok"
        assert rebuild.json()["entity_count"] == 2

        trend = client.get("/api/trend").json()
        assert trend["status"] == "ok"
        assert trend["stale"] is False
        assert len(trend["entities"]["downtown"]["periods"]) == 4

    def test_entity_trend_from_payload(self, client):
        client.post("/internal/rebuild-trend-cache")

        data = client.get("/api/trend/downtown", params={"weeks": 4}).json()

        assert data["source"] == "cache"
        assert data["name"] == "Downtown"

    def test_entity_trend_live(self, client):
        data = client.get("/api/trend/downtown", params={"weeks": 2}).json()

        assert data["source"] == "live"
        assert len(data["periods"]) == 2
        assert data["periods"][-1]["summary"]["net_sales"] == 35.0

    def test_entity_trend_bounds(self, client):
        assert client.get("/api/trend/downtown", params={"weeks": 60}).status_code == 422
        assert client.get("/api/trend/nowhere", params={"weeks": 2}).status_code == 404


class TestReportCaching:
    """Test per-query response caching and the clear route."""

    def test_repeated_dashboard_served_from_cache(self, client, upstream):
        state, _ = upstream
        first = client.get("/api/dashboard").json()
        calls = state["order_calls"]

        second = client.get("/api/dashboard").json()

        assert state["order_calls"] == calls
        assert second == first

    def test_clear_drops_cached_reports(self, client, upstream):
        state, _ = upstream
        client.get("/api/dashboard")
        client.get("/api/sales", params={"store": "downtown"})
        calls = state["order_calls"]

        cleared = client.post("/api/cache/clear")

        assert cleared.status_code == 200
        assert cleared.json() == {"cleared": 2}
        client.get("/api/sales", params={"store": "downtown"})
        assert state["order_calls"] > calls

    def test_different_queries_cached_separately(self, client, upstream):
        state, _ = upstream
        client.get("/api/sales", params={"store": "downtown"})
        calls = state["order_calls"]

        client.get("/api/sales", params={"store": "downtown", "start": "2024-06-03"})

        assert state["order_calls"] > calls

    def test_dashboard_with_upstream_errors_not_cached(self, client, upstream):
        state, _ = upstream
        state["fail_orders"] = True
        failed = client.get("/api/dashboard").json()
        assert all(row["error"] for row in failed["entities"])

        state["fail_orders"] = False
        recovered = client.get("/api/dashboard").json()

        assert all(row["error"] is None for row in recovered["entities"])

    def test_live_entity_trend_cached(self, client, upstream):
        state, _ = upstream
        client.get("/api/trend/downtown", params={"weeks": 2})
        calls = state["order_calls"]

        data = client.get("/api/trend/downtown", params={"weeks": 2}).json()

        assert state["order_calls"] == calls
        assert data["source"] == "live"
