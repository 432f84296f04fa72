"""
Prometheus metrics for the trend service.

Tracks upstream traffic, period cache effectiveness and rebuild outcomes.
"""

from fastapi import Response
from prometheus_client import (CONTENT_TYPE_LATEST, Counter, Gauge, Histogram,
                               generate_latest)

# Upstream metrics
upstream_requests_total = Counter(
    "trend_upstream_requests_total",
    "Total HTTP requests sent to the commerce API",
    ["outcome"],
)

upstream_retries_total = Counter(
    "trend_upstream_retries_total",
    "Upstream requests retried after a transient failure",
    ["reason"],
)

upstream_fetch_duration_seconds = Histogram(
    "trend_upstream_fetch_duration_seconds",
    "Duration of a full paginated record fetch",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# Period cache metrics
period_cache_hits_total = Counter(
    "trend_period_cache_hits_total", "Closed-period summaries served from cache"
)

period_cache_misses_total = Counter(
    "trend_period_cache_misses_total", "Closed-period lookups not found in cache"
)

period_cache_writes_total = Counter(
    "trend_period_cache_writes_total",
    "Period cache write attempts",
    ["result"],
)

period_cache_entries = Gauge(
    "trend_period_cache_entries", "Closed-period summaries currently cached"
)

# Trend metrics
trend_fetch_path_total = Counter(
    "trend_fetch_path_total",
    "Trend requests by fetch path",
    ["path"],
)

# Rebuild metrics
rebuild_runs_total = Counter(
    "trend_rebuild_runs_total",
    "Rebuild attempts by outcome",
    ["status"],
)

rebuild_duration_seconds = Histogram(
    "trend_rebuild_duration_seconds",
    "Duration of rebuilds that held the lease",
    buckets=(1.0, 5.0, 10.0, 30.0, 60.0, 90.0, 120.0, 180.0),
)


def record_rebuild(status: str, duration_ms: int) -> None:
    """Record one rebuild outcome."""
    rebuild_runs_total.labels(status=status).inc()
    if status != "skipped":
        rebuild_duration_seconds.observe(duration_ms / 1000)


def metrics_endpoint() -> Response:
    """Render all metrics in the Prometheus text format."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
