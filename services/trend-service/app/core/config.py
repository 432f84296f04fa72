from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Service Info
    SERVICE_NAME: str = "trend-service"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Upstream commerce API
    UPSTREAM_BASE_URL: str = "https://api.flowhub.co"
    UPSTREAM_CLIENT_ID: Optional[str] = None
    UPSTREAM_API_KEY: Optional[str] = None
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0
    UPSTREAM_PAGE_SIZE: int = 10000
    UPSTREAM_MIN_CALL_GAP_MS: int = 350
    UPSTREAM_MAX_ATTEMPTS: int = 5
    UPSTREAM_BACKOFF_CAP_SECONDS: float = 20.0
    EXCLUDED_ENTITY_NAMES: List[str] = Field(
        default_factory=lambda: ["Smoke & Mirrors", "MBNV", "Cultivation", "RC078"]
    )

    # All period boundaries are computed in this zone
    TIMEZONE: str = "America/Los_Angeles"

    # Key-value store (empty -> in-process memory store)
    REDIS_URL: Optional[str] = None

    # Trends
    TREND_PERIODS: int = 12
    TREND_MAX_PERIODS: int = 52
    TREND_CONCURRENCY: int = 2
    TREND_FRESH_TTL: int = 600
    TREND_STALE_TTL: int = 86400

    # Rebuild
    REBUILD_LEASE_TTL: int = 120
    REBUILD_INTERVAL_SECONDS: int = 0
    REBUILD_ON_STARTUP: bool = True

    # Period cache
    PERIOD_CACHE_KEY: str = "period-cache:v1"
    PERIOD_CACHE_FLUSH_DELAY: float = 3.0

    # Report cache
    REPORT_CACHE_MAX_ENTRIES: int = 1000
    REPORT_TTL_DASHBOARD: int = 300
    REPORT_TTL_SALES: int = 300
    REPORT_TTL_DETAIL: int = 600
    REPORT_TTL_TREND: int = 1800

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()
