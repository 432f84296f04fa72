"""HTTP routers."""

from . import health_router, sales_router, trend_router

__all__ = ["health_router", "sales_router", "trend_router"]
