"""API routers."""

from secondfactor.routers.admin import router as admin_router
from secondfactor.routers.health import router as health_router
from secondfactor.routers.metrics import router as metrics_router
from secondfactor.routers.two_factor import router as two_factor_router

__all__ = [
    "admin_router",
    "health_router",
    "metrics_router",
    "two_factor_router",
]
