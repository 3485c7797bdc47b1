"""FastAPI routers package."""

from .bookings import router as bookings_router
from .deposit_cases import router as deposit_cases_router
from .health import router as health_router
from .metrics import router as metrics_router
from .webhooks import router as webhooks_router

__all__ = [
    "bookings_router",
    "deposit_cases_router",
    "health_router",
    "metrics_router",
    "webhooks_router",
]
