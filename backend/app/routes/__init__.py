"""API routes."""

from .applications import router as applications_router
from .connect import router as connect_router
from .earnings import router as earnings_router
from .jobs import router as jobs_router
from .payments import router as payments_router
from .tasks import router as tasks_router
from .webhooks import router as webhooks_router

__all__ = [
    "jobs_router",
    "tasks_router",
    "applications_router",
    "payments_router",
    "earnings_router",
    "connect_router",
    "webhooks_router",
]
