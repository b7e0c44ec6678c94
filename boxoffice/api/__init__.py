"""API endpoints for the Boxoffice booking engine."""

from fastapi import APIRouter
from .bookings import router as bookings_router
from .tickets import router as tickets_router
from .stats import router as stats_router
from .jobs import router as jobs_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include all routers
api_router.include_router(bookings_router)
api_router.include_router(tickets_router)
api_router.include_router(stats_router)
api_router.include_router(jobs_router)

__all__ = ["api_router"]
