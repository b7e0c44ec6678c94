"""
FastAPI routes for dashboard statistics.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.user import User
from ..schemas.stats import EventInventoryResponse, OrganizerStatsResponse, UserStatsResponse
from ..services.stats_service import StatsService
from ..utils.dependencies import get_current_user

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/me", response_model=UserStatsResponse)
async def get_my_stats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await StatsService(db).get_user_stats(current_user.id)


@router.get("/organizer", response_model=OrganizerStatsResponse)
async def get_organizer_stats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Sales and refund totals across the events the current user organizes."""
    return await StatsService(db).get_organizer_stats(current_user.id)


@router.get("/events/{event_id}/inventory", response_model=EventInventoryResponse)
async def get_event_inventory(
    event_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    return await StatsService(db).get_event_inventory(event_id)
