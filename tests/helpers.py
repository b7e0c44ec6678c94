from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.models import Booking, Event


async def reload_event(session: AsyncSession, event_id) -> Event:
    """Fresh copy of an event row, bypassing the identity map"""
    result = await session.execute(
        select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def reload_booking(session: AsyncSession, booking_id) -> Booking:
    result = await session.execute(
        select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()
