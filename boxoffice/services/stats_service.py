"""
Dashboard statistics served through a short-lived Redis cache.

Entries are dropped by ``CacheInvalidator.invalidate_booking_caches`` whenever
a booking changes state; the TTL only bounds staleness if an invalidation is
lost. Cache trouble never fails a read, it only costs a database round-trip.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import CacheKeyBuilder, RedisCache, get_cache
from ..config import get_settings
from ..models.booking import Booking, BookingStatus
from ..models.event import Event, EventStatus
from ..utils.clock import utcnow
from ..utils.exceptions import EventNotFoundError

logger = logging.getLogger(__name__)


def _money(value: Optional[Decimal]) -> str:
    return f"{Decimal(value or 0):.2f}"


class StatsService:
    """Read model over bookings and events for dashboards."""

    def __init__(self, session: AsyncSession, cache: Optional[RedisCache] = None):
        self.session = session
        self.settings = get_settings()
        self.cache = cache or get_cache()

    async def get_user_stats(self, user_id: UUID) -> Dict[str, Any]:
        key = CacheKeyBuilder.user_stats(str(user_id))
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        status_counts = await self._status_counts(Booking.user_id == user_id)
        amounts = await self.session.execute(
            select(
                func.coalesce(
                    func.sum(case((Booking.status == BookingStatus.CONFIRMED, Booking.total_amount))), 0
                ),
                func.coalesce(func.sum(case((Booking.refund_processed.is_(True), Booking.refund_amount))), 0),
            ).where(Booking.user_id == user_id)
        )
        total_spent, total_refunded = amounts.one()

        upcoming = await self.session.execute(
            select(func.count(Booking.id))
            .join(Event, Event.id == Booking.event_id)
            .where(
                Booking.user_id == user_id,
                Booking.status == BookingStatus.CONFIRMED,
                Event.event_date > utcnow(),
            )
        )

        stats = {
            "user_id": str(user_id),
            "total_bookings": sum(status_counts.values()),
            "bookings_by_status": status_counts,
            "upcoming_events": upcoming.scalar_one(),
            "total_spent": _money(total_spent),
            "total_refunded": _money(total_refunded),
            "generated_at": utcnow().isoformat(),
        }
        await self.cache.set(key, stats, ttl=self.settings.stats_cache_ttl_seconds)
        return stats

    async def get_organizer_stats(self, organizer_id: UUID) -> Dict[str, Any]:
        key = CacheKeyBuilder.organizer_stats(str(organizer_id))
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        events = await self.session.execute(
            select(
                func.count(Event.id),
                func.coalesce(func.sum(case((Event.status == EventStatus.ACTIVE, 1), else_=0)), 0),
                func.coalesce(func.sum(Event.total_tickets), 0),
                func.coalesce(func.sum(Event.tickets_sold), 0),
            ).where(Event.organizer_id == organizer_id)
        )
        total_events, active_events, capacity, tickets_sold = events.one()

        organizer_bookings = Booking.event_id.in_(
            select(Event.id).where(Event.organizer_id == organizer_id)
        )
        status_counts = await self._status_counts(organizer_bookings)
        amounts = await self.session.execute(
            select(
                func.coalesce(
                    func.sum(case((Booking.status == BookingStatus.CONFIRMED, Booking.total_amount))), 0
                ),
                func.coalesce(func.sum(Booking.cancellation_fee), 0),
                func.coalesce(func.sum(case((Booking.refund_processed.is_(True), Booking.refund_amount))), 0),
            ).where(organizer_bookings)
        )
        revenue, fees_retained, refunds_paid = amounts.one()

        stats = {
            "organizer_id": str(organizer_id),
            "total_events": total_events,
            "active_events": active_events,
            "total_capacity": capacity,
            "tickets_sold": tickets_sold,
            "tickets_available": capacity - tickets_sold,
            "bookings_by_status": status_counts,
            "confirmed_revenue": _money(revenue),
            "cancellation_fees": _money(fees_retained),
            "refunds_paid": _money(refunds_paid),
            "generated_at": utcnow().isoformat(),
        }
        await self.cache.set(key, stats, ttl=self.settings.stats_cache_ttl_seconds)
        return stats

    async def get_event_inventory(self, event_id: UUID) -> Dict[str, Any]:
        key = CacheKeyBuilder.event_inventory(str(event_id))
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        result = await self.session.execute(
            select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise EventNotFoundError(str(event_id))

        inventory = {
            "event_id": str(event.id),
            "status": event.status.value,
            "total_tickets": event.total_tickets,
            "tickets_sold": event.tickets_sold,
            "available_tickets": event.available_tickets,
            "version": event.version,
        }
        await self.cache.set(key, inventory, ttl=self.settings.inventory_cache_ttl_seconds)
        return inventory

    async def get_booking_summary(self, since: datetime, until: datetime) -> Dict[str, Any]:
        """Booking activity inside ``[since, until)``; not cached."""
        created = await self.session.execute(
            select(func.count(Booking.id), func.coalesce(func.sum(Booking.quantity), 0))
            .where(Booking.created_at >= since, Booking.created_at < until)
        )
        bookings_created, tickets_reserved = created.one()

        confirmed = await self.session.execute(
            select(func.count(Booking.id), func.coalesce(func.sum(Booking.total_amount), 0))
            .where(Booking.confirmed_at >= since, Booking.confirmed_at < until)
        )
        bookings_confirmed, revenue = confirmed.one()

        cancelled = await self.session.execute(
            select(func.count(Booking.id))
            .where(Booking.cancelled_at >= since, Booking.cancelled_at < until)
        )
        refunds = await self.session.execute(
            select(func.count(Booking.id), func.coalesce(func.sum(Booking.refund_amount), 0))
            .where(
                Booking.refund_processed_at >= since,
                Booking.refund_processed_at < until,
                Booking.status == BookingStatus.REFUNDED,
            )
        )
        refunds_processed, refunds_paid = refunds.one()

        return {
            "since": since.isoformat(),
            "until": until.isoformat(),
            "bookings_created": bookings_created,
            "tickets_reserved": tickets_reserved,
            "bookings_confirmed": bookings_confirmed,
            "bookings_cancelled": cancelled.scalar_one(),
            "refunds_processed": refunds_processed,
            "revenue": _money(revenue),
            "refunds_paid": _money(refunds_paid),
        }

    async def _status_counts(self, criterion) -> Dict[str, int]:
        result = await self.session.execute(
            select(Booking.status, func.count(Booking.id)).where(criterion).group_by(Booking.status)
        )
        counts = {status.value: 0 for status in BookingStatus}
        for status, count in result.all():
            counts[status.value] = count
        return counts
