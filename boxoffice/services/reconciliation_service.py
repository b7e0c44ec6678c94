"""
Reconciliation jobs that drive stuck or stale records to their final state.

Every job is a bounded scan followed by independent per-record actions. A
failure on one record is logged with its id and the scan moves on; the next
tick picks up whatever was missed. Each action re-checks its precondition in
a conditional UPDATE, so a job racing a user request (or another worker) can
never apply its effect twice.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..cache import CacheInvalidator
from ..config import get_settings
from ..models.booking import Booking, BookingStatus, TERMINAL_STATUSES
from ..models.booking_history import BookingAction, BookingHistory
from ..models.event import Event, EventStatus
from ..utils.clock import as_utc, utcnow
from ..utils.exceptions import NotFoundError
from ..utils.logging_config import log_business_event
from .booking_service import BookingService, SYSTEM_ACTOR
from .notification_service import NotificationDispatcher, NotificationService
from .refund_policy import RefundPolicy, hours_until
from .stats_service import StatsService

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Outcome of one reconciliation pass."""

    job: str
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def record(self, applied: bool) -> None:
        self.processed += 1
        if applied:
            self.succeeded += 1
        else:
            self.skipped += 1

    def record_failure(self, record_id) -> None:
        self.processed += 1
        self.failed += 1
        self.failed_ids.append(str(record_id))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_ids": self.failed_ids,
            "details": self.details,
        }


class ReconciliationService:
    """Scheduled maintenance over bookings and event inventory."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[NotificationDispatcher] = None,
        refund_policy: Optional[RefundPolicy] = None,
    ):
        self.session = session
        self.settings = get_settings()
        self.notifier = notifier or NotificationDispatcher()
        self.refund_policy = refund_policy or RefundPolicy.from_settings(self.settings)
        self.batch_size = self.settings.reconciliation_batch_size

    async def expire_abandoned_bookings(self, now: Optional[datetime] = None) -> JobResult:
        """Cancel PENDING bookings whose hold has lapsed and release their tickets."""
        now = now or utcnow()
        result = JobResult("expire_abandoned_bookings")

        booking_ids = await self._scalars(
            select(Booking.id)
            .where(Booking.status == BookingStatus.PENDING, Booking.expires_at <= now)
            .order_by(Booking.expires_at)
            .limit(self.batch_size)
        )
        if not booking_ids:
            logger.debug("No abandoned bookings to expire")
            return result

        booking_service = BookingService(self.session, notifier=self.notifier, refund_policy=self.refund_policy)
        for booking_id in booking_ids:
            try:
                result.record(await booking_service.expire_booking(booking_id, now=now))
            except Exception:
                logger.exception(f"Failed to expire booking {booking_id}")
                result.record_failure(booking_id)

        logger.info(
            f"Expiry pass: {result.succeeded} expired, {result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def process_refund_requests(self, now: Optional[datetime] = None) -> JobResult:
        """Settle refunds for cancelled bookings that are waiting on one."""
        now = now or utcnow()
        result = JobResult("process_refund_requests")

        booking_ids = await self._scalars(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.CANCELLED,
                Booking.refund_requested.is_(True),
                Booking.refund_processed.is_(False),
            )
            .order_by(Booking.cancelled_at)
            .limit(self.batch_size)
        )

        for booking_id in booking_ids:
            try:
                result.record(await self._process_refund(booking_id, now))
            except Exception:
                await self.session.rollback()
                logger.exception(f"Failed to process refund for booking {booking_id}")
                result.record_failure(booking_id)

        if booking_ids:
            logger.info(f"Refund pass: {result.succeeded} settled, {result.failed} failed")
        return result

    async def dispatch_pending_confirmations(self, now: Optional[datetime] = None) -> JobResult:
        """Send confirmation e-mails that were not delivered when the booking was confirmed."""
        result = JobResult("dispatch_pending_confirmations")

        booking_ids = await self._scalars(
            select(Booking.id)
            .where(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.confirmation_sent.is_(False),
                Booking.archived.is_(False),
            )
            .order_by(Booking.confirmed_at)
            .limit(self.batch_size)
        )

        notifications = NotificationService(self.session)
        for booking_id in booking_ids:
            try:
                result.record(await notifications.send_booking_confirmation(booking_id))
            except Exception:
                await self.session.rollback()
                logger.exception(f"Failed to send confirmation for booking {booking_id}")
                result.record_failure(booking_id)

        return result

    async def send_event_reminders(self, now: Optional[datetime] = None) -> JobResult:
        """Remind ticket holders of events starting within the reminder window."""
        now = now or utcnow()
        result = JobResult("send_event_reminders")
        window_end = now + timedelta(hours=self.settings.reminder_window_hours)

        booking_ids = await self._scalars(
            select(Booking.id)
            .join(Event, Event.id == Booking.event_id)
            .where(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.reminder_sent.is_(False),
                Event.status == EventStatus.ACTIVE,
                Event.event_date > now,
                Event.event_date <= window_end,
            )
            .order_by(Event.event_date)
            .limit(self.batch_size)
        )

        notifications = NotificationService(self.session)
        for booking_id in booking_ids:
            try:
                result.record(await notifications.send_event_reminder(booking_id))
            except Exception:
                await self.session.rollback()
                logger.exception(f"Failed to send reminder for booking {booking_id}")
                result.record_failure(booking_id)

        return result

    async def update_event_statuses(self, now: Optional[datetime] = None) -> JobResult:
        """Mark active events whose start time has passed as completed."""
        now = now or utcnow()
        result = JobResult("update_event_statuses")

        event_ids = await self._scalars(
            select(Event.id)
            .where(Event.status == EventStatus.ACTIVE, Event.event_date <= now)
            .limit(self.batch_size)
        )

        for event_id in event_ids:
            try:
                outcome = await self.session.execute(
                    update(Event)
                    .where(Event.id == event_id, Event.status == EventStatus.ACTIVE)
                    .values(status=EventStatus.COMPLETED)
                    .execution_options(synchronize_session=False)
                )
                await self.session.commit()
                result.record(outcome.rowcount == 1)
            except Exception:
                await self.session.rollback()
                logger.exception(f"Failed to complete event {event_id}")
                result.record_failure(event_id)

        if event_ids:
            logger.info(f"Marked {result.succeeded} events as completed")
        return result

    async def archive_old_records(self, now: Optional[datetime] = None) -> JobResult:
        """
        Flag long-finished events and bookings as archived.

        Events are archived ``event_archive_after_days`` after they start,
        together with all of their bookings. Cancelled and refunded bookings
        are archived ``booking_retention_days`` after cancellation. Archiving
        changes no lifecycle state.
        """
        now = now or utcnow()
        result = JobResult("archive_old_records")
        event_cutoff = now - timedelta(days=self.settings.event_archive_after_days)
        booking_cutoff = now - timedelta(days=self.settings.booking_retention_days)

        event_ids = await self._scalars(
            select(Event.id)
            .where(Event.archived.is_(False), Event.event_date <= event_cutoff)
            .limit(self.batch_size)
        )
        archived_events = 0
        for event_id in event_ids:
            try:
                applied = await self._archive_event(event_id, now)
                archived_events += int(applied)
                result.record(applied)
            except Exception:
                await self.session.rollback()
                logger.exception(f"Failed to archive event {event_id}")
                result.record_failure(event_id)

        booking_ids = await self._scalars(
            select(Booking.id)
            .where(
                Booking.archived.is_(False),
                Booking.status.in_(TERMINAL_STATUSES),
                Booking.cancelled_at <= booking_cutoff,
            )
            .limit(self.batch_size)
        )
        archived_bookings = 0
        for booking_id in booking_ids:
            try:
                outcome = await self.session.execute(
                    update(Booking)
                    .where(Booking.id == booking_id, Booking.archived.is_(False))
                    .values(archived=True, archived_at=now)
                    .execution_options(synchronize_session=False)
                )
                await self.session.commit()
                archived_bookings += outcome.rowcount
                result.record(outcome.rowcount == 1)
            except Exception:
                await self.session.rollback()
                logger.exception(f"Failed to archive booking {booking_id}")
                result.record_failure(booking_id)

        result.details = {"archived_events": archived_events, "archived_bookings": archived_bookings}
        if result.processed:
            logger.info(f"Archived {archived_events} events and {archived_bookings} bookings")
        return result

    async def generate_daily_report(self, now: Optional[datetime] = None) -> JobResult:
        """Log the last 24 hours of booking activity as a business event."""
        now = now or utcnow()
        result = JobResult("generate_daily_report")

        summary = await StatsService(self.session).get_booking_summary(now - timedelta(days=1), now)
        log_business_event("daily_report", {"report": summary})

        result.details = summary
        result.record(True)
        return result

    async def _process_refund(self, booking_id: UUID, now: datetime) -> bool:
        booking = (
            await self.session.execute(
                select(Booking)
                .where(Booking.id == booking_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()
        event = await self.session.get(Event, booking.event_id)

        if booking.refund_amount is not None and booking.refund_amount > 0:
            refund_amount = booking.refund_amount
            fee_amount = booking.cancellation_fee or Decimal("0.00")
            denial_reason = None
        else:
            cancelled_at = as_utc(booking.cancelled_at) or now
            decision = self.refund_policy.evaluate(
                booking.total_amount, hours_until(event.event_date, cancelled_at)
            )
            refund_amount = decision.refund_amount
            fee_amount = decision.fee_amount
            denial_reason = decision.reason or "No refundable amount"

        values = {"refund_processed": True, "refund_processed_at": now}
        if refund_amount > 0:
            values.update(
                status=BookingStatus.REFUNDED,
                refund_amount=refund_amount,
                cancellation_fee=fee_amount,
            )
            action, details = BookingAction.REFUND_PROCESSED, f"Refunded {refund_amount}"
        else:
            values.update(refund_denied=True, refund_denial_reason=denial_reason, refund_amount=Decimal("0.00"))
            action, details = BookingAction.REFUND_DENIED, f"Refund denied: {denial_reason}"

        outcome = await self.session.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.CANCELLED,
                Booking.refund_processed.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            await self.session.rollback()
            return False

        self.session.add(
            BookingHistory(booking_id=booking_id, action=action, details=details, performed_by=SYSTEM_ACTOR)
        )
        await self.session.commit()

        logger.info(f"Refund for booking {booking.booking_reference} settled: {details}")
        log_business_event(
            "refund_processed",
            {
                "booking_id": str(booking_id),
                "refund_amount": str(refund_amount),
                "refund_denied": refund_amount <= 0,
            },
            user_id=str(booking.user_id) if booking.user_id else None,
        )
        await self._invalidate(booking.user_id, event.organizer_id, booking.event_id)
        self.notifier.refund_processed(booking_id)
        return True

    async def _archive_event(self, event_id: UUID, now: datetime) -> bool:
        outcome = await self.session.execute(
            update(Event)
            .where(Event.id == event_id, Event.archived.is_(False))
            .values(archived=True, archived_at=now)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            await self.session.rollback()
            return False

        await self.session.execute(
            update(Booking)
            .where(Booking.event_id == event_id, Booking.archived.is_(False))
            .values(archived=True, archived_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return True

    async def _scalars(self, query) -> list:
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def _invalidate(self, user_id, organizer_id, event_id) -> None:
        try:
            await CacheInvalidator.invalidate_booking_caches(user_id, organizer_id, event_id)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for event {event_id}: {e}")


RECONCILIATION_JOBS: Dict[str, str] = {
    "expire_abandoned_bookings": "Cancel PENDING bookings whose payment hold has lapsed",
    "process_refund_requests": "Settle refunds for cancelled bookings",
    "dispatch_pending_confirmations": "Send undelivered confirmation e-mails",
    "send_event_reminders": "Remind ticket holders of upcoming events",
    "update_event_statuses": "Complete events that have started",
    "archive_old_records": "Archive finished events and old cancelled bookings",
    "generate_daily_report": "Log the daily booking summary",
}


async def run_job(
    job_name: str,
    session: AsyncSession,
    now: Optional[datetime] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> JobResult:
    """Run a reconciliation job by name."""
    if job_name not in RECONCILIATION_JOBS:
        raise NotFoundError(f"Unknown reconciliation job: {job_name}", resource_type="job", resource_id=job_name)
    service = ReconciliationService(session, notifier=notifier)
    return await getattr(service, job_name)(now=now)
