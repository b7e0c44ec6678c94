"""
Booking service: the booking lifecycle state machine.

Ticket inventory lives in ``events.tickets_sold``. Every change to it is a
single conditional UPDATE executed in the same transaction as the booking
row it belongs to:

* reserve: ``tickets_sold + q <= total_tickets`` (never oversells)
* release: ``tickets_sold >= q`` (never goes negative)

Booking status changes are conditional on the status that was read ("only
if still PENDING"), so a user action racing the expiry sweeper can never
apply twice. No row or table locks are taken beyond what those statements
acquire.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Union
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..cache import CacheInvalidator
from ..config import get_settings
from ..models.booking import Booking, BookingStatus, TicketType
from ..models.booking_history import BookingAction, BookingHistory
from ..models.event import Event, EventStatus
from ..models.user import User
from ..utils.clock import as_utc, utcnow
from ..utils.exceptions import (
    AlreadyTerminalError,
    AuthorizationError,
    BookingNotFoundError,
    ConcurrencyError,
    EventNotFoundError,
    InsufficientCapacityError,
    InvalidBookingStateError,
    InvalidEventStateError,
    InventoryInconsistencyError,
    PolicyDeniedError,
    ValidationError,
)
from ..utils.logging_config import log_business_event
from ..utils.retry import retry_on_concurrency_error
from .notification_service import NotificationDispatcher
from .refund_policy import RefundPolicy, hours_until, to_money
from .ticket_verification_service import compute_verification_token

logger = logging.getLogger(__name__)

TICKET_PRICE_MULTIPLIERS: Dict[TicketType, Decimal] = {
    TicketType.GENERAL: Decimal("1.0"),
    TicketType.VIP: Decimal("2.0"),
    TicketType.PREMIUM: Decimal("1.5"),
    TicketType.EARLY_BIRD: Decimal("0.8"),
}

EXPIRY_REASON = "expired"
SYSTEM_ACTOR = "system"

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_booking_reference(now: Optional[datetime] = None) -> str:
    """Human-readable reference: ``TM`` + base-36 milliseconds + 4 random chars."""
    millis = int((now or utcnow()).timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"TM{_to_base36(millis)}{suffix}"


def unit_price_for(base_price: Decimal, ticket_type: TicketType) -> Decimal:
    return to_money(Decimal(base_price) * TICKET_PRICE_MULTIPLIERS[ticket_type])


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    email: str
    phone: Optional[str] = None
    special_requests: Optional[str] = None


@dataclass(frozen=True)
class ActorRef:
    """Identity of the user acting on a booking, detached from the session."""

    id: UUID
    is_admin: bool = False

    @classmethod
    def of(cls, actor: Union[User, "ActorRef"]) -> "ActorRef":
        if isinstance(actor, ActorRef):
            return actor
        return cls(id=actor.id, is_admin=actor.is_admin)


class BookingService:
    """Service for managing bookings with concurrency control."""

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

    @retry_on_concurrency_error(base_delay=0.1, max_delay=1.0)
    async def create_booking(
        self,
        event_id: UUID,
        quantity: int,
        ticket_type: TicketType,
        customer: CustomerInfo,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Reserve tickets and create a PENDING booking.

        Raises:
            ValidationError: quantity outside 1..max_booking_quantity
            EventNotFoundError: the event does not exist
            InvalidEventStateError: the event is not active or already started
            InsufficientCapacityError: not enough tickets left
            ConcurrencyError: booking reference collision (retried)
        """
        now = now or utcnow()
        self._validate_quantity(quantity)

        event = await self._get_event(event_id)
        self._ensure_event_open(event, now)

        unit_price = unit_price_for(event.price, ticket_type)
        total_amount = unit_price * quantity

        logger.info(f"Creating booking for event {event_id}: {quantity} x {ticket_type.value}")

        try:
            reserved = await self._reserve_inventory(event.id, quantity, now)
            if not reserved:
                await self._raise_reservation_failure(event_id, quantity, now)

            booking = Booking(
                id=uuid4(),
                booking_reference=generate_booking_reference(now),
                event_id=event.id,
                user_id=user_id,
                customer_name=customer.name,
                customer_email=customer.email.strip().lower(),
                customer_phone=customer.phone,
                special_requests=customer.special_requests,
                quantity=quantity,
                ticket_type=ticket_type,
                unit_price=unit_price,
                total_amount=total_amount,
                status=BookingStatus.PENDING,
                expires_at=now + timedelta(minutes=self.settings.booking_hold_timeout_minutes),
            )
            self.session.add(booking)
            self._add_history(
                booking.id,
                BookingAction.CREATED,
                f"Reserved {quantity} {ticket_type.value} tickets",
                str(user_id) if user_id else customer.email,
            )
            await self.session.commit()

        except IntegrityError as e:
            await self.session.rollback()
            logger.warning(f"Integrity conflict while creating booking for event {event_id}: {e.orig}")
            raise ConcurrencyError("Booking could not be stored because of a conflicting write") from e
        except Exception:
            await self.session.rollback()
            raise

        logger.info(f"Booking {booking.booking_reference} created for event {event_id}")
        log_business_event(
            "booking_created",
            {
                "booking_id": str(booking.id),
                "event_id": str(event_id),
                "quantity": quantity,
                "total_amount": str(total_amount),
            },
            user_id=str(user_id) if user_id else None,
        )
        booking = await self.get_booking(booking.id)
        await self._invalidate_caches(booking, event.organizer_id)
        return booking

    async def confirm_booking(
        self,
        booking_id: UUID,
        payment_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Confirm a pending booking once payment has been taken.

        A booking whose hold has lapsed but which the expiry sweep has not
        reached yet can still be confirmed.

        Raises:
            BookingNotFoundError: the booking does not exist
            InvalidBookingStateError: the booking is not PENDING
        """
        now = now or utcnow()
        booking = await self.get_booking(booking_id)

        if booking.status != BookingStatus.PENDING:
            raise InvalidBookingStateError(str(booking_id), booking.status.value, BookingStatus.PENDING.value)

        token = compute_verification_token(
            booking.id,
            booking.verification_subject,
            secret=self.settings.verification_secret,
            length=self.settings.ticket_token_length,
        )

        try:
            applied = await self._transition(
                booking.id,
                BookingStatus.PENDING,
                status=BookingStatus.CONFIRMED,
                confirmed_at=now,
                expires_at=None,
                qr_token=token,
                payment_reference=payment_reference,
            )
            if not applied:
                current = await self._current_status(booking.id)
                raise InvalidBookingStateError(str(booking_id), current.value, BookingStatus.PENDING.value)

            details = "Booking confirmed"
            if payment_reference:
                details += f" with payment reference {payment_reference}"
            self._add_history(booking.id, BookingAction.CONFIRMED, details, SYSTEM_ACTOR)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        booking = await self.get_booking(booking.id)
        logger.info(f"Booking {booking.booking_reference} confirmed")

        await self._invalidate_caches(booking, booking.event.organizer_id)
        self.notifier.booking_confirmed(booking.id)
        return booking

    async def cancel_booking(
        self,
        booking_id: UUID,
        actor: Union[User, ActorRef],
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Cancel a booking and release its tickets.

        PENDING bookings are cancelled unconditionally with no refund.
        CONFIRMED bookings go through the cancellation cutoff and the
        configured refund policy; the refund itself is paid out by the
        refund processing job. If the booking changes state mid-cancel the
        whole evaluation is retried against the new state.

        Raises:
            BookingNotFoundError: the booking does not exist
            AuthorizationError: actor is not the owner, organizer or an admin
            AlreadyTerminalError: the booking is already cancelled or refunded
            PolicyDeniedError: the refund policy or cutoff forbids cancelling
        """
        # A rollback expires every loaded row, the actor's User included
        return await self._cancel_booking(booking_id, ActorRef.of(actor), reason, now)

    @retry_on_concurrency_error(base_delay=0.05, max_delay=0.5)
    async def _cancel_booking(
        self,
        booking_id: UUID,
        actor: ActorRef,
        reason: Optional[str],
        now: Optional[datetime],
    ) -> Booking:
        now = now or utcnow()
        booking = await self.get_booking(booking_id)
        self.authorize_actor(booking, actor)

        if booking.is_terminal:
            raise AlreadyTerminalError(str(booking_id), booking.status.value)

        read_status = booking.status
        values = {
            "status": BookingStatus.CANCELLED,
            "cancelled_at": now,
            "cancellation_reason": reason or "Cancelled by request",
            "expires_at": None,
        }

        if read_status == BookingStatus.CONFIRMED:
            hours = hours_until(booking.event.event_date, now)
            self._enforce_cancellation_cutoff(hours)

            decision = self.refund_policy.evaluate(booking.total_amount, hours)
            if decision.denied:
                raise PolicyDeniedError(
                    f"Cancellation not allowed: {decision.reason}",
                    policy=f"refund_{self.refund_policy.model}",
                )
            values.update(
                refund_amount=decision.refund_amount,
                cancellation_fee=decision.fee_amount,
                refund_requested=decision.refund_amount > 0,
            )
        else:
            values.update(refund_amount=Decimal("0.00"), cancellation_fee=Decimal("0.00"))

        try:
            applied = await self._transition(booking.id, read_status, **values)
            if not applied:
                current = await self._current_status(booking.id)
                if current in (BookingStatus.CANCELLED, BookingStatus.REFUNDED):
                    raise AlreadyTerminalError(str(booking_id), current.value)
                raise ConcurrencyError(f"Booking {booking_id} changed state while being cancelled")

            await self._release_inventory(booking.event_id, booking.quantity)
            self._add_history(
                booking.id,
                BookingAction.CANCELLED,
                f"Cancelled from {read_status.value}: {values['cancellation_reason']}",
                str(actor.id),
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        booking = await self.get_booking(booking.id)
        logger.info(
            f"Booking {booking.booking_reference} cancelled by {actor.id}; "
            f"refund {booking.refund_amount}, fee {booking.cancellation_fee}"
        )
        log_business_event(
            "booking_cancelled",
            {
                "booking_id": str(booking.id),
                "event_id": str(booking.event_id),
                "quantity": booking.quantity,
                "refund_amount": str(booking.refund_amount),
                "cancellation_fee": str(booking.cancellation_fee),
            },
            user_id=str(actor.id),
        )

        await self._invalidate_caches(booking, booking.event.organizer_id)
        self.notifier.booking_cancelled(booking.id)
        return booking

    async def expire_booking(self, booking_id: UUID, now: Optional[datetime] = None) -> bool:
        """
        Cancel an abandoned PENDING booking whose hold has lapsed.

        Returns:
            True if this call expired the booking, False if it was already
            confirmed, cancelled or not yet due (a lost race is a no-op)
        """
        now = now or utcnow()
        booking = await self.get_booking(booking_id)

        if booking.status != BookingStatus.PENDING:
            return False

        try:
            applied = await self._transition(
                booking.id,
                BookingStatus.PENDING,
                Booking.expires_at <= now,
                status=BookingStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=EXPIRY_REASON,
                expires_at=None,
                refund_amount=Decimal("0.00"),
                cancellation_fee=Decimal("0.00"),
            )
            if not applied:
                await self.session.commit()
                return False

            await self._release_inventory(booking.event_id, booking.quantity)
            self._add_history(
                booking.id,
                BookingAction.EXPIRED,
                "Payment not completed before the hold lapsed",
                SYSTEM_ACTOR,
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        booking = await self.get_booking(booking.id)
        logger.info(f"Booking {booking.booking_reference} expired, released {booking.quantity} tickets")

        await self._invalidate_caches(booking, booking.event.organizer_id)
        self.notifier.booking_cancelled(booking.id)
        return True

    async def get_booking(self, booking_id: UUID) -> Booking:
        """Load a booking with its event; raises BookingNotFoundError."""
        result = await self.session.execute(
            select(Booking)
            .options(selectinload(Booking.event))
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        return booking

    async def get_booking_by_reference(self, booking_reference: str) -> Booking:
        reference = booking_reference.strip().upper()
        result = await self.session.execute(
            select(Booking)
            .options(selectinload(Booking.event))
            .where(Booking.booking_reference == reference)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFoundError(reference)
        return booking

    async def get_user_bookings(
        self,
        user_id: UUID,
        status: Optional[BookingStatus] = None,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Booking]:
        query = (
            select(Booking)
            .options(selectinload(Booking.event))
            .where(*self._user_booking_filters(user_id, status, include_archived))
            .order_by(Booking.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_user_bookings(
        self,
        user_id: UUID,
        status: Optional[BookingStatus] = None,
        include_archived: bool = False,
    ) -> int:
        """Number of bookings ``get_user_bookings`` would page through."""
        result = await self.session.execute(
            select(func.count(Booking.id)).where(
                *self._user_booking_filters(user_id, status, include_archived)
            )
        )
        return result.scalar_one()

    @staticmethod
    def _user_booking_filters(user_id: UUID, status: Optional[BookingStatus], include_archived: bool) -> list:
        filters = [Booking.user_id == user_id]
        if status is not None:
            filters.append(Booking.status == status)
        if not include_archived:
            filters.append(Booking.archived.is_(False))
        return filters

    async def get_booking_history(self, booking_id: UUID) -> List[BookingHistory]:
        result = await self.session.execute(
            select(BookingHistory)
            .where(BookingHistory.booking_id == booking_id)
            .order_by(BookingHistory.created_at, BookingHistory.id)
        )
        return list(result.scalars().all())

    @staticmethod
    def authorize_actor(booking: Booking, actor: Union[User, ActorRef]) -> None:
        """Owner, event organizer or admin; raises AuthorizationError otherwise."""
        if actor.is_admin:
            return
        if booking.user_id is not None and booking.user_id == actor.id:
            return
        if booking.event is not None and booking.event.organizer_id == actor.id:
            return
        raise AuthorizationError(
            f"User {actor.id} may not act on booking {booking.id}",
            required_permission="booking_owner_or_organizer",
        )

    def _validate_quantity(self, quantity: int) -> None:
        maximum = self.settings.max_booking_quantity
        if quantity < 1 or quantity > maximum:
            raise ValidationError(
                f"Quantity must be between 1 and {maximum}",
                field_errors={"quantity": [f"must be between 1 and {maximum}"]},
            )

    @staticmethod
    def _ensure_event_open(event: Event, now: datetime) -> None:
        if event.status != EventStatus.ACTIVE:
            raise InvalidEventStateError(str(event.id), f"event is {event.status.value}")
        if as_utc(event.event_date) <= now:
            raise InvalidEventStateError(str(event.id), "event has already started")

    def _enforce_cancellation_cutoff(self, hours_until_event: float) -> None:
        cutoff = self.settings.cancellation_cutoff_hours
        if cutoff > 0 and hours_until_event < cutoff:
            raise PolicyDeniedError(
                f"Cannot cancel within {cutoff} hours of the event",
                policy="cancellation_cutoff",
            )

    async def _get_event(self, event_id: UUID) -> Event:
        result = await self.session.execute(
            select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
        )
        event = result.scalar_one_or_none()
        if event is None:
            raise EventNotFoundError(str(event_id))
        return event

    async def _reserve_inventory(self, event_id: UUID, quantity: int, now: datetime) -> bool:
        result = await self.session.execute(
            update(Event)
            .where(
                Event.id == event_id,
                Event.status == EventStatus.ACTIVE,
                Event.event_date > now,
                Event.tickets_sold + quantity <= Event.total_tickets,
            )
            .values(tickets_sold=Event.tickets_sold + quantity, version=Event.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _raise_reservation_failure(self, event_id: UUID, quantity: int, now: datetime) -> None:
        event = await self._get_event(event_id)
        self._ensure_event_open(event, now)
        raise InsufficientCapacityError(quantity, event.available_tickets, str(event_id))

    async def _release_inventory(self, event_id: UUID, quantity: int) -> None:
        result = await self.session.execute(
            update(Event)
            .where(Event.id == event_id, Event.tickets_sold >= quantity)
            .values(tickets_sold=Event.tickets_sold - quantity, version=Event.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error(f"Inventory release of {quantity} tickets failed for event {event_id}")
            raise InventoryInconsistencyError(str(event_id), quantity)

    async def _transition(self, booking_id: UUID, from_status: BookingStatus, *criteria, **values) -> bool:
        """Apply ``values`` only if the booking is still in ``from_status``."""
        result = await self.session.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == from_status, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _current_status(self, booking_id: UUID) -> BookingStatus:
        result = await self.session.execute(select(Booking.status).where(Booking.id == booking_id))
        return result.scalar_one()

    def _add_history(self, booking_id: UUID, action: BookingAction, details: str, performed_by: Optional[str]) -> None:
        self.session.add(
            BookingHistory(
                booking_id=booking_id,
                action=action,
                details=details,
                performed_by=performed_by,
            )
        )

    async def _invalidate_caches(self, booking: Booking, organizer_id: Optional[UUID]) -> None:
        try:
            await CacheInvalidator.invalidate_booking_caches(
                user_id=booking.user_id,
                organizer_id=organizer_id,
                event_id=booking.event_id,
            )
        except Exception as e:
            logger.warning(f"Cache invalidation failed for booking {booking.id}: {e}")
