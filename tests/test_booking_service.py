"""
Tests for the booking lifecycle: create, confirm, cancel and expire.
"""

import re
from datetime import timedelta
from decimal import Decimal
from unittest.mock import Mock
from uuid import uuid4

import pytest

from boxoffice.models import BookingStatus, EventStatus, TicketType
from boxoffice.models.booking_history import BookingAction
from boxoffice.services.booking_service import (
    EXPIRY_REASON,
    ActorRef,
    BookingService,
    generate_booking_reference,
    unit_price_for,
)
from boxoffice.services.notification_service import NotificationDispatcher
from boxoffice.services.ticket_verification_service import compute_verification_token
from boxoffice.utils.clock import as_utc, utcnow
from boxoffice.utils.exceptions import (
    AlreadyTerminalError,
    AuthorizationError,
    BookingNotFoundError,
    EventNotFoundError,
    InsufficientCapacityError,
    InvalidBookingStateError,
    InvalidEventStateError,
    PolicyDeniedError,
    ValidationError,
)
from tests.helpers import reload_event


class TestPricing:
    @pytest.mark.parametrize(
        "ticket_type, expected",
        [
            (TicketType.GENERAL, Decimal("40.00")),
            (TicketType.VIP, Decimal("80.00")),
            (TicketType.PREMIUM, Decimal("60.00")),
            (TicketType.EARLY_BIRD, Decimal("32.00")),
        ],
    )
    def test_multipliers(self, ticket_type, expected):
        assert unit_price_for(Decimal("40.00"), ticket_type) == expected

    def test_unit_price_rounds_half_up(self):
        assert unit_price_for(Decimal("33.33"), TicketType.EARLY_BIRD) == Decimal("26.66")
        assert unit_price_for(Decimal("10.05"), TicketType.PREMIUM) == Decimal("15.08")

    def test_reference_format(self):
        reference = generate_booking_reference()

        assert re.fullmatch(r"TM[0-9A-Z]{8,}", reference)
        assert generate_booking_reference() != reference


class TestCreateBooking:
    async def test_reserves_tickets_and_creates_pending_booking(self, session, make_event, make_user, book):
        event = await make_event(total_tickets=10, price=Decimal("100.00"))
        user = await make_user()
        now = utcnow()

        booking = await book(event, quantity=2, user=user, now=now)

        assert booking.status == BookingStatus.PENDING
        assert booking.unit_price == Decimal("100.00")
        assert booking.total_amount == Decimal("200.00")
        assert booking.customer_email == "ada@example.com"
        assert booking.user_id == user.id
        assert booking.booking_reference.startswith("TM")
        assert as_utc(booking.expires_at) == now + timedelta(minutes=10)

        event = await reload_event(session, event.id)
        assert event.tickets_sold == 2
        assert event.version == 2

    async def test_vip_total(self, make_event, book):
        event = await make_event(price=Decimal("25.50"))

        booking = await book(event, quantity=3, ticket_type=TicketType.VIP)

        assert booking.unit_price == Decimal("51.00")
        assert booking.total_amount == Decimal("153.00")

    async def test_records_created_history(self, booking_service, make_event, book):
        event = await make_event()
        booking = await book(event)

        history = await booking_service.get_booking_history(booking.id)

        assert [entry.action for entry in history] == [BookingAction.CREATED]

    @pytest.mark.parametrize("quantity", [0, -1, 11])
    async def test_rejects_quantity_out_of_range(self, session, make_event, book, quantity):
        event = await make_event()

        with pytest.raises(ValidationError):
            await book(event, quantity=quantity)

        assert (await reload_event(session, event.id)).tickets_sold == 0

    async def test_unknown_event(self, booking_service, customer):
        with pytest.raises(EventNotFoundError):
            await booking_service.create_booking(uuid4(), 1, TicketType.GENERAL, customer)

    @pytest.mark.parametrize("status", [EventStatus.DRAFT, EventStatus.CANCELLED, EventStatus.COMPLETED])
    async def test_event_not_active(self, make_event, book, status):
        event = await make_event(status=status)

        with pytest.raises(InvalidEventStateError):
            await book(event)

    async def test_event_already_started(self, make_event, book):
        event = await make_event(hours_ahead=-1)

        with pytest.raises(InvalidEventStateError):
            await book(event)

    async def test_insufficient_capacity_reports_remaining(self, session, make_event, book):
        event = await make_event(total_tickets=5, tickets_sold=2)
        event_id = event.id

        with pytest.raises(InsufficientCapacityError) as exc_info:
            await book(event, quantity=4)

        assert "3" in exc_info.value.message
        assert exc_info.value.details["available"] == 3
        assert (await reload_event(session, event_id)).tickets_sold == 2

    async def test_sold_out_event(self, make_event, book):
        event = await make_event(total_tickets=2, tickets_sold=2)

        with pytest.raises(InsufficientCapacityError):
            await book(event, quantity=1)

    async def test_can_book_last_tickets(self, session, make_event, book):
        event = await make_event(total_tickets=4, tickets_sold=1)

        await book(event, quantity=3)

        event = await reload_event(session, event.id)
        assert event.tickets_sold == 4
        assert event.available_tickets == 0


class TestConfirmBooking:
    async def test_confirms_and_issues_token(self, booking_service, notifier, make_event, book, settings):
        event = await make_event()
        booking = await book(event)

        confirmed = await booking_service.confirm_booking(booking.id, payment_reference="pay_123")

        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.expires_at is None
        assert confirmed.confirmed_at is not None
        assert confirmed.payment_reference == "pay_123"
        assert confirmed.qr_token == compute_verification_token(confirmed.id, "ada@example.com")
        assert len(confirmed.qr_token) == settings.ticket_token_length
        notifier.booking_confirmed.assert_called_once_with(confirmed.id)

    async def test_token_is_bound_to_user(self, booking_service, make_event, make_user, book):
        event = await make_event()
        user = await make_user()
        booking = await book(event, user=user)

        confirmed = await booking_service.confirm_booking(booking.id)

        assert confirmed.qr_token == compute_verification_token(confirmed.id, str(user.id))

    async def test_confirm_twice_fails(self, booking_service, make_event, book):
        event = await make_event()
        booking = await book(event)
        await booking_service.confirm_booking(booking.id)

        with pytest.raises(InvalidBookingStateError):
            await booking_service.confirm_booking(booking.id)

    async def test_confirm_unknown_booking(self, booking_service):
        with pytest.raises(BookingNotFoundError):
            await booking_service.confirm_booking(uuid4())

    async def test_lapsed_hold_can_still_be_confirmed_before_sweep(self, booking_service, make_event, book):
        event = await make_event()
        booking = await book(event, now=utcnow() - timedelta(minutes=30))

        confirmed = await booking_service.confirm_booking(booking.id)

        assert confirmed.status == BookingStatus.CONFIRMED

    async def test_cancelled_booking_cannot_be_confirmed(self, booking_service, make_event, make_user, book):
        event = await make_event()
        user = await make_user()
        booking = await book(event, user=user)
        await booking_service.cancel_booking(booking.id, actor=user)

        with pytest.raises(InvalidBookingStateError):
            await booking_service.confirm_booking(booking.id)


class TestCancelBooking:
    async def test_cancel_pending_releases_tickets_without_refund(
        self, session, booking_service, notifier, make_event, make_user, book
    ):
        event = await make_event(total_tickets=10)
        user = await make_user()
        booking = await book(event, quantity=3, user=user)

        cancelled = await booking_service.cancel_booking(booking.id, actor=user, reason="Changed plans")

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancellation_reason == "Changed plans"
        assert cancelled.refund_amount == Decimal("0.00")
        assert cancelled.refund_requested is False
        assert (await reload_event(session, event.id)).tickets_sold == 0
        notifier.booking_cancelled.assert_called_once_with(booking.id)

    async def test_cancel_confirmed_well_ahead_gets_full_refund(self, session, booking_service, make_event, make_user, book):
        event = await make_event(price=Decimal("50.00"), hours_ahead=72)
        user = await make_user()
        booking = await book(event, quantity=2, user=user)
        await booking_service.confirm_booking(booking.id)

        cancelled = await booking_service.cancel_booking(booking.id, actor=user)

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.refund_amount == Decimal("100.00")
        assert cancelled.cancellation_fee == Decimal("0.00")
        assert cancelled.refund_requested is True
        assert (await reload_event(session, event.id)).tickets_sold == 0

    async def test_cancel_confirmed_close_to_event_gets_partial_refund(self, booking_service, make_event, make_user, book):
        event = await make_event(price=Decimal("100.00"), hours_ahead=10)
        user = await make_user()
        booking = await book(event, quantity=1, user=user)
        await booking_service.confirm_booking(booking.id)

        cancelled = await booking_service.cancel_booking(booking.id, actor=user)

        assert cancelled.refund_amount == Decimal("50.00")
        assert cancelled.cancellation_fee == Decimal("50.00")

    async def test_cancel_after_event_started_is_denied(self, session, booking_service, make_event, make_user, book):
        event = await make_event(hours_ahead=2)
        user = await make_user()
        booking = await book(event, user=user)
        await booking_service.confirm_booking(booking.id)

        with pytest.raises(PolicyDeniedError):
            await booking_service.cancel_booking(booking.id, actor=user, now=utcnow() + timedelta(hours=3))

        booking = await booking_service.get_booking(booking.id)
        assert booking.status == BookingStatus.CONFIRMED
        assert (await reload_event(session, event.id)).tickets_sold == 2

    async def test_cancellation_cutoff(self, booking_service, make_event, make_user, book, settings, monkeypatch):
        monkeypatch.setattr(settings, "cancellation_cutoff_hours", 24)
        event = await make_event(hours_ahead=10)
        user = await make_user()
        booking = await book(event, user=user)
        await booking_service.confirm_booking(booking.id)

        with pytest.raises(PolicyDeniedError) as exc_info:
            await booking_service.cancel_booking(booking.id, actor=user)

        assert exc_info.value.message == "Cannot cancel within 24 hours of the event"

    async def test_cutoff_does_not_apply_to_pending(self, booking_service, make_event, make_user, book, settings, monkeypatch):
        monkeypatch.setattr(settings, "cancellation_cutoff_hours", 24)
        event = await make_event(hours_ahead=10)
        user = await make_user()
        booking = await book(event, user=user)

        cancelled = await booking_service.cancel_booking(booking.id, actor=user)

        assert cancelled.status == BookingStatus.CANCELLED

    async def test_flat_fee_policy(self, session, notifier, make_event, make_user, settings, monkeypatch, customer):
        monkeypatch.setattr(settings, "refund_policy", "flat_fee")
        service = BookingService(session, notifier=notifier)
        event = await make_event(price=Decimal("100.00"), hours_ahead=72)
        user = await make_user()
        booking = await service.create_booking(event.id, 2, TicketType.GENERAL, customer, user_id=user.id)
        await service.confirm_booking(booking.id)

        cancelled = await service.cancel_booking(booking.id, actor=user)

        assert cancelled.cancellation_fee == Decimal("20.00")
        assert cancelled.refund_amount == Decimal("180.00")

    async def test_stranger_cannot_cancel(self, booking_service, make_event, make_user, book):
        event = await make_event()
        owner = await make_user()
        stranger = await make_user()
        booking = await book(event, user=owner)

        with pytest.raises(AuthorizationError):
            await booking_service.cancel_booking(booking.id, actor=stranger)

    async def test_organizer_and_admin_can_cancel(self, booking_service, make_event, make_user, book):
        organizer = await make_user()
        admin = await make_user(is_admin=True)
        owner = await make_user()
        event = await make_event(organizer=organizer)
        first = await book(event, user=owner)
        second = await book(event, user=owner)

        assert (await booking_service.cancel_booking(first.id, actor=organizer)).status == BookingStatus.CANCELLED
        assert (await booking_service.cancel_booking(second.id, actor=admin)).status == BookingStatus.CANCELLED

    async def test_cancel_twice_fails(self, session, booking_service, make_event, make_user, book):
        event = await make_event()
        user = await make_user()
        booking = await book(event, quantity=2, user=user)
        await booking_service.cancel_booking(booking.id, actor=user)

        with pytest.raises(AlreadyTerminalError):
            await booking_service.cancel_booking(booking.id, actor=user)

        assert (await reload_event(session, event.id)).tickets_sold == 0

    async def test_confirm_landing_mid_cancel_is_reevaluated_with_refund(
        self, session, session_factory, booking_service, make_event, make_user, book, monkeypatch
    ):
        event = await make_event(price=Decimal("50.00"), hours_ahead=72)
        owner = await make_user()
        booking = await book(event, quantity=2, user=owner)
        event_id, owner_id, booking_id = event.id, owner.id, booking.id
        transition = booking_service._transition
        confirmed_elsewhere = []

        async def confirm_then_transition(target_id, from_status, *criteria, **values):
            if not confirmed_elsewhere:
                async with session_factory() as other:
                    await BookingService(other, notifier=Mock(spec=NotificationDispatcher)).confirm_booking(target_id)
                confirmed_elsewhere.append(target_id)
            return await transition(target_id, from_status, *criteria, **values)

        monkeypatch.setattr(booking_service, "_transition", confirm_then_transition)

        cancelled = await booking_service.cancel_booking(booking_id, actor=owner)

        assert confirmed_elsewhere == [booking_id]
        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.refund_amount == Decimal("100.00")
        assert cancelled.refund_requested is True
        assert cancelled.confirmed_at is not None
        history = await booking_service.get_booking_history(booking_id)
        cancel_entry = next(entry for entry in history if entry.action == BookingAction.CANCELLED)
        assert cancel_entry.performed_by == str(owner_id)
        assert "confirmed" in cancel_entry.details
        assert (await reload_event(session, event_id)).tickets_sold == 0

    async def test_cancel_accepts_detached_actor(self, booking_service, make_event, make_user, book):
        event = await make_event()
        owner = await make_user()
        booking = await book(event, user=owner)

        cancelled = await booking_service.cancel_booking(booking.id, actor=ActorRef(id=owner.id))

        assert cancelled.status == BookingStatus.CANCELLED

    async def test_history_records_each_transition(self, booking_service, make_event, make_user, book):
        event = await make_event()
        user = await make_user()
        booking = await book(event, user=user)
        await booking_service.confirm_booking(booking.id)
        await booking_service.cancel_booking(booking.id, actor=user)

        history = await booking_service.get_booking_history(booking.id)

        assert {entry.action for entry in history} == {
            BookingAction.CREATED,
            BookingAction.CONFIRMED,
            BookingAction.CANCELLED,
        }


class TestExpireBooking:
    async def test_not_due_is_noop(self, session, booking_service, make_event, book):
        event = await make_event()
        booking = await book(event)
        event_id = event.id

        assert await booking_service.expire_booking(booking.id) is False
        assert (await reload_event(session, event_id)).tickets_sold == 2

    async def test_expires_lapsed_hold_once(self, session, booking_service, notifier, make_event, book):
        event = await make_event(total_tickets=10)
        now = utcnow()
        booking = await book(event, quantity=2, now=now)
        later = now + timedelta(minutes=11)

        assert await booking_service.expire_booking(booking.id, now=later) is True
        assert await booking_service.expire_booking(booking.id, now=later) is False

        expired = await booking_service.get_booking(booking.id)
        assert expired.status == BookingStatus.CANCELLED
        assert expired.cancellation_reason == EXPIRY_REASON
        assert (await reload_event(session, event.id)).tickets_sold == 0
        notifier.booking_cancelled.assert_called_once_with(booking.id)

    async def test_confirmed_booking_is_not_expired(self, booking_service, make_event, book):
        event = await make_event()
        now = utcnow()
        booking = await book(event, now=now)
        await booking_service.confirm_booking(booking.id)

        assert await booking_service.expire_booking(booking.id, now=now + timedelta(hours=1)) is False


class TestReads:
    async def test_get_booking_by_reference_is_case_insensitive(self, booking_service, make_event, book):
        event = await make_event()
        booking = await book(event)

        found = await booking_service.get_booking_by_reference(f"  {booking.booking_reference.lower()} ")

        assert found.id == booking.id

    async def test_get_user_bookings_filters_by_status(self, booking_service, make_event, make_user, book):
        event = await make_event()
        user = await make_user()
        kept = await book(event, user=user)
        dropped = await book(event, user=user)
        await booking_service.cancel_booking(dropped.id, actor=user)

        pending = await booking_service.get_user_bookings(user.id, status=BookingStatus.PENDING)

        assert [b.id for b in pending] == [kept.id]
        assert len(await booking_service.get_user_bookings(user.id)) == 2

    async def test_count_user_bookings_ignores_paging(self, booking_service, make_event, make_user, book):
        event = await make_event()
        user = await make_user()
        for _ in range(3):
            await book(event, quantity=1, user=user)

        page = await booking_service.get_user_bookings(user.id, limit=2)

        assert len(page) == 2
        assert await booking_service.count_user_bookings(user.id) == 3
        assert await booking_service.count_user_bookings(user.id, status=BookingStatus.CONFIRMED) == 0
