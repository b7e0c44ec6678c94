"""
FastAPI routes for the booking lifecycle.

Domain errors raised by the service propagate to ``ErrorHandlerMiddleware``,
which turns them into the standard error envelope.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..database import get_db
from ..models.booking import Booking, BookingStatus
from ..models.user import User
from ..schemas.booking import (
    BookingCancelRequest,
    BookingConfirmRequest,
    BookingCreateRequest,
    BookingHistoryListResponse,
    BookingHistoryResponse,
    BookingListResponse,
    BookingResponse,
    CreateBookingResponse,
)
from ..services.booking_service import BookingService, CustomerInfo
from ..services.notification_service import NotificationDispatcher, get_notification_dispatcher
from ..services.ticket_verification_service import build_qr_payload
from ..utils.dependencies import get_current_user, get_optional_user
from ..utils.exceptions import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bookings", tags=["bookings"])


def _create_booking_response(booking: Booking) -> BookingResponse:
    """Create a BookingResponse from a booking model."""
    response = BookingResponse.model_validate(booking)
    if booking.event is not None:
        response.event_title = booking.event.title
        response.event_date = booking.event.event_date
        response.venue = booking.event.venue
    if booking.status == BookingStatus.CONFIRMED and booking.qr_token:
        response.qr_payload = build_qr_payload(booking)
    return response


def _customer_info(request: BookingCreateRequest, current_user: Optional[User]) -> CustomerInfo:
    name = request.customer_name
    email = request.customer_email
    if current_user is not None:
        name = name or current_user.full_name.strip()
        email = email or current_user.email

    missing = {}
    if not name:
        missing["customer_name"] = ["required for guest bookings"]
    if not email:
        missing["customer_email"] = ["required for guest bookings"]
    if missing:
        raise ValidationError("Customer details are required", field_errors=missing)

    return CustomerInfo(
        name=name,
        email=str(email),
        phone=request.customer_phone,
        special_requests=request.special_requests,
    )


def _authorize_read(booking: Booking, current_user: Optional[User]) -> None:
    """Guest bookings are reachable by id; account bookings need the owner, organizer or an admin."""
    if booking.user_id is None:
        return
    if current_user is None:
        logger.warning(f"Anonymous access to account booking {booking.id} rejected")
        raise AuthenticationError("Sign in to access this booking")
    BookingService.authorize_actor(booking, current_user)


def _booking_service(db: AsyncSession, notifier: NotificationDispatcher) -> BookingService:
    return BookingService(db, notifier=notifier)


@router.post("", response_model=CreateBookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreateRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Reserve tickets and create a pending booking.

    Guests must supply their name and e-mail; signed-in users default to the
    details on their account. The booking holds the tickets until it is
    confirmed or the hold lapses.
    """
    customer = _customer_info(request, current_user)
    booking = await _booking_service(db, notifier).create_booking(
        event_id=request.event_id,
        quantity=request.quantity,
        ticket_type=request.ticket_type,
        customer=customer,
        user_id=current_user.id if current_user else None,
    )

    hold_minutes = get_settings().booking_hold_timeout_minutes
    return CreateBookingResponse(
        booking=_create_booking_response(booking),
        message="Booking created successfully. Please complete payment within the time limit.",
        expires_in_minutes=hold_minutes,
    )


@router.get("", response_model=BookingListResponse)
async def get_user_bookings(
    status: Optional[BookingStatus] = None,
    include_archived: bool = False,
    limit: int = 50,
    offset: int = 0,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Bookings made by the current user, newest first.

    Archived bookings are left out unless ``include_archived`` is set.
    """
    limit = max(1, min(limit, 100))
    offset = max(offset, 0)
    service = BookingService(db)
    bookings = await service.get_user_bookings(
        current_user.id,
        status=status,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    total = await service.count_user_bookings(current_user.id, status=status, include_archived=include_archived)
    return BookingListResponse(
        bookings=[_create_booking_response(booking) for booking in bookings],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Booking details, including the QR payload once confirmed."""
    booking = await BookingService(db).get_booking(booking_id)
    _authorize_read(booking, current_user)
    return _create_booking_response(booking)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: UUID,
    request: BookingConfirmRequest,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Confirm a pending booking after payment processing.

    Should be called once the payment has been taken; it issues the ticket
    verification token and queues the confirmation e-mail.
    """
    service = _booking_service(db, notifier)
    existing = await service.get_booking(booking_id)
    _authorize_read(existing, current_user)

    booking = await service.confirm_booking(booking_id, payment_reference=request.payment_reference)
    return _create_booking_response(booking)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    request: BookingCancelRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """
    Cancel a booking and release its tickets back to inventory.

    Confirmed bookings are subject to the refund policy; the refund amount is
    returned on the booking and paid out by the refund job.
    """
    booking = await _booking_service(db, notifier).cancel_booking(
        booking_id,
        actor=current_user,
        reason=request.reason,
    )
    return _create_booking_response(booking)


@router.get("/{booking_id}/history", response_model=BookingHistoryListResponse)
async def get_booking_history(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    service = BookingService(db)
    booking = await service.get_booking(booking_id)
    BookingService.authorize_actor(booking, current_user)

    history = await service.get_booking_history(booking_id)
    return BookingHistoryListResponse(
        booking_id=booking_id,
        history=[BookingHistoryResponse.model_validate(entry) for entry in history],
    )
