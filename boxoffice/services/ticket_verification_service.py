"""
Ticket verification tokens and check-in verification.

A confirmed booking carries a token derived from its id and the identity of
its holder (user id, or the customer e-mail for guest bookings), keyed with a
server secret::

    token = HMAC-SHA256(secret, f"{booking_id}:{subject}")[:length]

The token is embedded in the QR payload handed to the ticket holder. At the
door the payload is decoded, the token recomputed from the claimed fields
and compared in constant time, and only then is the booking state checked.
"""

import enum
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..config import get_settings
from ..models.booking import Booking, BookingStatus
from ..models.event import EventStatus
from ..utils.clock import utcnow
from ..utils.exceptions import BookingNotFoundError

logger = logging.getLogger(__name__)


class VerificationOutcome(str, enum.Enum):
    VALID = "valid"
    INVALID_TOKEN = "invalid-token"
    INVALID_STATE = "invalid-state"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    reason: str
    ticket: Optional[Dict[str, Any]] = None
    verified_at: datetime = field(default_factory=utcnow)

    @property
    def is_valid(self) -> bool:
        return self.outcome is VerificationOutcome.VALID


def compute_verification_token(
    booking_id: Union[UUID, str],
    subject: str,
    secret: Optional[str] = None,
    length: Optional[int] = None,
) -> str:
    settings = get_settings()
    secret = secret or settings.verification_secret
    length = length or settings.ticket_token_length

    message = f"{booking_id}:{subject}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return digest[:length]


def tokens_match(expected: str, claimed: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), claimed.encode("utf-8"))


def build_qr_payload(booking: Booking) -> str:
    """JSON document encoded into the ticket's QR code."""
    payload = {
        "bookingId": str(booking.id),
        "bookingReference": booking.booking_reference,
        "eventId": str(booking.event_id),
        "userId": str(booking.user_id) if booking.user_id else None,
        "customerEmail": None if booking.user_id else booking.customer_email,
        "ticketType": booking.ticket_type.value,
        "quantity": booking.quantity,
        "verificationHash": booking.qr_token,
    }
    return json.dumps(payload, separators=(",", ":"))


def ticket_summary(booking: Booking) -> Dict[str, Any]:
    summary = {
        "booking_id": str(booking.id),
        "booking_reference": booking.booking_reference,
        "status": booking.status.value,
        "ticket_type": booking.ticket_type.value,
        "quantity": booking.quantity,
        "customer_name": booking.customer_name,
        "event_id": str(booking.event_id),
    }
    if booking.event is not None:
        summary.update(
            event_title=booking.event.title,
            venue=booking.event.venue,
            event_date=booking.event.event_date.isoformat(),
        )
    return summary


class TicketVerificationService:
    """Checks tickets presented at the door."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settings = get_settings()

    async def verify_qr_payload(self, qr_payload: Union[str, Dict[str, Any]]) -> VerificationResult:
        """
        Verify a scanned QR payload.

        A payload that cannot be parsed, whose hash does not match the claimed
        booking and holder, or that names an unknown booking is reported as
        ``invalid-token``. A genuine ticket that can no longer be used is
        reported as ``invalid-state``.
        """
        claims = self._parse_payload(qr_payload)
        if claims is None:
            return VerificationResult(VerificationOutcome.INVALID_TOKEN, "Malformed ticket payload")

        booking_id, subject, claimed_hash = claims
        expected = compute_verification_token(
            booking_id,
            subject,
            secret=self.settings.verification_secret,
            length=self.settings.ticket_token_length,
        )
        if not tokens_match(expected, claimed_hash):
            logger.warning(f"Ticket verification failed: hash mismatch for booking {booking_id}")
            return VerificationResult(VerificationOutcome.INVALID_TOKEN, "Verification hash does not match")

        try:
            booking_uuid = UUID(booking_id)
        except ValueError:
            return VerificationResult(VerificationOutcome.INVALID_TOKEN, "Malformed booking id")

        booking = await self._load_booking(Booking.id == booking_uuid)
        if booking is None or booking.verification_subject != subject:
            return VerificationResult(VerificationOutcome.INVALID_TOKEN, "Ticket was not issued by this system")

        return self._check_state(booking)

    async def verify_booking(self, booking_id: UUID) -> VerificationResult:
        """State-only check for a booking looked up by id."""
        booking = await self._load_booking(Booking.id == booking_id)
        if booking is None:
            raise BookingNotFoundError(str(booking_id))
        return self._check_state(booking)

    async def verify_by_reference(self, booking_reference: str) -> VerificationResult:
        """State-only check for a booking looked up by its printed reference."""
        reference = booking_reference.strip().upper()
        booking = await self._load_booking(Booking.booking_reference == reference)
        if booking is None:
            raise BookingNotFoundError(reference)
        return self._check_state(booking)

    def _check_state(self, booking: Booking) -> VerificationResult:
        summary = ticket_summary(booking)

        if booking.status != BookingStatus.CONFIRMED:
            return VerificationResult(
                VerificationOutcome.INVALID_STATE,
                f"Booking is {booking.status.value}",
                ticket=summary,
            )
        if booking.event.status == EventStatus.CANCELLED:
            return VerificationResult(
                VerificationOutcome.INVALID_STATE,
                "Event has been cancelled",
                ticket=summary,
            )

        logger.info(f"Ticket {booking.booking_reference} verified")
        return VerificationResult(VerificationOutcome.VALID, "Ticket is valid", ticket=summary)

    async def _load_booking(self, criterion) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking)
            .options(selectinload(Booking.event))
            .where(criterion)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _parse_payload(qr_payload):
        if isinstance(qr_payload, str):
            try:
                qr_payload = json.loads(qr_payload)
            except ValueError:
                return None
        if not isinstance(qr_payload, dict):
            return None

        booking_id = qr_payload.get("bookingId")
        claimed_hash = qr_payload.get("verificationHash")
        subject = qr_payload.get("userId") or qr_payload.get("customerEmail")
        if not all(isinstance(value, str) and value for value in (booking_id, claimed_hash, subject)):
            return None

        if qr_payload.get("userId") is None:
            subject = subject.strip().lower()
        return booking_id, subject, claimed_hash
