"""
Tests for ticket tokens and door verification.
"""

import json
from uuid import uuid4

import pytest
from sqlalchemy import update

from boxoffice.models import Event, EventStatus
from boxoffice.services.ticket_verification_service import (
    TicketVerificationService,
    VerificationOutcome,
    build_qr_payload,
    compute_verification_token,
    tokens_match,
)
from boxoffice.utils.exceptions import BookingNotFoundError


@pytest.fixture
def verifier(session) -> TicketVerificationService:
    return TicketVerificationService(session)


@pytest.fixture
async def confirmed_booking(booking_service, make_event, make_user, book):
    event = await make_event()
    user = await make_user()
    booking = await book(event, user=user)
    return await booking_service.confirm_booking(booking.id)


class TestToken:
    def test_token_is_deterministic(self):
        booking_id = uuid4()

        first = compute_verification_token(booking_id, "subject", secret="s3cret", length=16)
        second = compute_verification_token(booking_id, "subject", secret="s3cret", length=16)

        assert first == second
        assert len(first) == 16

    def test_token_depends_on_secret_and_subject(self):
        booking_id = uuid4()
        base = compute_verification_token(booking_id, "alice", secret="one")

        assert compute_verification_token(booking_id, "bob", secret="one") != base
        assert compute_verification_token(booking_id, "alice", secret="two") != base
        assert compute_verification_token(uuid4(), "alice", secret="one") != base

    def test_tokens_match(self):
        assert tokens_match("abc123", "abc123")
        assert not tokens_match("abc123", "abc124")


class TestVerifyQrPayload:
    async def test_genuine_ticket_is_valid(self, verifier, confirmed_booking):
        result = await verifier.verify_qr_payload(build_qr_payload(confirmed_booking))

        assert result.outcome is VerificationOutcome.VALID
        assert result.is_valid
        assert result.ticket["booking_reference"] == confirmed_booking.booking_reference
        assert result.ticket["quantity"] == 2

    async def test_decoded_payload_is_accepted(self, verifier, confirmed_booking):
        payload = json.loads(build_qr_payload(confirmed_booking))

        result = await verifier.verify_qr_payload(payload)

        assert result.is_valid

    async def test_guest_ticket_is_bound_to_email(self, booking_service, verifier, make_event, book):
        event = await make_event()
        booking = await booking_service.confirm_booking((await book(event)).id)
        payload = json.loads(build_qr_payload(booking))

        assert payload["userId"] is None
        assert payload["customerEmail"] == "ada@example.com"
        assert (await verifier.verify_qr_payload(payload)).is_valid

        payload["customerEmail"] = "mallory@example.com"
        assert (await verifier.verify_qr_payload(payload)).outcome is VerificationOutcome.INVALID_TOKEN

    @pytest.mark.parametrize("field", ["bookingId", "userId"])
    async def test_tampered_claims_are_rejected(self, verifier, confirmed_booking, field):
        payload = json.loads(build_qr_payload(confirmed_booking))
        payload[field] = str(uuid4())

        result = await verifier.verify_qr_payload(payload)

        assert result.outcome is VerificationOutcome.INVALID_TOKEN

    async def test_tampered_hash_is_rejected(self, verifier, confirmed_booking):
        payload = json.loads(build_qr_payload(confirmed_booking))
        payload["verificationHash"] = "0" * len(payload["verificationHash"])

        result = await verifier.verify_qr_payload(payload)

        assert result.outcome is VerificationOutcome.INVALID_TOKEN

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", "{}", {"bookingId": "x"}])
    async def test_malformed_payload(self, verifier, payload):
        result = await verifier.verify_qr_payload(payload)

        assert result.outcome is VerificationOutcome.INVALID_TOKEN

    async def test_cancelled_booking_is_invalid_state(self, booking_service, verifier, confirmed_booking, make_user):
        payload = build_qr_payload(confirmed_booking)
        admin = await make_user(is_admin=True)
        await booking_service.cancel_booking(confirmed_booking.id, actor=admin)

        result = await verifier.verify_qr_payload(payload)

        assert result.outcome is VerificationOutcome.INVALID_STATE
        assert result.reason == "Booking is cancelled"

    async def test_cancelled_event_is_invalid_state(self, session, verifier, confirmed_booking):
        await session.execute(
            update(Event).where(Event.id == confirmed_booking.event_id).values(status=EventStatus.CANCELLED)
        )
        await session.commit()

        result = await verifier.verify_qr_payload(build_qr_payload(confirmed_booking))

        assert result.outcome is VerificationOutcome.INVALID_STATE


class TestStateLookups:
    async def test_pending_booking_by_reference(self, verifier, make_event, book):
        booking = await book(await make_event())

        result = await verifier.verify_by_reference(booking.booking_reference.lower())

        assert result.outcome is VerificationOutcome.INVALID_STATE
        assert result.reason == "Booking is pending"

    async def test_confirmed_booking_by_id(self, verifier, confirmed_booking):
        assert (await verifier.verify_booking(confirmed_booking.id)).is_valid

    async def test_unknown_reference(self, verifier):
        with pytest.raises(BookingNotFoundError):
            await verifier.verify_by_reference("TMNOPE0000")
