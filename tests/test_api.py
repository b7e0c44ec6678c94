"""
HTTP contract tests.

The app runs in-process over ``httpx.ASGITransport`` (lifespan is not
started) with the database and notification dependencies overridden.
"""

from collections.abc import AsyncGenerator
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from boxoffice.database import get_db
from boxoffice.main import app
from boxoffice.models import BookingStatus
from boxoffice.services.notification_service import get_notification_dispatcher
from boxoffice.utils.auth import create_access_token


@pytest.fixture
async def client(session_factory, notifier) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_dispatcher] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    token = create_access_token({"sub": str(user.id), "email": user.email})
    return {"Authorization": f"Bearer {token}"}


async def _create(client, event, user=None, **overrides) -> dict:
    payload = {"event_id": str(event.id), "quantity": 2, "ticket_type": "general", **overrides}
    headers = auth_headers(user) if user else {}
    response = await client.post("/api/v1/bookings", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["booking"]


class TestHealth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers


class TestBookingEndpoints:
    async def test_signed_in_user_books_with_account_details(self, client, make_event, make_user):
        event = await make_event(price=Decimal("30.00"))
        user = await make_user()

        booking = await _create(client, event, user, ticket_type="vip")

        assert booking["status"] == BookingStatus.PENDING.value
        assert booking["user_id"] == str(user.id)
        assert booking["customer_email"] == user.email
        assert Decimal(booking["total_amount"]) == Decimal("120.00")
        assert booking["qr_payload"] is None

    async def test_list_returns_only_own_bookings(self, client, make_event, make_user):
        event = await make_event()
        user = await make_user(email="lister@example.com")
        other = await make_user(email="other@example.com")
        mine = await _create(client, event, user, quantity=1)
        await _create(client, event, other, quantity=1)

        response = await client.get("/api/v1/bookings", headers=auth_headers(user))
        assert response.status_code == 200
        body = response.json()
        assert [b["id"] for b in body["bookings"]] == [mine["id"]]
        assert body["total"] == 1

        response = await client.get(
            "/api/v1/bookings", params={"status": "confirmed"}, headers=auth_headers(user)
        )
        assert response.json()["bookings"] == []

    async def test_list_total_counts_beyond_the_page(self, client, make_event, make_user):
        event = await make_event()
        user = await make_user()
        for _ in range(3):
            await _create(client, event, user, quantity=1)

        response = await client.get("/api/v1/bookings", params={"limit": 2}, headers=auth_headers(user))

        body = response.json()
        assert len(body["bookings"]) == 2
        assert body["total"] == 3
        assert body["limit"] == 2

    async def test_list_requires_authentication(self, client):
        response = await client.get("/api/v1/bookings")

        assert response.status_code in (401, 403)

    async def test_guest_must_give_contact_details(self, client, make_event):
        event = await make_event()

        response = await client.post("/api/v1/bookings", json={"event_id": str(event.id), "quantity": 1})

        assert response.status_code == 422
        assert response.json()["error"]["error_code"] == "VALIDATION_ERROR"

    async def test_guest_booking_flow(self, client, notifier, make_event):
        event = await make_event()
        booking = await _create(client, event, customer_name="Grace Hopper", customer_email="grace@example.com")

        response = await client.post(f"/api/v1/bookings/{booking['id']}/confirm", json={"payment_reference": "pay_1"})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "confirmed"
        assert body["qr_payload"] is not None
        notifier.booking_confirmed.assert_called_once()

        fetched = await client.get(f"/api/v1/bookings/{booking['id']}")
        assert fetched.json()["qr_payload"] == body["qr_payload"]

    async def test_insufficient_capacity_is_conflict(self, client, make_event, make_user):
        event = await make_event(total_tickets=1)
        user = await make_user()

        response = await client.post(
            "/api/v1/bookings",
            json={"event_id": str(event.id), "quantity": 2},
            headers=auth_headers(user),
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["error_code"] == "INSUFFICIENT_CAPACITY"
        assert error["message"] == "Only 1 ticket left: requested 2"

    async def test_unknown_booking_is_not_found(self, client, make_user):
        user = await make_user()

        response = await client.get(f"/api/v1/bookings/{uuid4()}", headers=auth_headers(user))

        assert response.status_code == 404

    async def test_account_booking_requires_sign_in(self, client, make_event, make_user):
        event = await make_event()
        owner = await make_user()
        booking = await _create(client, event, owner)

        response = await client.get(f"/api/v1/bookings/{booking['id']}")

        assert response.status_code == 401

    async def test_cancel_by_stranger_is_forbidden(self, client, make_event, make_user):
        event = await make_event()
        owner = await make_user()
        stranger = await make_user()
        booking = await _create(client, event, owner)

        response = await client.post(
            f"/api/v1/bookings/{booking['id']}/cancel", json={}, headers=auth_headers(stranger)
        )

        assert response.status_code == 403

    async def test_cancel_and_history(self, client, make_event, make_user):
        event = await make_event(hours_ahead=72)
        owner = await make_user()
        booking = await _create(client, event, owner)
        headers = auth_headers(owner)
        await client.post(f"/api/v1/bookings/{booking['id']}/confirm", json={}, headers=headers)

        cancelled = await client.post(
            f"/api/v1/bookings/{booking['id']}/cancel", json={"reason": "Sick"}, headers=headers
        )
        again = await client.post(f"/api/v1/bookings/{booking['id']}/cancel", json={}, headers=headers)
        history = await client.get(f"/api/v1/bookings/{booking['id']}/history", headers=headers)

        assert cancelled.status_code == 200
        assert cancelled.json()["refund_requested"] is True
        assert Decimal(cancelled.json()["refund_amount"]) == Decimal("200.00")
        assert again.status_code == 409
        assert again.json()["error"]["error_code"] == "ALREADY_TERMINAL"
        assert {entry["action"] for entry in history.json()["history"]} == {"created", "confirmed", "cancelled"}

    async def test_missing_token_on_cancel(self, client, make_event):
        event = await make_event()
        booking = await _create(client, event, customer_name="Guest", customer_email="guest@example.com")

        response = await client.post(f"/api/v1/bookings/{booking['id']}/cancel", json={})

        assert response.status_code in (401, 403)


class TestTicketEndpoints:
    async def test_verify_scanned_ticket(self, client, make_event, make_user):
        event = await make_event()
        owner = await make_user()
        staff = await make_user()
        booking = await _create(client, event, owner)
        confirmed = await client.post(
            f"/api/v1/bookings/{booking['id']}/confirm", json={}, headers=auth_headers(owner)
        )

        response = await client.post(
            "/api/v1/tickets/verify",
            json={"qr_payload": confirmed.json()["qr_payload"]},
            headers=auth_headers(staff),
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "valid"
        assert response.json()["valid"] is True

    async def test_forged_ticket(self, client, make_user):
        staff = await make_user()

        response = await client.post(
            "/api/v1/tickets/verify",
            json={"qr_payload": {"bookingId": str(uuid4()), "userId": str(uuid4()), "verificationHash": "abc"}},
            headers=auth_headers(staff),
        )

        assert response.json()["outcome"] == "invalid-token"

    async def test_lookup_by_reference(self, client, make_event, make_user):
        event = await make_event()
        staff = await make_user()
        booking = await _create(client, event, customer_name="Guest", customer_email="guest@example.com")

        response = await client.get(
            f"/api/v1/tickets/reference/{booking['booking_reference']}", headers=auth_headers(staff)
        )

        assert response.json()["outcome"] == "invalid-state"


class TestStatsEndpoints:
    async def test_my_stats(self, client, make_event, make_user):
        event = await make_event(price=Decimal("15.00"))
        user = await make_user()
        await _create(client, event, user, quantity=1)

        response = await client.get("/api/v1/stats/me", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["bookings_by_status"]["pending"] == 1

    async def test_event_inventory(self, client, make_event, make_user):
        event = await make_event(total_tickets=12)
        await _create(client, event, await make_user(), quantity=5)

        response = await client.get(f"/api/v1/stats/events/{event.id}/inventory")

        assert response.json()["available_tickets"] == 7


class TestJobEndpoints:
    async def test_requires_admin(self, client, make_user):
        user = await make_user()

        response = await client.get("/api/v1/admin/jobs", headers=auth_headers(user))

        assert response.status_code == 403

    async def test_lists_schedule(self, client, make_user):
        admin = await make_user(is_admin=True)

        response = await client.get("/api/v1/admin/jobs", headers=auth_headers(admin))

        body = response.json()
        assert body["enabled"] is True
        schedules = {job["name"]: job["schedule"] for job in body["jobs"]}
        assert schedules["expire_abandoned_bookings"] == "every 300 seconds"

    async def test_run_job(self, client, make_event, make_user):
        admin = await make_user(is_admin=True)
        await make_event(hours_ahead=-1)

        response = await client.post("/api/v1/admin/jobs/update_event_statuses/run", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json()["succeeded"] == 1

    async def test_unknown_job(self, client, make_user):
        admin = await make_user(is_admin=True)

        response = await client.post("/api/v1/admin/jobs/nope/run", headers=auth_headers(admin))

        assert response.status_code == 404

    async def test_refused_when_jobs_disabled(self, client, make_user, settings, monkeypatch):
        monkeypatch.setattr(settings, "enable_background_jobs", False)
        admin = await make_user(is_admin=True)

        response = await client.post(
            "/api/v1/admin/jobs/expire_abandoned_bookings/run", headers=auth_headers(admin)
        )

        assert response.status_code == 409
        assert response.json()["error"]["error_code"] == "BACKGROUND_JOBS_DISABLED"
