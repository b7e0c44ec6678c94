"""
Shared fixtures for the booking engine tests.

Every test gets its own on-disk SQLite database (through aiosqlite) so that
concurrent sessions really do contend for the same rows. Redis is never
touched: the global cache stays uninitialised, which turns every cache call
into a no-op, and tests that care about caching pass an ``AsyncMock``.
"""

from collections.abc import AsyncGenerator, Callable
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from unittest.mock import Mock
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from boxoffice.config import Settings, get_settings
from boxoffice.database import create_database_engine, create_session_factory
from boxoffice.models import Base, Event, EventStatus, TicketType, User
from boxoffice.services.booking_service import BookingService, CustomerInfo
from boxoffice.services.notification_service import NotificationDispatcher
from boxoffice.utils.clock import utcnow


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Process settings with deterministic values; changes are undone after each test"""
    current = get_settings()
    monkeypatch.setattr(current, "SECRET_KEY", "test-secret-key")
    monkeypatch.setattr(current, "ticket_token_secret", "test-ticket-secret")
    monkeypatch.setattr(current, "smtp_server", None)
    monkeypatch.setattr(current, "enable_background_jobs", True)
    monkeypatch.setattr(current, "enable_retry_mechanisms", True)
    monkeypatch.setattr(current, "cancellation_cutoff_hours", 0)
    monkeypatch.setattr(current, "refund_policy", "tiered")
    return current


@pytest.fixture
async def engine(tmp_path, settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_database_engine(f"sqlite+aiosqlite:///{tmp_path / 'boxoffice.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> Mock:
    """Notification dispatcher that records calls instead of queueing Celery tasks"""
    return Mock(spec=NotificationDispatcher)


@pytest.fixture
def booking_service(session: AsyncSession, notifier: Mock) -> BookingService:
    return BookingService(session, notifier=notifier)


@pytest.fixture
def make_user(session: AsyncSession) -> Callable:
    async def _make_user(is_admin: bool = False, email: Optional[str] = None) -> User:
        user = User(
            id=uuid4(),
            email=email or f"user-{uuid4().hex[:8]}@example.com",
            first_name="Test",
            last_name="User",
            is_admin=is_admin,
            is_active=True,
        )
        session.add(user)
        await session.commit()
        return user

    return _make_user


@pytest.fixture
def make_event(session: AsyncSession) -> Callable:
    async def _make_event(
        total_tickets: int = 10,
        price: Decimal = Decimal("100.00"),
        hours_ahead: float = 72,
        status: EventStatus = EventStatus.ACTIVE,
        organizer: Optional[User] = None,
        tickets_sold: int = 0,
    ) -> Event:
        event = Event(
            id=uuid4(),
            title="Test Concert",
            venue="Main Hall",
            organizer_id=organizer.id if organizer else None,
            event_date=utcnow() + timedelta(hours=hours_ahead),
            total_tickets=total_tickets,
            tickets_sold=tickets_sold,
            price=price,
            status=status,
        )
        session.add(event)
        await session.commit()
        return event

    return _make_event


@pytest.fixture
def customer() -> CustomerInfo:
    return CustomerInfo(name="Ada Lovelace", email="Ada@Example.com", phone="+44 20 0000 0000")


@pytest.fixture
def book(booking_service: BookingService, customer: CustomerInfo) -> Callable:
    """Create a booking through the service with sensible defaults"""
    async def _book(
        event: Event,
        quantity: int = 2,
        ticket_type: TicketType = TicketType.GENERAL,
        user: Optional[User] = None,
        now=None,
    ):
        return await booking_service.create_booking(
            event_id=event.id,
            quantity=quantity,
            ticket_type=ticket_type,
            customer=customer,
            user_id=user.id if user else None,
            now=now,
        )

    return _book

