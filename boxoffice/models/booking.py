"""
Booking model for managing ticket reservations.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_values

if TYPE_CHECKING:
    from .user import User
    from .event import Event
    from .booking_history import BookingHistory


class BookingStatus(enum.Enum):
    """Enumeration for booking status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses whose quantity is counted in the event's tickets_sold
TICKET_HOLDING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
TERMINAL_STATUSES = (BookingStatus.CANCELLED, BookingStatus.REFUNDED)


class TicketType(enum.Enum):
    """Enumeration for ticket types."""
    GENERAL = "general"
    VIP = "vip"
    PREMIUM = "premium"
    EARLY_BIRD = "early_bird"


class Booking(Base):
    """Booking model for managing ticket reservations."""

    __tablename__ = "bookings"

    booking_reference: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
        index=True
    )

    # Foreign key relationships; user_id is empty for guest bookings
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("events.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Customer contact details
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    special_requests: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Booking details
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    ticket_type: Mapped[TicketType] = mapped_column(
        Enum(TicketType, values_callable=enum_values, name="ticket_type"),
        default=TicketType.GENERAL,
        nullable=False
    )
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal('0.00')
    )

    # Booking status and timing
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, values_callable=enum_values, name="booking_status"),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Refund bookkeeping
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    cancellation_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refund_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    refund_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refund_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_denied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refund_denial_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Ticket verification token, set at confirmation
    qr_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Notification guards
    confirmation_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    confirmation_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    user: Mapped[Optional["User"]] = relationship("User", back_populates="bookings")
    event: Mapped["Event"] = relationship("Event", back_populates="bookings")

    booking_history: Mapped[List["BookingHistory"]] = relationship(
        "BookingHistory",
        back_populates="booking",
        cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bookings_quantity_positive"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_amount_non_negative"),
    )

    @property
    def is_active(self) -> bool:
        """Check if the booking still holds tickets (confirmed or pending)."""
        return self.status in TICKET_HOLDING_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def verification_subject(self) -> str:
        """Identity the verification token is bound to."""
        if self.user_id is not None:
            return str(self.user_id)
        return self.customer_email.strip().lower()

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, reference={self.booking_reference}, "
            f"event_id={self.event_id}, quantity={self.quantity}, status={self.status.value})>"
        )
