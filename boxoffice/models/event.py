"""
Event model holding the ticket inventory record for an event.
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
    from .booking import Booking
    from .user import User


class EventStatus(enum.Enum):
    """Enumeration for event status."""
    DRAFT = "draft"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Event(Base):
    """
    Event inventory record.

    ``tickets_sold`` is the only inventory counter that is stored. It is
    changed exclusively through conditional UPDATE statements issued by the
    booking service and the reconciliation jobs, so the row never leaves the
    ``0 <= tickets_sold <= total_tickets`` range.
    """

    __tablename__ = "events"

    # Event basic information
    title: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    venue: Mapped[str] = mapped_column(String(255), nullable=False)

    organizer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Event timing
    event_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True
    )

    # Inventory
    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Pricing
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
        default=Decimal('0.00')
    )

    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus, values_callable=enum_values, name="event_status"),
        default=EventStatus.DRAFT,
        nullable=False,
        index=True
    )

    # Bumped on every inventory write
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    organizer: Mapped[Optional["User"]] = relationship("User", back_populates="organized_events")
    bookings: Mapped[List["Booking"]] = relationship("Booking", back_populates="event")

    __table_args__ = (
        CheckConstraint("total_tickets > 0", name="ck_events_total_tickets_positive"),
        CheckConstraint("tickets_sold >= 0", name="ck_events_tickets_sold_non_negative"),
        CheckConstraint("tickets_sold <= total_tickets", name="ck_events_inventory_consistency"),
        CheckConstraint("price >= 0", name="ck_events_price_non_negative"),
        CheckConstraint("version > 0", name="ck_events_version_positive"),
    )

    @property
    def available_tickets(self) -> int:
        """Tickets still available for sale."""
        return self.total_tickets - self.tickets_sold

    def __repr__(self) -> str:
        return (
            f"<Event(id={self.id}, title='{self.title}', "
            f"date={self.event_date}, sold={self.tickets_sold}/{self.total_tickets})>"
        )
