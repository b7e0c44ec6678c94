"""
Database models for the Boxoffice booking engine.
"""

from .base import Base
from .user import User
from .event import Event, EventStatus
from .booking import Booking, BookingStatus, TicketType
from .booking_history import BookingHistory, BookingAction

__all__ = [
    "Base",
    "User",
    "Event",
    "EventStatus",
    "Booking",
    "BookingStatus",
    "TicketType",
    "BookingHistory",
    "BookingAction",
]
