"""
Schemas for dashboard statistics.

Money values are serialised as strings with two decimal places so they
survive the JSON round-trip through the cache unchanged.
"""

from typing import Dict
from uuid import UUID

from pydantic import BaseModel


class UserStatsResponse(BaseModel):
    user_id: UUID
    total_bookings: int
    bookings_by_status: Dict[str, int]
    upcoming_events: int
    total_spent: str
    total_refunded: str
    generated_at: str


class OrganizerStatsResponse(BaseModel):
    organizer_id: UUID
    total_events: int
    active_events: int
    total_capacity: int
    tickets_sold: int
    tickets_available: int
    bookings_by_status: Dict[str, int]
    confirmed_revenue: str
    cancellation_fees: str
    refunds_paid: str
    generated_at: str


class EventInventoryResponse(BaseModel):
    event_id: UUID
    status: str
    total_tickets: int
    tickets_sold: int
    available_tickets: int
    version: int
