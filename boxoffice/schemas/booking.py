"""
Pydantic schemas for booking-related API requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from ..models.booking import BookingStatus, TicketType
from ..models.booking_history import BookingAction


class BookingCreateRequest(BaseModel):
    """Schema for creating a new booking."""

    event_id: UUID = Field(..., description="ID of the event to book")
    quantity: int = Field(..., ge=1, description="Number of tickets to book")
    ticket_type: TicketType = Field(TicketType.GENERAL, description="Ticket category")
    customer_name: Optional[str] = Field(None, min_length=1, max_length=255)
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = Field(None, max_length=50)
    special_requests: Optional[str] = Field(None, max_length=1000)

    @field_validator("customer_name")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if v else v


class BookingConfirmRequest(BaseModel):
    """Schema for confirming a booking."""

    payment_reference: Optional[str] = Field(None, max_length=255, description="Payment reference from payment processor")


class BookingCancelRequest(BaseModel):
    """Schema for cancelling a booking."""

    reason: Optional[str] = Field(None, max_length=500, description="Optional cancellation reason")


class BookingResponse(BaseModel):
    """Schema for booking responses."""

    id: UUID
    booking_reference: str
    user_id: Optional[UUID]
    event_id: UUID
    customer_name: str
    customer_email: str
    quantity: int
    ticket_type: TicketType
    unit_price: Decimal
    total_amount: Decimal
    status: BookingStatus
    expires_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    refund_amount: Optional[Decimal]
    cancellation_fee: Optional[Decimal]
    refund_requested: bool
    refund_processed: bool
    created_at: datetime

    # Related data
    event_title: Optional[str] = None
    event_date: Optional[datetime] = None
    venue: Optional[str] = None
    qr_payload: Optional[str] = None

    model_config = {"from_attributes": True}


class CreateBookingResponse(BaseModel):
    booking: BookingResponse
    message: str
    expires_in_minutes: int


class BookingListResponse(BaseModel):
    """Schema for booking list responses."""

    bookings: List[BookingResponse]
    total: int
    limit: int
    offset: int


class BookingHistoryResponse(BaseModel):
    """Schema for one audit trail entry."""

    id: UUID
    booking_id: UUID
    action: BookingAction
    details: Optional[str]
    performed_by: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingHistoryListResponse(BaseModel):
    booking_id: UUID
    history: List[BookingHistoryResponse]
