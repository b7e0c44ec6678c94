"""
Custom exceptions for the Boxoffice booking engine.
"""

from typing import Any, Dict, Optional, List
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for the engine."""

    # General errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Business logic errors
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    INVALID_EVENT_STATE = "INVALID_EVENT_STATE"
    INVALID_BOOKING_STATE = "INVALID_BOOKING_STATE"
    ALREADY_TERMINAL = "ALREADY_TERMINAL"
    POLICY_DENIED = "POLICY_DENIED"
    BACKGROUND_JOBS_DISABLED = "BACKGROUND_JOBS_DISABLED"

    # Concurrency and consistency errors
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    INVENTORY_INCONSISTENCY = "INVENTORY_INCONSISTENCY"

    # External service errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    EMAIL_SERVICE_ERROR = "EMAIL_SERVICE_ERROR"


class BoxofficeError(Exception):
    """Base exception class for the booking engine."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
        retry_after: Optional[int] = None
    ):
        """Initialize the exception with comprehensive error information."""
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.suggestions = suggestions or []
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }

        if self.details:
            result["details"] = self.details

        if self.suggestions:
            result["suggestions"] = self.suggestions

        if self.retry_after:
            result["retry_after"] = self.retry_after

        return result


class ValidationError(BoxofficeError):
    """Exception raised for validation errors."""

    def __init__(self, message: str, field_errors: Optional[Dict[str, List[str]]] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.VALIDATION_ERROR,
            details={"field_errors": field_errors} if field_errors else None,
            **kwargs
        )
        self.field_errors = field_errors or {}


class NotFoundError(BoxofficeError):
    """Base exception for resource not found errors."""

    def __init__(self, message: str, resource_type: Optional[str] = None, resource_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.NOT_FOUND,
            details={"resource_type": resource_type, "resource_id": resource_id} if resource_type else None,
            **kwargs
        )


class EventNotFoundError(NotFoundError):
    """Exception raised when an event is not found."""

    def __init__(self, event_id: str, **kwargs):
        super().__init__(
            f"Event {event_id} not found",
            resource_type="event",
            resource_id=event_id,
            suggestions=["Check the event ID", "Browse available events"],
            **kwargs
        )


class BookingNotFoundError(NotFoundError):
    """Exception raised when a booking is not found."""

    def __init__(self, booking_id: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} not found",
            resource_type="booking",
            resource_id=booking_id,
            suggestions=["Check the booking ID or reference", "View your booking history"],
            **kwargs
        )


class AuthenticationError(BoxofficeError):
    """Exception raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.UNAUTHORIZED,
            suggestions=["Check your credentials", "Login again"],
            **kwargs
        )


class AuthorizationError(BoxofficeError):
    """Exception raised when the acting user may not perform the operation."""

    def __init__(self, message: str = "Access denied", required_permission: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.FORBIDDEN,
            details={"required_permission": required_permission} if required_permission else None,
            suggestions=["Only the booking owner, the event organizer or an administrator can do this"],
            **kwargs
        )


class BusinessLogicError(BoxofficeError):
    """Base exception for business logic violations."""
    pass


class InsufficientCapacityError(BusinessLogicError):
    """Exception raised when event inventory cannot cover the request."""

    def __init__(self, requested: int, available: int, event_id: Optional[str] = None, **kwargs):
        if available <= 0:
            message = f"Event is sold out: requested {requested} tickets, none left"
        else:
            noun = "ticket" if available == 1 else "tickets"
            message = f"Only {available} {noun} left: requested {requested}"
        super().__init__(
            message,
            error_code=ErrorCode.INSUFFICIENT_CAPACITY,
            details={"requested": requested, "available": max(available, 0), "event_id": event_id},
            suggestions=["Try booking fewer tickets", "Check similar events"],
            **kwargs
        )
        self.requested = requested
        self.available = max(available, 0)


class InvalidEventStateError(BusinessLogicError):
    """Exception raised when an event cannot accept bookings."""

    def __init__(self, event_id: str, reason: str, **kwargs):
        super().__init__(
            f"Event {event_id} is not open for booking: {reason}",
            error_code=ErrorCode.INVALID_EVENT_STATE,
            details={"event_id": event_id, "reason": reason},
            suggestions=["Browse upcoming events"],
            **kwargs
        )


class InvalidBookingStateError(BusinessLogicError):
    """Exception raised when booking is in invalid state for the requested transition."""

    def __init__(self, booking_id: str, current_state: str, required_state: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} is in {current_state} state, required {required_state}",
            error_code=ErrorCode.INVALID_BOOKING_STATE,
            details={"booking_id": booking_id, "current_state": current_state, "required_state": required_state},
            **kwargs
        )


class AlreadyTerminalError(BusinessLogicError):
    """Exception raised when a booking has already been cancelled or refunded."""

    def __init__(self, booking_id: str, current_state: str, **kwargs):
        super().__init__(
            f"Booking {booking_id} is already {current_state}",
            error_code=ErrorCode.ALREADY_TERMINAL,
            details={"booking_id": booking_id, "current_state": current_state},
            **kwargs
        )


class PolicyDeniedError(BusinessLogicError):
    """Exception raised when a business rule refuses an otherwise valid request."""

    def __init__(self, message: str, policy: str, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.POLICY_DENIED,
            details={"policy": policy},
            **kwargs
        )
        self.policy = policy


class BackgroundJobsDisabledError(BusinessLogicError):
    """Exception raised when a job is triggered while background jobs are switched off."""

    def __init__(self, job_name: str, **kwargs):
        super().__init__(
            f"Background jobs are disabled; '{job_name}' was not run",
            error_code=ErrorCode.BACKGROUND_JOBS_DISABLED,
            details={"job": job_name},
            suggestions=["Set ENABLE_BACKGROUND_JOBS=true to allow job runs"],
            **kwargs
        )


class ConcurrencyError(BoxofficeError):
    """Exception raised for concurrency-related issues."""

    def __init__(self, message: str, retry_after: int = 1, **kwargs):
        super().__init__(
            message,
            error_code=ErrorCode.CONCURRENCY_CONFLICT,
            retry_after=retry_after,
            suggestions=["Please try again", "Wait a moment and retry"],
            **kwargs
        )


class InventoryInconsistencyError(BoxofficeError):
    """Exception raised when a release would drive tickets_sold below zero."""

    def __init__(self, event_id: str, quantity: int, **kwargs):
        super().__init__(
            f"Cannot release {quantity} tickets for event {event_id}: inventory counter is lower",
            error_code=ErrorCode.INVENTORY_INCONSISTENCY,
            details={"event_id": event_id, "quantity": quantity},
            **kwargs
        )


class ExternalServiceError(BoxofficeError):
    """Exception raised for external service failures."""

    def __init__(self, service_name: str, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.EXTERNAL_SERVICE_ERROR)
        super().__init__(
            f"{service_name} service error: {message}",
            details={"service_name": service_name, "status_code": status_code},
            suggestions=["Try again later", "Contact support if problem persists"],
            **kwargs
        )


class EmailServiceError(ExternalServiceError):
    """Exception raised for email service failures."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            "email",
            message,
            error_code=ErrorCode.EMAIL_SERVICE_ERROR,
            **kwargs
        )
