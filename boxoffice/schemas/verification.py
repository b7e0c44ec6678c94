"""
Schemas for ticket verification at the door.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from ..services.ticket_verification_service import VerificationOutcome


class TicketVerifyRequest(BaseModel):
    qr_payload: Union[str, Dict[str, Any]] = Field(..., description="Scanned QR payload, raw JSON text or decoded object")


class VerificationResponse(BaseModel):
    outcome: VerificationOutcome
    valid: bool
    reason: str
    ticket: Optional[Dict[str, Any]] = None
    verified_at: datetime

    @classmethod
    def from_result(cls, result) -> "VerificationResponse":
        return cls(
            outcome=result.outcome,
            valid=result.is_valid,
            reason=result.reason,
            ticket=result.ticket,
            verified_at=result.verified_at,
        )
