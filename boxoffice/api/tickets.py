"""
FastAPI routes for checking tickets at the door.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models.user import User
from ..schemas.verification import TicketVerifyRequest, VerificationResponse
from ..services.ticket_verification_service import TicketVerificationService
from ..utils.dependencies import get_current_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/tickets", tags=["tickets"])


@router.post("/verify", response_model=VerificationResponse)
async def verify_ticket(
    request: TicketVerifyRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Verify a scanned QR payload.

    Always answers 200; the ``outcome`` field says whether the ticket is
    valid, forged, or genuine but no longer usable.
    """
    result = await TicketVerificationService(db).verify_qr_payload(request.qr_payload)
    logger.info(f"Ticket scan by {current_user.id}: {result.outcome.value}")
    return VerificationResponse.from_result(result)


@router.get("/reference/{reference}", response_model=VerificationResponse)
async def verify_by_reference(
    reference: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Look a ticket up by its printed booking reference."""
    result = await TicketVerificationService(db).verify_by_reference(reference)
    return VerificationResponse.from_result(result)
