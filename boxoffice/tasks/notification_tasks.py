"""
Celery tasks for notification delivery.
"""

import logging
from uuid import UUID

from .celery_app import celery_app
from .runner import run_async
from ..services.notification_service import NotificationService

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 60


@celery_app.task(bind=True, name="send_booking_confirmation_task")
def send_booking_confirmation_task(self, booking_id: str):
    """
    Send the confirmation e-mail for a booking.

    Delivery is guarded by the booking's ``confirmation_sent`` flag; anything
    that fails here is picked up again by the periodic confirmation sweep.
    """
    logger.info(f"Sending booking confirmation for {booking_id}")
    sent = run_async(lambda session: NotificationService(session).send_booking_confirmation(UUID(booking_id)))
    return {"booking_id": booking_id, "status": "sent" if sent else "skipped"}


@celery_app.task(bind=True, name="send_booking_cancellation_task", max_retries=3)
def send_booking_cancellation_task(self, booking_id: str):
    """Send the cancellation e-mail for a booking."""
    logger.info(f"Sending booking cancellation for {booking_id}")
    sent = run_async(lambda session: NotificationService(session).send_booking_cancellation(UUID(booking_id)))
    if not sent:
        raise self.retry(countdown=RETRY_DELAY_SECONDS)
    return {"booking_id": booking_id, "status": "sent"}


@celery_app.task(bind=True, name="send_refund_notification_task", max_retries=3)
def send_refund_notification_task(self, booking_id: str):
    """Tell the customer how their refund was settled."""
    logger.info(f"Sending refund notification for {booking_id}")
    sent = run_async(lambda session: NotificationService(session).send_refund_notification(UUID(booking_id)))
    if not sent:
        raise self.retry(countdown=RETRY_DELAY_SECONDS)
    return {"booking_id": booking_id, "status": "sent"}
