"""
Notification service for sending booking e-mails.

Messages are deliberately plain; the interesting part is the
``confirmation_sent`` / ``reminder_sent`` guards, which make sure each
notification is delivered at most once even when the on-confirm task and the
periodic sweep race each other.
"""

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..config import get_settings
from ..models.booking import Booking, BookingStatus
from ..utils.clock import utcnow
from ..utils.exceptions import EmailServiceError
from .ticket_verification_service import build_qr_payload

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Queues notification tasks on the Celery broker.

    Dispatch happens after the booking transaction has committed. A broker
    failure is logged and never surfaces as a booking failure.
    """

    def booking_confirmed(self, booking_id: UUID) -> None:
        self._queue("send_booking_confirmation_task", booking_id)

    def booking_cancelled(self, booking_id: UUID) -> None:
        self._queue("send_booking_cancellation_task", booking_id)

    def refund_processed(self, booking_id: UUID) -> None:
        self._queue("send_refund_notification_task", booking_id)

    def _queue(self, task_name: str, booking_id: UUID) -> None:
        try:
            from ..tasks import notification_tasks
            getattr(notification_tasks, task_name).delay(str(booking_id))
            logger.info(f"Queued {task_name} for booking {booking_id}")
        except Exception as e:
            logger.warning(f"Failed to queue {task_name} for booking {booking_id}: {e}")


def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher()


class NotificationService:
    """Service for handling email notifications."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.settings = get_settings()

    async def send_booking_confirmation(self, booking_id: UUID) -> bool:
        """
        Send the confirmation e-mail for a confirmed booking exactly once.

        Returns:
            bool: True if this call delivered the e-mail
        """
        claimed = await self._claim_flag(booking_id, Booking.confirmation_sent, Booking.confirmation_sent_at)
        if not claimed:
            logger.debug(f"Confirmation for booking {booking_id} already sent or not applicable")
            return False

        booking = await self._get_booking_with_event(booking_id)
        body = (
            f"Hi {booking.customer_name},\n\n"
            f"Your booking {booking.booking_reference} for {booking.event.title} is confirmed.\n"
            f"Tickets: {booking.quantity} x {booking.ticket_type.value}\n"
            f"Total paid: {booking.total_amount:.2f}\n"
            f"Venue: {booking.event.venue}\n"
            f"Starts: {booking.event.event_date:%Y-%m-%d %H:%M} UTC\n\n"
            f"Ticket code: {build_qr_payload(booking)}\n"
        )
        sent = await self._deliver(booking.customer_email, f"Booking confirmed - {booking.event.title}", body)

        if not sent:
            await self._release_flag(booking_id, Booking.confirmation_sent, Booking.confirmation_sent_at)
        return sent

    async def send_event_reminder(self, booking_id: UUID) -> bool:
        """Send the pre-event reminder exactly once."""
        claimed = await self._claim_flag(booking_id, Booking.reminder_sent, Booking.reminder_sent_at)
        if not claimed:
            return False

        booking = await self._get_booking_with_event(booking_id)
        body = (
            f"Hi {booking.customer_name},\n\n"
            f"{booking.event.title} starts at {booking.event.event_date:%Y-%m-%d %H:%M} UTC "
            f"at {booking.event.venue}.\n"
            f"Booking reference: {booking.booking_reference}\n"
        )
        sent = await self._deliver(booking.customer_email, f"Reminder - {booking.event.title}", body)

        if not sent:
            await self._release_flag(booking_id, Booking.reminder_sent, Booking.reminder_sent_at)
        return sent

    async def send_booking_cancellation(self, booking_id: UUID) -> bool:
        booking = await self._get_booking_with_event(booking_id)
        if booking is None:
            logger.error(f"Booking {booking_id} not found")
            return False

        body = (
            f"Hi {booking.customer_name},\n\n"
            f"Your booking {booking.booking_reference} for {booking.event.title} has been cancelled.\n"
            f"Reason: {booking.cancellation_reason or 'not given'}\n"
        )
        if booking.refund_requested:
            body += f"A refund of {booking.refund_amount:.2f} will be processed shortly.\n"
        return await self._deliver(booking.customer_email, f"Booking cancelled - {booking.event.title}", body)

    async def send_refund_notification(self, booking_id: UUID) -> bool:
        booking = await self._get_booking_with_event(booking_id)
        if booking is None:
            logger.error(f"Booking {booking_id} not found")
            return False

        if booking.refund_denied:
            body = (
                f"Hi {booking.customer_name},\n\n"
                f"We could not refund booking {booking.booking_reference}: {booking.refund_denial_reason}.\n"
            )
        else:
            body = (
                f"Hi {booking.customer_name},\n\n"
                f"A refund of {booking.refund_amount:.2f} for booking {booking.booking_reference} "
                f"has been processed.\n"
            )
        return await self._deliver(booking.customer_email, f"Refund update - {booking.event.title}", body)

    async def _claim_flag(self, booking_id: UUID, flag, stamp) -> bool:
        result = await self.session.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.CONFIRMED,
                flag.is_(False),
            )
            .values({flag: True, stamp: utcnow()})
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount == 1

    async def _release_flag(self, booking_id: UUID, flag, stamp) -> None:
        await self.session.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values({flag: False, stamp: None})
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def _deliver(self, to_email: str, subject: str, body: str) -> bool:
        try:
            await self._send_email(to_email, subject, body)
            return True
        except EmailServiceError as e:
            logger.error(f"Failed to send email to {to_email}: {e.message}")
            return False

    async def _send_email(self, to_email: str, subject: str, body: str) -> None:
        """
        Send email using SMTP.

        Without an SMTP server configured the message is only logged, which is
        what development and test environments run with.
        """
        if not self.settings.smtp_server:
            logger.info(f"SMTP not configured; notification '{subject}' logged only")
            return

        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = self.settings.smtp_from_address
        msg["To"] = to_email

        try:
            await asyncio.to_thread(self._smtp_send, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailServiceError(str(e)) from e

        logger.info(f"Email '{subject}' sent")

    def _smtp_send(self, msg: MIMEText) -> None:
        with smtplib.SMTP(self.settings.smtp_server, self.settings.smtp_port, timeout=30) as server:
            if self.settings.smtp_use_tls:
                server.starttls()
            if self.settings.smtp_username:
                server.login(self.settings.smtp_username, self.settings.smtp_password or "")
            server.send_message(msg)

    async def _get_booking_with_event(self, booking_id: UUID) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking)
            .options(selectinload(Booking.event))
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
