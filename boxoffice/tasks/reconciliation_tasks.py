"""
Periodic Celery tasks that run the reconciliation jobs.
"""

import logging
import time
from typing import Any, Dict

from .celery_app import celery_app
from .runner import run_async
from ..config import get_settings
from ..services.reconciliation_service import run_job
from ..utils.logging_config import log_performance

logger = logging.getLogger(__name__)


def run_reconciliation(job_name: str) -> Dict[str, Any]:
    """Run one job unless background jobs are switched off."""
    settings = get_settings()
    if not settings.enable_background_jobs:
        logger.info(f"Background jobs disabled; skipping {job_name}")
        return {"job": job_name, "status": "skipped"}

    logger.info(f"Starting {job_name}")
    started = time.perf_counter()
    result = run_async(lambda session: run_job(job_name, session))
    if settings.enable_performance_logging:
        log_performance(job_name, time.perf_counter() - started, processed=result.processed)
    logger.info(f"Finished {job_name}: {result.succeeded} applied, {result.failed} failed")
    return {"status": "completed", **result.to_dict()}


@celery_app.task(bind=True, name="expire_abandoned_bookings_task")
def expire_abandoned_bookings_task(self):
    """Cancel PENDING bookings whose payment hold has lapsed."""
    return run_reconciliation("expire_abandoned_bookings")


@celery_app.task(bind=True, name="process_refund_requests_task")
def process_refund_requests_task(self):
    """Settle refunds for cancelled bookings."""
    return run_reconciliation("process_refund_requests")


@celery_app.task(bind=True, name="dispatch_pending_confirmations_task")
def dispatch_pending_confirmations_task(self):
    return run_reconciliation("dispatch_pending_confirmations")


@celery_app.task(bind=True, name="send_event_reminders_task")
def send_event_reminders_task(self):
    return run_reconciliation("send_event_reminders")


@celery_app.task(bind=True, name="update_event_statuses_task")
def update_event_statuses_task(self):
    return run_reconciliation("update_event_statuses")


@celery_app.task(bind=True, name="archive_old_records_task")
def archive_old_records_task(self):
    return run_reconciliation("archive_old_records")


@celery_app.task(bind=True, name="generate_daily_report_task")
def generate_daily_report_task(self):
    return run_reconciliation("generate_daily_report")
