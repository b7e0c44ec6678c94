"""
Celery application configuration for background tasks.
"""

from celery import Celery
from celery.schedules import crontab

from ..config import Settings, get_settings

settings = get_settings()

celery_app = Celery(
    "boxoffice",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "boxoffice.tasks.reconciliation_tasks",
        "boxoffice.tasks.notification_tasks",
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)


def build_beat_schedule(settings: Settings) -> dict:
    """Periodic reconciliation schedule; empty when background jobs are disabled."""
    if not settings.enable_background_jobs:
        return {}

    return {
        "expire-abandoned-bookings": {
            "task": "expire_abandoned_bookings_task",
            "schedule": float(settings.expire_bookings_interval_seconds),
        },
        "dispatch-pending-confirmations": {
            "task": "dispatch_pending_confirmations_task",
            "schedule": float(settings.send_confirmations_interval_seconds),
        },
        "process-refund-requests": {
            "task": "process_refund_requests_task",
            "schedule": float(settings.process_refunds_interval_seconds),
        },
        "update-event-statuses": {
            "task": "update_event_statuses_task",
            "schedule": float(settings.update_event_statuses_interval_seconds),
        },
        "send-event-reminders": {
            "task": "send_event_reminders_task",
            "schedule": crontab(hour=9, minute=0),
        },
        "archive-old-records": {
            "task": "archive_old_records_task",
            "schedule": crontab(hour=2, minute=0),
        },
        "generate-daily-report": {
            "task": "generate_daily_report_task",
            "schedule": crontab(hour=23, minute=0),
        },
    }


celery_app.conf.beat_schedule = build_beat_schedule(settings)
