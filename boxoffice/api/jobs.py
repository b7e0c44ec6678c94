"""
Admin routes for inspecting and triggering reconciliation jobs.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..database import get_db
from ..models.user import User
from ..schemas.jobs import JobRunResponse, JobStatusResponse, ScheduledJob
from ..services.notification_service import NotificationDispatcher, get_notification_dispatcher
from ..services.reconciliation_service import RECONCILIATION_JOBS, run_job
from ..tasks.celery_app import build_beat_schedule
from ..utils.dependencies import get_current_admin_user
from ..utils.exceptions import BackgroundJobsDisabledError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin/jobs", tags=["admin"])


def _describe_schedule(schedule) -> str:
    if isinstance(schedule, (int, float)):
        return f"every {int(schedule)} seconds"
    return str(schedule)


@router.get("", response_model=JobStatusResponse)
async def list_jobs(current_user: User = Depends(get_current_admin_user)):
    """Reconciliation jobs with their beat schedule."""
    settings = get_settings()
    beat = {entry["task"]: entry["schedule"] for entry in build_beat_schedule(settings).values()}

    jobs = []
    for name, description in RECONCILIATION_JOBS.items():
        task = f"{name}_task"
        schedule = beat.get(task)
        jobs.append(
            ScheduledJob(
                name=name,
                description=description,
                task=task,
                schedule=_describe_schedule(schedule) if schedule is not None else None,
            )
        )
    return JobStatusResponse(enabled=settings.enable_background_jobs, jobs=jobs)


@router.post("/{job_name}/run", response_model=JobRunResponse)
async def run_job_now(
    job_name: str,
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
):
    """Run one reconciliation pass immediately, in-process."""
    if not get_settings().enable_background_jobs:
        raise BackgroundJobsDisabledError(job_name)

    logger.info(f"Admin {current_user.id} triggered {job_name}")
    result = await run_job(job_name, db, notifier=notifier)
    return JobRunResponse(**result.to_dict())
