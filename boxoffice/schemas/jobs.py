"""
Schemas for the reconciliation job admin endpoints.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class ScheduledJob(BaseModel):
    name: str
    description: str
    task: str
    schedule: Optional[str] = None


class JobStatusResponse(BaseModel):
    enabled: bool
    jobs: List[ScheduledJob]


class JobRunResponse(BaseModel):
    job: str
    processed: int
    succeeded: int
    skipped: int
    failed: int
    failed_ids: List[str]
    details: Dict[str, Any]
