"""
Progress Reporter
Read-only view of a job's durable pipeline state
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from ..models.job import Job, JobStatus
from ..utils.exceptions import JobNotFoundError
from .job_store import JobStore, get_job_store


class ProgressSnapshot(BaseModel):
    """What a polling client sees for one upload"""
    upload_id: str
    slug: str
    stage: str
    progress: int
    status: JobStatus
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    attempt_count: int = 0
    updated_at: datetime
    estimated_completion: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "ProgressSnapshot":
        return cls(
            upload_id=job.upload_id,
            slug=job.slug,
            stage=job.stage.label,
            progress=job.progress,
            status=job.status,
            last_error=job.last_error if job.status == JobStatus.FAILED else None,
            error_code=job.error_code if job.status == JobStatus.FAILED else None,
            attempt_count=job.attempt_count,
            updated_at=job.updated_at,
            estimated_completion=job.estimated_completion if job.status == JobStatus.PROCESSING else None,
        )


class ProgressReporter:
    """Reads straight from the job store on every call"""

    def __init__(self, store: Optional[JobStore] = None):
        self.store = store or get_job_store()

    async def get_progress(self, upload_id: str) -> ProgressSnapshot:
        job = await self.store.get_job(upload_id)
        if job is None:
            raise JobNotFoundError(upload_id)
        return ProgressSnapshot.from_job(job)
