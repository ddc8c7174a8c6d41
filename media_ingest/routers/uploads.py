"""
Uploads Router
Upload intake, progress polling and cancellation
"""

from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from ..config import get_settings
from ..models.job import Job, JobStatus
from ..services.intake import IntakeReceipt, UploadIntake
from ..services.job_queue import get_job_queue
from ..services.job_store import get_job_store
from ..services.pipeline import get_pipeline
from ..services.progress import ProgressReporter, ProgressSnapshot
from ..utils.logger import get_logger

router = APIRouter(prefix="/media/upload", tags=["uploads"])
logger = get_logger()

CHUNK_SIZE = 1024 * 1024


async def initialize_job_state():
    """Open the job store and fail jobs a previous run left processing."""
    job_store = get_job_store()
    await job_store.initialize()
    recovered = await job_store.mark_interrupted()

    jobs = await job_store.list_jobs()
    logger.info(f"Recovered {len(jobs)} jobs from persistent storage")
    if recovered:
        logger.warning(f"Marked {recovered} interrupted jobs as failed")


def configure_job_queue():
    """Configure queue processor from current settings."""
    settings = get_settings()
    get_job_queue().configure(
        processor=get_pipeline().run,
        worker_count=settings.job_worker_concurrency,
        max_pending=settings.max_pending_jobs,
    )


async def _read_chunks(file: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break
        yield chunk


@router.post("", response_model=IntakeReceipt, status_code=202)
async def upload_video(
    file: UploadFile = File(...),
    title: str = Form(...),
    description: Optional[str] = Form(None),
    is_public: bool = Form(False),
):
    """Accept a video upload and queue it for processing."""
    title = title.strip()
    if not title:
        raise HTTPException(400, "title must not be blank")

    intake = UploadIntake()
    try:
        receipt = await intake.accept(
            _read_chunks(file),
            filename=file.filename,
            content_type=file.content_type,
            title=title,
            description=(description or "").strip() or None,
            is_public=is_public,
            declared_size=file.size,
        )
    finally:
        await file.close()

    logger.info(f"Upload queued: {receipt.upload_id} ({receipt.slug})")
    return receipt


@router.get("", response_model=List[Job])
async def list_uploads(status: Optional[JobStatus] = None):
    """List upload jobs, newest first."""
    return await get_job_store().list_jobs(status)


@router.get("/{upload_id}/progress", response_model=ProgressSnapshot)
async def get_upload_progress(upload_id: str):
    """Current stage, percentage and status of an upload."""
    return await ProgressReporter(get_job_store()).get_progress(upload_id)


@router.post("/{upload_id}/cancel", response_model=ProgressSnapshot)
async def cancel_upload(upload_id: str):
    """Stop a processing upload and discard its temp files."""
    job = await get_pipeline().cancel(upload_id)
    logger.info(f"Upload cancelled: {upload_id}")
    return ProgressSnapshot.from_job(job)
