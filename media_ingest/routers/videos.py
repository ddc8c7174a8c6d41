"""
Videos Router
Read and delete published videos
"""

from typing import List

from fastapi import APIRouter

from ..models.job import JobStatus
from ..models.video import Video, VideoStatus
from ..services.job_store import get_job_store
from ..services.storage import get_storage_manager
from ..utils.exceptions import InvalidJobStateError, VideoNotFoundError
from ..utils.logger import get_logger

router = APIRouter(prefix="/media/videos", tags=["videos"])
logger = get_logger()


@router.get("", response_model=List[Video])
async def list_videos(public_only: bool = False):
    """List ready videos, newest first."""
    videos = await get_job_store().list_videos(VideoStatus.READY)
    if public_only:
        videos = [video for video in videos if video.is_public]
    return videos


@router.get("/{slug}", response_model=Video)
async def get_video(slug: str):
    """Get a ready video with its quality variants."""
    video = await get_job_store().get_video(slug)
    if video is None or video.status != VideoStatus.READY:
        raise VideoNotFoundError(slug)
    return video


@router.delete("/{slug}")
async def delete_video(slug: str):
    """Delete a video, its variants and its published files."""
    job_store = get_job_store()
    video = await job_store.get_video(slug)
    if video is None:
        raise VideoNotFoundError(slug)

    job = await job_store.get_job_by_slug(slug)
    if job is not None and job.status == JobStatus.PROCESSING:
        raise InvalidJobStateError(job.upload_id, job.status.value, "delete")

    storage = get_storage_manager()
    storage.delete(storage.final_dir(slug))
    await job_store.delete_video(slug)

    logger.info(f"Video deleted: {slug}")
    return {"status": "deleted", "slug": slug}
