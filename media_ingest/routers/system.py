"""
System Router
Health, version, host resources and pipeline metrics
"""

import os
import shutil
from dataclasses import asdict
from typing import Optional

import psutil
from fastapi import APIRouter

from ..config import get_settings
from ..services.job_queue import get_job_queue
from ..services.pipeline import get_pipeline
from ..services.storage import get_storage_manager
from ..utils.logger import get_logger

router = APIRouter(prefix="/api/system", tags=["system"])
logger = get_logger()


def get_git_revision():
    """Get the current git commit hash (short)"""
    commit_sha = os.getenv("GIT_COMMIT_SHA")
    if commit_sha:
        return commit_sha[:7]
    return "dev"


def get_app_version():
    """Get formatted app version"""
    settings = get_settings()
    return f"{settings.app_version}-{get_git_revision()}"


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "version": get_app_version(),
        "app": get_settings().app_name
    }


@router.get("/status")
async def get_system_status():
    """Get detailed system status"""
    settings = get_settings()

    ffmpeg_available = shutil.which(settings.ffmpeg_path) is not None
    ffprobe_available = shutil.which(settings.ffprobe_path) is not None

    # Disk figures for the volume holding media storage
    disk = psutil.disk_usage(str(get_storage_manager().root))
    memory = psutil.virtual_memory()
    queue_stats = get_job_queue().stats()

    return {
        "ffmpeg": {
            "available": ffmpeg_available and ffprobe_available,
            "status": "Ready" if ffmpeg_available and ffprobe_available else "Not installed"
        },
        "disk": {
            "total_gb": round(disk.total / (1024**3), 1),
            "free_gb": round(disk.free / (1024**3), 1),
            "used_percent": disk.percent
        },
        "memory": {
            "total_gb": round(memory.total / (1024**3), 1),
            "available_gb": round(memory.available / (1024**3), 1),
            "used_percent": memory.percent
        },
        "jobs_queue": queue_stats,
        "processing": get_pipeline().metrics.summary(),
        "transcoding": {
            "quality_ladder": settings.quality_ladder,
            "auto_quality_selection": settings.auto_quality_selection,
            "segment_duration": settings.segment_duration,
            "max_retries": settings.max_retries
        }
    }


@router.get("/audit")
async def get_audit_trail(upload_id: Optional[str] = None, limit: int = 50):
    """Recent pipeline events, or every event for one upload"""
    audit = get_pipeline().audit
    if upload_id:
        entries = audit.entries_for_upload(upload_id)
    else:
        entries = audit.recent_entries(limit)
    return [asdict(entry) for entry in entries]
