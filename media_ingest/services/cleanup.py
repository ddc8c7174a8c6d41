"""
Temp Storage Janitor
Periodically removes temp directories nobody will need again
"""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

from ..config import Settings, get_settings
from ..models.job import Job, JobStatus
from ..utils.exceptions import StorageError
from ..utils.logger import get_logger
from .job_store import JobStore, get_job_store
from .storage import StorageManager, get_storage_manager

logger = get_logger()


class TempJanitor:
    """
    Deletes temp/<upload_id>/ for succeeded jobs, for failed jobs past the
    retention window and for orphaned directories past the same window.

    Never writes job rows and never touches a processing job.
    """

    def __init__(
        self,
        store: Optional[JobStore] = None,
        storage: Optional[StorageManager] = None,
        settings: Optional[Settings] = None
    ):
        self.store = store or get_job_store()
        self.storage = storage or get_storage_manager()
        self.settings = settings or get_settings()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def retention(self) -> timedelta:
        return timedelta(hours=self.settings.failed_temp_retention_hours)

    def start(self):
        """Start the background loop"""
        if self._running:
            logger.warning("Temp janitor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="temp-janitor")

    async def stop(self):
        """Stop the background loop"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Temp janitor stopped")

    async def _loop(self):
        interval = self.settings.cleanup_interval_seconds
        logger.info(f"Starting temp janitor (interval: {interval}s, retention: {self.retention})")
        while self._running:
            try:
                await self.purge_once()
            except Exception as e:
                logger.exception(f"Temp janitor error: {e}")

            await asyncio.sleep(interval)

    async def purge_once(self, now: Optional[datetime] = None) -> int:
        """One sweep over temp and staging leftovers. Returns directories removed."""
        now = now or datetime.utcnow()
        cutoff = now - self.retention
        jobs: Dict[str, Job] = {job.upload_id: job for job in await self.store.list_jobs()}

        removed = 0
        for entry in self.storage.list_temp_entries():
            job = jobs.get(entry.name)
            if not self._is_expired(entry, job, cutoff):
                continue
            try:
                if self.storage.delete(entry):
                    removed += 1
                    logger.info(f"Removed temp directory {entry.name}")
            except StorageError as e:
                logger.warning(f"Could not remove temp directory {entry}: {e}")

        removed += self._purge_stale_staging(cutoff)
        if removed:
            logger.info(f"Temp janitor removed {removed} directories")
        return removed

    @staticmethod
    def _is_expired(entry: Path, job: Optional[Job], cutoff: datetime) -> bool:
        if job is None:
            return _modified_at(entry) < cutoff
        if job.status == JobStatus.SUCCEEDED:
            return True
        if job.status == JobStatus.FAILED:
            return (job.completed_at or job.updated_at) < cutoff
        return False

    def _purge_stale_staging(self, cutoff: datetime) -> int:
        """Hidden staging directories left behind by an interrupted publish"""
        removed = 0
        for entry in self.storage.final_root.glob(".*.staging-*"):
            if entry.is_dir() and _modified_at(entry) < cutoff:
                try:
                    if self.storage.delete(entry):
                        removed += 1
                except StorageError as e:
                    logger.warning(f"Could not remove staging directory {entry}: {e}")
        return removed


def _modified_at(path: Path) -> datetime:
    return datetime.utcfromtimestamp(path.stat().st_mtime)


_janitor: Optional[TempJanitor] = None


def get_janitor() -> TempJanitor:
    """Return singleton temp janitor."""
    global _janitor
    if _janitor is None:
        _janitor = TempJanitor()
    return _janitor
