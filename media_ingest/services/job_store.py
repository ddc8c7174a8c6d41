"""
Job Store Service
SQLite-backed persistence for jobs, videos and quality variants.
"""

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import aiosqlite

from ..config import get_settings
from ..models.job import Job, JobStatus
from ..models.video import QualityVariant, Video, VideoStatus
from ..utils.logger import get_logger

logger = get_logger()

INTERRUPTED_MESSAGE = "Interrupted by server restart"
INTERRUPTED_CODE = "INTERRUPTED"


class JobStore:
    """Persistent storage for jobs, videos and their variants."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    async def initialize(self):
        """Initialize database schema."""
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as conn:
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA synchronous=NORMAL")
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS jobs (
                        upload_id TEXT PRIMARY KEY,
                        slug TEXT NOT NULL UNIQUE,
                        status TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS videos (
                        slug TEXT PRIMARY KEY,
                        upload_id TEXT NOT NULL,
                        status TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS quality_variants (
                        slug TEXT NOT NULL,
                        quality TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        PRIMARY KEY (slug, quality)
                    )
                    """
                )
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
                await conn.execute("CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status)")
                await conn.commit()

            self._initialized = True
            logger.info(f"Job store initialized at {self.db_path}")

    @staticmethod
    def _to_json(model) -> str:
        return json.dumps(model.model_dump(mode="json"), ensure_ascii=False)

    @staticmethod
    async def _insert_video(conn: aiosqlite.Connection, video: Video):
        await conn.execute(
            """
            INSERT INTO videos (slug, upload_id, status, payload, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (video.slug, video.upload_id, video.status.value, JobStore._to_json(video),
             video.updated_at.isoformat()),
        )

    # =========================================================================
    # Jobs
    # =========================================================================

    async def create_upload(self, job: Job, video: Video):
        """Insert a new job and its placeholder video in one transaction."""
        await self.initialize()
        async with self._write_lock:
            async with aiosqlite.connect(self.db_path) as conn:
                try:
                    await conn.execute(
                        """
                        INSERT INTO jobs (upload_id, slug, status, payload, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (job.upload_id, job.slug, job.status.value, self._to_json(job),
                         job.updated_at.isoformat()),
                    )
                    await self._insert_video(conn, video)
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise
        logger.info(f"Created job {job.upload_id} for slug {job.slug}")

    async def get_job(self, upload_id: str) -> Optional[Job]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute("SELECT payload FROM jobs WHERE upload_id = ?", (upload_id,))
            row = await cursor.fetchone()
            await cursor.close()
        return Job(**json.loads(row[0])) if row else None

    async def get_job_by_slug(self, slug: str) -> Optional[Job]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute("SELECT payload FROM jobs WHERE slug = ?", (slug,))
            row = await cursor.fetchone()
            await cursor.close()
        return Job(**json.loads(row[0])) if row else None

    async def update_job(self, job: Job):
        """Persist the whole job row with a single keyed UPDATE."""
        await self.initialize()
        job.updated_at = datetime.utcnow()
        async with self._write_lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await conn.execute(
                    "UPDATE jobs SET status = ?, payload = ?, updated_at = ? WHERE upload_id = ?",
                    (job.status.value, self._to_json(job), job.updated_at.isoformat(), job.upload_id),
                )
                await conn.commit()

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """Return stored jobs, newest first, optionally filtered by status."""
        await self.initialize()
        query = "SELECT payload FROM jobs"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY updated_at DESC"

        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()

        jobs: List[Job] = []
        for (payload,) in rows:
            try:
                jobs.append(Job(**json.loads(payload)))
            except Exception as exc:
                logger.warning(f"Skipping invalid stored job payload: {exc}")
        return jobs

    async def delete_upload(self, upload_id: str):
        """Remove a job and its placeholder video, used to roll back a failed intake."""
        await self.initialize()
        async with self._write_lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await conn.execute("DELETE FROM videos WHERE upload_id = ?", (upload_id,))
                await conn.execute("DELETE FROM jobs WHERE upload_id = ?", (upload_id,))
                await conn.commit()

    async def mark_interrupted(self) -> int:
        """Fail every job left processing by a previous run. Returns the count."""
        stale = await self.list_jobs(JobStatus.PROCESSING)
        for job in stale:
            job.mark_failed(INTERRUPTED_MESSAGE, INTERRUPTED_CODE)
            await self.update_job(job)
            video = await self.get_video(job.slug)
            if video is not None and video.status == VideoStatus.PROCESSING:
                video.status = VideoStatus.FAILED
                await self.update_video(video)
        if stale:
            logger.warning(f"Marked {len(stale)} interrupted jobs as failed")
        return len(stale)

    # =========================================================================
    # Videos
    # =========================================================================

    async def get_video(self, slug: str) -> Optional[Video]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute("SELECT payload FROM videos WHERE slug = ?", (slug,))
            row = await cursor.fetchone()
            await cursor.close()
        return Video(**json.loads(row[0])) if row else None

    async def update_video(self, video: Video):
        await self.initialize()
        video.updated_at = datetime.utcnow()
        async with self._write_lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await conn.execute(
                    "UPDATE videos SET status = ?, payload = ?, updated_at = ? WHERE slug = ?",
                    (video.status.value, self._to_json(video), video.updated_at.isoformat(), video.slug),
                )
                await conn.commit()

    async def list_videos(self, status: Optional[VideoStatus] = VideoStatus.READY) -> List[Video]:
        """Return videos, newest first. Defaults to published videos only."""
        await self.initialize()
        query = "SELECT payload FROM videos"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        query += " ORDER BY updated_at DESC"

        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()

        videos: List[Video] = []
        for (payload,) in rows:
            try:
                videos.append(Video(**json.loads(payload)))
            except Exception as exc:
                logger.warning(f"Skipping invalid stored video payload: {exc}")
        return videos

    async def list_variants(self, slug: str) -> List[QualityVariant]:
        await self.initialize()
        async with aiosqlite.connect(self.db_path) as conn:
            cursor = await conn.execute(
                "SELECT payload FROM quality_variants WHERE slug = ? ORDER BY rowid", (slug,)
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [QualityVariant(**json.loads(payload)) for (payload,) in rows]

    async def commit_ready(self, job: Job, video: Video, variants: Sequence[QualityVariant]):
        """
        Publish a finished upload.

        Job, video and variant rows are written in one transaction; on any
        error nothing is visible and the caller may retry.
        """
        await self.initialize()
        now = datetime.utcnow()
        job.updated_at = now
        video.updated_at = now
        async with self._write_lock:
            async with aiosqlite.connect(self.db_path) as conn:
                try:
                    await conn.execute("DELETE FROM quality_variants WHERE slug = ?", (video.slug,))
                    for variant in variants:
                        await conn.execute(
                            "INSERT INTO quality_variants (slug, quality, payload) VALUES (?, ?, ?)",
                            (video.slug, variant.quality, self._to_json(variant)),
                        )
                    await conn.execute(
                        "UPDATE videos SET status = ?, payload = ?, updated_at = ? WHERE slug = ?",
                        (video.status.value, self._to_json(video), now.isoformat(), video.slug),
                    )
                    await conn.execute(
                        "UPDATE jobs SET status = ?, payload = ?, updated_at = ? WHERE upload_id = ?",
                        (job.status.value, self._to_json(job), now.isoformat(), job.upload_id),
                    )
                    await conn.commit()
                except Exception:
                    await conn.rollback()
                    raise

    async def delete_video(self, slug: str):
        """Delete a video and all its variant rows."""
        await self.initialize()
        async with self._write_lock:
            async with aiosqlite.connect(self.db_path) as conn:
                await conn.execute("DELETE FROM quality_variants WHERE slug = ?", (slug,))
                await conn.execute("DELETE FROM videos WHERE slug = ?", (slug,))
                await conn.commit()


_job_store: Optional[JobStore] = None


def get_job_store() -> JobStore:
    """Return singleton job store."""
    global _job_store
    if _job_store is None:
        settings = get_settings()
        db_path = Path(settings.data_dir) / "media_ingest.db"
        _job_store = JobStore(str(db_path))
    return _job_store
