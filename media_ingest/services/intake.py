"""
Upload Intake
Validates, stages and registers a new upload, then hands it to the worker pool
"""

import re
import uuid
from pathlib import Path
from typing import AsyncIterator, Optional

from pydantic import BaseModel

from ..config import Settings, get_settings
from ..models.job import Job
from ..models.video import Video
from ..utils.exceptions import QueueFullError, StorageError
from ..utils.logger import get_logger
from .job_queue import JobQueue, get_job_queue
from .job_store import JobStore, get_job_store
from .storage import StorageManager, get_storage_manager, safe_extension
from .validator import validate_upload

logger = get_logger()

SLUG_MAX_LENGTH = 50
SLUG_SUFFIX_LENGTH = 8
DEFAULT_SLUG_BASE = "video"


def generate_slug(title: str) -> str:
    """
    URL-safe slug from a title plus a random 8-hex suffix.

    Lowercase ASCII letters and digits are kept, spaces, dashes and
    underscores become single dashes, anything else becomes "_".
    """
    chars = []
    for char in title.lower():
        if ("a" <= char <= "z") or ("0" <= char <= "9"):
            chars.append(char)
        elif char in " -_":
            chars.append("-")
        else:
            chars.append("_")
    base = re.sub(r"-{2,}", "-", "".join(chars)).strip("-")
    base = base[:SLUG_MAX_LENGTH] or DEFAULT_SLUG_BASE
    return f"{base}-{uuid.uuid4().hex[:SLUG_SUFFIX_LENGTH]}"


class IntakeReceipt(BaseModel):
    """Returned to the client once the upload is queued"""
    upload_id: str
    slug: str
    progress_url: str


class UploadIntake:
    """Single entry point for new uploads"""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        storage: Optional[StorageManager] = None,
        queue: Optional[JobQueue] = None,
        settings: Optional[Settings] = None
    ):
        self.store = store or get_job_store()
        self.storage = storage or get_storage_manager()
        self.queue = queue or get_job_queue()
        self.settings = settings or get_settings()

    async def accept(
        self,
        chunks: AsyncIterator[bytes],
        filename: Optional[str],
        content_type: Optional[str],
        title: str,
        description: Optional[str] = None,
        is_public: bool = False,
        declared_size: Optional[int] = None
    ) -> IntakeReceipt:
        """
        Stage an upload and enqueue it for processing.

        Nothing survives a failure: the temp directory, the job row and the
        placeholder video are created together or not at all.

        Raises:
            UploadValidationError: bad format, empty file or over the size limit
            QueueFullError: no pending capacity left
            StorageError: staging or persistence failed
        """
        max_bytes = self.settings.max_upload_bytes
        extension = safe_extension(filename)

        # Size unknown until streamed; format is checked before writing anything
        validate_upload(content_type, extension, declared_size if declared_size is not None else 1, max_bytes)

        upload_id = uuid.uuid4().hex
        slug = generate_slug(title)
        source_path, size = await self.storage.stage_stream(
            chunks, upload_id, extension, max_bytes, expected_bytes=declared_size
        )

        try:
            validate_upload(content_type, extension, size, max_bytes)

            job = Job(
                upload_id=upload_id,
                slug=slug,
                title=title,
                description=description,
                is_public=is_public,
                original_filename=Path((filename or "").replace("\\", "/")).name,
                content_type=content_type,
                file_size=size,
                source_path=str(source_path),
                qualities=list(self.settings.quality_ladder),
            )
            video = Video(
                slug=slug,
                upload_id=upload_id,
                title=title,
                description=description,
                is_public=is_public,
            )
            try:
                await self.store.create_upload(job, video)
            except Exception as exc:
                raise StorageError(f"Failed to register upload: {exc}") from exc

            try:
                if not self.queue.enqueue(upload_id):
                    raise QueueFullError(self.settings.max_pending_jobs)
            except BaseException:
                await self.store.delete_upload(upload_id)
                raise
        except BaseException:
            self.storage.delete(self.storage.temp_dir(upload_id))
            raise

        logger.info(f"Accepted upload {upload_id} ({size} bytes) as {slug}")
        return IntakeReceipt(
            upload_id=upload_id,
            slug=slug,
            progress_url=f"/media/upload/{upload_id}/progress",
        )
