"""
Job Queue Service
Upload workers fed from a bounded backlog
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from ..utils.logger import get_logger

logger = get_logger()

UploadProcessor = Callable[[str], Awaitable[None]]

DEFAULT_WORKERS = 1
DEFAULT_BACKLOG = 10

QUEUED = "queued"
ACTIVE = "active"


class JobQueue:
    """
    Runs the processor once per upload id on a fixed number of workers.

    Each worker holds an upload for its entire pipeline run, so at most
    `worker_count` uploads are transcoding at once. Uploads beyond the
    backlog are refused rather than buffered in memory.
    """

    def __init__(self, worker_count: int = DEFAULT_WORKERS, max_pending: int = DEFAULT_BACKLOG):
        self._processor: Optional[UploadProcessor] = None
        self._worker_count = worker_count
        self._max_pending = max_pending
        self._backlog: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._workers: Dict[str, asyncio.Task] = {}
        self._states: Dict[str, str] = {}
        self._processed = 0
        self._crashed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def configure(self, processor: UploadProcessor, worker_count: int, max_pending: int):
        """Set the processor and capacity; ignored once workers are running"""
        if self.running:
            logger.warning("Job queue already running; configuration unchanged")
            return
        self._processor = processor
        self._worker_count = max(1, worker_count)
        self._max_pending = max(1, max_pending)
        self._backlog = asyncio.Queue(maxsize=self._max_pending)

    async def start(self):
        if self.running:
            return
        if self._processor is None:
            raise RuntimeError("JobQueue processor is not configured")

        for number in range(1, self._worker_count + 1):
            name = f"upload-worker-{number}"
            self._workers[name] = asyncio.create_task(self._work(name), name=name)
        logger.info(f"Job queue started with {self._worker_count} workers, backlog {self._max_pending}")

    async def stop(self) -> List[str]:
        """
        Cancel the workers and drop the backlog.

        Returns:
            Upload ids that were waiting and never started. Their jobs stay
            processing in the store and are recovered on the next start.
        """
        if not self.running:
            return []

        workers = list(self._workers.values())
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        dropped = [upload_id for upload_id, state in self._states.items() if state == QUEUED]
        self._states.clear()
        while not self._backlog.empty():
            self._backlog.get_nowait()
            self._backlog.task_done()

        if dropped:
            logger.warning(f"Job queue stopped with {len(dropped)} uploads not started: {', '.join(dropped)}")
        else:
            logger.info("Job queue stopped")
        return dropped

    def enqueue(self, upload_id: str) -> bool:
        """
        Add an upload to the backlog.

        Returns False when the backlog is full. An id that is already
        waiting or running is accepted without being added twice.

        Raises:
            RuntimeError: workers are not running
        """
        if not self.running:
            raise RuntimeError("Job queue is not running")
        if upload_id in self._states:
            return True

        try:
            self._backlog.put_nowait(upload_id)
        except asyncio.QueueFull:
            logger.warning(f"Backlog full ({self._max_pending}), refusing upload {upload_id}")
            return False

        self._states[upload_id] = QUEUED
        logger.debug(f"Queued upload {upload_id}, {self._backlog.qsize()} waiting")
        return True

    def can_accept(self) -> bool:
        return self.running and not self._backlog.full()

    def is_queued(self, upload_id: str) -> bool:
        return self._states.get(upload_id) == QUEUED

    def is_active(self, upload_id: str) -> bool:
        return self._states.get(upload_id) == ACTIVE

    def stats(self) -> dict:
        active = sum(1 for state in self._states.values() if state == ACTIVE)
        return {
            "pending": self._backlog.qsize(),
            "active": active,
            "max_pending": self._max_pending,
            "workers": self._worker_count,
            "running": self.running,
            "processed": self._processed,
            "crashed": self._crashed,
        }

    async def join(self):
        """Block until the backlog is empty and every taken upload has finished."""
        await self._backlog.join()

    async def _work(self, name: str):
        while True:
            upload_id = await self._backlog.get()
            self._states[upload_id] = ACTIVE
            try:
                await self._processor(upload_id)  # type: ignore[misc]
                self._processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._crashed += 1
                logger.exception(f"{name} crashed on upload {upload_id}: {exc}")
            finally:
                self._states.pop(upload_id, None)
                self._backlog.task_done()


_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Return singleton job queue."""
    global _job_queue
    if _job_queue is None:
        _job_queue = JobQueue()
    return _job_queue
