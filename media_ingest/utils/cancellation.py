"""
Cancellation Token
Lets an operator stop a running job, including its live subprocess
"""

import asyncio
import subprocess
import threading
from typing import Optional

from .exceptions import JobCancelledError
from .logger import get_logger

logger = get_logger()


class CancellationToken:
    """
    Shared between the event loop (which cancels) and the transcoder
    thread pool (which attaches the running process).
    """

    def __init__(self, upload_id: str):
        self.upload_id = upload_id
        self._cancelled = threading.Event()
        self._wakeup = asyncio.Event()
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Flag the token and kill the attached process, if any. Call from the event loop."""
        self._cancelled.set()
        self._wakeup.set()
        with self._lock:
            process = self._process
        if process is not None and process.poll() is None:
            logger.info(f"Killing subprocess {process.pid} for cancelled upload {self.upload_id}")
            process.kill()

    def attach(self, process: subprocess.Popen):
        """Register the running process; kills it at once if already cancelled"""
        with self._lock:
            self._process = process
        if self.cancelled and process.poll() is None:
            process.kill()

    def detach(self):
        with self._lock:
            self._process = None

    def raise_if_cancelled(self):
        if self.cancelled:
            raise JobCancelledError(self.upload_id)

    async def sleep(self, seconds: float):
        """Sleep that ends early, with JobCancelledError, when the token is cancelled"""
        self.raise_if_cancelled()
        if seconds > 0:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        self.raise_if_cancelled()
