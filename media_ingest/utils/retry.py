"""
Stage Retry Policy
Exponential backoff and error classification for pipeline stages
"""

import random
from dataclasses import dataclass
from typing import Optional

from .exceptions import MediaIngestError, JobCancelledError


@dataclass(frozen=True)
class RetryPolicy:
    """
    Per-stage retry budget with exponential backoff

    Args:
        max_retries: Retries allowed after the first attempt
        base_delay: Delay unit in seconds
        max_delay: Cap for any single delay
        exponential_base: Growth factor between consecutive retries
        jitter: Scale each delay by a random factor in [0.5, 1.5)
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False

    def retry_limit_for(self, error: BaseException) -> Optional[int]:
        """
        How many retries `error` may consume, or None if it is permanent.

        Only MediaIngestError subclasses flagged retryable are retried; a
        class-level retry_limit (e.g. storage errors) can lower the budget
        but never raise it above max_retries.
        """
        if isinstance(error, JobCancelledError):
            return None
        if not isinstance(error, MediaIngestError) or not error.retryable:
            return None
        if error.retry_limit is None:
            return self.max_retries
        return min(error.retry_limit, self.max_retries)

    def should_retry(self, error: BaseException, attempt_count: int) -> bool:
        """True if a stage that has already failed `attempt_count` times may run again"""
        limit = self.retry_limit_for(error)
        return limit is not None and attempt_count < limit

    def delay_for(self, attempt_count: int) -> float:
        """Seconds to wait before retry number `attempt_count` (1-based)"""
        delay = min(self.base_delay * (self.exponential_base ** attempt_count), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return delay
