"""
Processing Metrics
In-memory counters, per-stage timings and an audit trail of pipeline events
"""

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from ..models.job import Job
from ..utils.logger import get_logger

logger = get_logger()

RECENT_UPLOADS_LIMIT = 100
AUDIT_ENTRIES_LIMIT = 1000


@dataclass
class StageStats:
    """Timing and outcome counts for one stage label"""
    count: int = 0
    failures: int = 0
    total_seconds: float = 0.0
    min_seconds: Optional[float] = None
    max_seconds: float = 0.0

    @property
    def avg_seconds(self) -> float:
        return self.total_seconds / self.count if self.count else 0.0

    def add(self, seconds: float, success: bool):
        self.count += 1
        if not success:
            self.failures += 1
        self.total_seconds += seconds
        self.min_seconds = seconds if self.min_seconds is None else min(self.min_seconds, seconds)
        self.max_seconds = max(self.max_seconds, seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "failures": self.failures,
            "avg_seconds": round(self.avg_seconds, 3),
            "min_seconds": round(self.min_seconds or 0.0, 3),
            "max_seconds": round(self.max_seconds, 3),
        }


@dataclass
class UploadRecord:
    """Outcome of one finished pipeline run"""
    upload_id: str
    slug: str
    outcome: str
    processing_seconds: float
    file_size: int
    qualities: List[str]
    error_code: Optional[str] = None
    finished_at: datetime = field(default_factory=datetime.utcnow)


class ProcessingMetrics:
    """
    Aggregates pipeline outcomes for the system status endpoint.

    Lives only in memory and restarts from zero with the process.
    """

    def __init__(self, recent_limit: int = RECENT_UPLOADS_LIMIT):
        self.successful_uploads = 0
        self.failed_uploads = 0
        self.cancelled_uploads = 0
        self.total_bytes_processed = 0
        self.total_processing_seconds = 0.0
        self.stage_timings: Dict[str, StageStats] = {}
        self.error_counts: Dict[str, int] = {}
        self.recent_uploads: Deque[UploadRecord] = deque(maxlen=recent_limit)

    @property
    def total_uploads(self) -> int:
        return self.successful_uploads + self.failed_uploads + self.cancelled_uploads

    def record_stage(self, label: str, seconds: float, success: bool):
        self.stage_timings.setdefault(label, StageStats()).add(seconds, success)

    def record_success(self, job: Job, seconds: float):
        self.successful_uploads += 1
        self.total_bytes_processed += job.file_size
        self.total_processing_seconds += seconds
        self._remember(job, "succeeded", seconds)

    def record_failure(self, job: Job, seconds: float, error_code: str):
        self.failed_uploads += 1
        self.total_processing_seconds += seconds
        self.error_counts[error_code] = self.error_counts.get(error_code, 0) + 1
        self._remember(job, "failed", seconds, error_code)

    def record_cancellation(self, job: Job, seconds: float = 0.0):
        self.cancelled_uploads += 1
        self._remember(job, "cancelled", seconds, job.error_code)

    def _remember(self, job: Job, outcome: str, seconds: float, error_code: Optional[str] = None):
        self.recent_uploads.append(UploadRecord(
            upload_id=job.upload_id,
            slug=job.slug,
            outcome=outcome,
            processing_seconds=seconds,
            file_size=job.file_size,
            qualities=list(job.qualities),
            error_code=error_code,
        ))

    def success_rate(self) -> float:
        return self.successful_uploads / self.total_uploads if self.total_uploads else 0.0

    def failure_rate(self) -> float:
        return self.failed_uploads / self.total_uploads if self.total_uploads else 0.0

    def avg_processing_seconds(self) -> float:
        finished = self.successful_uploads + self.failed_uploads
        return self.total_processing_seconds / finished if finished else 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "total_uploads": self.total_uploads,
            "successful_uploads": self.successful_uploads,
            "failed_uploads": self.failed_uploads,
            "cancelled_uploads": self.cancelled_uploads,
            "success_rate": round(self.success_rate(), 4),
            "failure_rate": round(self.failure_rate(), 4),
            "total_bytes_processed": self.total_bytes_processed,
            "avg_processing_seconds": round(self.avg_processing_seconds(), 3),
            "stages": {label: stats.to_dict() for label, stats in self.stage_timings.items()},
            "errors": dict(self.error_counts),
        }


class Timer:
    """Monotonic stopwatch"""

    def __init__(self):
        self._started = time.monotonic()

    def elapsed(self) -> float:
        return time.monotonic() - self._started


@dataclass
class AuditEntry:
    event: str
    upload_id: str
    slug: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)


class AuditLogger:
    """Bounded trail of pipeline events, also written to the application log"""

    def __init__(self, limit: int = AUDIT_ENTRIES_LIMIT):
        self._entries: Deque[AuditEntry] = deque(maxlen=limit)

    def log(self, event: str, upload_id: str, slug: str, **details) -> AuditEntry:
        entry = AuditEntry(event=event, upload_id=upload_id, slug=slug, details=details)
        self._entries.append(entry)
        logger.info(f"[audit] {event} upload={upload_id} slug={slug} {details or ''}".rstrip())
        return entry

    def recent_entries(self, limit: int = 50) -> List[AuditEntry]:
        """Newest first"""
        return list(reversed(self._entries))[:limit]

    def entries_for_upload(self, upload_id: str) -> List[AuditEntry]:
        """Oldest first"""
        return [entry for entry in self._entries if entry.upload_id == upload_id]


_metrics: Optional[ProcessingMetrics] = None
_audit_logger: Optional[AuditLogger] = None


def get_metrics() -> ProcessingMetrics:
    """Return singleton metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = ProcessingMetrics()
    return _metrics


def get_audit_logger() -> AuditLogger:
    """Return singleton audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
