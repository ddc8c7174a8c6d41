"""
Job Data Models
Represents one upload's trip through the processing pipeline
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum
from datetime import datetime, timedelta
import uuid

from .stage import Stage, UPLOADED, check_transition
from .video import QualityVariant, VideoMetadata

# Minimum processing time before an estimate is reported
ETA_MIN_ELAPSED_SECONDS = 5.0


class JobStatus(str, Enum):
    """Job processing status"""
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Job(BaseModel):
    """Complete job model with all fields"""
    upload_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    slug: str
    title: str
    description: Optional[str] = None
    is_public: bool = False
    original_filename: str
    content_type: Optional[str] = None
    file_size: int = 0
    source_path: str
    qualities: List[str] = Field(default_factory=list)
    stage: Stage = UPLOADED
    progress: int = Field(default=0, ge=0, le=100)
    status: JobStatus = JobStatus.PROCESSING
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    attempt_count: int = Field(default=0, ge=0)
    metadata: Optional[VideoMetadata] = None
    variants: List[QualityVariant] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == JobStatus.PROCESSING

    def enter_stage(self, stage: Stage):
        """Move to the next ladder stage; anything else raises IllegalStageTransitionError"""
        check_transition(self.stage, stage, self.qualities)
        self.stage = stage
        self.attempt_count = 0

    def record_progress(self, progress: int, now: Optional[datetime] = None):
        """Progress only moves forward; each advance refreshes the completion estimate"""
        progress = min(100, progress)
        if progress <= self.progress:
            return
        self.progress = progress
        self.estimated_completion = estimate_completion(self.started_at, progress, now or datetime.utcnow())

    def mark_failed(self, message: str, code: str):
        self.status = JobStatus.FAILED
        self.last_error = message
        self.error_code = code
        self.estimated_completion = None
        self.completed_at = datetime.utcnow()

    def mark_succeeded(self):
        self.status = JobStatus.SUCCEEDED
        self.progress = 100
        self.last_error = None
        self.error_code = None
        self.attempt_count = 0
        self.estimated_completion = None
        self.completed_at = datetime.utcnow()


def estimate_completion(started_at: Optional[datetime], progress: int, now: datetime) -> Optional[datetime]:
    """
    Linear extrapolation of the finish time from the progress made so far.

    None until processing has run for ETA_MIN_ELAPSED_SECONDS and while
    progress is 0 or 100.
    """
    if started_at is None or progress <= 0 or progress >= 100:
        return None
    elapsed = (now - started_at).total_seconds()
    if elapsed < ETA_MIN_ELAPSED_SECONDS:
        return None
    remaining = elapsed * (100 - progress) / progress
    return now + timedelta(seconds=remaining)
