"""Utils package initialization"""
from .logger import setup_logger, get_logger
from .exceptions import (
    MediaIngestError,
    ValidationReason,
    UploadValidationError,
    TranscoderError,
    ProbeError,
    FrameExtractionError,
    EncodeError,
    ProcessTimeoutError,
    StorageError,
    DiskSpaceError,
    PathTraversalError,
    JobNotFoundError,
    JobCancelledError,
    InvalidJobStateError,
    IllegalStageTransitionError,
    QueueFullError,
    VideoNotFoundError
)
from .retry import RetryPolicy
from .cancellation import CancellationToken

__all__ = [
    "setup_logger",
    "get_logger",
    "MediaIngestError",
    "ValidationReason",
    "UploadValidationError",
    "TranscoderError",
    "ProbeError",
    "FrameExtractionError",
    "EncodeError",
    "ProcessTimeoutError",
    "StorageError",
    "DiskSpaceError",
    "PathTraversalError",
    "JobNotFoundError",
    "JobCancelledError",
    "InvalidJobStateError",
    "IllegalStageTransitionError",
    "QueueFullError",
    "VideoNotFoundError",
    "RetryPolicy",
    "CancellationToken"
]
