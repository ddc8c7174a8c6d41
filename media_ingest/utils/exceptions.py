"""
Custom Exceptions for MediaIngest
Structured error handling with recovery hints and retry classification
"""

from enum import Enum
from typing import Optional, Dict, Any


class MediaIngestError(Exception):
    """Base exception for all MediaIngest errors"""

    # Pipeline retry classification; retry_limit None means "use the policy's max_retries"
    retryable: bool = False
    retry_limit: Optional[int] = None
    http_status: int = 500
    user_message: str = "Video processing failed. Please try again or contact support."

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        recoverable: bool = False,
        recovery_hint: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to JSON-serializable dict"""
        return {
            "error": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "recovery_hint": self.recovery_hint,
            "details": self.details
        }


# ============================================================================
# Upload Validation Errors
# ============================================================================

class ValidationReason(str, Enum):
    """Why an upload was rejected at intake"""
    TOO_LARGE = "too_large"
    UNSUPPORTED_FORMAT = "unsupported_format"
    EMPTY_FILE = "empty_file"


class UploadValidationError(MediaIngestError):
    """Upload rejected before any processing"""

    http_status = 400

    def __init__(self, reason: ValidationReason, message: str, **kwargs):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            recoverable=True,
            recovery_hint="Upload a non-empty video file in a supported format within the size limit.",
            details={"reason": reason.value, **kwargs}
        )
        self.reason = reason


# ============================================================================
# Transcoding Errors
# ============================================================================

class TranscoderError(MediaIngestError):
    """Base for failures of the external transcoding tool"""

    retryable = True


class ProbeError(TranscoderError):
    """ffprobe failed or produced unusable output"""

    user_message = "Could not read video metadata. The file may be corrupted."

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            code="PROBE_ERROR",
            recoverable=True,
            recovery_hint="Check the file is a valid video container.",
            details={"path": path, **kwargs}
        )


class FrameExtractionError(TranscoderError):
    """Thumbnail or poster frame could not be extracted"""

    user_message = "Could not generate preview images for this video."

    def __init__(self, message: str, output_path: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            code="FRAME_EXTRACTION_ERROR",
            recoverable=True,
            recovery_hint="Ensure FFmpeg is installed and the video stream is decodable.",
            details={"output_path": output_path, **kwargs}
        )


class EncodeError(TranscoderError):
    """Segmented stream encode failed"""

    user_message = "Video transcoding failed. The file may use an unsupported codec."

    def __init__(
        self,
        message: str,
        quality: Optional[str] = None,
        exit_code: Optional[int] = None,
        stderr_tail: Optional[str] = None
    ):
        super().__init__(
            message=message,
            code="ENCODE_ERROR",
            recoverable=True,
            recovery_hint="Check the server logs for the encoder output.",
            details={"quality": quality, "exit_code": exit_code}
        )
        self.quality = quality
        self.exit_code = exit_code
        # Server-side only; never copied into user-facing fields
        self.stderr_tail = stderr_tail


class ProcessTimeoutError(TranscoderError):
    """External tool exceeded its time budget and was killed"""

    user_message = "Video processing took too long and was stopped."

    def __init__(self, operation: str, timeout_seconds: float):
        super().__init__(
            message=f"{operation} timed out after {timeout_seconds:.0f}s",
            code="PROCESS_TIMEOUT",
            recoverable=True,
            recovery_hint="Try a shorter video or raise the timeout settings.",
            details={"operation": operation, "timeout_seconds": timeout_seconds}
        )


# ============================================================================
# Storage Errors
# ============================================================================

class StorageError(MediaIngestError):
    """Disk full, permission denied or a failed move"""

    retryable = True
    retry_limit = 1
    user_message = "A storage error occurred while saving the video."

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            code="STORAGE_ERROR",
            recoverable=True,
            recovery_hint="Check free disk space and permissions on the storage root.",
            details={"path": path, **kwargs}
        )


class DiskSpaceError(StorageError):
    """Insufficient disk space"""

    user_message = "Insufficient disk space. Please try again later."

    def __init__(self, path: str, required_bytes: int, available_bytes: int):
        super().__init__(
            message=(
                f"Insufficient disk space at {path}: need {required_bytes} bytes, "
                f"have {available_bytes}"
            ),
            path=path,
            required_bytes=required_bytes,
            available_bytes=available_bytes,
        )


class PathTraversalError(MediaIngestError):
    """A path component tried to escape the storage root"""

    http_status = 400
    user_message = "Invalid file name."

    def __init__(self, component: str):
        super().__init__(
            message=f"Unsafe path component: {component!r}",
            code="PATH_TRAVERSAL",
            recoverable=False,
            details={"component": component}
        )


# ============================================================================
# Job Errors
# ============================================================================

class JobNotFoundError(MediaIngestError):
    """Job not found"""

    http_status = 404

    def __init__(self, upload_id: str):
        super().__init__(
            message=f"Upload not found: {upload_id}",
            code="JOB_NOT_FOUND",
            recoverable=False,
            details={"upload_id": upload_id}
        )


class JobCancelledError(MediaIngestError):
    """Job was cancelled"""

    user_message = "Cancelled"

    def __init__(self, upload_id: str):
        super().__init__(
            message=f"Job was cancelled: {upload_id}",
            code="CANCELLED",
            recoverable=False,
            details={"upload_id": upload_id}
        )


class InvalidJobStateError(MediaIngestError):
    """Operation not allowed in the job's current state"""

    http_status = 409

    def __init__(self, upload_id: str, status: str, operation: str):
        super().__init__(
            message=f"Cannot {operation} upload {upload_id} with status {status}",
            code="INVALID_JOB_STATE",
            recoverable=False,
            details={"upload_id": upload_id, "status": status, "operation": operation}
        )


class IllegalStageTransitionError(MediaIngestError):
    """Attempted a stage transition that is not on the ladder"""

    def __init__(self, from_stage: str, to_stage: str, reason: Optional[str] = None):
        super().__init__(
            message=f"Illegal stage transition {from_stage} -> {to_stage}"
            + (f" ({reason})" if reason else ""),
            code="ILLEGAL_STAGE_TRANSITION",
            recoverable=False,
            details={"from": from_stage, "to": to_stage, "reason": reason}
        )


class QueueFullError(MediaIngestError):
    """Worker queue has no free pending capacity"""

    http_status = 429

    def __init__(self, max_pending: int):
        super().__init__(
            message="Processing queue is full. Try again in a few minutes.",
            code="QUEUE_FULL",
            recoverable=True,
            recovery_hint="Wait for running uploads to finish and retry.",
            details={"max_pending": max_pending}
        )


# ============================================================================
# Video Errors
# ============================================================================

class VideoNotFoundError(MediaIngestError):
    """Published video not found"""

    http_status = 404

    def __init__(self, slug: str):
        super().__init__(
            message=f"Video not found: {slug}",
            code="VIDEO_NOT_FOUND",
            recoverable=False,
            details={"slug": slug}
        )
