"""Services package initialization"""
from .storage import StorageManager, get_storage_manager
from .transcoder import FFmpegTranscoder, TranscodingEngine, EncodeResult, get_transcoder
from .validator import validate_upload
from .job_store import JobStore, get_job_store
from .job_queue import JobQueue, get_job_queue
from .metrics import ProcessingMetrics, AuditLogger, get_metrics, get_audit_logger
from .pipeline import PipelineOrchestrator, get_pipeline
from .progress import ProgressReporter, ProgressSnapshot
from .intake import UploadIntake, IntakeReceipt, generate_slug
from .cleanup import TempJanitor, get_janitor

__all__ = [
    "StorageManager",
    "get_storage_manager",
    "FFmpegTranscoder",
    "TranscodingEngine",
    "EncodeResult",
    "get_transcoder",
    "validate_upload",
    "JobStore",
    "get_job_store",
    "JobQueue",
    "get_job_queue",
    "ProcessingMetrics",
    "AuditLogger",
    "get_metrics",
    "get_audit_logger",
    "PipelineOrchestrator",
    "get_pipeline",
    "ProgressReporter",
    "ProgressSnapshot",
    "UploadIntake",
    "IntakeReceipt",
    "generate_slug",
    "TempJanitor",
    "get_janitor"
]
