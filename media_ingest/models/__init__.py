"""Models package initialization"""
from .job import Job, JobStatus
from .stage import Stage, StageKind
from .video import Video, VideoStatus, VideoMetadata, QualityVariant
from .quality import QualityPreset, QUALITY_PRESETS

__all__ = [
    "Job",
    "JobStatus",
    "Stage",
    "StageKind",
    "Video",
    "VideoStatus",
    "VideoMetadata",
    "QualityVariant",
    "QualityPreset",
    "QUALITY_PRESETS"
]
