"""
Video Data Models
Published video record, its quality variants and probed metadata
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from enum import Enum
from datetime import datetime


class VideoStatus(str, Enum):
    """Visibility state of a video record"""
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class VideoMetadata(BaseModel):
    """Technical metadata read from the source by ffprobe"""
    duration: float = Field(ge=0)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    frame_rate: float = 30.0
    bitrate: Optional[int] = None
    video_codec: str = "unknown"
    audio_codec: Optional[str] = None
    file_size: int = 0
    format_name: str = "unknown"


class QualityVariant(BaseModel):
    """One transcoded rendition with its segmented-stream manifest"""
    quality: str
    width: int
    height: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int
    bandwidth: int
    segment_count: int = Field(ge=1)
    segment_duration: int
    manifest_path: str = Field(description="Manifest path relative to the video's final directory")
    manifest_url: str

    model_config = {"frozen": True}


class Video(BaseModel):
    """
    Durable output of the pipeline.

    Created as a placeholder at intake and filled in stage by stage.
    External consumers only ever read records with status ready.
    """
    slug: str
    upload_id: str
    title: str
    description: Optional[str] = None
    is_public: bool = False
    status: VideoStatus = VideoStatus.PROCESSING
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    bitrate: Optional[int] = None
    thumbnail_url: Optional[str] = None
    poster_url: Optional[str] = None
    master_manifest_url: Optional[str] = None
    quality_manifests: List[str] = Field(default_factory=list)
    variants: List[QualityVariant] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    ready_at: Optional[datetime] = None

    def apply_metadata(self, metadata: VideoMetadata):
        self.duration = metadata.duration
        self.width = metadata.width
        self.height = metadata.height
        self.frame_rate = metadata.frame_rate
        self.video_codec = metadata.video_codec
        self.audio_codec = metadata.audio_codec
        self.bitrate = metadata.bitrate
