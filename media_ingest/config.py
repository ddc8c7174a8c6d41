"""
MediaIngest Configuration
Centralized settings management using Pydantic Settings
"""

from pydantic_settings import BaseSettings, NoDecode
from pydantic import Field, field_validator
from typing import Annotated, List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "MediaIngest"
    debug: bool = False
    app_version: str = "0.4.0"

    # ==========================================================================
    # Upload Intake
    # ==========================================================================
    max_upload_size_mb: int = Field(default=2048, ge=1, le=20480, description="Max upload file size in MB")

    # ==========================================================================
    # Worker Pool & Retry Policy
    # ==========================================================================
    job_worker_concurrency: int = Field(default=4, ge=1, le=16, description="Concurrent transcode workers")
    max_pending_jobs: int = Field(default=100, ge=1, le=1000, description="Max queued pending jobs")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries per stage after the first attempt")
    retry_base_delay: float = Field(default=1.0, ge=0, description="Backoff base delay in seconds")
    retry_max_delay: float = Field(default=60.0, ge=0, description="Backoff delay cap in seconds")

    # ==========================================================================
    # FFmpeg
    # ==========================================================================
    ffmpeg_path: str = Field(default="ffmpeg", description="Path to the ffmpeg binary")
    ffprobe_path: str = Field(default="ffprobe", description="Path to the ffprobe binary")
    ffmpeg_threads: int = Field(default=0, ge=0, le=64, description="Encoder threads (0 = auto)")
    ffmpeg_preset: str = Field(default="medium", description="libx264 preset")

    # ==========================================================================
    # Transcoding Ladder
    # ==========================================================================
    quality_ladder: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["1080p", "720p", "480p", "360p"],
        description="Ordered quality presets to transcode"
    )
    auto_quality_selection: bool = Field(default=False, description="Drop presets larger than the source")
    segment_duration: int = Field(default=6, ge=1, le=60, description="HLS segment length in seconds")

    # ==========================================================================
    # Stage Timeouts (seconds)
    # ==========================================================================
    probe_timeout: float = Field(default=30.0, gt=0)
    frame_timeout: float = Field(default=30.0, gt=0)
    encode_timeout_factor: float = Field(default=10.0, gt=0, description="Encode timeout per second of source")
    encode_timeout_min: float = Field(default=60.0, gt=0)
    encode_timeout_max: float = Field(default=7200.0, gt=0)

    # ==========================================================================
    # Thumbnail & Poster
    # ==========================================================================
    thumbnail_position: float = Field(default=0.10, ge=0, le=1)
    poster_position: float = Field(default=0.25, ge=0, le=1)
    thumbnail_width: int = Field(default=320, ge=16, le=3840)
    poster_width: int = Field(default=1280, ge=16, le=3840)
    image_quality: int = Field(default=2, ge=1, le=31, description="JPEG quality passed to -q:v")

    # ==========================================================================
    # Retention
    # ==========================================================================
    failed_temp_retention_hours: float = Field(default=24.0, ge=0)
    cleanup_interval_seconds: int = Field(default=3600, ge=1)

    # ==========================================================================
    # Security
    # ==========================================================================
    cors_allowed_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:8000",
            "http://127.0.0.1:8000"
        ],
        description="Allowed CORS origins"
    )

    # ==========================================================================
    # Paths
    # ==========================================================================
    storage_root: str = Field(default="media", description="Root for temp and final media storage")
    data_dir: str = Field(default="data", description="Persistent application data directory")
    media_url_prefix: str = Field(default="/media/files", description="URL prefix for published assets")

    @field_validator("cors_allowed_origins", "quality_ladder", mode="before")
    @classmethod
    def parse_comma_list(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("quality_ladder")
    @classmethod
    def check_quality_names(cls, value):
        from .models.quality import QUALITY_PRESETS

        unknown = [name for name in value if name not in QUALITY_PRESETS]
        if unknown:
            raise ValueError(f"Unknown quality presets: {', '.join(unknown)}")
        if len(set(value)) != len(value):
            raise ValueError("quality_ladder contains duplicates")
        return value

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
