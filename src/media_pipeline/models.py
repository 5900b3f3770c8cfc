"""Pydantic models for configuration and data validation."""

import os
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class ImageVariantConfig(BaseModel):
    """Resize/encode parameters for one image variant."""

    max_dimension: Optional[int] = Field(
        default=None, gt=0, description="Longest-side cap in pixels (None = original dimensions)"
    )
    quality: int = Field(default=85, ge=1, le=100, description="Encoder quality (JPEG/WEBP)")


class ImageProfileConfig(BaseModel):
    """Image variant set: thumbnail, preview, high."""

    thumbnail: ImageVariantConfig = Field(
        default_factory=lambda: ImageVariantConfig(max_dimension=300, quality=80)
    )
    preview: ImageVariantConfig = Field(
        default_factory=lambda: ImageVariantConfig(max_dimension=1080, quality=85)
    )
    high: ImageVariantConfig = Field(
        default_factory=lambda: ImageVariantConfig(max_dimension=None, quality=95)
    )
    preserve_formats: List[str] = Field(
        default=["JPEG", "PNG", "WEBP"],
        description="Pillow formats the high variant keeps; anything else is re-encoded as JPEG",
    )


class VideoVariantConfig(BaseModel):
    """Re-encode parameters for one video variant."""

    max_width: Optional[int] = Field(default=None, gt=0, description="Width cap (None = source)")
    max_height: Optional[int] = Field(default=None, gt=0, description="Height cap (None = source)")
    video_bitrate_kbps: int = Field(default=1000, gt=0, description="Target video bitrate")
    audio_bitrate_kbps: int = Field(default=128, gt=0, description="Target audio bitrate")


class VideoProfileConfig(BaseModel):
    """Video variant set plus the codec contract shared by preview and high."""

    thumbnail_width: int = Field(default=300, gt=0, description="Poster frame width in pixels")
    thumbnail_offset_s: float = Field(
        default=1.0, ge=0.0, description="Poster frame position (first frame if the clip is shorter)"
    )
    preview: VideoVariantConfig = Field(
        default_factory=lambda: VideoVariantConfig(
            max_width=1280, max_height=720, video_bitrate_kbps=1000, audio_bitrate_kbps=128
        )
    )
    high: VideoVariantConfig = Field(
        default_factory=lambda: VideoVariantConfig(video_bitrate_kbps=4000, audio_bitrate_kbps=192)
    )
    codec: str = Field(default="libx264", description="Video codec name")
    audio_codec: str = Field(default="aac", description="Audio codec name")
    pixel_format: str = Field(
        default="yuv420p", description="Pixel format (yuv420p for broad compatibility)"
    )
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="medium", description="Encoding speed preset (faster = larger files)")
    container: str = Field(default="mp4", description="Output container / file extension")


class RenderingConfig(BaseModel):
    """FFmpeg runner settings."""

    global_timeout_s: int = Field(
        default=1800,
        gt=0,
        description="Maximum duration for any FFmpeg operation in seconds (30 min default)",
    )
    no_progress_timeout_s: int = Field(
        default=120,
        gt=0,
        description="Timeout if no progress update in N seconds (stall detection)",
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = system temp dir)"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save FFmpeg logs and commands on failure for debugging"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )


class QueueConfig(BaseModel):
    """Durable queue and job record store settings."""

    db_path: str = Field(default="data/media_pipeline.db", description="SQLite database file")
    image_visibility_timeout_s: float = Field(
        default=30.0, gt=0, description="Lease length for image jobs"
    )
    video_visibility_timeout_s: float = Field(
        default=600.0, gt=0, description="Lease length for video jobs (must exceed worst-case encode)"
    )
    lease_wait_timeout_s: float = Field(
        default=2.0, ge=0, description="How long an idle worker blocks waiting for a message"
    )
    poll_interval_s: float = Field(default=0.5, gt=0, description="Queue polling interval")
    heartbeat_interval_s: float = Field(
        default=10.0, gt=0, description="How often a busy worker extends its lease"
    )


class RetryConfig(BaseModel):
    """Retry policy for retryable failures."""

    max_attempts: int = Field(default=3, ge=1, description="Leases before a retryable error fails the job")
    backoff_base_s: float = Field(default=5.0, ge=0, description="Delay before the first retry")
    backoff_factor: float = Field(default=2.0, ge=1.0, description="Multiplier per attempt")
    backoff_cap_s: float = Field(default=300.0, ge=0, description="Upper bound on retry delay")


class WorkerConfig(BaseModel):
    """Worker pool sizing."""

    workers: Optional[int] = Field(
        default=None, gt=0, description="Worker threads (None = CPU count)"
    )
    video_workers: Optional[int] = Field(
        default=None,
        gt=0,
        description="Max concurrent video transforms (None = no cap)",
    )
    scratch_dir: Optional[str] = Field(
        default=None, description="Parent of per-job scratch directories (None = system temp)"
    )

    def resolved_workers(self) -> int:
        return self.workers or os.cpu_count() or 1


class StorageConfig(BaseModel):
    """Object storage backend."""

    backend: Literal["local", "gcs"] = Field(default="local", description="Object store backend")
    bucket: str = Field(default="media", description="Bucket name")
    root_dir: str = Field(default="data/objects", description="Base directory for the local backend")
    project: Optional[str] = Field(default=None, description="GCP project for the gcs backend")
    url_prefix: str = Field(
        default="media://", description="Prefix of the opaque references handed back to callers"
    )
    cache_control: str = Field(
        default="public, max-age=31536000, immutable",
        description="Cache-Control for stored variants (immutable under their key)",
    )
    quota_bytes: Optional[int] = Field(
        default=None, gt=0, description="Byte quota for the local backend (None = unlimited)"
    )
    timeout_s: float = Field(default=60.0, gt=0, description="Per-upload timeout (gcs)")


class NotifierConfig(BaseModel):
    """Completion/failure event transport."""

    backend: Literal["log", "pubsub"] = Field(default="log", description="Notifier backend")
    project_id: Optional[str] = Field(default=None, description="GCP project for pubsub")
    topic: str = Field(default="media-events", description="Pub/Sub topic id")
    publish_timeout_s: float = Field(default=10.0, gt=0, description="Wait for publish ack")
    max_retries: int = Field(default=2, ge=0, description="Immediate retries after a failed publish")


IMAGE_MIME_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/heic",
    "image/heif",
]

VIDEO_MIME_TYPES = [
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
    "video/ogg",
]


class IntakeConfig(BaseModel):
    """Validation applied by the intake helper before enqueueing."""

    max_source_bytes: int = Field(
        default=100 * 1024 * 1024, gt=0, description="Reject uploads larger than this (100 MB)"
    )
    image_mime_types: List[str] = Field(default_factory=lambda: list(IMAGE_MIME_TYPES))
    video_mime_types: List[str] = Field(default_factory=lambda: list(VIDEO_MIME_TYPES))
    upload_dir: str = Field(
        default="data/uploads", description="Where intake stores raw uploads (temporary)"
    )


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: str = Field(default="INFO", description="Root log level")
    format: str = Field(
        default="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
        description="logging format string",
    )

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        """Validate the level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level


class MediaPipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    image: ImageProfileConfig = Field(default_factory=ImageProfileConfig)
    video: VideoProfileConfig = Field(default_factory=VideoProfileConfig)
    rendering: RenderingConfig = Field(default_factory=RenderingConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    notifier: NotifierConfig = Field(default_factory=NotifierConfig)
    intake: IntakeConfig = Field(default_factory=IntakeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _lease_covers_heartbeat(self) -> "MediaPipelineConfig":
        if self.queue.heartbeat_interval_s >= self.queue.image_visibility_timeout_s:
            raise ValueError("queue.heartbeat_interval_s must be shorter than the image visibility timeout")
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "MediaPipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "MediaPipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db_path") is not None:
            config_dict["queue"]["db_path"] = cli_args["db_path"]
        if cli_args.get("workers") is not None:
            config_dict["worker"]["workers"] = cli_args["workers"]
        if cli_args.get("max_attempts") is not None:
            config_dict["retry"]["max_attempts"] = cli_args["max_attempts"]
        if cli_args.get("storage_backend") is not None:
            config_dict["storage"]["backend"] = cli_args["storage_backend"]
        if cli_args.get("storage_root") is not None:
            config_dict["storage"]["root_dir"] = cli_args["storage_root"]
        if cli_args.get("notifier_backend") is not None:
            config_dict["notifier"]["backend"] = cli_args["notifier_backend"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return MediaPipelineConfig.from_dict(config_dict)
