import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_POSITIVE_DEFAULTS = {
    "job_slot_wait_interval_ms": 250,
    "job_queue_timeout_ms": 600_000,
    "gcs_upload_high_water_mark": 262_144,
    "transcode_stream_high_water_mark": 262_144,
    "egress_buffer_chunks": 4,
    "max_concurrent_jobs": 1,
}


class Settings(BaseSettings):
    api_password: str | None = None  # The password for protecting the API endpoints.
    log_level: str = "INFO"  # The logging level to use.
    verbose_logs: bool = False  # Whether to emit DEBUG level logs for the audioflow package.
    memory_log_interval_ms: int = 0  # Interval of the development memory logger; 0 disables it.
    enable_streaming_progress: bool = False  # Whether to show a progress bar while downloading sources.

    max_concurrent_jobs: int = 1  # Maximum number of transcode pipelines running at once.
    max_memory_mb: int = 450  # Resident memory ceiling for admitting new pipelines; <= 0 means unlimited.
    job_slot_wait_interval_ms: int = 250  # Poll interval while waiting for a slot.
    job_queue_timeout_ms: int = 600_000  # How long to wait for a slot before giving up.
    gcs_upload_high_water_mark: int = 262_144  # Bytes buffered per upload request (multiple of 256 KiB).
    transcode_stream_high_water_mark: int = 262_144  # Bytes read per chunk from the source and ffmpeg.
    egress_buffer_chunks: int = 4  # Depth of the buffer between ffmpeg output and the upload.

    ffmpeg_path: str = "ffmpeg"  # Path to the ffmpeg binary.
    ffmpeg_loglevel: str = "quiet"  # ffmpeg -loglevel value.
    audio_bitrate: str = "64k"  # Output bitrate.
    audio_sample_rate: int = 16000  # Output sample rate in Hz.
    audio_channels: int = 1  # Output channel count.

    gcs_bucket: Optional[str] = None  # Bucket receiving the converted audio.
    gcs_object_prefix: str = ""  # Optional prefix ("folder") for converted objects.
    google_service_account_key: Optional[str] = None  # Raw service account JSON.
    google_service_account_key_file: Optional[str] = None  # Path to the service account JSON.
    http_timeout: int = Field(60, description="Timeout for HTTP requests in seconds")

    @field_validator(*_POSITIVE_DEFAULTS, mode="before")
    @classmethod
    def fallback_on_invalid(cls, value, info):
        default = _POSITIVE_DEFAULTS[info.field_name]
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            parsed = 0
        if parsed <= 0:
            logger.warning("Invalid %s value %r; defaulting to %s.", info.field_name.upper(), value, default)
            return default
        return parsed

    @field_validator("max_memory_mb", mode="before")
    @classmethod
    def unlimited_on_invalid(cls, value):
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning("Invalid MAX_MEMORY_MB value provided; falling back to unlimited memory guard.")
            return 0

    class Config:
        env_file = ".env"
        extra = "ignore"


@dataclass(frozen=True)
class Policy:
    """Numeric limits consumed by the admission controller and the transcode pipeline."""

    max_concurrent: int = 1
    memory_ceiling: float = float("inf")  # bytes
    poll_interval: float = 0.25  # seconds
    wait_timeout: float = 600.0  # seconds
    read_chunk_size: int = 262_144
    upload_chunk_size: int = 262_144
    egress_buffer_chunks: int = 4

    @classmethod
    def from_settings(cls, config: Settings) -> "Policy":
        ceiling = config.max_memory_mb * 1024 * 1024 if config.max_memory_mb > 0 else float("inf")
        return cls(
            max_concurrent=config.max_concurrent_jobs,
            memory_ceiling=ceiling,
            poll_interval=config.job_slot_wait_interval_ms / 1000,
            wait_timeout=config.job_queue_timeout_ms / 1000,
            read_chunk_size=config.transcode_stream_high_water_mark,
            upload_chunk_size=config.gcs_upload_high_water_mark,
            egress_buffer_chunks=config.egress_buffer_chunks,
        )


settings = Settings()
