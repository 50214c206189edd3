"""
Configuration module using Pydantic Settings for environment variable management.

Deployment knobs (connections, credentials, concurrency, limits) come from the
environment. Rendering and protocol constants are hardcoded for consistency.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


# ============================================================
# PLATFORM PROFILES
# ============================================================

class Platform:
    """
    Platform identifiers clips can be rendered for.

    Each maps to a fixed output resolution in PLATFORM_PROFILES.
    """
    YOUTUBE_SHORTS = "youtube_shorts"
    INSTAGRAM_REELS = "instagram_reels"
    TIKTOK = "tiktok"
    FACEBOOK = "facebook"


DEFAULT_PLATFORM = Platform.YOUTUBE_SHORTS


@dataclass(frozen=True)
class PlatformProfile:
    """Output geometry for a platform."""

    name: str
    label: str
    width: int
    height: int
    aspect_ratio: str

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


PLATFORM_PROFILES: dict[str, PlatformProfile] = {
    Platform.YOUTUBE_SHORTS: PlatformProfile(Platform.YOUTUBE_SHORTS, "YouTube Shorts", 1080, 1920, "9:16"),
    Platform.INSTAGRAM_REELS: PlatformProfile(Platform.INSTAGRAM_REELS, "Instagram Reels", 1080, 1920, "9:16"),
    Platform.TIKTOK: PlatformProfile(Platform.TIKTOK, "TikTok", 1080, 1920, "9:16"),
    Platform.FACEBOOK: PlatformProfile(Platform.FACEBOOK, "Facebook", 1080, 1080, "1:1"),
}


def get_platform_profile(platform: Optional[str]) -> PlatformProfile:
    """
    Get the output profile for a platform name.

    Unknown or missing names fall back to the 9:16 default profile.
    """
    if platform and platform in PLATFORM_PROFILES:
        return PLATFORM_PROFILES[platform]
    return PLATFORM_PROFILES[DEFAULT_PLATFORM]


def is_known_platform(platform: Optional[str]) -> bool:
    return bool(platform) and platform in PLATFORM_PROFILES


# Upload content types accepted at the intake endpoint
ALLOWED_VIDEO_TYPES = ("video/mp4", "video/mov", "video/avi", "video/quicktime")


class Settings(BaseSettings):
    """
    Application settings.

    Only deployment configuration is loaded from environment variables.
    Rendering and API protocol settings are hardcoded.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES
    # ============================================================

    # Application
    app_name: str = "sermon-clips"
    debug: bool = False
    log_level: str = "INFO"
    temp_directory: str = "/tmp/sermon-clips"
    job_log_dir: Optional[str] = None  # Per-job log files are written here when set

    # Security - API authentication
    api_key: Optional[str] = None

    # Redis job queue
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "video-processing"

    # Record store
    database_url: str = "sqlite:///./sermon-clips.db"

    # Object storage (S3 or any S3-compatible endpoint)
    aws_region: str = "us-east-1"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    s3_bucket: str = "sermon-videos"
    storage_endpoint_url: Optional[str] = None
    storage_public_base_url: Optional[str] = None

    # API Keys
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    elevenlabs_api_key: Optional[str] = None
    heygen_api_key: Optional[str] = None

    # Worker tuning
    worker_concurrency: int = 2  # Jobs processed simultaneously per worker
    queue_rate_limit_max: int = 10  # Job starts allowed per window
    queue_rate_limit_window_seconds: int = 60
    job_timeout_seconds: int = 3600
    job_attempts: int = 3
    job_backoff_seconds: float = 2.0

    # Upload limits
    max_upload_mb: int = 500

    # Remote file polling
    analysis_poll_interval_seconds: float = 5.0
    analysis_poll_max_attempts: int = 120

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    # Gemini REST API
    @property
    def gemini_base_url(self) -> str:
        return "https://generativelanguage.googleapis.com"

    @property
    def analysis_max_attempts(self) -> int:
        return 5  # Shared by overload and quota retries

    @property
    def analysis_backoff_base_seconds(self) -> float:
        return 2.0

    @property
    def analysis_backoff_max_seconds(self) -> float:
        return 30.0

    @property
    def analysis_quota_backoff_seconds(self) -> float:
        return 60.0

    @property
    def analysis_temperature(self) -> float:
        return 0.7

    # Rendering
    @property
    def ffmpeg_preset(self) -> str:
        return "fast"

    @property
    def ffmpeg_crf(self) -> int:
        return 23

    @property
    def audio_bitrate(self) -> str:
        return "128k"

    @property
    def min_output_bytes(self) -> int:
        return 10 * 1024  # Anything smaller is a silent encode failure

    @property
    def thumbnail_fallback_offset_seconds(self) -> int:
        return 1

    # Queue internals
    @property
    def job_lock_seconds(self) -> int:
        return 60

    @property
    def stalled_check_interval_seconds(self) -> int:
        return 30

    @property
    def worker_poll_interval_seconds(self) -> float:
        return 1.0

    # Dubbing / lipsync
    @property
    def elevenlabs_base_url(self) -> str:
        return "https://api.elevenlabs.io"

    @property
    def elevenlabs_model(self) -> str:
        return "eleven_multilingual_v2"

    @property
    def heygen_base_url(self) -> str:
        return "https://api.heygen.com"

    @property
    def lipsync_poll_interval_seconds(self) -> float:
        return 5.0

    @property
    def lipsync_poll_max_attempts(self) -> int:
        return 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
