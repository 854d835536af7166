import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()

APP_NAME = "Media Compression API"
APP_VERSION = "2.0.0"


def _env(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if value else None


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    return int(raw) if raw is not None else default


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


# ----------------------------
# Compression defaults
# ----------------------------

IMAGE_DEFAULTS: Dict[str, Any] = {
    "qualities": [80, 60, 40],
    "thumbnails": [150, 300, 600],
    "format": "webp",
    "strip_metadata": True,
}

VIDEO_DEFAULTS: Dict[str, Any] = {
    "qualities": [1080, 720, 480],
    "thumbnails": 3,
    "format": "mp4",
}

AUDIO_DEFAULTS: Dict[str, Any] = {
    "bitrates": [320, 192, 128],
    "format": "mp3",
    "sample_rates": [],
}

ALLOWED_FORMATS: Dict[str, List[str]] = {
    "image": ["webp", "jpeg", "jpg", "png"],
    "video": ["mp4", "webm"],
    "audio": ["mp3", "aac", "opus", "ogg"],
}

# (base seconds, seconds per MB)
ESTIMATE_COSTS: Dict[str, tuple] = {
    "image": (5, 1),
    "video": (60, 6),
    "audio": (20, 2),
}


@dataclass(frozen=True)
class Settings:
    redis_url: Optional[str] = None
    jobs_dir: str = "./data/jobs"
    redis_prefix: str = "job:"
    job_ttl_seconds: int = 60 * 60 * 24

    use_celery: bool = False
    worker_concurrency: int = 2
    job_timeout_seconds: int = 600
    stale_job_seconds: int = 900

    max_file_size_mb: int = 100

    r2_bucket: Optional[str] = None
    r2_endpoint: Optional[str] = None
    r2_access_key_id: Optional[str] = None
    r2_secret_access_key: Optional[str] = None
    r2_public_url: Optional[str] = None
    presigned_url_ttl: int = 3600
    media_dir: str = "./data/media"

    log_level: str = "INFO"

    image_defaults: Dict[str, Any] = field(default_factory=lambda: dict(IMAGE_DEFAULTS))
    video_defaults: Dict[str, Any] = field(default_factory=lambda: dict(VIDEO_DEFAULTS))
    audio_defaults: Dict[str, Any] = field(default_factory=lambda: dict(AUDIO_DEFAULTS))

    @property
    def max_file_size(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    @property
    def r2_enabled(self) -> bool:
        return all([
            self.r2_bucket,
            self.r2_endpoint,
            self.r2_access_key_id,
            self.r2_secret_access_key,
        ])

    def defaults_for(self, kind: str) -> Dict[str, Any]:
        if kind == "image":
            return dict(self.image_defaults)
        if kind == "video":
            return dict(self.video_defaults)
        if kind == "audio":
            return dict(self.audio_defaults)
        raise ValueError(f"Unknown media kind: {kind}")

    def estimate_seconds(self, kind: str, size_bytes: int) -> int:
        base, per_mb = ESTIMATE_COSTS[kind]
        size_mb = size_bytes / (1024 * 1024)
        return math.ceil(base + per_mb * size_mb)


def load_settings() -> Settings:
    return Settings(
        redis_url=_env("REDIS_URL"),
        jobs_dir=os.getenv("JOBS_DIR", "./data/jobs"),
        redis_prefix=os.getenv("REDIS_PREFIX", "job:"),
        job_ttl_seconds=_env_int("JOB_TTL_SECONDS", 60 * 60 * 24),
        use_celery=_env_bool("USE_CELERY", False),
        worker_concurrency=_env_int("WORKER_CONCURRENCY", 2),
        job_timeout_seconds=_env_int("JOB_TIMEOUT_SECONDS", 600),
        stale_job_seconds=_env_int("STALE_JOB_SECONDS", 900),
        max_file_size_mb=_env_int("MAX_FILE_SIZE_MB", 100),
        r2_bucket=_env("R2_BUCKET"),
        r2_endpoint=_env("R2_ENDPOINT"),
        r2_access_key_id=_env("R2_ACCESS_KEY_ID"),
        r2_secret_access_key=_env("R2_SECRET_ACCESS_KEY"),
        r2_public_url=_env("R2_PUBLIC_URL"),
        presigned_url_ttl=_env_int("PRESIGNED_URL_TTL", 3600),
        media_dir=os.getenv("MEDIA_DIR", "./data/media"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
