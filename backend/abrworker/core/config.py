"""Worker configuration settings.

All configuration values are loaded from environment variables (.env file).
Encoding tunables left unset fall back to the defaults of the active
ENVIRONMENT (see abrworker.modules.transcoding.abr.build_encoding_profile).
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Worker settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "ABR Ladder Worker"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"  # development, production
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Local scratch space for job workspaces
    WORK_DIR: str = "./uploads"

    # External tools
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    MP4BOX_PATH: str = "MP4Box"

    # Encoding profile (None = environment default)
    USE_GPU: Optional[bool] = None
    PRESET: Optional[str] = None
    TUNE: Optional[str] = None
    CRF: Optional[int] = None
    CPU_THREADS: Optional[int] = None
    MAX_CONCURRENCY: Optional[int] = None
    KEYFRAME_INTERVAL: Optional[int] = None
    BFRAMES: Optional[int] = None
    REF_FRAMES: Optional[int] = None
    BUFFER_SIZE: str = "32M"
    ENABLE_FAST_START: bool = True
    AUDIO_BITRATE: str = "128k"

    # Quality ladder override (JSON list of rungs)
    LADDER_FILE: Optional[str] = None

    # Packaging
    MANIFESTS: str = "both"  # dash, hls, both, none
    SEGMENT_DURATION_MS: int = 4000
    DELETE_RENDITIONS: bool = True

    # Fan-out
    CANCEL_ON_FAILURE: bool = False

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"
    LOCAL_STORAGE_PATH: str = "./storage"
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True
    OUTPUT_PREFIX: str = "processed/"

    # Job source
    JOB_SOURCE: str = "sqs"  # sqs, directory
    SQS_QUEUE_URL: str = ""
    SQS_REGION: str = ""
    SQS_WAIT_SECONDS: int = 20
    SPOOL_DIR: str = "./spool"
    MAX_JOBS_IN_FLIGHT: int = 1

    # Ownership lock
    LOCK_BACKEND: str = "file"  # file, redis
    LOCK_DIR: str = "./locks"
    LOCK_TTL_SECONDS: int = 3600

    # Redis (lock backend, Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Metadata store
    DATABASE_URL: str = "sqlite+aiosqlite:///./abrworker.db"

    # Observability
    METRICS_PORT: Optional[int] = None
    OTLP_ENDPOINT: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
