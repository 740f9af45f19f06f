"""Worker process entry point.

Wires the pipeline from settings and runs the job source loop until
SIGTERM or SIGINT:

    python -m abrworker.worker
"""

import asyncio
import logging
import signal
from typing import Optional

from abrworker.core.config import settings
from abrworker.core.database import create_engine, create_session_maker, init_models
from abrworker.core.logging import setup_logging
from abrworker.core.metrics import set_app_info, start_metrics_server
from abrworker.core.redis import create_redis
from abrworker.core.storage import get_storage
from abrworker.core.tracing import setup_tracing, shutdown_tracing
from abrworker.modules.transcoding.abr import (
    DEFAULT_LADDER,
    get_ladder,
    load_ladder_file,
    profile_from_settings,
    validate_ladder,
)
from abrworker.modules.transcoding.fanout import FanOutCoordinator
from abrworker.modules.transcoding.ffmpeg import CodecSelection, FFmpegEncoder, detect_codec
from abrworker.modules.transcoding.limiter import ConcurrencyLimiter
from abrworker.modules.transcoding.lock import FileLeaseLock, OwnershipLock, RedisLeaseLock
from abrworker.modules.transcoding.models import ManifestMode
from abrworker.modules.transcoding.packager import Packager
from abrworker.modules.transcoding.repository import SqlMetadataStore
from abrworker.modules.transcoding.service import JobDriver
from abrworker.modules.transcoding.source import DirectoryJobSource, JobSource, JobSourceLoop, SQSJobSource

logger = logging.getLogger(__name__)


def create_lock() -> OwnershipLock:
    """Create the ownership lease store named by LOCK_BACKEND."""
    backend = settings.LOCK_BACKEND.lower()
    if backend == "redis":
        return RedisLeaseLock(create_redis(), ttl_seconds=settings.LOCK_TTL_SECONDS)
    if backend == "file":
        return FileLeaseLock(settings.LOCK_DIR, ttl_seconds=settings.LOCK_TTL_SECONDS)
    raise ValueError(f"Unsupported lock backend: {settings.LOCK_BACKEND}")


def create_source() -> JobSource:
    """Create the job source named by JOB_SOURCE."""
    source = settings.JOB_SOURCE.lower()
    if source == "sqs":
        return SQSJobSource(
            settings.SQS_QUEUE_URL,
            region=settings.SQS_REGION or settings.STORAGE_REGION,
            wait_seconds=settings.SQS_WAIT_SECONDS,
        )
    if source == "directory":
        return DirectoryJobSource(settings.SPOOL_DIR)
    raise ValueError(f"Unsupported job source: {settings.JOB_SOURCE}")


async def build_driver(codec: Optional[CodecSelection] = None) -> JobDriver:
    """Build a job driver from settings.

    Everything created here (the limiter above all) is process-wide and
    shared by every job the driver runs.
    """
    profile = profile_from_settings(settings)

    ladder = load_ladder_file(settings.LADDER_FILE) if settings.LADDER_FILE else DEFAULT_LADDER
    ladder = get_ladder(settings.ENVIRONMENT, ladder)
    is_valid, errors = validate_ladder(ladder)
    if not is_valid:
        raise ValueError(f"Invalid quality ladder: {'; '.join(errors)}")

    if codec is None:
        codec = await detect_codec(settings.FFMPEG_PATH, prefer_gpu=profile.use_gpu)

    limiter = ConcurrencyLimiter(profile.max_concurrency)
    encoder = FFmpegEncoder(
        profile,
        limiter,
        codec=codec,
        ffmpeg_path=settings.FFMPEG_PATH,
        ffprobe_path=settings.FFPROBE_PATH,
    )
    packager = Packager(
        mode=ManifestMode(settings.MANIFESTS.lower()),
        segment_duration_ms=settings.SEGMENT_DURATION_MS,
        mp4box_path=settings.MP4BOX_PATH,
        delete_renditions=settings.DELETE_RENDITIONS,
    )

    engine = create_engine()
    await init_models(engine)

    set_app_info(settings.VERSION, settings.ENVIRONMENT, codec.codec)
    logger.info(
        f"Pipeline ready: {settings.ENVIRONMENT} profile, codec {codec.codec}, "
        f"{profile.max_concurrency} encoder permit(s), "
        f"rungs {', '.join(r.name for r in ladder if r.enabled)}, manifests {packager.mode.value}"
    )

    return JobDriver(
        coordinator=FanOutCoordinator(encoder, cancel_on_failure=settings.CANCEL_ON_FAILURE),
        packager=packager,
        storage=get_storage(),
        lock=create_lock(),
        metadata=SqlMetadataStore(create_session_maker(engine)),
        work_dir=settings.WORK_DIR,
        ladder=ladder,
        output_prefix=settings.OUTPUT_PREFIX,
    )


async def serve() -> None:
    """Run the job source loop until a termination signal arrives."""
    driver = await build_driver()
    job_loop = JobSourceLoop(create_source(), driver, max_in_flight=settings.MAX_JOBS_IN_FLIGHT)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, job_loop.stop)

    await job_loop.run()


def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    setup_tracing(
        service_name=settings.PROJECT_NAME,
        service_version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        otlp_endpoint=settings.OTLP_ENDPOINT,
    )
    if settings.METRICS_PORT:
        start_metrics_server(settings.METRICS_PORT)
        logger.info(f"Metrics exposed on port {settings.METRICS_PORT}")

    try:
        asyncio.run(serve())
    finally:
        shutdown_tracing()


if __name__ == "__main__":
    main()
