"""Celery entry point for the job pipeline.

An alternative to the job source loop for deployments that dispatch
uploads through Celery: the broker's late ack plays the role of the queue
acknowledgement and failed jobs are retried with exponential backoff.
"""

import asyncio
import logging
from typing import Optional

from pydantic import ValidationError

from abrworker.core.celery_app import celery_app
from abrworker.modules.job.tasks import BaseTaskWithRetry
from abrworker.modules.transcoding.errors import JobFailedError
from abrworker.modules.transcoding.schemas import JobDescriptor
from abrworker.modules.transcoding.service import JobDriver

logger = logging.getLogger(__name__)

# One event loop and one driver per worker process; the driver's limiter
# is bound to the loop it first runs on
_loop: Optional[asyncio.AbstractEventLoop] = None
_driver: Optional[JobDriver] = None


def _run_async(coro):
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop.run_until_complete(coro)


async def _get_driver() -> JobDriver:
    global _driver
    if _driver is None:
        from abrworker.worker import build_driver
        _driver = await build_driver()
    return _driver


async def _process(descriptor: JobDescriptor):
    driver = await _get_driver()
    return await driver.run(descriptor)


class ProcessVideoTask(BaseTaskWithRetry):
    """Base for the video processing task."""
    abstract = True
    retry_config_name = "transcode"
    acks_late = True


@celery_app.task(bind=True, base=ProcessVideoTask)
def process_video_task(self: ProcessVideoTask, descriptor: dict) -> dict:
    """Run one job descriptor through the pipeline.

    Args:
        descriptor: Job descriptor fields (camelCase aliases accepted)

    Returns:
        Dict with the job id, final state and published manifest keys
    """
    try:
        job = JobDescriptor.model_validate(descriptor)
    except ValidationError as e:
        logger.warning(f"Rejecting malformed job descriptor: {e}")
        return {"job_id": None, "state": "rejected", "error": str(e)}

    try:
        result = _run_async(_process(job))
    except JobFailedError as e:
        self.retry_with_backoff(e, self.request.retries + 1)
        raise

    return {
        "job_id": result.job_id,
        "state": result.state.value,
        "manifest_keys": result.manifest_keys,
        "asset_id": str(result.asset_id) if result.asset_id else None,
        "reason": result.reason,
    }
