"""Retry policy for job delivery.

Shared by the queue poll loop (backoff after source errors) and the
Celery entry point (redelivery of failed jobs).
"""

from abrworker.modules.job.tasks import (
    RetryConfig,
    RETRY_CONFIGS,
    BaseTaskWithRetry,
    get_retry_config,
)

__all__ = [
    "RetryConfig",
    "RETRY_CONFIGS",
    "BaseTaskWithRetry",
    "get_retry_config",
]
