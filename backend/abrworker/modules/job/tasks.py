"""Retry policy shared by Celery tasks and the job source loop."""

from celery import Task


class RetryConfig:
    """Exponential backoff: ``initial_delay * multiplier ** (attempt - 1)``, capped.

    A ``max_attempts`` of 0 retries forever.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 300.0,
        backoff_multiplier: float = 2.0,
    ):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait after the given 1-indexed attempt failed."""
        if attempt < 1:
            return self.initial_delay
        return min(self.initial_delay * self.backoff_multiplier ** (attempt - 1), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return 0 < self.max_attempts <= attempt


RETRY_CONFIGS = {
    # whole-job redelivery through Celery
    "transcode": RetryConfig(max_attempts=3, initial_delay=10.0, max_delay=120.0),
    # queue receive errors; the loop keeps polling
    "queue_poll": RetryConfig(max_attempts=0, initial_delay=5.0, max_delay=60.0),
    "default": RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=60.0),
}


def get_retry_config(name: str) -> RetryConfig:
    return RETRY_CONFIGS.get(name, RETRY_CONFIGS["default"])


class BaseTaskWithRetry(Task):
    """Celery task that retries failures using a named RetryConfig."""

    abstract = True
    retry_config_name: str = "default"

    @property
    def retry_config(self) -> RetryConfig:
        return get_retry_config(self.retry_config_name)

    def retry_with_backoff(self, exc: Exception, attempt: int) -> None:
        """Schedule another attempt, or give up once the policy is exhausted.

        Raises:
            Retry: When another attempt was scheduled
            MaxRetriesExceededError: When ``attempt`` was the last one
        """
        config = self.retry_config
        if config.exhausted(attempt):
            raise self.MaxRetriesExceededError(
                f"{self.name} gave up after {config.max_attempts} attempt(s)"
            ) from exc
        raise self.retry(exc=exc, countdown=config.calculate_delay(attempt))
