"""Job sources and the loop that feeds them to the job driver.

A source hands out descriptors; acknowledging one removes it for good.
Unacknowledged descriptors come back after the source's visibility
window, which is how failed jobs get retried.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import boto3
from pydantic import ValidationError

from abrworker.core.logging import correlation_scope, log_error
from abrworker.modules.job.tasks import RetryConfig, get_retry_config
from abrworker.modules.transcoding.errors import JobFailedError
from abrworker.modules.transcoding.schemas import JobDescriptor
from abrworker.modules.transcoding.service import JobDriver

logger = logging.getLogger(__name__)


@dataclass
class ReceivedJob:
    """One delivery from a job source.

    `descriptor` is None when the body could not be parsed; `error` then
    says why.
    """
    receipt: str
    descriptor: Optional[JobDescriptor] = None
    error: Optional[str] = None

    @classmethod
    def from_body(cls, body: Union[str, bytes], receipt: str) -> "ReceivedJob":
        try:
            return cls(receipt=receipt, descriptor=JobDescriptor.model_validate_json(body))
        except ValidationError as e:
            return cls(receipt=receipt, error=str(e))


class JobSource(ABC):
    """Queue-like supplier of job descriptors."""

    @abstractmethod
    async def receive(self) -> Optional[ReceivedJob]:
        """Wait (bounded) for the next delivery; None when there is none."""

    @abstractmethod
    async def ack(self, received: ReceivedJob) -> None:
        """Remove a delivery permanently."""

    async def nack(self, received: ReceivedJob) -> None:
        """Give a delivery up; it is redelivered after the visibility window."""


class SQSJobSource(JobSource):
    """Amazon SQS queue, one message per receive with long polling."""

    def __init__(
        self,
        queue_url: str,
        region: str = "",
        wait_seconds: int = 20,
        client=None,
    ):
        if not queue_url:
            raise ValueError("SQS queue URL is required")
        self.queue_url = queue_url
        self.region = region
        self.wait_seconds = wait_seconds
        self._client = client

    def _get_client(self):
        if self._client is None:
            client_kwargs = {"service_name": "sqs"}
            if self.region:
                client_kwargs["region_name"] = self.region
            self._client = boto3.client(**client_kwargs)
        return self._client

    def _receive(self) -> Optional[ReceivedJob]:
        response = self._get_client().receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=1,
            WaitTimeSeconds=self.wait_seconds,
        )
        messages = response.get("Messages") or []
        if not messages:
            return None
        message = messages[0]
        return ReceivedJob.from_body(message.get("Body", ""), message["ReceiptHandle"])

    async def receive(self) -> Optional[ReceivedJob]:
        return await asyncio.to_thread(self._receive)

    async def ack(self, received: ReceivedJob) -> None:
        await asyncio.to_thread(
            self._get_client().delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=received.receipt,
        )


class DirectoryJobSource(JobSource):
    """Spool directory of `*.json` descriptors shared by several workers.

    Receiving claims nothing on disk; the ownership lease is what keeps two
    workers off the same job. Within one process a delivered file is hidden
    until it is acked, or until `visibility_timeout` passes after a nack.
    """

    def __init__(
        self,
        spool_dir: str,
        poll_interval: float = 2.0,
        visibility_timeout: float = 60.0,
        clock=time.monotonic,
    ):
        self.spool_dir = Path(spool_dir)
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        self.poll_interval = poll_interval
        self.visibility_timeout = visibility_timeout
        self.clock = clock
        # receipt -> time it becomes visible again (None while in flight)
        self._hidden: dict[str, Optional[float]] = {}

    def _visible(self, receipt: str) -> bool:
        if receipt not in self._hidden:
            return True
        until = self._hidden[receipt]
        if until is not None and until <= self.clock():
            del self._hidden[receipt]
            return True
        return False

    def _next_file(self) -> Optional[Path]:
        candidates = []
        for path in self.spool_dir.glob("*.json"):
            try:
                candidates.append((path.stat().st_mtime, path.name, path))
            except FileNotFoundError:
                continue
        # forget receipts whose files were acked by another worker
        present = {str(path) for _, _, path in candidates}
        for receipt in [r for r in self._hidden if r not in present]:
            del self._hidden[receipt]
        for _, _, path in sorted(candidates):
            if self._visible(str(path)):
                return path
        return None

    async def receive(self) -> Optional[ReceivedJob]:
        path = self._next_file()
        if path is None:
            await asyncio.sleep(self.poll_interval)
            return None

        receipt = str(path)
        self._hidden[receipt] = None
        try:
            body = path.read_bytes()
        except FileNotFoundError:
            # acked by another worker in the meantime
            self._hidden.pop(receipt, None)
            return None
        return ReceivedJob.from_body(body, receipt)

    async def ack(self, received: ReceivedJob) -> None:
        Path(received.receipt).unlink(missing_ok=True)
        self._hidden.pop(received.receipt, None)

    async def nack(self, received: ReceivedJob) -> None:
        self._hidden[received.receipt] = self.clock() + self.visibility_timeout

    def submit(self, descriptor: JobDescriptor) -> Path:
        """Drop a descriptor into the spool."""
        path = self.spool_dir / f"{descriptor.job_id}.json"
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(descriptor.model_dump(by_alias=True)), encoding="utf-8")
        tmp.replace(path)
        return path


class JobSourceLoop:
    """Receives descriptors and runs them, up to `max_in_flight` at once.

    Acknowledges COMPLETED and SKIPPED runs and malformed deliveries. A
    failed run is never acknowledged. Errors of the source itself are
    retried with exponential backoff.
    """

    def __init__(
        self,
        source: JobSource,
        driver: JobDriver,
        max_in_flight: int = 1,
        retry_config: Optional[RetryConfig] = None,
    ):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be a positive integer")
        self.source = source
        self.driver = driver
        self.max_in_flight = max_in_flight
        self.retry_config = retry_config or get_retry_config("queue_poll")
        self._slots = asyncio.Semaphore(max_in_flight)
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def stop(self) -> None:
        """Stop receiving; runs in flight are allowed to finish."""
        if not self._stopping.is_set():
            logger.info("Stopping job source loop")
        self._stopping.set()

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Run until stop() is called, then wait for runs in flight."""
        failures = 0
        logger.info(f"Job source loop started ({self.max_in_flight} job(s) in flight)")

        while not self.stopping:
            await self._slots.acquire()
            if self.stopping:
                self._slots.release()
                break

            try:
                received = await self.source.receive()
            except Exception as e:
                self._slots.release()
                failures += 1
                if self.retry_config.exhausted(failures):
                    log_error(logger, f"Job source failed {failures} time(s), giving up", exception=e)
                    raise
                delay = self.retry_config.calculate_delay(failures)
                logger.warning(f"Job source receive failed ({e}), retrying in {delay:.1f}s")
                await self._pause(delay)
                continue

            failures = 0
            if received is None:
                self._slots.release()
                continue

            task = asyncio.create_task(self._run_and_release(received))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Job source loop stopped")

    async def _run_and_release(self, received: ReceivedJob) -> bool:
        try:
            return await self.handle(received)
        finally:
            self._slots.release()

    async def handle(self, received: ReceivedJob) -> bool:
        """Run one delivery through the driver and settle it with the source.

        Returns:
            True if the delivery was acknowledged
        """
        if received.descriptor is None:
            logger.warning(f"Dropping malformed job message {received.receipt}: {received.error}")
            await self.source.ack(received)
            return True

        descriptor = received.descriptor
        try:
            result = await self.driver.run(descriptor)
        except JobFailedError as e:
            with correlation_scope(descriptor.job_id):
                logger.warning(f"Job not acknowledged after failure in {e.state.value}, it will be redelivered")
            await self.source.nack(received)
            return False
        except Exception as e:
            with correlation_scope(descriptor.job_id):
                log_error(logger, "Job run raised outside the pipeline, it will be redelivered", exception=e)
            await self.source.nack(received)
            return False

        if not result.state.should_ack:
            await self.source.nack(received)
            return False

        try:
            await self.source.ack(received)
        except Exception as e:
            with correlation_scope(descriptor.job_id):
                log_error(logger, f"Could not acknowledge job in state {result.state.value}", exception=e)
            return False

        with correlation_scope(descriptor.job_id):
            logger.info(f"Job acknowledged ({result.state.value})")
        return True
