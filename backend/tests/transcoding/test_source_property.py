"""Property-based tests for job descriptors, job sources and the source loop.

The loop acknowledges completed and skipped jobs, never acknowledges a
failed one, and drops malformed messages.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given, settings, strategies as st

from abrworker.modules.job.tasks import RetryConfig
from abrworker.modules.transcoding.errors import EncodeError, JobFailedError
from abrworker.modules.transcoding.models import JobState
from abrworker.modules.transcoding.schemas import JobDescriptor
from abrworker.modules.transcoding.service import JobResult
from abrworker.modules.transcoding.source import (
    DirectoryJobSource,
    JobSource,
    JobSourceLoop,
    ReceivedJob,
    SQSJobSource,
)

identifier = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=1, max_size=24)


def message_body(job_id="upload-1", **extra) -> str:
    body = {"uploadId": job_id, "s3Key": f"uploads/{job_id}.mp4", "filename": "clip.mp4"}
    body.update(extra)
    return json.dumps(body)


class TestJobDescriptor:
    """Tests for descriptor parsing."""

    @given(
        job_id=identifier,
        owner=identifier,
        parent=identifier,
        has_audio=st.booleans(),
        stem=st.text(alphabet="abcdefghij_", min_size=1, max_size=12),
    )
    @settings(max_examples=100)
    def test_camel_case_message_body(self, job_id, owner, parent, has_audio, stem):
        body = message_body(job_id, userId=owner, postId=parent, hasAudio=has_audio, filename=f"{stem}.mov")

        descriptor = JobDescriptor.model_validate_json(body)

        assert descriptor.job_id == job_id
        assert descriptor.source_key == f"uploads/{job_id}.mp4"
        assert descriptor.owner_id == owner
        assert descriptor.parent_id == parent
        assert descriptor.has_audio == has_audio
        assert descriptor.base_name == stem
        assert descriptor.source_suffix == ".mov"

    def test_filename_list_takes_first_entry(self):
        descriptor = JobDescriptor.model_validate({"uploadId": "u", "s3Key": "k", "filename": ["a.mp4", "b.mp4"]})
        assert descriptor.filename == "a.mp4"

    def test_descriptor_is_immutable(self):
        descriptor = JobDescriptor(job_id="u", source_key="k", filename="a.mp4")
        with pytest.raises(Exception):
            descriptor.job_id = "other"

    def test_missing_suffix_defaults_to_mp4(self):
        assert JobDescriptor(job_id="u", source_key="k", filename="clip").source_suffix == ".mp4"

    @pytest.mark.parametrize("body", ["not json", "{}", json.dumps({"uploadId": "", "s3Key": "k", "filename": "f"})])
    def test_malformed_bodies_become_errors(self, body):
        received = ReceivedJob.from_body(body, "r-1")
        assert received.descriptor is None
        assert received.error


class TestJobState:
    """Tests for terminal states and the ack decision."""

    @pytest.mark.parametrize("state", list(JobState))
    def test_only_terminal_successes_are_acked(self, state):
        assert state.should_ack == (state in (JobState.COMPLETED, JobState.SKIPPED))
        if state.should_ack:
            assert state.is_terminal

    def test_failed_is_terminal_but_not_acked(self):
        assert JobState.FAILED.is_terminal
        assert not JobState.FAILED.should_ack
        assert not JobState.ENCODING.is_terminal


class StubSource(JobSource):
    """In-memory source recording acks and nacks."""

    def __init__(self, deliveries, fail_receives: int = 0):
        self.deliveries = list(deliveries)
        self.fail_receives = fail_receives
        self.acked = []
        self.nacked = []

    async def receive(self):
        if self.fail_receives:
            self.fail_receives -= 1
            raise ConnectionError("queue endpoint unreachable")
        await asyncio.sleep(0)
        if self.deliveries:
            return self.deliveries.pop(0)
        return None

    async def ack(self, received):
        self.acked.append(received.receipt)

    async def nack(self, received):
        self.nacked.append(received.receipt)


def driver_returning(outcomes: dict):
    """Driver stub: job id -> JobState or exception."""

    async def run(descriptor):
        outcome = outcomes[descriptor.job_id]
        if isinstance(outcome, BaseException):
            raise outcome
        return JobResult(job_id=descriptor.job_id, state=outcome)

    driver = MagicMock()
    driver.run = AsyncMock(side_effect=run)
    return driver


def delivery(job_id: str) -> ReceivedJob:
    return ReceivedJob.from_body(message_body(job_id), f"receipt-{job_id}")


def failure(job_id: str) -> JobFailedError:
    return JobFailedError(job_id, JobState.PARTIALLY_FAILED, EncodeError("720p", "exit 1"))


async def run_until_drained(loop: JobSourceLoop, source: StubSource) -> None:
    task = asyncio.create_task(loop.run())
    while source.deliveries or source.fail_receives:
        await asyncio.sleep(0.001)
    await asyncio.sleep(0.01)
    loop.stop()
    await asyncio.wait_for(task, timeout=2)


class TestJobSourceLoop:
    """Tests for the acknowledgement policy."""

    @given(
        outcomes=st.lists(
            st.sampled_from(["completed", "skipped", "failed"]),
            min_size=1,
            max_size=8,
        ),
        max_in_flight=st.integers(min_value=1, max_value=3),
    )
    @settings(max_examples=30, deadline=None)
    @pytest.mark.asyncio
    async def test_only_completed_and_skipped_jobs_are_acked(self, outcomes, max_in_flight):
        jobs = {}
        for i, outcome in enumerate(outcomes):
            job_id = f"job-{i}"
            if outcome == "failed":
                jobs[job_id] = failure(job_id)
            else:
                jobs[job_id] = JobState(outcome)
        source = StubSource([delivery(job_id) for job_id in jobs])
        loop = JobSourceLoop(source, driver_returning(jobs), max_in_flight=max_in_flight)

        await run_until_drained(loop, source)

        expected_acks = {f"receipt-{j}" for j, o in jobs.items() if not isinstance(o, JobFailedError)}
        expected_nacks = {f"receipt-{j}" for j, o in jobs.items() if isinstance(o, JobFailedError)}
        assert set(source.acked) == expected_acks
        assert set(source.nacked) == expected_nacks
        assert len(source.acked) == len(expected_acks)

    @pytest.mark.asyncio
    async def test_malformed_message_is_dropped_without_running(self):
        source = StubSource([ReceivedJob.from_body("{broken", "receipt-bad")])
        driver = driver_returning({})
        loop = JobSourceLoop(source, driver)

        await run_until_drained(loop, source)

        assert source.acked == ["receipt-bad"]
        driver.run.assert_not_called()

    @pytest.mark.asyncio
    async def test_source_errors_back_off_and_recover(self):
        source = StubSource([delivery("job-1")], fail_receives=2)
        loop = JobSourceLoop(
            source,
            driver_returning({"job-1": JobState.COMPLETED}),
            retry_config=RetryConfig(max_attempts=0, initial_delay=0.001, max_delay=0.01),
        )

        await run_until_drained(loop, source)

        assert source.acked == ["receipt-job-1"]

    @pytest.mark.asyncio
    async def test_source_errors_give_up_when_exhausted(self):
        source = StubSource([], fail_receives=5)
        loop = JobSourceLoop(
            source,
            driver_returning({}),
            retry_config=RetryConfig(max_attempts=2, initial_delay=0.001, max_delay=0.01),
        )

        with pytest.raises(ConnectionError):
            await asyncio.wait_for(loop.run(), timeout=2)

    @pytest.mark.asyncio
    async def test_in_flight_jobs_are_bounded(self):
        running = 0
        peak = 0

        async def run(descriptor):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return JobResult(job_id=descriptor.job_id, state=JobState.COMPLETED)

        driver = MagicMock()
        driver.run = AsyncMock(side_effect=run)
        source = StubSource([delivery(f"job-{i}") for i in range(6)])
        loop = JobSourceLoop(source, driver, max_in_flight=2)

        await run_until_drained(loop, source)

        assert peak == 2
        assert len(source.acked) == 6

    @pytest.mark.asyncio
    async def test_unexpected_driver_error_is_nacked(self):
        source = StubSource([delivery("job-1")])
        loop = JobSourceLoop(source, driver_returning({"job-1": OSError("lock dir not writable")}))

        acked = await loop.handle(source.deliveries.pop(0))

        assert acked is False
        assert source.nacked == ["receipt-job-1"]
        assert source.acked == []

    def test_rejects_non_positive_in_flight(self):
        with pytest.raises(ValueError):
            JobSourceLoop(StubSource([]), MagicMock(), max_in_flight=0)


class TestDirectoryJobSource:
    """Tests for the shared spool directory source."""

    @pytest.mark.asyncio
    async def test_submit_receive_ack(self, tmp_path):
        source = DirectoryJobSource(str(tmp_path), poll_interval=0.001)
        descriptor = JobDescriptor(job_id="upload-9", source_key="uploads/x.mp4", filename="x.mp4", has_audio=True)
        path = source.submit(descriptor)

        received = await source.receive()

        assert received.descriptor == descriptor
        assert received.receipt == str(path)
        # hidden while in flight
        assert await source.receive() is None

        await source.ack(received)
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_nacked_file_reappears_after_visibility_timeout(self, tmp_path):
        now = [0.0]
        source = DirectoryJobSource(
            str(tmp_path), poll_interval=0.001, visibility_timeout=30, clock=lambda: now[0]
        )
        source.submit(JobDescriptor(job_id="upload-9", source_key="k", filename="x.mp4"))

        received = await source.receive()
        await source.nack(received)

        now[0] = 10
        assert await source.receive() is None
        now[0] = 31
        again = await source.receive()
        assert again is not None and again.receipt == received.receipt

    @pytest.mark.asyncio
    async def test_empty_spool(self, tmp_path):
        source = DirectoryJobSource(str(tmp_path), poll_interval=0.001)
        assert await source.receive() is None

    @pytest.mark.asyncio
    async def test_receipts_acked_elsewhere_are_forgotten(self, tmp_path):
        source = DirectoryJobSource(str(tmp_path), poll_interval=0.001)
        other_worker = DirectoryJobSource(str(tmp_path), poll_interval=0.001)
        path = source.submit(JobDescriptor(job_id="upload-9", source_key="k", filename="x.mp4"))
        received = await source.receive()
        await source.nack(received)
        assert str(path) in source._hidden

        await other_worker.ack(await other_worker.receive())
        assert await source.receive() is None

        assert source._hidden == {}


class TestSQSJobSource:
    """Tests for the SQS source against a stub client."""

    @pytest.mark.asyncio
    async def test_receive_and_delete(self):
        client = MagicMock()
        client.receive_message.return_value = {
            "Messages": [{"Body": message_body("upload-5"), "ReceiptHandle": "handle-5"}]
        }
        source = SQSJobSource("https://sqs.example/queue", wait_seconds=20, client=client)

        received = await source.receive()
        await source.ack(received)

        client.receive_message.assert_called_once_with(
            QueueUrl="https://sqs.example/queue",
            MaxNumberOfMessages=1,
            WaitTimeSeconds=20,
        )
        client.delete_message.assert_called_once_with(
            QueueUrl="https://sqs.example/queue",
            ReceiptHandle="handle-5",
        )
        assert received.descriptor.job_id == "upload-5"

    @pytest.mark.asyncio
    async def test_empty_poll(self):
        client = MagicMock()
        client.receive_message.return_value = {}
        source = SQSJobSource("https://sqs.example/queue", client=client)

        assert await source.receive() is None

    def test_requires_queue_url(self):
        with pytest.raises(ValueError):
            SQSJobSource("")
