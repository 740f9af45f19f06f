"""Property-based tests for the job driver.

Runs whole jobs against a local object store, file leases and fake
ffmpeg/MP4Box processes. Whatever happens, a finished run leaves neither
its workspace nor its lease marker behind, and a failed encode never
reaches packaging or the metadata store.
"""

import asyncio
import json
import tempfile
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pytest
from hypothesis import given, settings, strategies as st

from abrworker.core.storage import LocalStorage, StorageConfig, StorageResult
from abrworker.modules.transcoding.abr import EncodingProfile, RungSpec
from abrworker.modules.transcoding.errors import (
    AggregateEncodeError,
    EmptyLadderError,
    InputUnavailableError,
    JobFailedError,
    PackagingError,
    PublishError,
)
from abrworker.modules.transcoding.fanout import FanOutCoordinator
from abrworker.modules.transcoding.ffmpeg import FFmpegEncoder, ProcessResult
from abrworker.modules.transcoding.limiter import ConcurrencyLimiter
from abrworker.modules.transcoding.lock import FileLeaseLock
from abrworker.modules.transcoding.models import JobState, ManifestMode
from abrworker.modules.transcoding.packager import Packager
from abrworker.modules.transcoding.repository import MetadataStore
from abrworker.modules.transcoding.schemas import JobDescriptor
from abrworker.modules.transcoding.service import JobDriver
from abrworker.modules.transcoding.storage import lock_key, output_key, output_prefix

LADDER_240_720 = (
    RungSpec(name="240p", scale="scale=-2:426", bitrate="400k", crf=30),
    RungSpec(name="720p", scale="scale=-2:1280", bitrate="2000k", crf=28),
)


class FakeMediaTools:
    """Fake ffprobe, ffmpeg and MP4Box sharing one call log."""

    def __init__(self, fail=(), encode_delay: float = 0.0):
        self.fail = set(fail)
        self.encode_delay = encode_delay
        self.calls = []
        self.active = 0
        self.peak = 0

    @property
    def encodes(self):
        return [cmd for cmd in self.calls if cmd[0] == "ffmpeg" and "-c:v" in cmd]

    @property
    def ffmpeg_calls(self):
        return [cmd for cmd in self.calls if cmd[0] == "ffmpeg"]

    @property
    def packaging_calls(self):
        return [cmd for cmd in self.calls if cmd[0] == "MP4Box"]

    async def __call__(self, cmd, on_line=None):
        if cmd[0] == "ffprobe":
            return ProcessResult(returncode=0, stdout=json.dumps({"format": {"duration": "30.0"}}))
        self.calls.append(list(cmd))

        if cmd[0] == "MP4Box":
            manifest = Path(cmd[cmd.index("-out") + 1])
            if manifest.name in self.fail:
                return ProcessResult(returncode=1, stderr_tail="[MPD] Error")
            manifest.write_text("manifest")
            (manifest.parent / f"{manifest.stem}_1.m4s").write_bytes(b"segment")
            return ProcessResult(returncode=0)

        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.encode_delay if "-c:v" in cmd else 0)
        finally:
            self.active -= 1

        output = Path(cmd[-1])
        if output.name in self.fail:
            return ProcessResult(returncode=1, stderr_tail="Error while encoding")
        output.write_bytes(b"media")
        return ProcessResult(returncode=0)


class RecordingMetadataStore(MetadataStore):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records = []
        self.ids = {}

    async def record_derived_asset(self, name, owner_id, asset_key, thumbnail_key, job_id, manifest_key=None):
        if self.fail:
            raise RuntimeError("database is locked")
        if job_id in self.ids:
            return self.ids[job_id]
        self.records.append({
            "name": name,
            "owner_id": owner_id,
            "asset_key": asset_key,
            "thumbnail_key": thumbnail_key,
            "job_id": job_id,
            "manifest_key": manifest_key,
        })
        self.ids[job_id] = uuid.uuid4()
        return self.ids[job_id]


class FailingUploadStorage(LocalStorage):
    def upload(self, file_path, key, content_type="application/octet-stream"):
        return StorageResult(success=False, key=key, error_message="bucket unavailable")


class SelectiveFailureStorage(LocalStorage):
    """Fails uploads of the file names listed in `failing`."""

    failing: set = set()

    def upload(self, file_path, key, content_type="application/octet-stream"):
        if key.rsplit("/", 1)[-1] in self.failing:
            return StorageResult(success=False, key=key, error_message="503 Slow Down")
        return super().upload(file_path, key, content_type)


class BrokenLeaseLock(FileLeaseLock):
    """File lease whose backend errors on acquire and/or release."""

    def __init__(self, lock_dir, fail_acquire=False, fail_release=False):
        super().__init__(lock_dir, ttl_seconds=600)
        self.fail_acquire = fail_acquire
        self.fail_release = fail_release

    async def try_acquire(self, key):
        if self.fail_acquire:
            raise PermissionError("lock dir not writable")
        return await super().try_acquire(key)

    async def release(self, lease):
        if self.fail_release:
            raise ConnectionError("lease backend unreachable")
        return await super().release(lease)


@dataclass
class Pipeline:
    driver: JobDriver
    storage: LocalStorage
    tools: FakeMediaTools
    metadata: RecordingMetadataStore
    limiter: ConcurrencyLimiter
    lock: FileLeaseLock


def build_pipeline(
    root: Path,
    ladder=LADDER_240_720,
    capacity: int = 2,
    tools: Optional[FakeMediaTools] = None,
    manifests: ManifestMode = ManifestMode.BOTH,
    metadata: Optional[RecordingMetadataStore] = None,
    storage_cls=LocalStorage,
    limiter: Optional[ConcurrencyLimiter] = None,
    lock: Optional[FileLeaseLock] = None,
    work_dir: str = "work",
) -> Pipeline:
    tools = tools or FakeMediaTools()
    metadata = metadata or RecordingMetadataStore()
    limiter = limiter or ConcurrencyLimiter(capacity)
    storage = storage_cls(StorageConfig(backend="local", local_path=str(root / "store")))
    lock = lock or FileLeaseLock(str(root / "locks"), ttl_seconds=600)
    encoder = FFmpegEncoder(EncodingProfile(max_concurrency=capacity), limiter, runner=tools)
    driver = JobDriver(
        coordinator=FanOutCoordinator(encoder),
        packager=Packager(mode=manifests, runner=tools),
        storage=storage,
        lock=lock,
        metadata=metadata,
        work_dir=str(root / work_dir),
        ladder=ladder,
        output_prefix="processed/",
    )
    return Pipeline(driver, storage, tools, metadata, limiter, lock)


def make_descriptor(job_id: str = "upload-1", has_audio: bool = False) -> JobDescriptor:
    return JobDescriptor(
        job_id=job_id,
        source_key=f"uploads/{job_id}/clip.mp4",
        filename="clip.mp4",
        has_audio=has_audio,
        owner_id="user-7",
        parent_id="post-3",
    )


def upload_source(root: Path, storage: LocalStorage, descriptor: JobDescriptor) -> None:
    source = root / f"{descriptor.job_id}-source.mp4"
    source.write_bytes(b"original upload")
    assert storage.upload(str(source), descriptor.source_key).success


def assert_cleaned_up(pipeline: Pipeline, descriptor: JobDescriptor) -> None:
    assert not pipeline.driver.workspace_for(descriptor).exists()
    assert not pipeline.lock.marker_path(lock_key(descriptor, "processed/")).exists()


class TestJobScenarios:
    """End-to-end runs of the 240p/720p ladder."""

    @pytest.mark.asyncio
    async def test_both_rungs_succeed(self, tmp_path):
        pipeline = build_pipeline(tmp_path)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        result = await pipeline.driver.run(descriptor)

        prefix = output_prefix(descriptor, "processed/")
        assert prefix == "processed/upload-1/user-7/post-3/"
        assert result.state == JobState.COMPLETED
        assert len(pipeline.tools.encodes) == 2
        assert len(pipeline.tools.packaging_calls) == 2
        assert result.manifest_keys == [f"{prefix}manifest.mpd", f"{prefix}manifest.m3u8"]

        published = pipeline.storage.list_files(prefix)
        assert f"{prefix}manifest.mpd" in published
        assert f"{prefix}thumbnail.jpg" in published
        # the muxed renditions were replaced by segments
        assert f"{prefix}240p.mp4" not in published
        assert f"{prefix}720p.mp4" not in published
        # manifests go out last
        assert result.published_keys[-2:] == result.manifest_keys

        assert pipeline.metadata.records == [{
            "name": "clip",
            "owner_id": "user-7",
            "asset_key": f"{prefix}manifest.mpd",
            "thumbnail_key": f"{prefix}thumbnail.jpg",
            "job_id": "upload-1",
            "manifest_key": f"{prefix}manifest.mpd",
        }]
        assert set(result.timings) >= {"encoding", "segmentation", "total"}
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_one_rung_fails(self, tmp_path):
        pipeline = build_pipeline(tmp_path, tools=FakeMediaTools(fail={"720p.mp4"}))
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.PARTIALLY_FAILED
        assert isinstance(exc_info.value.cause, AggregateEncodeError)
        assert [o.name for o in exc_info.value.cause.failures] == ["720p"]
        # 240p still ran to completion
        assert len(pipeline.tools.encodes) == 2
        assert pipeline.tools.packaging_calls == []
        assert pipeline.metadata.records == []
        assert pipeline.storage.list_files(output_prefix(descriptor, "processed/")) == []
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_audio_track_becomes_the_asset(self, tmp_path):
        pipeline = build_pipeline(tmp_path, manifests=ManifestMode.DASH)
        descriptor = make_descriptor(has_audio=True)
        upload_source(tmp_path, pipeline.storage, descriptor)

        await pipeline.driver.run(descriptor)

        prefix = output_prefix(descriptor, "processed/")
        assert pipeline.metadata.records[0]["asset_key"] == f"{prefix}audio.mp3"
        assert pipeline.storage.exists(f"{prefix}audio.mp3")
        assert len(pipeline.tools.packaging_calls) == 1

    @pytest.mark.asyncio
    async def test_no_manifests_keeps_renditions(self, tmp_path):
        pipeline = build_pipeline(tmp_path, manifests=ManifestMode.NONE)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        result = await pipeline.driver.run(descriptor)

        prefix = output_prefix(descriptor, "processed/")
        assert result.state == JobState.COMPLETED
        assert pipeline.tools.packaging_calls == []
        assert pipeline.storage.exists(f"{prefix}720p.mp4")
        assert pipeline.metadata.records[0]["asset_key"] == f"{prefix}720p.mp4"
        assert pipeline.metadata.records[0]["manifest_key"] is None


class TestSkips:
    """Tests for the two non-error skip paths."""

    @pytest.mark.asyncio
    async def test_already_published_job_is_skipped_without_encoding(self, tmp_path):
        pipeline = build_pipeline(tmp_path)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)
        await pipeline.driver.run(descriptor)
        encodes_before = len(pipeline.tools.ffmpeg_calls)

        result = await pipeline.driver.run(descriptor)

        assert result.state == JobState.SKIPPED
        assert len(pipeline.tools.ffmpeg_calls) == encodes_before
        assert len(pipeline.metadata.records) == 1

    @pytest.mark.asyncio
    async def test_job_leased_elsewhere_is_skipped(self, tmp_path):
        pipeline = build_pipeline(tmp_path)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)
        other_worker = FileLeaseLock(str(tmp_path / "locks"), ttl_seconds=600)
        lease = await other_worker.try_acquire(lock_key(descriptor, "processed/"))

        result = await pipeline.driver.run(descriptor)

        assert result.state == JobState.SKIPPED
        assert pipeline.tools.calls == []
        # the other worker's lease is untouched
        assert other_worker.marker_path(lease.key).exists()

    @pytest.mark.asyncio
    async def test_two_workers_racing_for_one_job(self, tmp_path):
        shared_tools = FakeMediaTools(encode_delay=0.01)
        first = build_pipeline(tmp_path, tools=shared_tools, work_dir="work-a")
        second = build_pipeline(tmp_path, tools=shared_tools, metadata=first.metadata, work_dir="work-b")
        descriptor = make_descriptor()
        upload_source(tmp_path, first.storage, descriptor)

        results = await asyncio.gather(first.driver.run(descriptor), second.driver.run(descriptor))

        assert sorted(r.state.value for r in results) == ["completed", "skipped"]
        assert len(shared_tools.encodes) == 2
        assert len(first.metadata.records) == 1


class TestFailures:
    """Every fatal category tears down and is not acknowledged."""

    @pytest.mark.asyncio
    async def test_missing_source(self, tmp_path):
        pipeline = build_pipeline(tmp_path)
        descriptor = make_descriptor()

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.LOCK_ACQUIRED
        assert isinstance(exc_info.value.cause, InputUnavailableError)
        assert pipeline.tools.calls == []
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_packaging_failure(self, tmp_path):
        pipeline = build_pipeline(tmp_path, tools=FakeMediaTools(fail={"manifest.m3u8"}))
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.SUCCEEDED
        assert isinstance(exc_info.value.cause, PackagingError)
        assert pipeline.metadata.records == []
        assert pipeline.storage.list_files(output_prefix(descriptor, "processed/")) == []
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_publish_failure(self, tmp_path):
        pipeline = build_pipeline(tmp_path, storage_cls=FailingUploadStorage)
        descriptor = make_descriptor()
        source = tmp_path / "store" / descriptor.source_key
        source.parent.mkdir(parents=True)
        source.write_bytes(b"original upload")

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.PACKAGED
        assert isinstance(exc_info.value.cause, PublishError)
        assert pipeline.metadata.records == []
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_metadata_failure_is_a_publish_failure(self, tmp_path):
        pipeline = build_pipeline(tmp_path, metadata=RecordingMetadataStore(fail=True))
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.PACKAGED
        assert isinstance(exc_info.value.cause, PublishError)
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_empty_ladder_fails_before_any_work(self, tmp_path):
        ladder = tuple(RungSpec(r.name, r.scale, r.bitrate, r.crf, enabled=False) for r in LADDER_240_720)
        pipeline = build_pipeline(tmp_path, ladder=ladder)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.QUEUED
        assert isinstance(exc_info.value.cause, EmptyLadderError)
        assert pipeline.tools.calls == []
        assert not (tmp_path / "locks").exists() or not any((tmp_path / "locks").rglob(".lock"))


class TestRedeliveryAfterPartialPublish:
    """A job whose publish step broke halfway is redone, not skipped."""

    @pytest.mark.asyncio
    async def test_metadata_failure_then_retry_records_once(self, tmp_path):
        metadata = RecordingMetadataStore(fail=True)
        pipeline = build_pipeline(tmp_path, metadata=metadata)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)
        prefix = output_prefix(descriptor, "processed/")

        with pytest.raises(JobFailedError):
            await pipeline.driver.run(descriptor)
        # no completion marker went out without a record
        assert not pipeline.storage.exists(f"{prefix}manifest.mpd")
        assert not pipeline.storage.exists(f"{prefix}manifest.m3u8")

        metadata.fail = False
        result = await pipeline.driver.run(descriptor)

        assert result.state == JobState.COMPLETED
        assert len(metadata.records) == 1
        assert pipeline.storage.exists(f"{prefix}manifest.mpd")
        assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_second_manifest_upload_failure_then_retry(self, tmp_path):
        pipeline = build_pipeline(tmp_path, storage_cls=SelectiveFailureStorage)
        pipeline.storage.failing = {"manifest.m3u8"}
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)
        prefix = output_prefix(descriptor, "processed/")

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)
        assert isinstance(exc_info.value.cause, PublishError)
        assert exc_info.value.cause.key == f"{prefix}manifest.m3u8"
        assert pipeline.storage.exists(f"{prefix}manifest.mpd")

        pipeline.storage.failing = set()
        result = await pipeline.driver.run(descriptor)

        assert result.state == JobState.COMPLETED
        assert pipeline.storage.exists(f"{prefix}manifest.m3u8")
        # the record written by the first attempt is reused
        assert len(pipeline.metadata.records) == 1
        assert result.asset_id == pipeline.metadata.ids[descriptor.job_id]

    @pytest.mark.asyncio
    async def test_skip_needs_every_manifest(self, tmp_path):
        pipeline = build_pipeline(tmp_path)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)
        stray = tmp_path / "manifest.mpd"
        stray.write_text("manifest")
        assert pipeline.storage.upload(str(stray), output_key(descriptor, "manifest.mpd", "processed/")).success

        result = await pipeline.driver.run(descriptor)

        assert result.state == JobState.COMPLETED
        assert len(pipeline.tools.encodes) == 2


class TestLeaseBackendErrors:
    """Errors of the lease backend fail the job instead of escaping raw."""

    @pytest.mark.asyncio
    async def test_acquire_error(self, tmp_path):
        lock = BrokenLeaseLock(str(tmp_path / "locks"), fail_acquire=True)
        pipeline = build_pipeline(tmp_path, lock=lock)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.QUEUED
        assert isinstance(exc_info.value.cause, PermissionError)
        assert pipeline.tools.calls == []

    @pytest.mark.asyncio
    async def test_release_error_after_publishing(self, tmp_path):
        lock = BrokenLeaseLock(str(tmp_path / "locks"), fail_release=True)
        pipeline = build_pipeline(tmp_path, lock=lock)
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.PUBLISHED
        assert isinstance(exc_info.value.cause, ConnectionError)
        assert not pipeline.driver.workspace_for(descriptor).exists()

        # the redelivery finds the outputs and is acknowledged
        lock.fail_release = False
        result = await pipeline.driver.run(descriptor)
        assert result.state == JobState.SKIPPED

    @pytest.mark.asyncio
    async def test_release_error_keeps_the_original_failure(self, tmp_path):
        lock = BrokenLeaseLock(str(tmp_path / "locks"), fail_release=True)
        pipeline = build_pipeline(tmp_path, lock=lock, tools=FakeMediaTools(fail={"720p.mp4"}))
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        with pytest.raises(JobFailedError) as exc_info:
            await pipeline.driver.run(descriptor)

        assert exc_info.value.state == JobState.PARTIALLY_FAILED
        assert isinstance(exc_info.value.cause, AggregateEncodeError)


class TestConcurrencyAcrossJobs:
    """Bounded encode parallelism for whole jobs."""

    @given(
        rung_count=st.integers(min_value=1, max_value=5),
        capacity=st.integers(min_value=1, max_value=3),
        fail_index=st.one_of(st.none(), st.integers(min_value=0, max_value=4)),
    )
    @settings(max_examples=30, deadline=None)
    @pytest.mark.asyncio
    async def test_encode_count_bound_and_cleanup(self, rung_count, capacity, fail_index):
        ladder = tuple(
            RungSpec(name=f"r{i}", scale=f"scale=-2:{200 + i}", bitrate="500k", crf=28)
            for i in range(rung_count)
        )
        failing = set()
        if fail_index is not None and fail_index < rung_count:
            failing.add(f"r{fail_index}.mp4")
        tools = FakeMediaTools(fail=failing, encode_delay=0.002)

        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            pipeline = build_pipeline(root, ladder=ladder, capacity=capacity, tools=tools)
            descriptor = make_descriptor()
            upload_source(root, pipeline.storage, descriptor)

            if failing:
                with pytest.raises(JobFailedError):
                    await pipeline.driver.run(descriptor)
                assert tools.packaging_calls == []
            else:
                result = await pipeline.driver.run(descriptor)
                assert result.state == JobState.COMPLETED

            assert len(tools.encodes) == rung_count
            assert tools.peak <= capacity
            assert pipeline.limiter.max_in_use <= capacity
            assert pipeline.limiter.available == capacity
            assert_cleaned_up(pipeline, descriptor)

    @pytest.mark.asyncio
    async def test_three_rungs_on_two_permits_take_two_batches(self, tmp_path):
        delay = 0.2
        ladder = LADDER_240_720 + (RungSpec(name="1080p", scale="scale=-2:1920", bitrate="4000k", crf=26),)
        pipeline = build_pipeline(tmp_path, ladder=ladder, capacity=2, tools=FakeMediaTools(encode_delay=delay))
        descriptor = make_descriptor()
        upload_source(tmp_path, pipeline.storage, descriptor)

        started = time.monotonic()
        await pipeline.driver.run(descriptor)
        elapsed = time.monotonic() - started

        # ceil(3 / 2) = 2 encode durations: neither serialized (3x) nor unbounded (1x)
        assert 1.8 * delay <= elapsed < 2.9 * delay
        assert pipeline.limiter.max_in_use == 2

    @pytest.mark.asyncio
    async def test_concurrent_jobs_share_one_limiter(self, tmp_path):
        tools = FakeMediaTools(encode_delay=0.02)
        pipeline = build_pipeline(tmp_path, capacity=2, tools=tools)
        descriptors = [make_descriptor(job_id=f"upload-{i}") for i in range(3)]
        for descriptor in descriptors:
            upload_source(tmp_path, pipeline.storage, descriptor)

        results = await asyncio.gather(*(pipeline.driver.run(d) for d in descriptors))

        assert all(r.state == JobState.COMPLETED for r in results)
        assert len(tools.encodes) == 6
        assert tools.peak <= 2
        assert len(pipeline.metadata.records) == 3
