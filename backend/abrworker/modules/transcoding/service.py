"""Job driver: runs one job descriptor end to end.

QUEUED -> LOCK_ACQUIRED -> INPUT_MATERIALIZED -> ENCODING
    -> SUCCEEDED | PARTIALLY_FAILED -> PACKAGED -> PUBLISHED -> COMPLETED

FAILED is reachable from every non-terminal state and SKIPPED covers both
already-published jobs and jobs whose lease is held elsewhere. Whatever the
outcome, the workspace is removed and then the lease released before the
driver returns or raises.
"""

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional, Sequence

from abrworker.core.logging import correlation_scope, log_error
from abrworker.core.metrics import (
    JOB_DURATION_SECONDS,
    JOBS_IN_FLIGHT,
    JOBS_TOTAL,
    LOCK_CONTENTION_TOTAL,
)
from abrworker.core.storage import StorageBackend, StorageError
from abrworker.core.tracing import create_span, record_exception
from abrworker.modules.transcoding.abr import DEFAULT_LADDER, RungSpec, enabled_rungs
from abrworker.modules.transcoding.errors import (
    AggregateEncodeError,
    InputUnavailableError,
    JobFailedError,
    PublishError,
)
from abrworker.modules.transcoding.fanout import FanOutCoordinator
from abrworker.modules.transcoding.ffmpeg import AUDIO_NAME, THUMBNAIL_NAME
from abrworker.modules.transcoding.lock import OwnershipLock
from abrworker.modules.transcoding.models import ItemKind, JobState
from abrworker.modules.transcoding.packager import Packager
from abrworker.modules.transcoding.repository import MetadataStore
from abrworker.modules.transcoding.schemas import JobDescriptor
from abrworker.modules.transcoding.storage import (
    lock_key,
    output_prefix,
    publish_directory,
    publish_files,
)

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Outcome of a job run that did not fail."""
    job_id: str
    state: JobState
    published_keys: list[str] = field(default_factory=list)
    manifest_keys: list[str] = field(default_factory=list)
    asset_id: Optional[uuid.UUID] = None
    timings: dict[str, float] = field(default_factory=dict)
    reason: Optional[str] = None


class JobDriver:
    """Drives descriptors through the pipeline.

    All collaborators are injected; the fan-out coordinator's encoder holds
    the process-wide limiter, so any number of drivers and concurrent runs
    share one permit pool.
    """

    def __init__(
        self,
        coordinator: FanOutCoordinator,
        packager: Packager,
        storage: StorageBackend,
        lock: OwnershipLock,
        metadata: MetadataStore,
        work_dir: str = "./uploads",
        ladder: Sequence[RungSpec] = DEFAULT_LADDER,
        output_prefix: str = "processed/",
    ):
        self.coordinator = coordinator
        self.packager = packager
        self.storage = storage
        self.lock = lock
        self.metadata = metadata
        self.work_dir = Path(work_dir)
        self.ladder = tuple(ladder)
        self.output_prefix = output_prefix

    def workspace_for(self, descriptor: JobDescriptor) -> Path:
        return self.work_dir / descriptor.job_id

    @property
    def completion_markers(self) -> list[str]:
        """Files published last, after the metadata record.

        A job counts as published only when every one of them exists.
        """
        return self.packager.manifest_names() or [THUMBNAIL_NAME]

    async def _is_published(self, prefix: str) -> bool:
        for name in self.completion_markers:
            if not await asyncio.to_thread(self.storage.exists, f"{prefix}{name}"):
                return False
        return True

    async def run(self, descriptor: JobDescriptor) -> JobResult:
        """Run one job.

        Returns:
            JobResult in state COMPLETED or SKIPPED

        Raises:
            JobFailedError: If the job failed; it must not be acknowledged
        """
        with correlation_scope(descriptor.job_id), create_span(
            "job.run",
            attributes={"job.id": descriptor.job_id, "job.filename": descriptor.filename},
        ):
            JOBS_IN_FLIGHT.inc()
            try:
                result = await self._run(descriptor)
            except JobFailedError:
                JOBS_TOTAL.labels(state=JobState.FAILED.value).inc()
                raise
            finally:
                JOBS_IN_FLIGHT.dec()

            JOBS_TOTAL.labels(state=result.state.value).inc()
            return result

    async def _run(self, descriptor: JobDescriptor) -> JobResult:
        started = time.monotonic()
        state = JobState.QUEUED
        logger.info(f"Processing {descriptor.filename} (source {descriptor.source_key})")

        try:
            rungs = enabled_rungs(self.ladder)
            prefix = output_prefix(descriptor, self.output_prefix)
            already_done = await self._is_published(prefix)
        except Exception as e:
            raise self._fail(descriptor, state, e) from e

        if already_done:
            logger.info(f"Outputs under {prefix} already published, skipping")
            return JobResult(job_id=descriptor.job_id, state=JobState.SKIPPED, reason="already published")

        # lease backend errors fail the job like any other step
        try:
            async with self.lock.held(lock_key(descriptor, self.output_prefix)) as lease:
                if lease is None:
                    LOCK_CONTENTION_TOTAL.inc()
                    return JobResult(job_id=descriptor.job_id, state=JobState.SKIPPED, reason="lease held")

                state = JobState.LOCK_ACQUIRED
                workspace = self.workspace_for(descriptor)
                try:
                    result = await self._process(descriptor, rungs, prefix, workspace)
                finally:
                    self._teardown(workspace)
                state = JobState.PUBLISHED
        except JobFailedError:
            raise
        except Exception as e:
            raise self._fail(descriptor, state, e) from e

        total = time.monotonic() - started
        result.timings["total"] = total
        JOB_DURATION_SECONDS.labels(phase="total").observe(total)
        logger.info(
            f"Job timings: encoding {result.timings.get('encoding', 0.0):.2f}s, "
            f"segmentation {result.timings.get('segmentation', 0.0):.2f}s, "
            f"total {total:.2f}s"
        )
        return replace(result, state=JobState.COMPLETED)

    async def _process(
        self,
        descriptor: JobDescriptor,
        rungs: Sequence[RungSpec],
        prefix: str,
        workspace: Path,
    ) -> JobResult:
        state = JobState.LOCK_ACQUIRED
        timings = {}
        try:
            if workspace.exists():
                # leftovers of a run that died without cleaning up
                shutil.rmtree(workspace)
            output_dir = workspace / "output"
            output_dir.mkdir(parents=True)

            input_path = workspace / f"_input{descriptor.source_suffix}"
            try:
                size = await asyncio.to_thread(self.storage.download, descriptor.source_key, str(input_path))
            except StorageError as e:
                raise InputUnavailableError(descriptor.source_key, str(e)) from e
            state = JobState.INPUT_MATERIALIZED
            logger.info(f"Materialized {descriptor.source_key} ({size} bytes)")

            state = JobState.ENCODING
            phase_started = time.monotonic()
            try:
                fanout = await self.coordinator.run(descriptor, rungs, str(input_path), str(output_dir))
            except AggregateEncodeError:
                state = JobState.PARTIALLY_FAILED
                raise
            state = JobState.SUCCEEDED
            timings["encoding"] = self._phase_done("encoding", phase_started)

            phase_started = time.monotonic()
            manifests = await self.packager.package(fanout.rendition_paths, output_dir)
            state = JobState.PACKAGED
            timings["segmentation"] = self._phase_done("segmentation", phase_started)

            # the input sits outside output_dir and is never published;
            # completion markers go out only after the metadata record
            phase_started = time.monotonic()
            markers = self.completion_markers
            keys = await asyncio.to_thread(
                publish_directory,
                self.storage,
                output_dir,
                prefix,
                hold_back=markers,
            )
            manifest_keys = [f"{prefix}{m.name}" for m in manifests]
            asset_id = await self._record(
                descriptor,
                prefix,
                fanout.path_of(ItemKind.AUDIO),
                manifest_keys,
                fanout.rendition_paths,
            )
            keys += await asyncio.to_thread(
                publish_files,
                self.storage,
                output_dir,
                prefix,
                [m for m in markers if (output_dir / m).is_file()],
            )
            state = JobState.PUBLISHED
            timings["publish"] = self._phase_done("publish", phase_started)
        except Exception as e:
            raise self._fail(descriptor, state, e) from e

        return JobResult(
            job_id=descriptor.job_id,
            state=state,
            published_keys=keys,
            manifest_keys=manifest_keys,
            asset_id=asset_id,
            timings=timings,
        )

    async def _record(
        self,
        descriptor: JobDescriptor,
        prefix: str,
        audio_path: Optional[Path],
        manifest_keys: list[str],
        renditions: list[Path],
    ) -> uuid.UUID:
        # the record points at the audio track when there is one
        if audio_path is not None:
            asset_key = f"{prefix}{AUDIO_NAME}"
        elif manifest_keys:
            asset_key = manifest_keys[0]
        else:
            asset_key = f"{prefix}{renditions[-1].name}"

        try:
            return await self.metadata.record_derived_asset(
                name=descriptor.base_name,
                owner_id=descriptor.owner_id,
                asset_key=asset_key,
                thumbnail_key=f"{prefix}{THUMBNAIL_NAME}",
                job_id=descriptor.job_id,
                manifest_key=manifest_keys[0] if manifest_keys else None,
            )
        except Exception as e:
            raise PublishError(asset_key, f"metadata record failed: {e}") from e

    @staticmethod
    def _phase_done(phase: str, started: float) -> float:
        elapsed = time.monotonic() - started
        JOB_DURATION_SECONDS.labels(phase=phase).observe(elapsed)
        return elapsed

    @staticmethod
    def _teardown(workspace: Path) -> None:
        try:
            shutil.rmtree(workspace)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove workspace {workspace}: {e}")

    @staticmethod
    def _fail(descriptor: JobDescriptor, state: JobState, cause: Exception) -> JobFailedError:
        log_error(logger, f"Job failed during {state.value}: {cause}", exception=cause, state=state.value)
        record_exception(cause)
        return JobFailedError(descriptor.job_id, state, cause)
