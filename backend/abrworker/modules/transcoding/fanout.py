"""Concurrent fan-out of one job's encode work.

Every rung encode and auxiliary extraction of a job is launched at once;
each contends for limiter permits on its own. All items are awaited to
settlement, and the job only proceeds when every required item succeeded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from abrworker.core.metrics import ENCODE_FAILURES_TOTAL
from abrworker.core.tracing import create_span
from abrworker.modules.transcoding.abr import RungSpec
from abrworker.modules.transcoding.errors import AggregateEncodeError, EncodeCancelled
from abrworker.modules.transcoding.ffmpeg import FFmpegEncoder
from abrworker.modules.transcoding.models import ItemKind
from abrworker.modules.transcoding.schemas import JobDescriptor

logger = logging.getLogger(__name__)


@dataclass
class OutcomeRecord:
    """Settled result of one fan-out item."""
    name: str
    kind: ItemKind
    required: bool = True
    output_path: Optional[Path] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.output_path is not None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, EncodeCancelled)


@dataclass
class FanOutResult:
    """All outcomes of one job's fan-out, in launch order."""
    outcomes: list[OutcomeRecord] = field(default_factory=list)

    @property
    def failures(self) -> list[OutcomeRecord]:
        return [o for o in self.outcomes if o.required and not o.succeeded]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def rendition_paths(self) -> list[Path]:
        """Successful rung outputs in ladder order."""
        return [o.output_path for o in self.outcomes if o.kind == ItemKind.RUNG and o.succeeded]

    def path_of(self, kind: ItemKind) -> Optional[Path]:
        for outcome in self.outcomes:
            if outcome.kind == kind and outcome.succeeded:
                return outcome.output_path
        return None


@dataclass
class _WorkItem:
    name: str
    kind: ItemKind
    required: bool
    start: Callable[[], Awaitable[Path]]


class FanOutCoordinator:
    """Launches a job's encode items concurrently and aggregates them."""

    def __init__(
        self,
        encoder: FFmpegEncoder,
        cancel_on_failure: bool = False,
        require_thumbnail: bool = True,
    ):
        self.encoder = encoder
        self.cancel_on_failure = cancel_on_failure
        self.require_thumbnail = require_thumbnail

    def _plan(
        self,
        descriptor: JobDescriptor,
        rungs: Sequence[RungSpec],
        input_path: str,
        output_dir: str,
        duration: float,
        cancel: Optional[asyncio.Event],
    ) -> list[_WorkItem]:
        items = [
            _WorkItem(
                name="thumbnail",
                kind=ItemKind.THUMBNAIL,
                required=self.require_thumbnail,
                start=lambda: self.encoder.extract_thumbnail(input_path, output_dir, cancel=cancel),
            ),
        ]
        if descriptor.has_audio:
            items.append(
                _WorkItem(
                    name="audio",
                    kind=ItemKind.AUDIO,
                    required=True,
                    start=lambda: self.encoder.extract_audio(
                        input_path, output_dir, duration=duration, cancel=cancel
                    ),
                )
            )
        for rung in rungs:
            items.append(
                _WorkItem(
                    name=rung.name,
                    kind=ItemKind.RUNG,
                    required=True,
                    start=lambda rung=rung: self.encoder.encode(
                        rung, input_path, output_dir, duration=duration, cancel=cancel
                    ),
                )
            )
        return items

    async def _settle(self, item: _WorkItem, cancel: Optional[asyncio.Event]) -> OutcomeRecord:
        outcome = OutcomeRecord(name=item.name, kind=item.kind, required=item.required)
        with create_span(f"fanout.{item.name}", attributes={"item.kind": item.kind.value}):
            try:
                outcome.output_path = await item.start()
            except Exception as e:
                outcome.error = e
                if not isinstance(e, EncodeCancelled):
                    ENCODE_FAILURES_TOTAL.labels(item=item.name).inc()
                if item.required and cancel is not None:
                    cancel.set()
        return outcome

    async def run(
        self,
        descriptor: JobDescriptor,
        rungs: Sequence[RungSpec],
        input_path: str,
        output_dir: str,
    ) -> FanOutResult:
        """Run every item of the job and wait for all of them to settle.

        Returns:
            FanOutResult with one outcome per launched item

        Raises:
            AggregateEncodeError: If any required item failed
        """
        duration = await self.encoder.probe_duration(input_path)
        cancel = asyncio.Event() if self.cancel_on_failure else None

        items = self._plan(descriptor, rungs, input_path, output_dir, duration, cancel)
        logger.info(
            f"Launching {len(items)} item(s) for {descriptor.filename}: "
            f"{', '.join(item.name for item in items)}"
        )

        outcomes = await asyncio.gather(*(self._settle(item, cancel) for item in items))
        result = FanOutResult(outcomes=list(outcomes))

        failures = result.failures
        if failures:
            logger.error(f"{len(failures)} item(s) failed for {descriptor.filename}")
            for outcome in failures:
                logger.error(f"  - {outcome.name}: {outcome.error}")
            raise AggregateEncodeError(failures)

        return result
