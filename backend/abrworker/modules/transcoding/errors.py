"""Exceptions raised by the transcoding pipeline."""

from typing import Optional, Sequence


class PipelineError(Exception):
    """Base class for job pipeline failures."""


class EmptyLadderError(PipelineError):
    """No rung of the quality ladder is enabled."""

    def __init__(self):
        super().__init__("Quality ladder has no enabled rungs")


class InputUnavailableError(PipelineError):
    """The source object could not be materialized locally."""

    def __init__(self, source_key: str, reason: str):
        self.source_key = source_key
        self.reason = reason
        super().__init__(f"Source {source_key} unavailable: {reason}")


class EncodeError(PipelineError):
    """An external encoder run failed for one fan-out item."""

    def __init__(self, item: str, reason: str, returncode: Optional[int] = None):
        self.item = item
        self.reason = reason
        self.returncode = returncode
        super().__init__(f"{item}: {reason}")


class EncodeCancelled(EncodeError):
    """An item was not started because its job was already doomed."""

    def __init__(self, item: str):
        super().__init__(item, "cancelled after a sibling failed")


class AggregateEncodeError(PipelineError):
    """At least one required fan-out item failed."""

    def __init__(self, failures: Sequence):
        self.failures = list(failures)
        names = ", ".join(outcome.name for outcome in self.failures)
        super().__init__(f"{len(self.failures)} required item(s) failed: {names}")


class PackagingError(PipelineError):
    """The segmentation tool failed to produce a manifest."""

    def __init__(self, manifest: str, reason: str):
        self.manifest = manifest
        self.reason = reason
        super().__init__(f"Packaging {manifest} failed: {reason}")


class PublishError(PipelineError):
    """Outputs could not be uploaded or recorded after packaging."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Publishing {key} failed: {reason}")


class JobFailedError(PipelineError):
    """A job run ended in the FAILED state.

    Carries the state the job was in when it failed and the underlying
    cause; the job must not be acknowledged.
    """

    def __init__(self, job_id: str, state, cause: BaseException):
        self.job_id = job_id
        self.state = state
        self.cause = cause
        super().__init__(f"Job {job_id} failed during {state.value}: {cause}")
