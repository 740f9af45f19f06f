"""OpenTelemetry tracing for job runs.

A job run gets one span. Each fan-out item and each packager
invocation opens a child span beneath it. Until setup_tracing is
called every span comes from the no-op global tracer.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

_TRACER_NAME = "abrworker"

_provider: Optional[TracerProvider] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    otlp_endpoint: Optional[str] = None,
    console: bool = False,
) -> None:
    """Install a tracer provider for the worker process.

    Spans go to ``otlp_endpoint`` when one is configured (needs the
    ``otlp`` extra) and to stdout when ``console`` is set.
    """
    global _provider

    provider = TracerProvider(
        resource=Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": environment,
        })
    )

    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            logger.warning(f"OTLP_ENDPOINT={otlp_endpoint} set but the otlp extra is not installed")
        else:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
            logger.info(f"Exporting spans to {otlp_endpoint}")

    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _provider = provider


def _span_context_field(attr: str, width: int) -> Optional[str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None
    return format(getattr(context, attr), f"0{width}x")


def get_trace_id() -> Optional[str]:
    return _span_context_field("trace_id", 32)


def get_span_id() -> Optional[str]:
    return _span_context_field("span_id", 16)


@contextmanager
def create_span(name: str, attributes: Optional[dict] = None) -> Iterator[Span]:
    """Open a span as the current span for the block.

    Exceptions leaving the block are recorded on the span before they
    propagate.
    """
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(name, attributes=attributes or {}) as span:
        yield span


def record_exception(exception: BaseException) -> None:
    """Mark the current span as failed with ``exception``."""
    span = trace.get_current_span()
    span.record_exception(exception)
    span.set_status(Status(StatusCode.ERROR, str(exception)))


def shutdown_tracing() -> None:
    """Flush pending spans."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None
