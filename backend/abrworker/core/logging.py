"""Structured logging with correlation IDs.

Every log line emitted while a job runs carries that job's id as its
correlation id, so the interleaved output of concurrent jobs in one
worker process can be separated again.
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from abrworker.core.tracing import get_span_id, get_trace_id

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# LogRecord attributes that are not user supplied ``extra`` fields
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None))
) | {"message", "asctime", "taskName", "correlation_id"}

_QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "sqlalchemy.engine", "celery.worker.strategy")


def get_correlation_id() -> Optional[str]:
    """The job id bound to this context, falling back to the trace id."""
    return correlation_id_var.get() or get_trace_id()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind a correlation ID for the duration of a block.

    The previous value is restored on exit, so nested scopes and
    concurrently running asyncio tasks each keep their own id.
    """
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, include_stack_trace: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None) or get_correlation_id(),
            "source": f"{record.pathname}:{record.lineno}",
        }

        trace_id = get_trace_id()
        if trace_id:
            entry["trace_id"] = trace_id
            entry["span_id"] = get_span_id()

        if record.exc_info and record.exc_info[1] is not None:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {"type": exc_type.__name__, "message": str(exc)}
            if self.include_stack_trace and tb is not None:
                entry["exception"]["stack_trace"] = traceback.format_exception(exc_type, exc, tb)

        extra = {k: _jsonable(v) for k, v in record.__dict__.items() if k not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class CorrelationIdFilter(logging.Filter):
    """Stamp each record with the current correlation ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """Route all worker logging to stdout.

    Args:
        level: Log level name
        json_format: JSON lines when True, plain text otherwise
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(CorrelationIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s [%(correlation_id)s] %(name)s: %(message)s")
        )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **extra: Any,
) -> None:
    """Log an error with its exception and context fields attached."""
    logger.error(message, exc_info=exception, extra=extra)
