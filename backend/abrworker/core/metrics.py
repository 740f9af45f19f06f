"""Prometheus metrics for the encoding worker.

Tracks job outcomes, per-rendition encode timings and the state of the
process-wide encode permit pool.
"""

import os

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    multiprocess,
    start_http_server,
)

REGISTRY = CollectorRegistry()

# Celery prefork workers aggregate through the shared directory
if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Worker Info
# ============================================
APP_INFO = Info(
    "abrworker_app",
    "Worker information",
    registry=REGISTRY,
)


# ============================================
# Job Metrics
# ============================================
JOBS_TOTAL = Counter(
    "abr_jobs_total",
    "Total number of processed jobs by final state",
    ["state"],
    registry=REGISTRY,
)

JOB_DURATION_SECONDS = Histogram(
    "abr_job_duration_seconds",
    "Job processing duration in seconds",
    ["phase"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

JOBS_IN_FLIGHT = Gauge(
    "abr_jobs_in_flight",
    "Number of jobs currently being driven by this process",
    registry=REGISTRY,
)

LOCK_CONTENTION_TOTAL = Counter(
    "abr_lock_contention_total",
    "Jobs skipped because another worker holds the ownership lease",
    registry=REGISTRY,
)


# ============================================
# Encode Metrics
# ============================================
ENCODE_DURATION_SECONDS = Histogram(
    "abr_encode_duration_seconds",
    "External encoder run time per item",
    ["item"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
    registry=REGISTRY,
)

ENCODE_FAILURES_TOTAL = Counter(
    "abr_encode_failures_total",
    "Failed fan-out items",
    ["item"],
    registry=REGISTRY,
)


# ============================================
# Permit Pool Metrics
# ============================================
PERMITS_IN_USE = Gauge(
    "abr_encode_permits_in_use",
    "Encode permits currently granted",
    registry=REGISTRY,
)

PERMITS_WAITING = Gauge(
    "abr_encode_permits_waiting",
    "Callers suspended waiting for an encode permit",
    registry=REGISTRY,
)


def start_metrics_server(port: int) -> None:
    """Expose the registry over HTTP on the given port."""
    start_http_server(port, registry=REGISTRY)


def set_app_info(version: str, environment: str, codec: str) -> None:
    """Set worker info metrics.

    Args:
        version: Worker version
        environment: Deployment environment
        codec: Video codec selected at startup
    """
    APP_INFO.info({
        "version": version,
        "environment": environment,
        "codec": codec,
    })
