"""
Prometheus Metrics for Observability

Tracks per-stage latency, tile outcomes, Replicate API calls and job
outcomes. Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Orchestration step latency (plan, split, dispatch, stitch, reconcile)
pipeline_latency_seconds = Histogram(
    "upscale_step_latency_seconds",
    "Time spent in each orchestration step",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# End-to-end job duration
pipeline_total_duration = Histogram(
    "upscale_job_duration_seconds",
    "Wall-clock time from job start to terminal state",
    labelnames=["status"],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0]
)

# Replicate API Calls
replicate_api_calls_total = Counter(
    "replicate_api_calls_total",
    "Total number of Replicate API calls",
    labelnames=["operation", "status", "http_status"]
)

# Tile outcomes per stage
tiles_total = Counter(
    "upscale_tiles_total",
    "Tile stage outcomes",
    labelnames=["stage", "outcome"]  # succeeded, retried, failed
)

# Jobs Counter
jobs_total = Counter(
    "upscale_jobs_total",
    "Total number of upscale jobs by terminal status",
    labelnames=["status", "error_code"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "upscale_active_jobs",
    "Number of jobs currently between start and a terminal state"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "upscale_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track step latency.

    Usage:
        with track_stage_latency("stitch"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(time.time() - start)


def record_replicate_call(operation: str, status: str, http_status: int = 0):
    """Record a Replicate API call."""
    replicate_api_calls_total.labels(
        operation=operation,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_tile_outcome(stage: int, outcome: str, count: int = 1):
    tiles_total.labels(stage=str(stage), outcome=outcome).inc(count)


def record_job_started():
    active_jobs_gauge.inc()


def record_job_completion(
    status: str,
    error_code: str = "none",
    duration_seconds: float = None,
    was_active: bool = True
):
    """Record a job reaching a terminal state."""
    jobs_total.labels(status=status, error_code=error_code).inc()
    if was_active:
        active_jobs_gauge.dec()
    if duration_seconds is not None:
        pipeline_total_duration.labels(status=status).observe(duration_seconds)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST


# Initialize app info on module load
set_app_info(version="1.0.0", environment="development")
