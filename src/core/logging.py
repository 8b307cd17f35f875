"""
Structured Logging Configuration with structlog

Outputs JSON logs that are searchable in ELK, Loki or CloudWatch.
Every log carries the job_id, stage and tile_id of the work in progress
so a single tile can be followed across API, webhook and worker processes.
"""

import sys
import time
import logging
import structlog
from typing import Optional, Any, Dict
from datetime import datetime
from contextvars import ContextVar
from functools import wraps

from src.core.config import settings

# Context variables for request/task scoped logging
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)
tile_id_var: ContextVar[Optional[int]] = ContextVar("tile_id", default=None)


def add_app_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add application and job context to every log entry."""
    event_dict["version"] = settings.APP_VERSION

    job_id = job_id_var.get()
    if job_id and "job_id" not in event_dict:
        event_dict["job_id"] = job_id

    stage = stage_var.get()
    if stage and "stage" not in event_dict:
        event_dict["stage"] = stage

    tile_id = tile_id_var.get()
    if tile_id is not None and "tile_id" not in event_dict:
        event_dict["tile_id"] = tile_id

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Add ISO format timestamp."""
    event_dict["timestamp"] = datetime.utcnow().isoformat() + "Z"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure structured logging for the API and the Celery worker.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: If True, output JSON; if False, output colored console logs
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_app_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for setting logging context.

    Usage:
        with LogContext(job_id="abc123", stage="split"):
            logger.info("split_started")
    """

    def __init__(
        self,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        tile_id: Optional[int] = None
    ):
        self.job_id = job_id
        self.stage = stage
        self.tile_id = tile_id
        self._job_id_token = None
        self._stage_token = None
        self._tile_id_token = None

    def __enter__(self):
        if self.job_id:
            self._job_id_token = job_id_var.set(self.job_id)
        if self.stage:
            self._stage_token = stage_var.set(self.stage)
        if self.tile_id is not None:
            self._tile_id_token = tile_id_var.set(self.tile_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._tile_id_token:
            tile_id_var.reset(self._tile_id_token)
        if self._stage_token:
            stage_var.reset(self._stage_token)
        if self._job_id_token:
            job_id_var.reset(self._job_id_token)
        return False


def set_job_context(job_id: str, stage: Optional[str] = None, tile_id: Optional[int] = None):
    """Set the current job context for logging (Celery tasks)."""
    job_id_var.set(job_id)
    if stage:
        stage_var.set(stage)
    if tile_id is not None:
        tile_id_var.set(tile_id)


def clear_job_context():
    """Clear the current job context."""
    job_id_var.set(None)
    stage_var.set(None)
    tile_id_var.set(None)


def with_logging(stage: str):
    """
    Decorator for CPU-bound imaging steps: logs start, finish and failure
    with the elapsed time, under `stage` for the duration of the call.

    Usage:
        @with_logging("stitch")
        def stitch_tiles(...):
            ...
    """
    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            token = stage_var.set(stage)
            start = time.monotonic()
            logger.info("stage_started", stage=stage)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "stage_failed",
                    stage=stage,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise
            finally:
                stage_var.reset(token)
            logger.info("stage_completed", stage=stage, duration_ms=int((time.monotonic() - start) * 1000))
            return result

        return wrapper

    return decorator


# Example log output structure:
# {
#   "timestamp": "2026-03-02T10:00:00Z",
#   "level": "info",
#   "event": "tile_stage_complete",
#   "stage": "stage2",
#   "job_id": "550e8400-e29b-41d4-a716-446655440000",
#   "tile_id": 17,
#   "prediction_id": "q7x2m4ab5nrj60cm3rtb",
#   "version": "1.0.0"
# }
