"""
Global Exception Handling

Provides structured error responses and the circuit breaker that guards
the inference backend.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class UpscaleBaseException(Exception):
    """Base exception for the upscale service."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(UpscaleBaseException):
    """Raised when request input validation fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class PlanningError(UpscaleBaseException):
    """Raised when no usable stage plan exists for an image (degenerate input, bad scale)."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, stage="plan", **kwargs)


class JobNotFoundError(UpscaleBaseException):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id, **kwargs)


class JobStateError(UpscaleBaseException):
    """Raised when an operation is not allowed in the job's current state."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        super().__init__(message, code=409, **kwargs)
        self.details["current_status"] = current_status


class ImageDecodeError(UpscaleBaseException):
    """Raised when an image (source or tile) cannot be decoded. Never retried."""

    def __init__(self, message: str, tile_id: Optional[int] = None, **kwargs):
        super().__init__(message, code=422, **kwargs)
        self.tile_id = tile_id
        if tile_id is not None:
            self.details["tile_id"] = tile_id


class TileSplitError(UpscaleBaseException):
    """Raised when tiles cannot be re-split between stages."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="split", **kwargs)


class StitchError(UpscaleBaseException):
    """Raised when the final composite cannot be produced."""

    def __init__(self, message: str, tile_id: Optional[int] = None, **kwargs):
        super().__init__(message, code=500, stage="stitch", **kwargs)
        self.tile_id = tile_id
        if tile_id is not None:
            self.details["tile_id"] = tile_id


class ExternalAPIError(UpscaleBaseException):
    """Raised when an external API call fails (e.g., Replicate)."""

    def __init__(
        self,
        message: str,
        service: str,
        http_status: Optional[int] = None,
        retryable: bool = False,
        **kwargs
    ):
        super().__init__(message, code=502, **kwargs)
        self.retryable = retryable
        self.details["service"] = service
        self.details["http_status"] = http_status
        self.details["retryable"] = retryable


class StorageError(UpscaleBaseException):
    """Raised when storage operations fail."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class CircuitBreakerOpenError(UpscaleBaseException):
    """Raised when circuit breaker is open."""

    def __init__(self, service: str, **kwargs):
        super().__init__(
            f"Service '{service}' is temporarily unavailable (circuit breaker open)",
            code=503,
            **kwargs
        )
        self.details["service"] = service


class JobTimeoutError(UpscaleBaseException):
    """Raised by the poller when a job exceeds its wall-clock ceiling.

    Distinct from a backend-reported failure: the job may still have been
    progressing when we stopped waiting.
    """

    def __init__(self, job_id: str, elapsed_seconds: float, last_progress: Optional[int] = None, **kwargs):
        super().__init__(
            f"Job {job_id} timed out after {elapsed_seconds:.0f}s",
            code=504,
            job_id=job_id,
            **kwargs
        )
        self.elapsed_seconds = elapsed_seconds
        self.details["elapsed_seconds"] = elapsed_seconds
        self.details["last_progress"] = last_progress


class JobFailedError(UpscaleBaseException):
    """Raised by the poller when the backend reports the job failed."""

    def __init__(self, job_id: str, error_code: Optional[str], message: Optional[str], **kwargs):
        super().__init__(message or "Job failed", code=502, job_id=job_id, **kwargs)
        self.error_code = error_code
        self.details["error_code"] = error_code


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.utcnow() - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        state = self.state
        if state == "CLOSED":
            return True
        if state == "HALF_OPEN":
            return self._half_open_calls < self.half_open_max_calls
        return False

    def record_success(self):
        """Record a successful call."""
        if self._state == "HALF_OPEN":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "CLOSED"
                self._failure_count = 0
                logger.info("circuit_breaker_closed", circuit=self.name)
        elif self._state == "CLOSED":
            self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.utcnow()

        if self._state == "HALF_OPEN":
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_reopened",
                circuit=self.name,
                error=str(error) if error else None
            )
        elif self._failure_count >= self.failure_threshold:
            self._state = "OPEN"
            logger.warning(
                "circuit_breaker_opened",
                circuit=self.name,
                failure_count=self._failure_count,
                error=str(error) if error else None
            )

    def reset(self):
        """Reset the circuit breaker."""
        self._state = "CLOSED"
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0


# Global circuit breakers for external services
circuit_breakers: Dict[str, CircuitBreaker] = {
    "replicate": CircuitBreaker("replicate", failure_threshold=5, recovery_timeout=60),
}


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get or create a circuit breaker for a service."""
    if name not in circuit_breakers:
        circuit_breakers[name] = CircuitBreaker(name)
    return circuit_breakers[name]


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(exc: UpscaleBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "job_id": exc.job_id or job_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": datetime.utcnow().isoformat() + "Z"
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(UpscaleBaseException)
    async def upscale_exception_handler(request: Request, exc: UpscaleBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "upscale_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            details=exc.details,
            path=str(request.url.path)
        )
        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": datetime.utcnow().isoformat() + "Z"
            }
        )
