"""
Job Recovery Poller

Client-side wait loop for an upscale job. The server owns all job state;
the poller only reads the status document and nudges reconciliation when
the webhook path looks stuck:

- progress unchanged for STALE_POLL_THRESHOLD polls while processing, and
  at least STALE_GRACE_SECONDS elapsed -> POST /upscale/{job_id}/check
- every CHECK_ALL_INTERVAL_SECONDS -> POST /upscale/check-all
- JOB_TIMEOUT_SECONDS elapsed -> POST /upscale/{job_id}/cancel?reason=timeout,
  then JobTimeoutError
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from src.core.config import settings
from src.core.exceptions import JobFailedError, JobNotFoundError, JobTimeoutError
from src.core.logging import get_logger
from src.engines.upscale.schemas import JobStatus

logger = get_logger(__name__)

ProgressCallback = Callable[[int, str], None]

SUCCESS_STATUSES = {JobStatus.COMPLETED.value, JobStatus.PARTIAL_SUCCESS.value}


class JobPoller:
    """Poll one job until it reaches a terminal state or the wall-clock ceiling."""

    def __init__(
        self,
        base_url: str,
        on_progress: Optional[ProgressCallback] = None,
        poll_interval: Optional[float] = None,
        stale_threshold: Optional[int] = None,
        stale_grace: Optional[float] = None,
        check_all_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.on_progress = on_progress
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS
        self.stale_threshold = stale_threshold if stale_threshold is not None else settings.STALE_POLL_THRESHOLD
        self.stale_grace = stale_grace if stale_grace is not None else settings.STALE_GRACE_SECONDS
        self.check_all_interval = (
            check_all_interval if check_all_interval is not None else settings.CHECK_ALL_INTERVAL_SECONDS
        )
        self.timeout = timeout if timeout is not None else settings.JOB_TIMEOUT_SECONDS
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

    async def wait(self, job_id: str) -> Dict[str, Any]:
        """
        Block until the job completes.

        Returns:
            The final status document (completed or partial_success)

        Raises:
            JobFailedError: the backend reported the job failed
            JobTimeoutError: we stopped waiting; the job was asked to cancel
            JobNotFoundError: the job id is unknown
        """
        async with httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v1",
            timeout=settings.REPLICATE_TIMEOUT_SECONDS,
            transport=self._transport
        ) as client:
            started = self._clock()
            last_check_all = started
            last_progress: Optional[int] = None
            unchanged_polls = 0

            while True:
                document = await self._fetch_status(client, job_id)
                elapsed = self._clock() - started

                if document is not None:
                    status = document.get("status")
                    progress = document.get("progress", 0)
                    if self.on_progress is not None:
                        self.on_progress(progress, document.get("message", ""))

                    if status in SUCCESS_STATUSES:
                        logger.info("poll_finished", job_id=job_id, status=status, elapsed_seconds=elapsed)
                        return document
                    if status == JobStatus.FAILED.value:
                        error = document.get("error") or {}
                        raise JobFailedError(job_id, error.get("code"), error.get("message"))

                    if progress == last_progress:
                        unchanged_polls += 1
                    else:
                        unchanged_polls = 0
                        last_progress = progress

                    if (
                        status == JobStatus.PROCESSING.value
                        and unchanged_polls >= self.stale_threshold
                        and elapsed >= self.stale_grace
                    ):
                        logger.info("poll_stale_detected", job_id=job_id, polls=unchanged_polls, progress=progress)
                        await self._post(client, f"/upscale/{job_id}/check", "check")
                        unchanged_polls = 0

                if elapsed >= self.timeout:
                    logger.warning("poll_timeout", job_id=job_id, elapsed_seconds=elapsed)
                    await self._post(client, f"/upscale/{job_id}/cancel", "cancel", params={"reason": "timeout"})
                    raise JobTimeoutError(job_id, elapsed, last_progress=last_progress)

                if self._clock() - last_check_all >= self.check_all_interval:
                    await self._post(client, "/upscale/check-all", "check_all")
                    last_check_all = self._clock()

                await self._sleep(self.poll_interval)

    async def _fetch_status(self, client: httpx.AsyncClient, job_id: str) -> Optional[Dict[str, Any]]:
        """Status document, or None on a transient error (the ceiling still bounds the wait)."""
        try:
            response = await client.get(f"/status/{job_id}")
        except httpx.HTTPError as e:
            logger.warning("poll_status_failed", job_id=job_id, error=str(e))
            return None

        if response.status_code == 404:
            raise JobNotFoundError(job_id)
        if response.status_code >= 400:
            logger.warning("poll_status_failed", job_id=job_id, http_status=response.status_code)
            return None
        return response.json()

    async def _post(
        self,
        client: httpx.AsyncClient,
        path: str,
        operation: str,
        params: Optional[Dict[str, str]] = None
    ) -> bool:
        # Reconciliation is best effort; the next poll sees whatever it achieved
        try:
            response = await client.post(path, params=params)
        except httpx.HTTPError as e:
            logger.warning("poll_trigger_failed", operation=operation, error=str(e))
            return False
        if response.status_code >= 400:
            logger.warning("poll_trigger_failed", operation=operation, http_status=response.status_code)
            return False
        logger.info("poll_trigger_sent", operation=operation)
        return True
