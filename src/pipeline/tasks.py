"""
Celery Tasks for the Tiled Upscale Pipeline

Each task drives the async orchestrator on a fresh event loop with its own
NullPool engine. Tasks are safe to run twice: the orchestrator re-checks
job and tile state before doing anything.

- dispatch_tile_prediction: claim one tile and start its Replicate prediction
- split_job_tiles: re-split stage outputs and resume the job
- stitch_job: composite final tiles into the output image
- reconcile_job: re-query Replicate for a job whose webhooks look stuck
- sweep_stale_jobs: beat task; reconcile stale jobs, expire old ones
"""

import asyncio
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from celery.exceptions import MaxRetriesExceededError

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.database import create_worker_session_maker
from src.core.exceptions import StorageError
from src.core.logging import clear_job_context, get_logger, set_job_context
from src.core.storage import StorageFactory
from src.engines.upscale.orchestrator import JobOrchestrator
from src.engines.upscale.replicate import ReplicateClient
from src.engines.upscale.schemas import JobErrorCode, JobStatus

logger = get_logger(__name__)

T = TypeVar("T")


class CeleryDispatcher:
    """Dispatcher that queues follow-up work as Celery tasks."""

    def dispatch_tile(self, job_id: str, tile_id: int, stage: int, countdown: float = 0) -> None:
        dispatch_tile_prediction.apply_async(
            args=[job_id, tile_id, stage],
            countdown=countdown or None
        )

    def dispatch_split(self, job_id: str, stage: int) -> None:
        split_job_tiles.apply_async(args=[job_id, stage])

    def dispatch_stitch(self, job_id: str) -> None:
        stitch_job.apply_async(args=[job_id])


def run_with_orchestrator(work: Callable[[JobOrchestrator], Awaitable[T]]) -> T:
    """Run one orchestrator call to completion on a new event loop."""

    async def _run() -> T:
        engine, session_maker = create_worker_session_maker()
        try:
            async with session_maker() as session:
                orchestrator = JobOrchestrator(
                    session,
                    StorageFactory.get_storage(),
                    CeleryDispatcher(),
                    ReplicateClient(),
                )
                return await work(orchestrator)
        finally:
            await engine.dispose()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(_run())
    finally:
        loop.close()


def _fail_job(job_id: str, code: JobErrorCode, message: str, expected_status: JobStatus):
    """Fail the job only if it is still in the status this task was working on."""
    run_with_orchestrator(lambda o: o.fail_job(job_id, code, message, expected_status=expected_status))


# =============================================================================
# Tile dispatch
# =============================================================================

@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.dispatch_tile_prediction",
    max_retries=3,
    default_retry_delay=settings.TILE_RETRY_BASE_DELAY_SECONDS,
    acks_late=True
)
def dispatch_tile_prediction(self, job_id: str, tile_id: int, stage: int) -> Optional[str]:
    """
    Start the stage prediction for one tile.

    Replicate errors are handled by the orchestrator (per-tile attempt
    budget with backoff). Anything else is retried here; once retries run
    out the tile is failed so the stage barrier can still resolve.
    """
    set_job_context(job_id, f"stage{stage}", tile_id)

    try:
        return run_with_orchestrator(lambda o: o.submit_tile(job_id, tile_id, stage))

    except Exception as e:
        logger.error(
            "task_dispatch_unexpected_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        try:
            self.retry(exc=e, countdown=settings.TILE_RETRY_BASE_DELAY_SECONDS * (2 ** self.request.retries))
        except MaxRetriesExceededError:
            run_with_orchestrator(lambda o: o.handle_dispatch_failure(
                job_id, tile_id, stage, f"Dispatch failed: {e}", retryable=False
            ))
            raise

    finally:
        clear_job_context()


# =============================================================================
# Split
# =============================================================================

@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.split_job_tiles",
    max_retries=3,
    default_retry_delay=10,
    acks_late=True
)
def split_job_tiles(self, job_id: str, stage: int) -> Dict[str, Any]:
    """Re-split stage outputs for `stage` and resume the job."""
    set_job_context(job_id, "split")

    try:
        logger.info("task_split_started", stage=stage)
        job = run_with_orchestrator(lambda o: o.split_job(job_id))
        status = job.status if job is not None else None
        logger.info("task_split_completed", stage=stage, status=status)
        return {"job_id": job_id, "stage": stage, "status": status}

    except StorageError as e:
        logger.warning("task_split_storage_error", error=e.message, retries=self.request.retries)
        try:
            self.retry(exc=e, countdown=10 * (2 ** self.request.retries))
        except MaxRetriesExceededError:
            _fail_job(job_id, JobErrorCode.SPLIT_FAILED, f"Max retries exceeded: {e.message}", JobStatus.NEEDS_SPLIT)
            raise

    except Exception as e:
        logger.error(
            "task_split_unexpected_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        _fail_job(job_id, JobErrorCode.SPLIT_FAILED, str(e), JobStatus.NEEDS_SPLIT)
        raise

    finally:
        clear_job_context()


# =============================================================================
# Stitch
# =============================================================================

@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.stitch_job",
    max_retries=3,
    default_retry_delay=10,
    acks_late=True
)
def stitch_job(self, job_id: str) -> Dict[str, Any]:
    """Composite the final tiles. Tile load failures fail the job inside the orchestrator."""
    set_job_context(job_id, "stitch")

    try:
        logger.info("task_stitch_started")
        job = run_with_orchestrator(lambda o: o.stitch_job(job_id))
        logger.info("task_stitch_completed", status=job.status, final_output_url=job.final_output_url)
        return {"job_id": job_id, "status": job.status, "final_output_url": job.final_output_url}

    except StorageError as e:
        logger.warning("task_stitch_storage_error", error=e.message, retries=self.request.retries)
        try:
            self.retry(exc=e, countdown=10 * (2 ** self.request.retries))
        except MaxRetriesExceededError:
            _fail_job(job_id, JobErrorCode.STITCH_FAILED, f"Max retries exceeded: {e.message}", JobStatus.TILES_READY)
            raise

    except Exception as e:
        logger.error(
            "task_stitch_unexpected_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        _fail_job(job_id, JobErrorCode.STITCH_FAILED, str(e), JobStatus.TILES_READY)
        raise

    finally:
        clear_job_context()


# =============================================================================
# Recovery
# =============================================================================

@celery_app.task(name="src.pipeline.tasks.reconcile_job", acks_late=True)
def reconcile_job(job_id: str) -> Dict[str, Any]:
    set_job_context(job_id, "reconcile")
    try:
        return run_with_orchestrator(lambda o: o.reconcile_job(job_id))
    finally:
        clear_job_context()


@celery_app.task(name="src.pipeline.tasks.sweep_stale_jobs")
def sweep_stale_jobs() -> Dict[str, List[Any]]:
    """Beat task: reconcile jobs with stale webhooks, then expire jobs past the time limit."""

    async def _sweep(orchestrator: JobOrchestrator) -> Dict[str, List[Any]]:
        reconciled = await orchestrator.check_all()
        expired = await orchestrator.expire_jobs()
        return {"reconciled": [s["job_id"] for s in reconciled], "expired": expired}

    result = run_with_orchestrator(_sweep)
    logger.info("sweep_completed", reconciled=len(result["reconciled"]), expired=len(result["expired"]))
    return result
