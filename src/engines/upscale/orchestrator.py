"""
Job Orchestrator

Owns the job lifecycle:

    pending -> processing -> (needs_split -> processing)* -> tiles_ready -> completed / partial_success
    failed is reachable from every non-terminal state.

Concurrency model: the job row is the only lock. Every status change is an
UPDATE ... WHERE status, current_stage and version still match what this
worker read (compare-and-set). A tile completion first touches the job row,
so two completions for the same job serialize there and exactly one of them
sees the stage barrier and advances. Follow-up work (tile dispatch, split,
stitch) is handed to the dispatcher only after the transaction commits.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Protocol

from PIL import Image
from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from src.core.config import settings
from src.core.exceptions import (
    CircuitBreakerOpenError,
    ExternalAPIError,
    ImageDecodeError,
    JobNotFoundError,
    JobStateError,
    StitchError,
    StorageError,
    TileSplitError,
    ValidationError,
)
from src.core.logging import LogContext, get_logger
from src.core.metrics import (
    record_job_completion,
    record_job_started,
    record_tile_outcome,
    track_stage_latency,
)
from src.core.storage import IStorage
from src.engines.upscale.imaging import decode_image, encode_png, fetch_image
from src.engines.upscale.planner import build_multiplier_chain, plan_upscale, stage_tile_dimensions
from src.engines.upscale.replicate import ModelSelection, ReplicateClient, select_model
from src.engines.upscale.schemas import (
    TERMINAL_STATUSES,
    JobErrorCode,
    JobSettings,
    JobStatus,
    PredictionStatus,
    PredictionUpdate,
    ResumeRequest,
    ScaleConfig,
    TileGrid,
    TileSpec,
    TileStatus,
)
from src.engines.upscale.splitter import (
    ParentTile,
    calculate_split_grid,
    split_image,
    split_tile,
    sub_grid_for_split_factor,
)
from src.engines.upscale.stitcher import StitchTile, stitch_tiles
from src.modules.upscale.models import UpscaleJob, UpscaleTile, utcnow

logger = get_logger(__name__)

# Share of the progress bar covered by tile work; stitching covers the rest
TILE_WORK_PERCENT = 95


class Dispatcher(Protocol):
    """Where follow-up work goes once a transaction has committed."""

    def dispatch_tile(self, job_id: str, tile_id: int, stage: int, countdown: float = 0) -> None:
        ...

    def dispatch_split(self, job_id: str, stage: int) -> None:
        ...

    def dispatch_stitch(self, job_id: str) -> None:
        ...


@dataclass
class TileDispatch:
    """Everything needed to start one prediction for a claimed tile."""
    job_id: str
    tile_id: int
    stage: int
    attempt: int
    input_url: str
    multiplier: int
    model: ModelSelection


# =============================================================================
# Policies
# =============================================================================

def should_fail_job(active_count: int, failed_count: int, max_ratio: Optional[float] = None) -> bool:
    """
    The one place that decides whether failed tiles sink the job.

    A job fails when every active tile failed, or when failed tiles exceed
    max_ratio of the active set. Otherwise it carries on and ends in
    partial_success with the missing regions recorded.
    """
    if failed_count <= 0:
        return False
    if active_count <= 0 or failed_count >= active_count:
        return True
    ratio = settings.MAX_FAILED_TILE_RATIO if max_ratio is None else max_ratio
    return failed_count / active_count > ratio


def compute_progress(job: UpscaleJob, tiles: List[UpscaleTile]) -> int:
    """
    0-100. Stage N weighs N, so later (bigger, slower) stages count more.
    Tile work maps onto 0-95; the stitch takes it to 100.
    """
    if job.status in (JobStatus.COMPLETED.value, JobStatus.PARTIAL_SUCCESS.value):
        return 100
    if job.status == JobStatus.TILES_READY.value:
        return TILE_WORK_PERCENT
    if job.status == JobStatus.PENDING.value:
        return 0

    total_weight = sum(range(1, job.total_stages + 1))
    stage = job.current_stage
    done = float(sum(range(1, stage)))

    if job.status == JobStatus.NEEDS_SPLIT.value:
        done += stage
    elif tiles:
        finished = sum(1 for t in tiles if t.status == TileStatus.FAILED or t.is_complete(stage))
        done += stage * finished / len(tiles)

    return min(TILE_WORK_PERCENT, int(TILE_WORK_PERCENT * done / total_weight))


def stage_multiplier(job: UpscaleJob, stage: int, config: Optional[ScaleConfig] = None) -> int:
    """Multiplier for a stage, re-derived from the target scale when the stored plan is unreadable."""
    config = config or job.scale_config()
    if config is not None and stage <= config.total_stages:
        return config.stage(stage).scale_multiplier
    chain = build_multiplier_chain(job.target_scale)
    return chain[stage - 1] if stage <= len(chain) else 1


def build_tile_grid(job: UpscaleJob, config: Optional[ScaleConfig], stage: int) -> Dict[str, Any]:
    if config is None or stage > config.total_stages:
        return {**(job.tile_grid or {}), "stage": stage}
    tile_w, tile_h = stage_tile_dimensions(config, job.working_width, job.working_height, stage)
    stage_config = config.stage(stage)
    return TileGrid(
        stage=stage,
        cols=stage_config.cols,
        rows=stage_config.rows,
        overlap=settings.TILE_OVERLAP_PX,
        tile_width=tile_w,
        tile_height=tile_h,
    ).model_dump()


def _missing_region(job: UpscaleJob, tile: UpscaleTile) -> Dict[str, Any]:
    """A failed tile's region, in working coordinates and in final-image pixels."""
    sx = job.target_width / job.working_width
    sy = job.target_height / job.working_height
    return {
        "tile_id": tile.tile_id,
        "x": tile.x,
        "y": tile.y,
        "width": tile.width,
        "height": tile.height,
        "output_box": [
            int(round(tile.x * sx)),
            int(round(tile.y * sy)),
            int(round((tile.x + tile.width) * sx)),
            int(round((tile.y + tile.height) * sy)),
        ],
        "error": tile.error,
        "error_stage": tile.error_stage,
    }


# =============================================================================
# Orchestrator
# =============================================================================

class JobOrchestrator:
    """
    Stateless service over one database session.

    Args:
        session: AsyncSession (request-scoped in the API, per task in workers)
        storage: blob store for inputs, tiles and the final image
        dispatcher: receives follow-up work after commit
        replicate: inference client; only needed for submit, reconcile and cancel
    """

    def __init__(
        self,
        session: AsyncSession,
        storage: IStorage,
        dispatcher: Dispatcher,
        replicate: Optional[ReplicateClient] = None
    ):
        self.session = session
        self.storage = storage
        self.dispatcher = dispatcher
        self.replicate = replicate
        self._after_commit: List[Callable[[], None]] = []

    # -------------------------------------------------------------------------
    # Transaction helpers
    # -------------------------------------------------------------------------

    async def _commit(self):
        await self.session.commit()
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    async def _rollback(self):
        self._after_commit = []
        await self.session.rollback()

    async def _get_job(self, job_id: str) -> UpscaleJob:
        job = await self.session.get(UpscaleJob, job_id, populate_existing=True)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _lock_job(self, job_id: str, mark_webhook: bool = False) -> UpscaleJob:
        """Write to the job row first so concurrent writers for this job queue up behind us."""
        now = utcnow()
        values: Dict[str, Any] = {"updated_at": now}
        if mark_webhook:
            values["last_webhook_at"] = now
        result = await self.session.execute(
            update(UpscaleJob)
            .where(UpscaleJob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise JobNotFoundError(job_id)
        return await self._get_job(job_id)

    async def _active_tiles(self, job_id: str) -> List[UpscaleTile]:
        result = await self.session.execute(
            select(UpscaleTile)
            .where(UpscaleTile.job_id == job_id, UpscaleTile.is_superseded.is_(False))
            .order_by(UpscaleTile.tile_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _get_tile(self, job_id: str, tile_id: int) -> Optional[UpscaleTile]:
        result = await self.session.execute(
            select(UpscaleTile)
            .where(UpscaleTile.job_id == job_id, UpscaleTile.tile_id == tile_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _transition(self, job: UpscaleJob, to_status: JobStatus, **values) -> bool:
        """Compare-and-set on (status, current_stage, version). False when another writer got there first."""
        from_status = job.status
        result = await self.session.execute(
            update(UpscaleJob)
            .where(
                UpscaleJob.id == job.id,
                UpscaleJob.status == job.status,
                UpscaleJob.current_stage == job.current_stage,
                UpscaleJob.version == job.version,
            )
            .values(status=to_status.value, version=job.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "job_transition_conflict",
                job_id=job.id,
                from_status=from_status,
                to_status=to_status.value,
                version=job.version,
            )
            return False

        await self.session.refresh(job)
        logger.info(
            "job_transition",
            job_id=job.id,
            from_status=from_status,
            to_status=to_status.value,
            stage=job.current_stage,
            version=job.version,
        )
        return True

    def _duration(self, job: UpscaleJob) -> Optional[float]:
        if job.started_at and job.completed_at:
            return (job.completed_at - job.started_at).total_seconds()
        return None

    async def _fail_job(self, job: UpscaleJob, code: JobErrorCode, message: str) -> bool:
        was_active = job.started_at is not None
        ok = await self._transition(
            job,
            JobStatus.FAILED,
            error_code=code.value,
            error_message=message,
            completed_at=utcnow(),
        )
        if ok:
            logger.error("job_failed", job_id=job.id, error_code=code.value, error=message)
            self._after_commit.append(partial(
                record_job_completion,
                JobStatus.FAILED.value,
                code.value,
                self._duration(job),
                was_active,
            ))
        return ok

    def _queue_tile(self, job_id: str, tile_id: int, stage: int, countdown: float = 0):
        self._after_commit.append(partial(self.dispatcher.dispatch_tile, job_id, tile_id, stage, countdown))

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_job(
        self,
        image_bytes: bytes,
        job_settings: JobSettings,
        filename: Optional[str] = None
    ) -> UpscaleJob:
        """
        Plan, cut stage-1 tiles and persist a pending job.

        Raises:
            ImageDecodeError: the upload is not an image
            PlanningError: no usable stage plan for this image and scale
        """
        image = decode_image(image_bytes)
        width, height = image.size
        plan = plan_upscale(width, height, job_settings.scale)

        job_id = str(uuid.uuid4())
        folder = f"jobs/{job_id}"
        overlap = settings.TILE_OVERLAP_PX

        with LogContext(job_id=job_id, stage="plan"):
            working = image
            if plan.requires_downscale:
                working = image.resize((plan.working_width, plan.working_height), Image.Resampling.LANCZOS)
                logger.info(
                    "input_downscaled",
                    source_width=width,
                    source_height=height,
                    working_width=plan.working_width,
                    working_height=plan.working_height,
                )

            input_key = await self.storage.upload(image_bytes, filename or "input.png", folder=f"{folder}/input")
            working_key = await self.storage.upload(encode_png(working), "working.png", folder=f"{folder}/input")

            stage1 = plan.config.stage(1)
            with track_stage_latency("split"):
                crops = split_image(working, stage1.cols, stage1.rows, overlap)

            tiles = []
            for crop in crops:
                key = await self.storage.upload(
                    encode_png(crop.image), f"tile_{crop.index}.png", folder=f"{folder}/tiles/stage1"
                )
                tiles.append(UpscaleTile(
                    job_id=job_id,
                    tile_id=crop.index,
                    x=crop.x,
                    y=crop.y,
                    width=crop.width,
                    height=crop.height,
                    overlap_left=crop.overlap_left,
                    overlap_top=crop.overlap_top,
                    input_url=await self.storage.get_public_url(key),
                    status=TileStatus.PENDING,
                ))

            job = UpscaleJob(
                id=job_id,
                status=JobStatus.PENDING.value,
                content_type=job_settings.content_type.value,
                settings=job_settings.model_dump(mode="json"),
                target_scale=job_settings.scale,
                original_filename=filename,
                original_width=width,
                original_height=height,
                working_width=plan.working_width,
                working_height=plan.working_height,
                requires_downscale=plan.requires_downscale,
                downscale_factor=plan.downscale_factor,
                template_name=plan.template_name,
                is_fallback_plan=plan.is_fallback,
                template_config=plan.config.model_dump(mode="json"),
                current_stage=1,
                total_stages=plan.config.total_stages,
                input_storage_key=input_key,
                working_storage_key=working_key,
            )
            job.tile_grid = build_tile_grid(job, plan.config, 1)

            self.session.add(job)
            self.session.add_all(tiles)
            await self._commit()

            logger.info(
                "job_created",
                tiles=len(tiles),
                total_stages=job.total_stages,
                target_scale=job.target_scale,
                content_type=job.content_type,
            )
        return job

    async def start_job(self, job_id: str) -> UpscaleJob:
        """pending -> processing, then fire every stage-1 tile."""
        job = await self._get_job(job_id)
        if job.status != JobStatus.PENDING.value:
            raise JobStateError(f"Job {job_id} is {job.status}, not pending", current_status=job.status, job_id=job_id)

        if not await self._transition(job, JobStatus.PROCESSING, started_at=utcnow()):
            await self._rollback()
            raise JobStateError(f"Job {job_id} changed while starting", job_id=job_id)

        tiles = await self._active_tiles(job_id)
        for tile in tiles:
            if tile.status == TileStatus.PENDING:
                self._queue_tile(job_id, tile.tile_id, job.current_stage)
        self._after_commit.append(record_job_started)
        await self._commit()

        logger.info("job_started", job_id=job_id, tiles=len(tiles))
        return job

    # -------------------------------------------------------------------------
    # Tile dispatch
    # -------------------------------------------------------------------------

    async def claim_tile(self, job_id: str, tile_id: int, stage: int) -> Optional[TileDispatch]:
        """
        pending -> stageN_processing for one tile, counting the attempt.
        None when the tile is not dispatchable (already claimed, superseded,
        wrong stage, job no longer processing).
        """
        job = await self._get_job(job_id)
        if job.status != JobStatus.PROCESSING.value or job.current_stage != stage:
            logger.info("tile_dispatch_skipped", job_id=job_id, tile_id=tile_id, stage=stage, job_status=job.status)
            return None

        result = await self.session.execute(
            update(UpscaleTile)
            .where(
                UpscaleTile.job_id == job_id,
                UpscaleTile.tile_id == tile_id,
                UpscaleTile.status == TileStatus.PENDING,
                UpscaleTile.is_superseded.is_(False),
            )
            .values(
                status=TileStatus.processing(stage),
                current_prediction_id=None,
                retry_after=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._rollback()
            logger.info("tile_already_claimed", job_id=job_id, tile_id=tile_id, stage=stage)
            return None

        tile = await self._get_tile(job_id, tile_id)
        attempt = tile.record_attempt(stage)
        input_url = tile.input_url
        await self._commit()

        config = job.scale_config()
        multiplier = stage_multiplier(job, stage, config)
        model = select_model(job.content_type, multiplier, (job.settings or {}).get("face_enhance"))
        return TileDispatch(
            job_id=job_id,
            tile_id=tile_id,
            stage=stage,
            attempt=attempt,
            input_url=input_url,
            multiplier=multiplier,
            model=model,
        )

    async def submit_tile(self, job_id: str, tile_id: int, stage: int) -> Optional[str]:
        """Claim a tile and start its prediction. Returns the prediction id, if one was started."""
        dispatch = await self.claim_tile(job_id, tile_id, stage)
        if dispatch is None:
            return None

        with LogContext(job_id=job_id, stage=f"stage{stage}", tile_id=tile_id):
            try:
                with track_stage_latency("dispatch"):
                    prediction = await self.replicate.create_prediction(
                        dispatch.model,
                        dispatch.input_url,
                        dispatch.multiplier,
                        webhook_url=settings.webhook_url,
                    )
            except (ExternalAPIError, CircuitBreakerOpenError) as e:
                retryable = getattr(e, "retryable", True)
                await self.handle_dispatch_failure(job_id, tile_id, stage, e.message, retryable=retryable)
                return None

            prediction_id = prediction.get("id")
            if not prediction_id:
                await self.handle_dispatch_failure(job_id, tile_id, stage, "Replicate returned no prediction id")
                return None

            await self.record_prediction_started(job_id, tile_id, stage, prediction_id)
            logger.info(
                "tile_dispatched",
                prediction_id=prediction_id,
                attempt=dispatch.attempt,
                multiplier=dispatch.multiplier,
                model=dispatch.model.name,
            )
            return prediction_id

    async def record_prediction_started(self, job_id: str, tile_id: int, stage: int, prediction_id: str):
        tile = await self._get_tile(job_id, tile_id)
        if tile is None or tile.status != TileStatus.processing(stage):
            logger.warning(
                "prediction_started_for_unclaimed_tile",
                job_id=job_id,
                tile_id=tile_id,
                stage=stage,
                prediction_id=prediction_id,
            )
            await self._rollback()
            return
        tile.set_prediction(stage, prediction_id)
        tile.updated_at = utcnow()
        await self._commit()

    async def handle_dispatch_failure(
        self,
        job_id: str,
        tile_id: int,
        stage: int,
        error: str,
        retryable: bool = True
    ):
        """The prediction could not be started at all."""
        job = await self._lock_job(job_id)
        tile = await self._get_tile(job_id, tile_id)
        if tile is None or tile.status != TileStatus.processing(stage):
            await self._commit()
            return
        self._register_tile_failure(job, tile, stage, error, retryable)
        await self._evaluate_stage(job)
        await self._commit()

    def _register_tile_failure(
        self,
        job: UpscaleJob,
        tile: UpscaleTile,
        stage: int,
        error: str,
        retryable: bool = True
    ):
        """Retry with backoff while the stage's attempt budget lasts, then mark the tile failed."""
        attempts = tile.attempts_for(stage)
        tile.error = error
        tile.error_stage = stage
        tile.updated_at = utcnow()

        if retryable and attempts < settings.MAX_TILE_ATTEMPTS:
            tile.status = TileStatus.PENDING
            delay = settings.TILE_RETRY_BASE_DELAY_SECONDS * (2 ** max(0, attempts - 1))
            tile.retry_after = tile.updated_at + timedelta(seconds=delay)
            self._queue_tile(job.id, tile.tile_id, stage, countdown=delay)
            record_tile_outcome(stage, "retried")
            logger.warning(
                "tile_retry_scheduled",
                job_id=job.id,
                tile_id=tile.tile_id,
                stage=stage,
                attempts=attempts,
                countdown=delay,
                error=error,
            )
        else:
            tile.status = TileStatus.FAILED
            record_tile_outcome(stage, "failed")
            logger.error(
                "tile_failed",
                job_id=job.id,
                tile_id=tile.tile_id,
                stage=stage,
                attempts=attempts,
                error=error,
            )

    # -------------------------------------------------------------------------
    # Completion signals
    # -------------------------------------------------------------------------

    async def handle_prediction_update(self, update_: PredictionUpdate) -> bool:
        """
        Apply a terminal prediction result to its tile and re-check the stage
        barrier. Duplicate or late signals are no-ops. Returns True when the
        update changed the tile.
        """
        if not update_.is_terminal:
            return False

        result = await self.session.execute(
            select(UpscaleTile).where(UpscaleTile.current_prediction_id == update_.id)
        )
        tile = result.scalars().first()
        if tile is None:
            logger.warning("webhook_unknown_prediction", prediction_id=update_.id, status=update_.status.value)
            return False

        job = await self._lock_job(tile.job_id, mark_webhook=True)
        tile = await self._get_tile(tile.job_id, tile.tile_id)
        stage = tile.processing_stage

        if (
            job.status != JobStatus.PROCESSING.value
            or stage is None
            or stage != job.current_stage
            or tile.current_prediction_id != update_.id
        ):
            logger.info(
                "prediction_update_ignored",
                job_id=job.id,
                tile_id=tile.tile_id,
                prediction_id=update_.id,
                job_status=job.status,
                tile_status=tile.status,
            )
            await self._commit()
            return False

        with LogContext(job_id=job.id, stage=f"stage{stage}", tile_id=tile.tile_id):
            output_url = update_.output_url
            if update_.status == PredictionStatus.SUCCEEDED and output_url:
                tile.set_output(stage, output_url)
                tile.status = TileStatus.complete(stage)
                tile.error = None
                tile.error_stage = None
                tile.updated_at = utcnow()
                record_tile_outcome(stage, "succeeded")
                logger.info("tile_stage_complete", prediction_id=update_.id)
            else:
                if update_.status == PredictionStatus.SUCCEEDED:
                    error = "Prediction succeeded without an output"
                else:
                    error = update_.error or f"Prediction {update_.status.value}"
                self._register_tile_failure(job, tile, stage, error)

            await self.session.flush()
            await self._evaluate_stage(job)
            await self._commit()
        return True

    # -------------------------------------------------------------------------
    # Stage barrier
    # -------------------------------------------------------------------------

    async def _evaluate_stage(self, job: UpscaleJob) -> bool:
        """
        Advance the job when every active tile is resolved for the current
        stage. Must run inside a transaction that already touched the job row.
        Returns True when the job moved.
        """
        if job.status != JobStatus.PROCESSING.value:
            return False

        stage = job.current_stage
        tiles = await self._active_tiles(job.id)
        failed = [t for t in tiles if t.status == TileStatus.FAILED]
        live = [t for t in tiles if t.status != TileStatus.FAILED]

        if any(not t.is_complete(stage) for t in live):
            return False

        logger.info(
            "stage_barrier_reached",
            job_id=job.id,
            stage=stage,
            completed=len(live),
            failed=len(failed),
        )

        if should_fail_job(len(tiles), len(failed)):
            return await self._fail_job(
                job,
                JobErrorCode.TOO_MANY_FAILED_TILES,
                f"{len(failed)} of {len(tiles)} tiles failed at stage {stage}",
            )

        if stage >= job.total_stages:
            if await self._transition(job, JobStatus.TILES_READY):
                self._after_commit.append(partial(self.dispatcher.dispatch_stitch, job.id))
                return True
            return False

        config = job.scale_config()
        next_stage = stage + 1
        split_factor = None
        if config is not None and next_stage <= config.total_stages:
            split_factor = config.stage(next_stage).split_from_previous

        # An unreadable plan goes through the split worker, which re-derives grids from pixels
        if split_factor is None or split_factor > 1:
            if await self._transition(job, JobStatus.NEEDS_SPLIT):
                self._after_commit.append(partial(self.dispatcher.dispatch_split, job.id, next_stage))
                return True
            return False

        advanced = await self._transition(
            job,
            JobStatus.PROCESSING,
            current_stage=next_stage,
            tile_grid=build_tile_grid(job, config, next_stage),
        )
        if not advanced:
            return False

        for tile in live:
            tile.input_url = tile.output_for(stage)
            tile.status = TileStatus.PENDING
            tile.updated_at = utcnow()
            self._queue_tile(job.id, tile.tile_id, next_stage)

        logger.info("stage_advanced", job_id=job.id, stage=next_stage, tiles=len(live))
        return True

    async def advance_job(self, job_id: str) -> bool:
        """Idempotent check-and-advance; a second call for the same state is a no-op."""
        job = await self._lock_job(job_id)
        advanced = await self._evaluate_stage(job)
        await self._commit()
        return advanced

    # -------------------------------------------------------------------------
    # Split / resume
    # -------------------------------------------------------------------------

    async def resume_job(
        self,
        job_id: str,
        request: ResumeRequest,
        failed_tiles: Optional[Dict[int, str]] = None
    ) -> UpscaleJob:
        """
        needs_split -> processing at request.stage with the split children.

        Children get fresh tile ids (max + 1 onwards); their parents are
        superseded. Completed tiles nobody split carry their output forward
        as-is. failed_tiles marks tiles that could not be split.

        Raises:
            JobStateError: the job is not in needs_split, or the stage is not the next one
            ValidationError: a child names a parent that is not a completed active tile
        """
        job = await self._lock_job(job_id)
        # Rollback expires the instance, so read what the errors need first
        status, current_stage = job.status, job.current_stage
        if status != JobStatus.NEEDS_SPLIT.value:
            await self._rollback()
            raise JobStateError(
                f"Job {job_id} is {status}, not needs_split",
                current_status=status,
                job_id=job_id
            )
        if request.stage != current_stage + 1:
            await self._rollback()
            raise JobStateError(
                f"Job {job_id} can only resume at stage {current_stage + 1}, not {request.stage}",
                current_status=status,
                job_id=job_id
            )

        previous = job.current_stage
        tiles = await self._active_tiles(job_id)
        by_id = {t.tile_id: t for t in tiles}

        for spec in request.tiles:
            parent = by_id.get(spec.parent_tile_id)
            if parent is None or not parent.is_complete(previous) or spec.parent_tile_id in (failed_tiles or {}):
                await self._rollback()
                raise ValidationError(
                    f"Tile {spec.parent_tile_id} is not a completed stage {previous} tile of job {job_id}",
                    job_id=job_id
                )

        for tile_id, error in (failed_tiles or {}).items():
            tile = by_id.get(tile_id)
            if tile is not None and tile.status != TileStatus.FAILED:
                tile.status = TileStatus.FAILED
                tile.error = error
                tile.error_stage = request.stage
                record_tile_outcome(request.stage, "failed")

        max_id = (await self.session.execute(
            select(func.max(UpscaleTile.tile_id)).where(UpscaleTile.job_id == job_id)
        )).scalar() or 0
        next_id = max_id + 1

        parents = set()
        for spec in request.tiles:
            parents.add(spec.parent_tile_id)
            self.session.add(UpscaleTile(
                job_id=job_id,
                tile_id=next_id,
                x=spec.x,
                y=spec.y,
                width=spec.width,
                height=spec.height,
                overlap_left=spec.overlap_left,
                overlap_top=spec.overlap_top,
                input_url=spec.input_url,
                status=TileStatus.PENDING,
                parent_tile_id=spec.parent_tile_id,
                sub_tile_index=spec.sub_tile_index,
                sub_tile_grid=list(spec.sub_tile_grid),
            ))
            next_id += 1

        for tile in tiles:
            if tile.tile_id in parents:
                tile.is_superseded = True
            elif tile.status != TileStatus.FAILED and tile.is_complete(previous):
                tile.input_url = tile.output_for(previous)
                tile.status = TileStatus.PENDING
            tile.updated_at = utcnow()

        await self.session.flush()
        active = await self._active_tiles(job_id)
        failed_count = sum(1 for t in active if t.status == TileStatus.FAILED)

        if should_fail_job(len(active), failed_count):
            await self._fail_job(
                job,
                JobErrorCode.TOO_MANY_FAILED_TILES,
                f"{failed_count} of {len(active)} tiles failed before stage {request.stage}",
            )
            await self._commit()
            return job

        config = job.scale_config()
        resumed = await self._transition(
            job,
            JobStatus.PROCESSING,
            current_stage=request.stage,
            tile_grid=build_tile_grid(job, config, request.stage),
        )
        if not resumed:
            await self._rollback()
            raise JobStateError(f"Job {job_id} changed while resuming", job_id=job_id)

        for tile in active:
            if tile.status == TileStatus.PENDING:
                self._queue_tile(job_id, tile.tile_id, request.stage)
        await self._commit()

        logger.info(
            "job_resumed",
            job_id=job_id,
            stage=request.stage,
            new_tiles=len(request.tiles),
            superseded=len(parents),
            active_tiles=len(active),
        )
        return job

    async def split_job(self, job_id: str) -> Optional[UpscaleJob]:
        """
        Split worker: cut every completed tile's output into the sub-grid the
        plan declares for the next stage, upload the children and resume.
        """
        job = await self._get_job(job_id)
        if job.status != JobStatus.NEEDS_SPLIT.value:
            logger.info("split_skipped", job_id=job_id, job_status=job.status)
            return None

        previous = job.current_stage
        next_stage = previous + 1
        config = job.scale_config()

        grid = None
        if config is not None and next_stage <= config.total_stages:
            try:
                grid = sub_grid_for_split_factor(config.stage(next_stage).split_from_previous)
            except TileSplitError as e:
                logger.warning("split_factor_unusable", job_id=job_id, error=e.message)

        next_multiplier = stage_multiplier(job, next_stage, config)
        tiles = await self._active_tiles(job_id)
        specs: List[TileSpec] = []
        failed: Dict[int, str] = {}

        with LogContext(job_id=job_id, stage="split"), track_stage_latency("split"):
            for tile in tiles:
                if tile.status == TileStatus.FAILED:
                    continue
                try:
                    image = await fetch_image(tile.output_for(previous), self.storage, tile_id=tile.tile_id)
                except ImageDecodeError as e:
                    failed[tile.tile_id] = e.message
                    logger.error("tile_decode_failed", tile_id=tile.tile_id, error=e.message)
                    continue

                tile_grid = grid
                if tile_grid is None:
                    tile_grid = calculate_split_grid(image.width, image.height, next_multiplier)
                    logger.warning(
                        "split_degraded",
                        tile_id=tile.tile_id,
                        output_width=image.width,
                        output_height=image.height,
                        grid=list(tile_grid),
                    )

                parent = ParentTile(
                    tile_id=tile.tile_id,
                    x=tile.x,
                    y=tile.y,
                    width=tile.width,
                    height=tile.height,
                    overlap_left=tile.overlap_left,
                    overlap_top=tile.overlap_top,
                )
                for child in split_tile(parent, image, tile_grid, settings.TILE_OVERLAP_PX):
                    key = await self.storage.upload(
                        encode_png(child.image),
                        f"tile_{tile.tile_id}_{child.index}.png",
                        folder=f"jobs/{job_id}/tiles/stage{next_stage}",
                    )
                    specs.append(TileSpec(
                        parent_tile_id=tile.tile_id,
                        x=child.x,
                        y=child.y,
                        width=child.width,
                        height=child.height,
                        overlap_left=child.overlap_left,
                        overlap_top=child.overlap_top,
                        input_url=await self.storage.get_public_url(key),
                        sub_tile_index=child.index,
                        sub_tile_grid=child.grid,
                    ))

        if not specs:
            await self.fail_job(
                job_id,
                JobErrorCode.SPLIT_FAILED,
                "No tile output could be split",
                expected_status=JobStatus.NEEDS_SPLIT,
            )
            return await self._get_job(job_id)

        try:
            return await self.resume_job(job_id, ResumeRequest(stage=next_stage, tiles=specs), failed_tiles=failed)
        except JobStateError as e:
            # Another split worker resumed the job while this one was cutting tiles
            logger.info("split_superseded", job_id=job_id, stage=next_stage, error=e.message)
            return await self._get_job(job_id)

    # -------------------------------------------------------------------------
    # Stitch
    # -------------------------------------------------------------------------

    async def stitch_job(self, job_id: str) -> UpscaleJob:
        """tiles_ready -> completed / partial_success, or failed(stitch_failed)."""
        job = await self._get_job(job_id)
        if job.status != JobStatus.TILES_READY.value:
            logger.info("stitch_skipped", job_id=job_id, job_status=job.status)
            return job

        stage = job.current_stage
        config = job.scale_config()
        tiles = await self._active_tiles(job_id)
        missing = [_missing_region(job, t) for t in tiles if t.status == TileStatus.FAILED]

        try:
            with LogContext(job_id=job_id, stage="stitch"), track_stage_latency("stitch"):
                stitch_inputs = []
                for tile in tiles:
                    if tile.status == TileStatus.FAILED:
                        continue
                    url = tile.output_for(stage)
                    if url is None:
                        raise StitchError(f"Tile {tile.tile_id} has no stage {stage} output", tile_id=tile.tile_id)
                    try:
                        image = await fetch_image(url, self.storage, tile_id=tile.tile_id)
                    except (ImageDecodeError, StorageError) as e:
                        raise StitchError(f"Failed to load tile {tile.tile_id}: {e.message}", tile_id=tile.tile_id)
                    stitch_inputs.append(StitchTile(
                        tile_id=tile.tile_id,
                        x=tile.x,
                        y=tile.y,
                        width=tile.width,
                        height=tile.height,
                        overlap_left=tile.overlap_left,
                        overlap_top=tile.overlap_top,
                        image=image,
                    ))

                if config is not None:
                    effective_scale = config.effective_scale
                else:
                    first = stitch_inputs[0]
                    effective_scale = first.image.width / first.width

                result = stitch_tiles(
                    stitch_inputs,
                    job.working_width,
                    job.working_height,
                    effective_scale,
                    job.target_width,
                    job.target_height,
                )
                final_key = await self.storage.upload(
                    encode_png(result.image), "final.png", folder=f"jobs/{job_id}/final"
                )
                final_url = await self.storage.get_public_url(final_key)
        except StitchError as e:
            job = await self._lock_job(job_id)
            await self._fail_job(job, JobErrorCode.STITCH_FAILED, e.message)
            await self._commit()
            return job

        job = await self._lock_job(job_id)
        status = JobStatus.PARTIAL_SUCCESS if missing else JobStatus.COMPLETED
        message = None
        if missing:
            ids = ", ".join(str(region["tile_id"]) for region in missing)
            message = f"{len(missing)} tile(s) failed ({ids}); their regions are missing from the output"

        finished = await self._transition(
            job,
            status,
            final_storage_key=final_key,
            final_output_url=final_url,
            final_width=result.width,
            final_height=result.height,
            missing_regions=missing,
            error_message=message,
            completed_at=utcnow(),
        )
        if finished:
            self._after_commit.append(partial(record_job_completion, status.value, "none", self._duration(job)))
            logger.info(
                "job_completed",
                job_id=job_id,
                status=status.value,
                width=result.width,
                height=result.height,
                missing_regions=len(missing),
            )
        await self._commit()
        return job

    # -------------------------------------------------------------------------
    # Cancellation, reconciliation, expiry
    # -------------------------------------------------------------------------

    async def fail_job(
        self,
        job_id: str,
        code: JobErrorCode,
        message: str,
        expected_status: Optional[JobStatus] = None
    ) -> bool:
        """
        Fail a job unless it already finished. With expected_status the job is
        only failed while it is still in that status, so a worker does not fail
        a job that another worker has already moved on.
        """
        job = await self._lock_job(job_id)
        if job.status in TERMINAL_STATUSES:
            await self._commit()
            return False
        if expected_status is not None and job.status != expected_status.value:
            logger.info(
                "job_fail_skipped",
                job_id=job_id,
                job_status=job.status,
                expected_status=expected_status.value,
                error_code=code.value,
            )
            await self._commit()
            return False
        failed = await self._fail_job(job, code, message)
        await self._commit()
        return failed

    async def cancel_job(self, job_id: str, reason: str = "user") -> UpscaleJob:
        """
        Fail a running job with error_code cancelled (or timeout) and cancel
        its in-flight predictions on a best-effort basis.
        """
        job = await self._lock_job(job_id)
        status = job.status
        if status in TERMINAL_STATUSES:
            await self._rollback()
            raise JobStateError(f"Job {job_id} is already {status}", current_status=status, job_id=job_id)

        if reason == "timeout":
            code = JobErrorCode.TIMEOUT
            message = f"Job exceeded the {settings.JOB_TIMEOUT_SECONDS}s time limit"
        else:
            code = JobErrorCode.CANCELLED
            message = "Job cancelled by user"

        tiles = await self._active_tiles(job_id)
        in_flight = []
        for tile in tiles:
            if tile.processing_stage is not None and tile.current_prediction_id:
                in_flight.append(tile.current_prediction_id)
            if tile.status == TileStatus.PENDING or tile.processing_stage is not None:
                tile.status = TileStatus.FAILED
                tile.error = message
                tile.error_stage = job.current_stage
                tile.updated_at = utcnow()

        if not await self._fail_job(job, code, message):
            await self._rollback()
            raise JobStateError(f"Job {job_id} changed while cancelling", job_id=job_id)
        await self._commit()

        if self.replicate is not None:
            for prediction_id in in_flight:
                try:
                    await self.replicate.cancel_prediction(prediction_id)
                except (ExternalAPIError, CircuitBreakerOpenError) as e:
                    logger.warning("prediction_cancel_failed", prediction_id=prediction_id, error=e.message)

        logger.info("job_cancelled", job_id=job_id, reason=reason, cancelled_predictions=len(in_flight))
        return job

    async def reconcile_job(self, job_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Re-query the backend for every in-flight prediction and feed terminal
        results through the normal completion path; re-dispatch work that
        was lost and re-check the stage barrier. Pending tiles still waiting
        out a retry delay are left to their scheduled dispatch.
        """
        now = now or utcnow()
        job = await self._get_job(job_id)
        summary: Dict[str, Any] = {
            "job_id": job_id,
            "status": job.status,
            "checked": 0,
            "updated": 0,
            "redispatched": 0,
            "backing_off": 0,
            "advanced": False,
        }

        if job.status in TERMINAL_STATUSES or job.status == JobStatus.PENDING.value:
            return summary
        if job.status == JobStatus.NEEDS_SPLIT.value:
            self.dispatcher.dispatch_split(job_id, job.current_stage + 1)
            summary["redispatched"] = 1
            return summary
        if job.status == JobStatus.TILES_READY.value:
            self.dispatcher.dispatch_stitch(job_id)
            summary["redispatched"] = 1
            return summary

        stage = job.current_stage
        # A claimed tile with no prediction after this long lost its dispatch
        lost_cutoff = now - timedelta(
            seconds=settings.WEBHOOK_STALE_SECONDS + settings.REPLICATE_TIMEOUT_SECONDS
        )
        for tile in await self._active_tiles(job_id):
            prediction_id = tile.current_prediction_id
            if tile.processing_stage == stage and not prediction_id:
                if tile.updated_at < lost_cutoff:
                    logger.warning("tile_dispatch_lost", job_id=job_id, tile_id=tile.tile_id, stage=stage)
                    await self.handle_dispatch_failure(job_id, tile.tile_id, stage, "Dispatch lost before a prediction started")
                    summary["redispatched"] += 1
            elif tile.processing_stage == stage and self.replicate is not None:
                summary["checked"] += 1
                try:
                    prediction = await self.replicate.get_prediction(prediction_id)
                except (ExternalAPIError, CircuitBreakerOpenError) as e:
                    logger.warning("reconcile_lookup_failed", prediction_id=prediction_id, error=e.message)
                    continue
                if prediction.is_terminal and await self.handle_prediction_update(prediction):
                    summary["updated"] += 1
            elif tile.status == TileStatus.PENDING:
                if tile.retry_after is not None and tile.retry_after > now:
                    summary["backing_off"] += 1
                    continue
                self.dispatcher.dispatch_tile(job_id, tile.tile_id, stage)
                summary["redispatched"] += 1

        summary["advanced"] = await self.advance_job(job_id)
        summary["status"] = (await self._get_job(job_id)).status
        logger.info("job_reconciled", **summary)
        return summary

    async def find_stale_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """Processing jobs with no completion signal in the last WEBHOOK_STALE_SECONDS."""
        cutoff = (now or utcnow()) - timedelta(seconds=settings.WEBHOOK_STALE_SECONDS)
        result = await self.session.execute(
            select(UpscaleJob.id).where(
                UpscaleJob.status == JobStatus.PROCESSING.value,
                or_(UpscaleJob.last_webhook_at.is_(None), UpscaleJob.last_webhook_at < cutoff),
            )
        )
        return list(result.scalars().all())

    async def check_all(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        summaries = []
        for job_id in await self.find_stale_jobs(now):
            summaries.append(await self.reconcile_job(job_id, now))
        logger.info("check_all_completed", jobs=len(summaries))
        return summaries

    async def expire_jobs(self, now: Optional[datetime] = None) -> List[str]:
        """Fail non-terminal jobs older than JOB_TIMEOUT_SECONDS with error_code timeout."""
        cutoff = (now or utcnow()) - timedelta(seconds=settings.JOB_TIMEOUT_SECONDS)
        result = await self.session.execute(
            select(UpscaleJob.id).where(
                UpscaleJob.status.not_in(list(TERMINAL_STATUSES)),
                UpscaleJob.created_at < cutoff,
            )
        )
        expired = []
        for job_id in result.scalars().all():
            try:
                await self.cancel_job(job_id, reason="timeout")
            except JobStateError:
                continue
            expired.append(job_id)
        if expired:
            logger.warning("jobs_expired", count=len(expired), job_ids=expired)
        return expired

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        job = await self._get_job(job_id)
        tiles = await self._active_tiles(job_id)
        stage = job.current_stage

        counts = {"total": len(tiles), "completed": 0, "processing": 0, "pending": 0, "failed": 0}
        for tile in tiles:
            if tile.status == TileStatus.FAILED:
                counts["failed"] += 1
            elif tile.is_complete(stage):
                counts["completed"] += 1
            elif tile.processing_stage is not None:
                counts["processing"] += 1
            else:
                counts["pending"] += 1

        stages = []
        config = job.scale_config()
        if config is not None:
            for stage_config in config.stages:
                if stage_config.stage_number < stage or job.status in (
                    JobStatus.TILES_READY.value, JobStatus.COMPLETED.value, JobStatus.PARTIAL_SUCCESS.value
                ):
                    state = "complete"
                elif stage_config.stage_number == stage:
                    state = "complete" if job.status == JobStatus.NEEDS_SPLIT.value else "active"
                else:
                    state = "pending"
                stages.append({
                    "stage": stage_config.stage_number,
                    "scale_multiplier": stage_config.scale_multiplier,
                    "grid": list(stage_config.grid),
                    "tile_count": stage_config.tile_count,
                    "split_from_previous": stage_config.split_from_previous,
                    "status": state,
                })

        progress = compute_progress(job, tiles)
        document = job.to_response_dict()
        document.update({
            "job_id": job.id,
            "progress": progress,
            "message": self._progress_message(job, counts),
            "tiles": counts,
            "failed_tiles": counts["failed"],
            "stages": stages,
            "tile_grid": job.tile_grid or {},
        })
        if job.status == JobStatus.TILES_READY.value:
            document["tiles_data"] = [t.to_response_dict() for t in tiles]
        return document

    @staticmethod
    def _progress_message(job: UpscaleJob, counts: Dict[str, int]) -> str:
        if job.status == JobStatus.PENDING.value:
            return "Queued"
        if job.status == JobStatus.PROCESSING.value:
            return (
                f"Stage {job.current_stage}/{job.total_stages}: "
                f"{counts['completed']}/{counts['total']} tiles"
            )
        if job.status == JobStatus.NEEDS_SPLIT.value:
            return f"Splitting tiles for stage {job.current_stage + 1}"
        if job.status == JobStatus.TILES_READY.value:
            return "Stitching"
        if job.status == JobStatus.FAILED.value:
            return job.error_message or "Failed"
        if job.status == JobStatus.PARTIAL_SUCCESS.value:
            return "Completed with missing regions"
        return "Completed"
