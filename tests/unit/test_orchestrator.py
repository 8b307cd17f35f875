from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from PIL import Image

from src.core.config import settings
from src.core.exceptions import JobStateError, ValidationError
from src.engines.upscale import orchestrator as orchestrator_module
from src.engines.upscale.orchestrator import JobOrchestrator, compute_progress, should_fail_job
from src.engines.upscale.schemas import (
    JobErrorCode,
    JobSettings,
    JobStatus,
    PredictionUpdate,
    ResumeRequest,
    TileSpec,
    TileStatus,
)
from src.modules.upscale.models import utcnow
from tests.factories import make_png


# =============================================================================
# Helpers
# =============================================================================

@pytest.fixture
def replicate():
    client = MagicMock()
    client.create_prediction = AsyncMock(return_value={"id": "pred-created"})
    client.get_prediction = AsyncMock()
    client.cancel_prediction = AsyncMock(return_value={})
    return client


@pytest.fixture
def orchestrator(session, storage, dispatcher, replicate):
    return JobOrchestrator(session, storage, dispatcher, replicate)


async def start(orchestrator, width, height, scale, **job_settings):
    job = await orchestrator.create_job(
        make_png(width, height), JobSettings(scale=scale, **job_settings), filename="input.png"
    )
    return await orchestrator.start_job(job.id)


async def run_prediction(orchestrator, storage, job_id, tile_id, stage, cumulative, succeed=True):
    """Claim a tile, start a fake prediction and deliver its webhook."""
    dispatch = await orchestrator.claim_tile(job_id, tile_id, stage)
    assert dispatch is not None, f"tile {tile_id} was not dispatchable at stage {stage}"
    prediction_id = f"pred-{tile_id}-{stage}-{dispatch.attempt}"
    await orchestrator.record_prediction_started(job_id, tile_id, stage, prediction_id)

    if not succeed:
        update = PredictionUpdate(id=prediction_id, status="failed", error="CUDA out of memory")
        return await orchestrator.handle_prediction_update(update)

    tile = await orchestrator._get_tile(job_id, tile_id)
    size = (round(tile.width * cumulative), round(tile.height * cumulative))
    key = await storage.upload(make_png(*size), f"out_{tile_id}.png", folder=f"outputs/{job_id}/stage{stage}")
    url = await storage.get_public_url(key)
    update = PredictionUpdate(id=prediction_id, status="succeeded", output=[url])
    return await orchestrator.handle_prediction_update(update)


# =============================================================================
# Policies
# =============================================================================

@pytest.mark.parametrize("active,failed,expected", [
    (4, 0, False),
    (4, 1, False),
    (4, 2, False),
    (4, 3, True),
    (1, 1, True),
    (0, 0, False),
])
def test_should_fail_job(active, failed, expected):
    assert should_fail_job(active, failed, max_ratio=0.5) is expected


# =============================================================================
# Creation
# =============================================================================

@pytest.mark.asyncio
async def test_create_and_start_dispatches_stage_one(orchestrator, dispatcher):
    job = await start(orchestrator, 160, 120, 8)

    assert job.status == JobStatus.PROCESSING.value
    assert job.current_stage == 1
    assert job.total_stages == 2
    assert job.template_name == "Standard (4:3)"
    assert job.tile_grid["cols"] == 2 and job.tile_grid["rows"] == 2
    assert sorted(dispatcher.tiles_for(1)) == [0, 1, 2, 3]

    status = await orchestrator.get_status(job.id)
    assert status["progress"] == 0
    assert status["tiles"] == {"total": 4, "completed": 0, "processing": 0, "pending": 4, "failed": 0}
    assert [s["status"] for s in status["stages"]] == ["active", "pending"]


@pytest.mark.asyncio
async def test_create_downscales_oversized_input(orchestrator):
    job = await start(orchestrator, 720, 540, 16)

    assert job.requires_downscale is True
    assert (job.working_width, job.working_height) == (640, 480)
    # Final size is still relative to the uploaded image
    assert (job.target_width, job.target_height) == (720 * 16, 540 * 16)


@pytest.mark.asyncio
async def test_start_twice_is_rejected(orchestrator):
    job = await start(orchestrator, 160, 120, 4)
    with pytest.raises(JobStateError):
        await orchestrator.start_job(job.id)


# =============================================================================
# Stage barrier
# =============================================================================

@pytest.mark.asyncio
async def test_two_stage_job_runs_to_completion(orchestrator, storage, dispatcher):
    job = await start(orchestrator, 160, 120, 8)

    for tile_id in range(3):
        assert await run_prediction(orchestrator, storage, job.id, tile_id, 1, cumulative=4)
        # No stage-2 work while any stage-1 tile is unresolved
        assert dispatcher.tiles_for(2) == []
        assert await orchestrator.claim_tile(job.id, tile_id, 2) is None

    status = await orchestrator.get_status(job.id)
    assert status["tiles"]["completed"] == 3
    assert status["progress"] == 23

    assert await run_prediction(orchestrator, storage, job.id, 3, 1, cumulative=4)
    assert sorted(dispatcher.tiles_for(2)) == [0, 1, 2, 3]

    status = await orchestrator.get_status(job.id)
    assert status["status"] == JobStatus.PROCESSING.value
    assert status["current_stage"] == 2
    assert status["progress"] == 31

    for tile_id in range(4):
        assert await run_prediction(orchestrator, storage, job.id, tile_id, 2, cumulative=8)

    assert dispatcher.stitches == [job.id]
    ready = await orchestrator.get_status(job.id)
    assert ready["status"] == JobStatus.TILES_READY.value
    assert ready["progress"] == 95
    assert len(ready["tiles_data"]) == 4

    finished = await orchestrator.stitch_job(job.id)
    assert finished.status == JobStatus.COMPLETED.value
    assert (finished.final_width, finished.final_height) == (1280, 960)
    assert finished.final_output_url.startswith("http://test/static/storage/jobs/")

    final = Image.open(storage.base_path / finished.final_storage_key)
    assert final.size == (1280, 960)
    assert (await orchestrator.get_status(job.id))["progress"] == 100


@pytest.mark.asyncio
async def test_advance_and_duplicate_webhooks_are_idempotent(orchestrator, storage, dispatcher):
    job = await start(orchestrator, 160, 120, 8)
    for tile_id in range(4):
        await run_prediction(orchestrator, storage, job.id, tile_id, 1, cumulative=4)
    assert len(dispatcher.tiles_for(2)) == 4

    assert await orchestrator.advance_job(job.id) is False
    assert await orchestrator.advance_job(job.id) is False

    late = PredictionUpdate(id="pred-3-1-1", status="succeeded", output="http://test/static/storage/x.png")
    assert await orchestrator.handle_prediction_update(late) is False

    assert len(dispatcher.tiles_for(2)) == 4
    job = await orchestrator._get_job(job.id)
    assert job.current_stage == 2


@pytest.mark.asyncio
async def test_unknown_and_non_terminal_updates_are_ignored(orchestrator):
    await start(orchestrator, 160, 120, 4)
    assert await orchestrator.handle_prediction_update(PredictionUpdate(id="nope", status="succeeded")) is False
    assert await orchestrator.handle_prediction_update(PredictionUpdate(id="nope", status="processing")) is False


# =============================================================================
# Split between stages
# =============================================================================

@pytest.mark.asyncio
async def test_split_creates_children_and_supersedes_parents(orchestrator, storage, dispatcher):
    job = await start(orchestrator, 720, 540, 16)
    assert sorted(dispatcher.tiles_for(1)) == list(range(12))

    for tile_id in range(12):
        await run_prediction(orchestrator, storage, job.id, tile_id, 1, cumulative=4)

    job = await orchestrator._get_job(job.id)
    assert job.status == JobStatus.NEEDS_SPLIT.value
    assert dispatcher.splits == [(job.id, 2)]
    assert dispatcher.tiles_for(2) == []

    job = await orchestrator.split_job(job.id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.current_stage == 2
    assert job.tile_grid["cols"] == 8 and job.tile_grid["rows"] == 6

    tiles = await orchestrator._active_tiles(job.id)
    assert len(tiles) == 48
    assert {t.tile_id for t in tiles} == set(range(12, 60))
    assert {t.parent_tile_id for t in tiles} == set(range(12))
    assert all(t.sub_tile_grid == [2, 2] for t in tiles)
    assert sorted(dispatcher.tiles_for(2)) == list(range(12, 60))

    # Children of one parent cover exactly its region
    parent = await orchestrator._get_tile(job.id, 5)
    assert parent.is_superseded is True
    children = [t for t in tiles if t.parent_tile_id == 5]
    assert min(c.x for c in children) == pytest.approx(parent.x)
    assert max(c.x + c.width for c in children) == pytest.approx(parent.x + parent.width)

    # A second split request for the same transition does nothing
    assert await orchestrator.split_job(job.id) is None


@pytest.mark.asyncio
async def test_second_split_worker_leaves_resumed_job_running(
    orchestrator, session, storage, dispatcher, replicate, monkeypatch
):
    job = await start(orchestrator, 720, 540, 16)
    job_id = job.id
    for tile_id in range(12):
        await run_prediction(orchestrator, storage, job_id, tile_id, 1, cumulative=4)

    # A redelivered split task resumes the job while this worker is still cutting tiles
    rival = JobOrchestrator(session, storage, dispatcher, replicate)
    real_fetch_image = orchestrator_module.fetch_image
    rival_started = []

    async def fetch_image_racing_rival(*args, **kwargs):
        if not rival_started:
            rival_started.append(True)
            resumed = await rival.split_job(job_id)
            assert resumed.status == JobStatus.PROCESSING.value
        return await real_fetch_image(*args, **kwargs)

    monkeypatch.setattr(orchestrator_module, "fetch_image", fetch_image_racing_rival)

    job = await orchestrator.split_job(job_id)

    assert job.status == JobStatus.PROCESSING.value
    assert job.current_stage == 2
    assert job.error_code is None
    tiles = await orchestrator._active_tiles(job_id)
    assert len(tiles) == 48
    assert sorted(dispatcher.tiles_for(2)) == list(range(12, 60))

    # A late failure report from the losing worker does not touch the running job
    assert await orchestrator.fail_job(
        job_id, JobErrorCode.SPLIT_FAILED, "boom", expected_status=JobStatus.NEEDS_SPLIT
    ) is False
    job = await orchestrator._get_job(job_id)
    assert job.status == JobStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_unreadable_plan_splits_from_observed_pixels(orchestrator, storage, dispatcher, session):
    job = await start(orchestrator, 160, 120, 8)
    job.template_config = {"scale": "broken"}
    session.add(job)
    await session.commit()

    for tile_id in range(4):
        await run_prediction(orchestrator, storage, job.id, tile_id, 1, cumulative=4)

    job = await orchestrator._get_job(job.id)
    assert job.status == JobStatus.NEEDS_SPLIT.value

    job = await orchestrator.split_job(job.id)
    assert job.status == JobStatus.PROCESSING.value
    assert job.current_stage == 2
    tiles = await orchestrator._active_tiles(job.id)
    # Outputs are small enough that every tile becomes a single child
    assert len(tiles) == 4
    assert {t.parent_tile_id for t in tiles} == {0, 1, 2, 3}

    dispatch = await orchestrator.claim_tile(job.id, tiles[0].tile_id, 2)
    assert dispatch.multiplier == 2


@pytest.mark.asyncio
async def test_resume_requires_needs_split(orchestrator):
    job = await start(orchestrator, 160, 120, 8)
    request = ResumeRequest(stage=2, tiles=[TileSpec(
        parent_tile_id=0, x=0, y=0, width=10, height=10,
        input_url="http://test/static/storage/child.png",
        sub_tile_index=0, sub_tile_grid=(1, 1),
    )])

    job_id = job.id

    with pytest.raises(JobStateError) as exc_info:
        await orchestrator.resume_job(job_id, request)

    assert exc_info.value.details["current_status"] == JobStatus.PROCESSING.value
    assert "processing, not needs_split" in exc_info.value.message
    job = await orchestrator._get_job(job_id)
    assert job.status == JobStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_resume_validates_stage_and_parents(orchestrator, storage):
    job = await start(orchestrator, 720, 540, 16)
    job_id = job.id
    for tile_id in range(12):
        await run_prediction(orchestrator, storage, job_id, tile_id, 1, cumulative=4)

    def request(stage, parent):
        return ResumeRequest(stage=stage, tiles=[TileSpec(
            parent_tile_id=parent, x=0, y=0, width=10, height=10,
            input_url="http://test/static/storage/child.png",
            sub_tile_index=0, sub_tile_grid=(1, 1),
        )])

    with pytest.raises(JobStateError):
        await orchestrator.resume_job(job_id, request(3, 0))
    with pytest.raises(ValidationError):
        await orchestrator.resume_job(job_id, request(2, 99))

    job = await orchestrator.resume_job(job_id, request(2, 0))
    tiles = await orchestrator._active_tiles(job_id)
    # Tile 0 replaced by one child, the other eleven carry their output forward
    assert len(tiles) == 12
    assert {t.tile_id for t in tiles} == set(range(1, 13))
    carried = await orchestrator._get_tile(job_id, 1)
    assert carried.input_url == carried.output_for(1)
    assert carried.status == TileStatus.PENDING


# =============================================================================
# Failures
# =============================================================================

@pytest.mark.asyncio
async def test_tile_failing_three_times_ends_in_partial_success(orchestrator, storage, dispatcher):
    job = await start(orchestrator, 160, 120, 4)

    for attempt in range(settings.MAX_TILE_ATTEMPTS):
        assert await run_prediction(orchestrator, storage, job.id, 1, 1, cumulative=4, succeed=False)

    tile = await orchestrator._get_tile(job.id, 1)
    assert tile.status == TileStatus.FAILED
    assert tile.attempts_for(1) == 3
    assert tile.error == "CUDA out of memory"
    assert tile.error_stage == 1
    retries = [countdown for _, tile_id, _, countdown in dispatcher.tiles if tile_id == 1 and countdown]
    assert retries == [5, 10]

    for tile_id in (0, 2, 3):
        await run_prediction(orchestrator, storage, job.id, tile_id, 1, cumulative=4)

    assert dispatcher.stitches == [job.id]
    job = await orchestrator.stitch_job(job.id)

    assert job.status == JobStatus.PARTIAL_SUCCESS.value
    assert (job.final_width, job.final_height) == (640, 480)
    assert len(job.missing_regions) == 1
    region = job.missing_regions[0]
    assert region["tile_id"] == 1
    assert region["output_box"][0] > 0
    assert "1 tile(s) failed" in job.error_message

    status = await orchestrator.get_status(job.id)
    assert status["failed_tiles"] == 1
    assert status["error"]["message"] == job.error_message


@pytest.mark.asyncio
async def test_too_many_failed_tiles_fails_job(orchestrator, storage, dispatcher):
    job = await start(orchestrator, 160, 120, 4)

    for tile_id in (0, 1, 2):
        await orchestrator.claim_tile(job.id, tile_id, 1)
        await orchestrator.handle_dispatch_failure(job.id, tile_id, 1, "422 invalid input", retryable=False)
    await run_prediction(orchestrator, storage, job.id, 3, 1, cumulative=4)

    job = await orchestrator._get_job(job.id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == JobErrorCode.TOO_MANY_FAILED_TILES.value
    assert "3 of 4" in job.error_message
    assert dispatcher.stitches == []


@pytest.mark.asyncio
async def test_missing_tile_output_fails_stitch(orchestrator, storage):
    job = await start(orchestrator, 160, 120, 4)
    for tile_id in range(4):
        await run_prediction(orchestrator, storage, job.id, tile_id, 1, cumulative=4)

    tile = await orchestrator._get_tile(job.id, 2)
    await storage.delete(storage.key_from_url(tile.output_for(1)))

    job = await orchestrator.stitch_job(job.id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == JobErrorCode.STITCH_FAILED.value
    assert "tile 2" in job.error_message


@pytest.mark.asyncio
async def test_submit_tile_retries_retryable_backend_errors(orchestrator, replicate, dispatcher):
    from src.core.exceptions import ExternalAPIError

    job = await start(orchestrator, 160, 120, 4)
    replicate.create_prediction.side_effect = ExternalAPIError("503", service="replicate", retryable=True)

    assert await orchestrator.submit_tile(job.id, 0, 1) is None

    tile = await orchestrator._get_tile(job.id, 0)
    assert tile.status == TileStatus.PENDING
    assert dispatcher.tiles[-1] == (job.id, 0, 1, 5)


@pytest.mark.asyncio
async def test_submit_tile_records_prediction(orchestrator, replicate):
    job = await start(orchestrator, 160, 120, 4, content_type="anime")

    assert await orchestrator.submit_tile(job.id, 0, 1) == "pred-created"

    tile = await orchestrator._get_tile(job.id, 0)
    assert tile.status == TileStatus.processing(1)
    assert tile.current_prediction_id == "pred-created"
    model, image_url, scale = replicate.create_prediction.await_args.args
    assert model.extra_input == {"anime": True}
    assert image_url == tile.input_url
    assert scale == 4
    assert replicate.create_prediction.await_args.kwargs["webhook_url"].endswith("/api/v1/upscale/webhook")

    # Already claimed
    assert await orchestrator.submit_tile(job.id, 0, 1) is None


# =============================================================================
# Cancellation, reconciliation, expiry
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_fails_job_and_cancels_predictions(orchestrator, replicate):
    job = await start(orchestrator, 160, 120, 4)
    await orchestrator.claim_tile(job.id, 0, 1)
    await orchestrator.record_prediction_started(job.id, 0, 1, "pred-inflight")

    job = await orchestrator.cancel_job(job.id)

    assert job.status == JobStatus.FAILED.value
    assert job.error_code == JobErrorCode.CANCELLED.value
    replicate.cancel_prediction.assert_awaited_once_with("pred-inflight")
    tiles = await orchestrator._active_tiles(job.id)
    assert all(t.status == TileStatus.FAILED for t in tiles)

    with pytest.raises(JobStateError) as exc_info:
        await orchestrator.cancel_job(job.id)
    assert exc_info.value.details["current_status"] == JobStatus.FAILED.value

    late = PredictionUpdate(id="pred-inflight", status="succeeded", output="http://test/x.png")
    assert await orchestrator.handle_prediction_update(late) is False


@pytest.mark.asyncio
async def test_reconcile_applies_missed_completion(orchestrator, storage, replicate, dispatcher):
    job = await start(orchestrator, 160, 120, 4)
    await orchestrator.claim_tile(job.id, 0, 1)
    await orchestrator.record_prediction_started(job.id, 0, 1, "pred-missed")
    key = await storage.upload(make_png(320, 240), "out.png", folder="outputs")
    replicate.get_prediction.return_value = PredictionUpdate(
        id="pred-missed", status="succeeded", output=[await storage.get_public_url(key)]
    )
    dispatched_before = len(dispatcher.tiles)

    summary = await orchestrator.reconcile_job(job.id)

    assert summary["checked"] == 1
    assert summary["updated"] == 1
    assert summary["redispatched"] == 3
    assert len(dispatcher.tiles) == dispatched_before + 3
    tile = await orchestrator._get_tile(job.id, 0)
    assert tile.is_complete(1)


@pytest.mark.asyncio
async def test_reconcile_recovers_lost_dispatch(orchestrator, session, dispatcher):
    job = await start(orchestrator, 160, 120, 4)
    await orchestrator.claim_tile(job.id, 0, 1)
    tile = await orchestrator._get_tile(job.id, 0)
    tile.updated_at = utcnow() - timedelta(minutes=5)
    session.add(tile)
    await session.commit()

    await orchestrator.reconcile_job(job.id)

    tile = await orchestrator._get_tile(job.id, 0)
    assert tile.status == TileStatus.PENDING
    assert (job.id, 0, 1, 5) in dispatcher.tiles


@pytest.mark.asyncio
async def test_reconcile_leaves_tiles_waiting_out_retry_delay(orchestrator, dispatcher):
    job = await start(orchestrator, 160, 120, 4)
    job_id = job.id
    await orchestrator.claim_tile(job_id, 0, 1)
    await orchestrator.handle_dispatch_failure(job_id, 0, 1, "503 from backend")

    tile = await orchestrator._get_tile(job_id, 0)
    assert tile.status == TileStatus.PENDING
    assert tile.retry_after == tile.updated_at + timedelta(seconds=5)
    dispatched_before = len(dispatcher.tiles)

    summary = await orchestrator.reconcile_job(job_id)

    assert summary["backing_off"] == 1
    assert summary["redispatched"] == 3
    assert 0 not in [tile_id for _, tile_id, _, _ in dispatcher.tiles[dispatched_before:]]

    # Once the delay has passed the tile is fair game again
    summary = await orchestrator.reconcile_job(job_id, now=tile.retry_after + timedelta(seconds=1))
    assert summary["backing_off"] == 0
    assert summary["redispatched"] == 4

    # Claiming the tile clears the delay
    await orchestrator.claim_tile(job_id, 0, 1)
    tile = await orchestrator._get_tile(job_id, 0)
    assert tile.retry_after is None


@pytest.mark.asyncio
async def test_stale_jobs_and_expiry(orchestrator):
    job = await start(orchestrator, 160, 120, 4)

    assert job.id in await orchestrator.find_stale_jobs()

    later = utcnow() + timedelta(seconds=settings.JOB_TIMEOUT_SECONDS + 5)
    assert await orchestrator.expire_jobs(now=later) == [job.id]

    job = await orchestrator._get_job(job.id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_code == JobErrorCode.TIMEOUT.value
    assert job.id not in await orchestrator.find_stale_jobs()


@pytest.mark.asyncio
async def test_progress_weights_later_stages(orchestrator, storage):
    job = await start(orchestrator, 160, 120, 8)
    await run_prediction(orchestrator, storage, job.id, 0, 1, cumulative=4)

    job = await orchestrator._get_job(job.id)
    tiles = await orchestrator._active_tiles(job.id)
    # One of four stage-1 tiles: 0.25 of weight 1 out of 1 + 2
    assert compute_progress(job, tiles) == int(95 * 0.25 / 3)


@pytest.mark.asyncio
async def test_timestamps_round_trip_as_naive_utc(orchestrator):
    before = datetime.now(timezone.utc).replace(tzinfo=None)
    job = await start(orchestrator, 160, 120, 4)

    job = await orchestrator._get_job(job.id)
    assert job.created_at.tzinfo is None
    assert job.started_at.tzinfo is None
    assert before - timedelta(seconds=1) <= job.started_at <= utcnow()
