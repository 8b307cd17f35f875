import httpx
import pytest

from src.core.exceptions import JobFailedError, JobNotFoundError, JobTimeoutError
from src.engines.upscale.recovery import JobPoller


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.now += seconds


class FakeServer:
    """Serves status documents from a function of the fake clock and records POSTs."""

    def __init__(self, clock, status_for):
        self.clock = clock
        self.status_for = status_for
        self.posts = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.posts.append((request.url.path, dict(request.url.params)))
            return httpx.Response(200, json={})
        result = self.status_for(self.clock.now)
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=result)


def _poller(clock, server, **kwargs) -> JobPoller:
    options = dict(
        poll_interval=1.0,
        stale_threshold=100,
        stale_grace=0.0,
        check_all_interval=1000.0,
        timeout=600.0,
    )
    options.update(kwargs)
    return JobPoller(
        "http://api.test",
        transport=httpx.MockTransport(server),
        clock=clock,
        sleep=clock.sleep,
        **options,
    )


def _doc(status, progress, **extra):
    return {"job_id": "j1", "status": status, "progress": progress, "message": f"{progress}%", **extra}


@pytest.mark.asyncio
async def test_wait_returns_final_document_and_reports_progress():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("completed", 100) if t >= 2 else _doc("processing", int(t * 40)))
    seen = []

    document = await _poller(clock, server, on_progress=lambda p, m: seen.append(p)).wait("j1")

    assert document["status"] == "completed"
    assert seen == [0, 40, 100]
    assert server.posts == []


@pytest.mark.asyncio
async def test_partial_success_is_returned_not_raised():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("partial_success", 100, missing_regions=[{"tile_id": 1}]))

    document = await _poller(clock, server).wait("j1")

    assert document["missing_regions"][0]["tile_id"] == 1


@pytest.mark.asyncio
async def test_stuck_progress_triggers_job_check():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("completed", 100) if t >= 3 else _doc("processing", 10))

    await _poller(clock, server, stale_threshold=2).wait("j1")

    assert server.posts == [("/api/v1/upscale/j1/check", {})]


@pytest.mark.asyncio
async def test_stale_check_waits_for_grace_period():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("completed", 100) if t >= 3 else _doc("processing", 10))

    await _poller(clock, server, stale_threshold=1, stale_grace=30.0).wait("j1")

    assert server.posts == []


@pytest.mark.asyncio
async def test_timeout_cancels_and_raises():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("processing", int(t)))

    with pytest.raises(JobTimeoutError) as exc_info:
        await _poller(clock, server, timeout=5.0).wait("j1")

    assert server.posts == [("/api/v1/upscale/j1/cancel", {"reason": "timeout"})]
    assert exc_info.value.code == 504
    assert exc_info.value.details["last_progress"] == 5


@pytest.mark.asyncio
async def test_failed_job_raises_with_error_code():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc(
        "failed", 20, error={"code": "too_many_failed_tiles", "message": "3 of 4 tiles failed at stage 1"}
    ))

    with pytest.raises(JobFailedError) as exc_info:
        await _poller(clock, server).wait("j1")

    assert exc_info.value.error_code == "too_many_failed_tiles"
    assert "3 of 4" in exc_info.value.message


@pytest.mark.asyncio
async def test_check_all_runs_on_its_own_cadence():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("completed", 100) if t >= 7 else _doc("processing", int(t * 10)))

    await _poller(clock, server, check_all_interval=3.0).wait("j1")

    assert [path for path, _ in server.posts] == ["/api/v1/upscale/check-all", "/api/v1/upscale/check-all"]


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: httpx.Response(404, json={"error": "Job not found: j1"}))

    with pytest.raises(JobNotFoundError):
        await _poller(clock, server).wait("j1")


@pytest.mark.asyncio
async def test_transient_status_errors_keep_polling():
    clock = FakeClock()
    server = FakeServer(clock, lambda t: _doc("completed", 100) if t >= 2 else httpx.Response(503))

    document = await _poller(clock, server).wait("j1")

    assert document["status"] == "completed"
