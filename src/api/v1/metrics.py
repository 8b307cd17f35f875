"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from src.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - upscale_step_latency_seconds (per orchestration step)
    - upscale_job_duration_seconds
    - replicate_api_calls_total
    - upscale_tiles_total
    - upscale_jobs_total / upscale_active_jobs
    - http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
