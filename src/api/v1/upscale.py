"""
Upscale Endpoints

POST /api/v1/upscale                     - Upload an image and start a tiled upscale job
GET  /api/v1/upscale/scale-options       - Catalog scales for an image size
POST /api/v1/upscale/webhook             - Replicate prediction completion
POST /api/v1/upscale/check-all           - Reconcile every job with stale webhooks
POST /api/v1/upscale/{job_id}/resume     - Resume a needs_split job with split tiles
POST /api/v1/upscale/{job_id}/cancel     - Cancel a running job
POST /api/v1/upscale/{job_id}/check      - Reconcile one job against Replicate
"""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from src.api.dependencies import get_orchestrator
from src.core.config import settings
from src.core.exceptions import PlanningError, ValidationError
from src.core.logging import get_logger
from src.core.metrics import record_job_completion
from src.engines.upscale.orchestrator import JobOrchestrator
from src.engines.upscale.schemas import (
    ContentType,
    JobErrorCode,
    JobSettings,
    PredictionUpdate,
    ResumeRequest,
)
from src.engines.upscale.templates import format_time_estimate, get_template_match

MAX_IMAGE_SIZE_MB = settings.MAX_IMAGE_SIZE_BYTES / (1024 * 1024)

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class UpscaleJobResponse(BaseModel):
    job_id: str
    status: str
    target_scale: int
    content_type: str
    template: Optional[str] = None
    fallback_plan: bool = False
    total_stages: int
    stage_one_tiles: int
    working_width: int
    working_height: int
    requires_downscale: bool
    final_width: int
    final_height: int
    estimated_time: Optional[str] = None


class WebhookResponse(BaseModel):
    prediction_id: str
    handled: bool


class CheckAllResponse(BaseModel):
    reconciled: int
    jobs: List[Dict[str, Any]]


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=UpscaleJobResponse, status_code=202)
async def create_upscale_job(
    file: UploadFile = File(...),
    scale: int = Form(...),
    content_type: ContentType = Form(ContentType.PHOTO),
    face_enhance: Optional[bool] = Form(None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Upload an image and start upscaling it.

    Flow:
    1. Validate settings and upload size
    2. Plan stages and cut stage-1 tiles (400 when no plan fits)
    3. Dispatch every stage-1 tile to Replicate
    """
    image_bytes = await file.read()
    if not image_bytes:
        raise ValidationError("Uploaded file is empty")
    if len(image_bytes) > settings.MAX_IMAGE_SIZE_BYTES:
        raise ValidationError(
            f"Image size ({len(image_bytes) / (1024 * 1024):.2f}MB) exceeds maximum allowed "
            f"size ({MAX_IMAGE_SIZE_MB:.0f}MB)"
        )

    try:
        job_settings = JobSettings(scale=scale, content_type=content_type, face_enhance=face_enhance)
    except PydanticValidationError as e:
        raise ValidationError("Invalid job settings", details={"errors": e.errors(include_url=False)})

    logger.info(
        "upscale_request_received",
        filename=file.filename,
        size_bytes=len(image_bytes),
        scale=scale,
        content_type=content_type.value,
    )

    try:
        job = await orchestrator.create_job(image_bytes, job_settings, filename=file.filename)
    except PlanningError:
        record_job_completion("failed", JobErrorCode.PLANNING_FAILED.value, was_active=False)
        raise

    job = await orchestrator.start_job(job.id)
    config = job.scale_config()

    return UpscaleJobResponse(
        job_id=job.id,
        status=job.status,
        target_scale=job.target_scale,
        content_type=job.content_type,
        template=job.template_name,
        fallback_plan=job.is_fallback_plan,
        total_stages=job.total_stages,
        stage_one_tiles=config.stage(1).tile_count,
        working_width=job.working_width,
        working_height=job.working_height,
        requires_downscale=job.requires_downscale,
        final_width=job.target_width,
        final_height=job.target_height,
        estimated_time=format_time_estimate(config.estimated_time_min),
    )


@router.get("/scale-options")
async def get_scale_options(
    width: int = Query(..., gt=0, le=settings.MAX_SOURCE_DIMENSION),
    height: int = Query(..., gt=0, le=settings.MAX_SOURCE_DIMENSION)
):
    """Nearest aspect template plus every catalog scale with its final size and resize warning."""
    return get_template_match(width, height)


@router.post("/webhook", response_model=WebhookResponse)
async def prediction_webhook(
    update: PredictionUpdate,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Replicate completion callback. Always 200 so Replicate does not retry
    deliveries we have already applied or cannot match.
    """
    logger.info("webhook_received", prediction_id=update.id, status=update.status.value)
    handled = await orchestrator.handle_prediction_update(update)
    return WebhookResponse(prediction_id=update.id, handled=handled)


@router.post("/check-all", response_model=CheckAllResponse)
async def check_all_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    summaries = await orchestrator.check_all()
    return CheckAllResponse(reconciled=len(summaries), jobs=summaries)


@router.post("/{job_id}/resume")
async def resume_job(
    job_id: str,
    request: ResumeRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """Resume a needs_split job at the next stage with the given child tiles (409 otherwise)."""
    await orchestrator.resume_job(job_id, request)
    return await orchestrator.get_status(job_id)


@router.post("/{job_id}/cancel")
async def cancel_job(
    job_id: str,
    reason: Literal["user", "timeout"] = Query("user"),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    await orchestrator.cancel_job(job_id, reason=reason)
    return await orchestrator.get_status(job_id)


@router.post("/{job_id}/check")
async def check_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """Re-query Replicate for this job's in-flight predictions."""
    return await orchestrator.reconcile_job(job_id)
