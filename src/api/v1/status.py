"""
Status Endpoint - Job Status Tracking

GET /api/v1/status/{job_id} - Progress, per-stage tile counts and final output of a job
GET /api/v1/status          - Paginated job list
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from src.api.dependencies import get_orchestrator
from src.core.database import get_session
from src.core.logging import get_logger
from src.engines.upscale.orchestrator import JobOrchestrator
from src.modules.upscale.models import UpscaleJob

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================

class JobSummary(BaseModel):
    id: str
    status: str
    current_stage: int
    total_stages: int
    target_scale: int
    content_type: str
    final_output_url: Optional[str] = None
    error_code: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None


class JobListResponse(BaseModel):
    jobs: List[JobSummary]
    total: int
    page: int
    page_size: int


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/{job_id}")
async def get_job_status(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Get the current status of an upscale job.

    Returns:
        Job fields plus:
        - progress (0-100) and a human readable message
        - tile counts for the current stage and failed tile ids
        - per-stage breakdown and the current tile grid
        - tile data once every final tile is ready for stitching
    """
    return await orchestrator.get_status(job_id)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None),
    session: AsyncSession = Depends(get_session)
):
    """List jobs, newest first."""
    query = select(UpscaleJob)
    count_query = select(func.count()).select_from(UpscaleJob)
    if status:
        query = query.where(UpscaleJob.status == status)
        count_query = count_query.where(UpscaleJob.status == status)

    query = query.order_by(UpscaleJob.created_at.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)

    result = await session.execute(query)
    jobs = result.scalars().all()
    total = (await session.execute(count_query)).scalar_one()

    return JobListResponse(
        jobs=[
            JobSummary(
                id=job.id,
                status=job.status,
                current_stage=job.current_stage,
                total_stages=job.total_stages,
                target_scale=job.target_scale,
                content_type=job.content_type,
                final_output_url=job.final_output_url,
                error_code=job.error_code,
                created_at=job.created_at.isoformat() if job.created_at else "",
                completed_at=job.completed_at.isoformat() if job.completed_at else None
            )
            for job in jobs
        ],
        total=total,
        page=page,
        page_size=page_size
    )
