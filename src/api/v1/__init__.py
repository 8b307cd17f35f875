"""
API v1 Router Module - Tiled Upscale Service

All v1 endpoints are prefixed with /api/v1/

- /api/v1/upscale/* - Job creation, Replicate webhook, resume, cancel, reconciliation
- /api/v1/status/*  - Job status and listing
- /api/v1/metrics   - Prometheus metrics
"""

from fastapi import APIRouter

from src.api.v1.metrics import router as metrics_router
from src.api.v1.status import router as status_router
from src.api.v1.upscale import router as upscale_router

api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(upscale_router, prefix="/upscale", tags=["upscale"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
