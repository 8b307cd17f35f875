"""
Upscale Job and Tile Models

The job row is the single source of truth for a job's lifecycle. Every
status change is a compare-and-set on (status, current_stage, version);
tile rows belong to exactly one job and are superseded, never deleted.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import UniqueConstraint
from sqlmodel import JSON, Column, Field, SQLModel

from src.engines.upscale.schemas import ScaleConfig, TileStatus


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _stage_key(stage: int) -> str:
    # JSON object keys are strings
    return str(stage)


class UpscaleJob(SQLModel, table=True):
    __tablename__ = "upscale_jobs"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)

    # Lifecycle
    status: str = Field(default="pending", index=True)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    version: int = Field(default=0)

    # Settings
    content_type: str = Field(default="photo")
    settings: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))
    target_scale: int
    original_filename: Optional[str] = None

    # Geometry
    original_width: int
    original_height: int
    working_width: int
    working_height: int
    requires_downscale: bool = Field(default=False)
    downscale_factor: float = Field(default=1.0)

    # Plan
    template_name: Optional[str] = None
    is_fallback_plan: bool = Field(default=False)
    template_config: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    current_stage: int = Field(default=1)
    total_stages: int = Field(default=1)
    # {stage, cols, rows, overlap, tile_width, tile_height}
    tile_grid: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))

    # Storage
    input_storage_key: Optional[str] = None
    working_storage_key: Optional[str] = None
    final_storage_key: Optional[str] = None
    final_output_url: Optional[str] = None
    final_width: Optional[int] = None
    final_height: Optional[int] = None
    missing_regions: List[Dict[str, Any]] = Field(default=[], sa_column=Column(JSON))

    # Timestamps
    last_webhook_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def scale_config(self) -> Optional[ScaleConfig]:
        """The stored stage plan, or None when it is missing or unreadable."""
        if not self.template_config:
            return None
        try:
            return ScaleConfig.model_validate(self.template_config)
        except PydanticValidationError:
            return None

    @property
    def target_width(self) -> int:
        return int(round(self.original_width * self.target_scale))

    @property
    def target_height(self) -> int:
        return int(round(self.original_height * self.target_scale))

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "current_stage": self.current_stage,
            "total_stages": self.total_stages,
            "target_scale": self.target_scale,
            "content_type": self.content_type,
            "template": self.template_name,
            "fallback_plan": self.is_fallback_plan,
            "original_dimensions": {"width": self.original_width, "height": self.original_height},
            "working_dimensions": {"width": self.working_width, "height": self.working_height},
            "requires_downscale": self.requires_downscale,
            "final_output_url": self.final_output_url,
            "final_dimensions": {
                "width": self.final_width,
                "height": self.final_height
            } if self.final_width else None,
            "missing_regions": self.missing_regions or [],
            "error": {
                "code": self.error_code,
                "message": self.error_message
            } if self.error_code or self.error_message else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class UpscaleTile(SQLModel, table=True):
    __tablename__ = "upscale_tiles"
    __table_args__ = (UniqueConstraint("job_id", "tile_id", name="uq_upscale_tiles_job_tile"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(foreign_key="upscale_jobs.id", index=True)
    tile_id: int

    # Region in working-image coordinates
    x: float
    y: float
    width: float
    height: float
    overlap_left: float = Field(default=0.0)
    overlap_top: float = Field(default=0.0)

    # Input for the next pending stage
    input_url: str
    status: str = Field(default=TileStatus.PENDING)

    # {stage: value}
    stage_outputs: Dict[str, str] = Field(default={}, sa_column=Column(JSON))
    prediction_ids: Dict[str, str] = Field(default={}, sa_column=Column(JSON))
    attempts: Dict[str, int] = Field(default={}, sa_column=Column(JSON))
    current_prediction_id: Optional[str] = Field(default=None, index=True)

    # Lineage (one level up only)
    parent_tile_id: Optional[int] = None
    sub_tile_index: Optional[int] = None
    sub_tile_grid: Optional[List[int]] = Field(default=None, sa_column=Column(JSON))
    is_superseded: bool = Field(default=False)

    error: Optional[str] = None
    error_stage: Optional[int] = None
    # Not-before time of a scheduled retry; reconciliation leaves the tile alone until then
    retry_after: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def output_for(self, stage: int) -> Optional[str]:
        return (self.stage_outputs or {}).get(_stage_key(stage))

    def attempts_for(self, stage: int) -> int:
        return (self.attempts or {}).get(_stage_key(stage), 0)

    def set_output(self, stage: int, url: str):
        outputs = dict(self.stage_outputs or {})
        outputs[_stage_key(stage)] = url
        self.stage_outputs = outputs  # Replace dict to trigger update

    def record_attempt(self, stage: int, prediction_id: Optional[str] = None) -> int:
        attempts = dict(self.attempts or {})
        attempts[_stage_key(stage)] = attempts.get(_stage_key(stage), 0) + 1
        self.attempts = attempts
        if prediction_id:
            self.set_prediction(stage, prediction_id)
        return attempts[_stage_key(stage)]

    def set_prediction(self, stage: int, prediction_id: str):
        predictions = dict(self.prediction_ids or {})
        predictions[_stage_key(stage)] = prediction_id
        self.prediction_ids = predictions
        self.current_prediction_id = prediction_id

    @property
    def processing_stage(self) -> Optional[int]:
        """Stage number when the tile is in stageN_processing."""
        if self.status.startswith("stage") and self.status.endswith("_processing"):
            return int(self.status[len("stage"):-len("_processing")])
        return None

    def is_complete(self, stage: int) -> bool:
        return self.status == TileStatus.complete(stage) and self.output_for(stage) is not None

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "tile_id": self.tile_id,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "overlap_left": self.overlap_left,
            "overlap_top": self.overlap_top,
            "input_url": self.input_url,
            "status": self.status,
            "stage_outputs": self.stage_outputs or {},
            "prediction_ids": self.prediction_ids or {},
            "attempts": self.attempts or {},
            "parent_tile_id": self.parent_tile_id,
            "sub_tile_index": self.sub_tile_index,
            "sub_tile_grid": self.sub_tile_grid,
            "error": self.error,
            "error_stage": self.error_stage,
            "retry_after": self.retry_after.isoformat() if self.retry_after else None,
        }
