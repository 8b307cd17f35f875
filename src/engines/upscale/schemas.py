from enum import Enum
from math import prod
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ContentType(str, Enum):
    PHOTO = "photo"
    ART = "art"
    TEXT = "text"
    ANIME = "anime"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    NEEDS_SPLIT = "needs_split"
    TILES_READY = "tiles_ready"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL_SUCCESS = "partial_success"


TERMINAL_STATUSES = {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.PARTIAL_SUCCESS.value}


class JobErrorCode(str, Enum):
    """Machine-distinguishable reason stored next to error_message."""
    PLANNING_FAILED = "planning_failed"
    TOO_MANY_FAILED_TILES = "too_many_failed_tiles"
    SPLIT_FAILED = "split_failed"
    STITCH_FAILED = "stitch_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class TileStatus:
    """Tile status strings. Stage-scoped values are built from the stage number."""
    PENDING = "pending"
    FAILED = "failed"

    @staticmethod
    def processing(stage: int) -> str:
        return f"stage{stage}_processing"

    @staticmethod
    def complete(stage: int) -> str:
        return f"stage{stage}_complete"


class PredictionStatus(str, Enum):
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


# =============================================================================
# Stage Plans
# =============================================================================

class StageConfig(BaseModel):
    """One round of inference calls at a fixed multiplier."""
    model_config = ConfigDict(frozen=True)

    stage_number: int = Field(..., ge=1)
    scale_multiplier: int = Field(..., ge=1, le=10)
    grid: Tuple[int, int]
    tile_count: int = Field(..., ge=1)
    split_from_previous: int = Field(default=1, ge=1)

    @property
    def cols(self) -> int:
        return self.grid[0]

    @property
    def rows(self) -> int:
        return self.grid[1]

    @model_validator(mode="after")
    def _check_tile_count(self):
        if self.tile_count != self.grid[0] * self.grid[1]:
            raise ValueError(
                f"stage {self.stage_number}: tile_count {self.tile_count} != grid {self.grid[0]}x{self.grid[1]}"
            )
        return self


class ScaleConfig(BaseModel):
    """Stage plan for one (aspect template, scale) pair."""
    model_config = ConfigDict(frozen=True)

    scale: int = Field(..., ge=1)
    stages: Tuple[StageConfig, ...]
    total_tiles: int
    estimated_time_min: float = 0.0
    requires_downscale: bool = False
    max_input_width: int
    max_input_height: int

    @model_validator(mode="after")
    def _check_stage_chain(self):
        if not self.stages:
            raise ValueError("a scale config needs at least one stage")
        for index, stage in enumerate(self.stages):
            if stage.stage_number != index + 1:
                raise ValueError(f"stage numbers must be 1..n, got {stage.stage_number} at position {index}")
            if index == 0:
                if stage.split_from_previous != 1:
                    raise ValueError("stage 1 cannot split from a previous stage")
                continue
            prior = self.stages[index - 1]
            if stage.tile_count != prior.tile_count * stage.split_from_previous:
                raise ValueError(
                    f"stage {stage.stage_number}: {stage.tile_count} tiles != "
                    f"{prior.tile_count} x split {stage.split_from_previous}"
                )
        return self

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def effective_scale(self) -> int:
        """Product of the stage multipliers; may overshoot the requested scale."""
        return prod(stage.scale_multiplier for stage in self.stages)

    def stage(self, number: int) -> StageConfig:
        return self.stages[number - 1]


class AspectTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    ratio: Tuple[int, int]
    base_resolution: Tuple[int, int]
    max_resolution: Tuple[int, int]
    scales: Dict[int, ScaleConfig]

    @property
    def ratio_value(self) -> float:
        return self.ratio[0] / self.ratio[1]


class StagePlan(BaseModel):
    """Planner output: the chosen config plus the input geometry it applies to."""
    template_name: Optional[str] = None
    is_fallback: bool = False
    config: ScaleConfig
    source_width: int
    source_height: int
    working_width: int
    working_height: int
    requires_downscale: bool = False
    downscale_factor: float = 1.0


class TileGrid(BaseModel):
    """Active grid for the current stage, as reported to clients."""
    stage: int
    cols: int
    rows: int
    overlap: int
    tile_width: int
    tile_height: int


# =============================================================================
# Job Settings and Resume payloads
# =============================================================================

class JobSettings(BaseModel):
    """Closed, versioned job configuration validated at creation time."""
    model_config = ConfigDict(extra="forbid")

    settings_version: Literal[1] = 1
    scale: int = Field(..., ge=2, le=64)
    content_type: ContentType = ContentType.PHOTO
    face_enhance: Optional[bool] = None


class TileSpec(BaseModel):
    """A post-split child tile submitted to resume a job."""
    parent_tile_id: int
    x: float = Field(..., ge=0)
    y: float = Field(..., ge=0)
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    overlap_left: float = Field(default=0.0, ge=0)
    overlap_top: float = Field(default=0.0, ge=0)
    input_url: str
    sub_tile_index: int = Field(..., ge=0)
    sub_tile_grid: Tuple[int, int]


class ResumeRequest(BaseModel):
    stage: int = Field(..., ge=2)
    tiles: List[TileSpec] = Field(..., min_length=1)


class PredictionUpdate(BaseModel):
    """Replicate webhook body (only the fields the orchestrator reads)."""
    id: str
    status: PredictionStatus
    output: Optional[object] = None
    error: Optional[str] = None

    @property
    def output_url(self) -> Optional[str]:
        if isinstance(self.output, list):
            return self.output[0] if self.output else None
        if isinstance(self.output, str):
            return self.output
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in (PredictionStatus.SUCCEEDED, PredictionStatus.FAILED, PredictionStatus.CANCELED)
