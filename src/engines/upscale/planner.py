"""
Scale Planner

Turns (width, height, scale) into a StagePlan: the nearest-aspect catalog
config when the scale exists there, otherwise a synthesized multi-stage
plan sized against the GPU pixel ceiling.

Budget accounting: a stage's inference call receives
ceil(dim / grid) x (product of the previous stages' multipliers) pixels per
side. Catalog plans are checked against that input budget. Fallback plans
are built against the stricter output budget (input x this stage's
multiplier) so every call also produces at most GPU_MAX_PIXELS.
"""

import math
from typing import List, Tuple

from src.core.config import settings
from src.core.exceptions import PlanningError
from src.core.logging import get_logger
from src.core.metrics import track_stage_latency
from src.engines.upscale.schemas import ScaleConfig, StageConfig, StagePlan
from src.engines.upscale.templates import (
    GPU_MAX_PIXELS,
    MAX_STAGE_MULTIPLIER,
    downscaled_dimensions,
    find_best_template,
)

logger = get_logger(__name__)

FALLBACK_FIRST_MULTIPLIER = 4


# =============================================================================
# Pixel budget helpers
# =============================================================================

def cumulative_multiplier(config: ScaleConfig, stage_number: int) -> int:
    """Product of the multipliers of stages 1..stage_number."""
    return math.prod(s.scale_multiplier for s in config.stages[:stage_number])


def stage_tile_dimensions(
    config: ScaleConfig,
    width: int,
    height: int,
    stage_number: int,
    include_stage_multiplier: bool = False
) -> Tuple[int, int]:
    """Pixel size of one tile as the inference call sees it (or emits it)."""
    stage = config.stage(stage_number)
    multiplier = cumulative_multiplier(config, stage_number - 1)
    if include_stage_multiplier:
        multiplier *= stage.scale_multiplier
    return (
        math.ceil(width / stage.cols) * multiplier,
        math.ceil(height / stage.rows) * multiplier,
    )


def budget_violations(
    config: ScaleConfig,
    width: int,
    height: int,
    include_stage_multiplier: bool = False
) -> List[str]:
    violations = []
    for stage in config.stages:
        tile_w, tile_h = stage_tile_dimensions(
            config, width, height, stage.stage_number, include_stage_multiplier
        )
        if tile_w * tile_h > GPU_MAX_PIXELS:
            violations.append(
                f"stage {stage.stage_number}: {tile_w}x{tile_h} = {tile_w * tile_h} px > {GPU_MAX_PIXELS}"
            )
    return violations


def grid_is_realizable(width: int, height: int, cols: int, rows: int) -> bool:
    """True when a ceil-sized grid leaves no empty trailing column or row."""
    if cols > width or rows > height:
        return False
    return (cols - 1) * math.ceil(width / cols) < width and (rows - 1) * math.ceil(height / rows) < height


# =============================================================================
# Fallback synthesis
# =============================================================================

def build_multiplier_chain(scale: int) -> List[int]:
    """4x first, then ceil(scale / 4), broken further while above the single-call ceiling."""
    if scale <= FALLBACK_FIRST_MULTIPLIER:
        return [scale]

    chain = [FALLBACK_FIRST_MULTIPLIER]
    remaining = math.ceil(scale / FALLBACK_FIRST_MULTIPLIER)
    while remaining > MAX_STAGE_MULTIPLIER:
        chain.append(FALLBACK_FIRST_MULTIPLIER)
        remaining = math.ceil(remaining / FALLBACK_FIRST_MULTIPLIER)
    chain.append(remaining)
    return chain


def _first_stage_grid(width: int, height: int, multiplier: int) -> Tuple[int, int]:
    """Grow the axis whose tiles are longer until one tile's output fits the budget."""
    cols, rows = 1, 1
    while True:
        tile_w = math.ceil(width / cols) * multiplier
        tile_h = math.ceil(height / rows) * multiplier
        if tile_w * tile_h <= GPU_MAX_PIXELS:
            return cols, rows
        if tile_w >= tile_h and cols < width:
            cols += 1
        elif rows < height:
            rows += 1
        else:
            cols += 1


def synthesize_fallback_config(width: int, height: int, scale: int) -> ScaleConfig:
    """
    Best-effort plan for a scale the catalog does not carry.

    Stage grids grow by a uniform per-axis factor n between stages, so the
    declared split (n * n) re-derives the same grid when tiles are split.
    """
    chain = build_multiplier_chain(scale)
    stages: List[StageConfig] = []

    cols, rows = _first_stage_grid(width, height, chain[0])
    cumulative = chain[0]
    stages.append(StageConfig(
        stage_number=1,
        scale_multiplier=chain[0],
        grid=(cols, rows),
        tile_count=cols * rows,
        split_from_previous=1,
    ))

    for index, multiplier in enumerate(chain[1:], start=2):
        cumulative *= multiplier
        n = 1
        while math.ceil(width / (cols * n)) * cumulative * math.ceil(height / (rows * n)) * cumulative > GPU_MAX_PIXELS:
            n += 1
        cols, rows = cols * n, rows * n
        stages.append(StageConfig(
            stage_number=index,
            scale_multiplier=multiplier,
            grid=(cols, rows),
            tile_count=cols * rows,
            split_from_previous=n * n,
        ))

    # ~3s per tile call, in minutes
    estimated = sum(stage.tile_count for stage in stages) * 3 / 60

    return ScaleConfig(
        scale=scale,
        stages=tuple(stages),
        total_tiles=max(stage.tile_count for stage in stages),
        estimated_time_min=round(estimated, 1),
        requires_downscale=False,
        max_input_width=width,
        max_input_height=height,
    )


# =============================================================================
# Planner entry point
# =============================================================================

def plan_upscale(width: int, height: int, scale: int) -> StagePlan:
    """
    Choose the stage plan for an image.

    Raises:
        PlanningError: degenerate dimensions, unsupported scale, or a grid
            the image is too small to fill.
    """
    if width <= 0 or height <= 0:
        raise PlanningError(f"Invalid image dimensions {width}x{height}")
    if max(width, height) > settings.MAX_SOURCE_DIMENSION:
        raise PlanningError(
            f"Image {width}x{height} exceeds the {settings.MAX_SOURCE_DIMENSION}px dimension limit"
        )
    if scale < 2:
        raise PlanningError(f"Scale must be at least 2, got {scale}")

    with track_stage_latency("plan"):
        template = find_best_template(width, height)
        config = template.scales.get(scale)

        if config is not None:
            work_w, work_h, factor = downscaled_dimensions(width, height, config)
            requires_downscale = (work_w, work_h) != (width, height)
            if requires_downscale:
                config = config.model_copy(update={"requires_downscale": True})
            plan = StagePlan(
                template_name=template.name,
                is_fallback=False,
                config=config,
                source_width=width,
                source_height=height,
                working_width=work_w,
                working_height=work_h,
                requires_downscale=requires_downscale,
                downscale_factor=factor,
            )
        else:
            logger.info("scale_plan_fallback", width=width, height=height, scale=scale, template=template.name)
            plan = StagePlan(
                template_name=None,
                is_fallback=True,
                config=synthesize_fallback_config(width, height, scale),
                source_width=width,
                source_height=height,
                working_width=width,
                working_height=height,
            )

        for stage in plan.config.stages:
            if not grid_is_realizable(plan.working_width, plan.working_height, stage.cols, stage.rows):
                raise PlanningError(
                    f"Image {plan.working_width}x{plan.working_height} is too small for a "
                    f"{stage.cols}x{stage.rows} grid at stage {stage.stage_number}"
                )

        violations = budget_violations(
            plan.config, plan.working_width, plan.working_height,
            include_stage_multiplier=plan.is_fallback
        )
        if violations:
            raise PlanningError("Stage plan exceeds the GPU pixel budget: " + "; ".join(violations))

    logger.info(
        "scale_plan_selected",
        template=plan.template_name,
        fallback=plan.is_fallback,
        scale=scale,
        stages=[(s.scale_multiplier, list(s.grid), s.split_from_previous) for s in plan.config.stages],
        working_width=plan.working_width,
        working_height=plan.working_height,
        requires_downscale=plan.requires_downscale,
    )
    return plan
