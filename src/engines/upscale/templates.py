"""
Scale Template Catalog

Pre-computed stage plans per aspect-ratio bucket and scale factor. Each
plan keeps every inference call under the GPU pixel ceiling as long as the
input fits inside max_input_width x max_input_height; larger inputs are
downscaled by the planner first.

Catalog order matters: the best-match search keeps the first template on
ties.
"""

from typing import Dict, List, Tuple

from src.engines.upscale.schemas import AspectTemplate, ScaleConfig, StageConfig

# Replicate GPU ceiling for a single prediction input (~1448 x 1448)
GPU_MAX_PIXELS = 2_096_704

# Practical ceiling for one inference call
MAX_STAGE_MULTIPLIER = 10


def single_stage(scale: int, grid: Tuple[int, int]) -> Tuple[StageConfig, ...]:
    return (
        StageConfig(
            stage_number=1,
            scale_multiplier=scale,
            grid=grid,
            tile_count=grid[0] * grid[1],
            split_from_previous=1,
        ),
    )


def two_stage(
    scale1: int, grid1: Tuple[int, int],
    scale2: int, grid2: Tuple[int, int],
    split_factor: int = 1
) -> Tuple[StageConfig, ...]:
    """Stage 2 either reuses stage 1's tiles (split 1) or splits each into split_factor children."""
    return (
        StageConfig(
            stage_number=1,
            scale_multiplier=scale1,
            grid=grid1,
            tile_count=grid1[0] * grid1[1],
            split_from_previous=1,
        ),
        StageConfig(
            stage_number=2,
            scale_multiplier=scale2,
            grid=grid2,
            tile_count=grid2[0] * grid2[1],
            split_from_previous=split_factor,
        ),
    )


def _config(
    scale: int,
    stages: Tuple[StageConfig, ...],
    estimated_time_min: float,
    max_input: Tuple[int, int]
) -> ScaleConfig:
    return ScaleConfig(
        scale=scale,
        stages=stages,
        total_tiles=max(stage.tile_count for stage in stages),
        estimated_time_min=estimated_time_min,
        requires_downscale=False,
        max_input_width=max_input[0],
        max_input_height=max_input[1],
    )


# =============================================================================
# Templates
# =============================================================================

TEMPLATE_1_1 = AspectTemplate(
    name="Square (1:1)",
    ratio=(1, 1),
    base_resolution=(512, 512),
    max_resolution=(720, 720),
    scales={
        2: _config(2, single_stage(2, (1, 1)), 0.5, (1024, 1024)),
        4: _config(4, single_stage(4, (2, 2)), 1, (800, 800)),
        8: _config(8, two_stage(4, (2, 2), 2, (2, 2)), 2, (724, 724)),
        12: _config(12, two_stage(4, (3, 3), 3, (3, 3)), 3, (600, 600)),
        16: _config(16, two_stage(4, (3, 3), 4, (6, 6), 4), 5, (600, 600)),
        20: _config(20, two_stage(4, (4, 4), 5, (8, 8), 4), 7, (500, 500)),
        24: _config(24, two_stage(4, (4, 4), 6, (8, 8), 4), 8, (480, 480)),
    },
)

TEMPLATE_4_3 = AspectTemplate(
    name="Standard (4:3)",
    ratio=(4, 3),
    base_resolution=(640, 480),
    max_resolution=(800, 600),
    scales={
        2: _config(2, single_stage(2, (1, 1)), 0.5, (1024, 768)),
        4: _config(4, single_stage(4, (2, 2)), 1, (800, 600)),
        8: _config(8, two_stage(4, (2, 2), 2, (2, 2)), 2, (800, 600)),
        12: _config(12, two_stage(4, (3, 3), 3, (3, 3)), 3, (720, 540)),
        16: _config(16, two_stage(4, (4, 3), 4, (8, 6), 4), 5, (640, 480)),
        20: _config(20, two_stage(4, (4, 3), 5, (8, 6), 4), 6, (560, 420)),
        24: _config(24, two_stage(4, (4, 3), 6, (8, 6), 4), 7, (480, 360)),
    },
)

TEMPLATE_3_4 = AspectTemplate(
    name="Portrait Standard (3:4)",
    ratio=(3, 4),
    base_resolution=(480, 640),
    max_resolution=(600, 800),
    scales={
        2: _config(2, single_stage(2, (1, 1)), 0.5, (768, 1024)),
        4: _config(4, single_stage(4, (2, 2)), 1, (600, 800)),
        8: _config(8, two_stage(4, (2, 2), 2, (2, 2)), 2, (600, 800)),
        12: _config(12, two_stage(4, (3, 3), 3, (3, 3)), 3, (540, 720)),
        16: _config(16, two_stage(4, (3, 4), 4, (6, 8), 4), 5, (480, 640)),
        20: _config(20, two_stage(4, (3, 4), 5, (6, 8), 4), 6, (420, 560)),
        24: _config(24, two_stage(4, (3, 4), 6, (6, 8), 4), 7, (360, 480)),
    },
)

TEMPLATE_16_9 = AspectTemplate(
    name="Widescreen (16:9)",
    ratio=(16, 9),
    base_resolution=(854, 480),
    max_resolution=(1024, 576),
    scales={
        2: _config(2, single_stage(2, (2, 1)), 0.5, (1280, 720)),
        4: _config(4, single_stage(4, (3, 2)), 1.5, (1024, 576)),
        8: _config(8, two_stage(4, (4, 2), 2, (4, 2)), 2.5, (854, 480)),
        12: _config(12, two_stage(4, (4, 3), 3, (4, 3)), 4, (768, 432)),
        16: _config(16, two_stage(4, (5, 3), 4, (10, 6), 4), 6, (640, 360)),
        20: _config(20, two_stage(4, (5, 3), 5, (10, 6), 4), 7, (576, 324)),
        24: _config(24, two_stage(4, (5, 3), 6, (10, 6), 4), 8, (512, 288)),
    },
)

TEMPLATE_9_16 = AspectTemplate(
    name="Portrait Widescreen (9:16)",
    ratio=(9, 16),
    base_resolution=(480, 854),
    max_resolution=(576, 1024),
    scales={
        2: _config(2, single_stage(2, (1, 2)), 0.5, (720, 1280)),
        4: _config(4, single_stage(4, (2, 3)), 1.5, (576, 1024)),
        8: _config(8, two_stage(4, (2, 4), 2, (2, 4)), 2.5, (480, 854)),
        12: _config(12, two_stage(4, (3, 4), 3, (3, 4)), 4, (432, 768)),
        16: _config(16, two_stage(4, (3, 5), 4, (6, 10), 4), 6, (360, 640)),
        20: _config(20, two_stage(4, (3, 5), 5, (6, 10), 4), 7, (324, 576)),
        24: _config(24, two_stage(4, (3, 5), 6, (6, 10), 4), 8, (288, 512)),
    },
)

ASPECT_RATIO_TEMPLATES: List[AspectTemplate] = [
    TEMPLATE_1_1,
    TEMPLATE_4_3,
    TEMPLATE_3_4,
    TEMPLATE_16_9,
    TEMPLATE_9_16,
]


# =============================================================================
# Lookups
# =============================================================================

def aspect_ratio_difference(width: int, height: int, template: AspectTemplate) -> float:
    return abs(width / height - template.ratio_value)


def find_best_template(width: int, height: int) -> AspectTemplate:
    """Nearest aspect ratio; the strict comparison keeps the earliest template on ties."""
    best_template = ASPECT_RATIO_TEMPLATES[0]
    best_diff = float("inf")

    for template in ASPECT_RATIO_TEMPLATES:
        diff = aspect_ratio_difference(width, height, template)
        if diff < best_diff:
            best_diff = diff
            best_template = template

    return best_template


def fits_directly(width: int, height: int, config: ScaleConfig) -> bool:
    return width <= config.max_input_width and height <= config.max_input_height


def downscaled_dimensions(width: int, height: int, config: ScaleConfig) -> Tuple[int, int, float]:
    """Uniformly shrink (width, height) into the config's max input. Returns (w, h, factor)."""
    if fits_directly(width, height, config):
        return width, height, 1.0
    max_w, max_h = config.max_input_width, config.max_input_height
    # Integer arithmetic keeps the floor exact (720 * 640/720 must be 640, not 639)
    if max_w * height <= max_h * width:
        new_w, new_h = max_w, (height * max_w) // width
    else:
        new_w, new_h = (width * max_h) // height, max_h
    factor = min(max_w / width, max_h / height)
    return max(1, new_w), max(1, new_h), factor


def calculate_max_safe_scale(width: int, height: int) -> int:
    """Largest catalog scale the image reaches without being downscaled first."""
    template = find_best_template(width, height)
    max_scale = 2

    for scale, config in template.scales.items():
        if fits_directly(width, height, config) and not config.requires_downscale:
            max_scale = max(max_scale, scale)

    return max_scale


def get_scale_options(width: int, height: int) -> List[Dict]:
    """Every catalog scale for this image with final size and any resize warning."""
    template = find_best_template(width, height)
    options = []

    for scale, config in sorted(template.scales.items()):
        work_w, work_h, _ = downscaled_dimensions(width, height, config)
        requires_downscale = (work_w, work_h) != (width, height)

        options.append({
            "scale": scale,
            "available": True,
            "estimated_time_min": config.estimated_time_min,
            "estimated_time": format_time_estimate(config.estimated_time_min),
            "final_width": work_w * scale,
            "final_height": work_h * scale,
            "total_tiles": config.total_tiles,
            "total_stages": config.total_stages,
            "requires_downscale": requires_downscale,
            "warning": f"Image will be resized to {work_w}×{work_h} first" if requires_downscale else None,
        })

    return options


def get_template_match(width: int, height: int) -> Dict:
    template = find_best_template(width, height)
    return {
        "template": template.name,
        "ratio": list(template.ratio),
        "adjusted_width": width,
        "adjusted_height": height,
        "scale_options": get_scale_options(width, height),
        "max_safe_scale": calculate_max_safe_scale(width, height),
    }


def format_time_estimate(minutes: float) -> str:
    if minutes < 1:
        return "< 1 min"
    if minutes < 2:
        return "~1 min"
    return f"~{int(minutes + 0.5)} min"
