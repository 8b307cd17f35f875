"""
Stitcher

Composites final-stage tile outputs onto a white canvas with linear alpha
feathering across each tile's left and top overlap bands, then does a
single LANCZOS resize when the stage chain overshot the requested size.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image

from src.core.exceptions import StitchError
from src.core.logging import get_logger, with_logging

logger = get_logger(__name__)

BACKGROUND = (255, 255, 255, 255)


@dataclass
class StitchTile:
    tile_id: int
    x: float
    y: float
    width: float
    height: float
    overlap_left: float = 0.0
    overlap_top: float = 0.0
    image: Optional[Image.Image] = field(default=None, repr=False)


@dataclass
class StitchResult:
    image: Image.Image
    width: int
    height: int
    canvas_size: Tuple[int, int]
    resized: bool


def feather_mask(width: int, height: int, band_left: float, band_top: float) -> Image.Image:
    """
    Alpha mask for one tile: d / band inside the left and top bands, 1 elsewhere.
    Corner pixels get the product of both fades.
    """
    fade_x = np.ones(width, dtype=np.float64)
    fade_y = np.ones(height, dtype=np.float64)
    if band_left > 0:
        fade_x = np.clip(np.arange(width, dtype=np.float64) / band_left, 0.0, 1.0)
    if band_top > 0:
        fade_y = np.clip(np.arange(height, dtype=np.float64) / band_top, 0.0, 1.0)

    alpha = np.outer(fade_y, fade_x)
    return Image.fromarray(np.round(alpha * 255).astype(np.uint8), mode="L")


def _placement(tile: StitchTile, scale: float) -> Tuple[int, int, int, int]:
    left = int(round(tile.x * scale))
    top = int(round(tile.y * scale))
    right = int(round((tile.x + tile.width) * scale))
    bottom = int(round((tile.y + tile.height) * scale))
    return left, top, max(1, right - left), max(1, bottom - top)


@with_logging("stitch")
def stitch_tiles(
    tiles: List[StitchTile],
    working_width: int,
    working_height: int,
    effective_scale: float,
    target_width: int,
    target_height: int
) -> StitchResult:
    """
    Composite tiles into one image of exactly target_width x target_height.

    Args:
        tiles: tiles with decoded final-stage output; geometry in working-image coordinates
        working_width, working_height: size of the image the tiles were cut from
        effective_scale: product of the stage multipliers that produced the tiles
        target_width, target_height: exact output size

    Raises:
        StitchError: a tile has no image, naming the tile id.
    """
    if not tiles:
        raise StitchError("No tiles to stitch")

    canvas_w = int(round(working_width * effective_scale))
    canvas_h = int(round(working_height * effective_scale))
    canvas = Image.new("RGBA", (canvas_w, canvas_h), BACKGROUND)

    for tile in sorted(tiles, key=lambda t: (t.y, t.x, t.tile_id)):
        if tile.image is None:
            raise StitchError(f"Failed to load tile {tile.tile_id}", tile_id=tile.tile_id)

        left, top, width, height = _placement(tile, effective_scale)
        tile_image = tile.image.convert("RGB")
        if tile_image.size != (width, height):
            tile_image = tile_image.resize((width, height), Image.Resampling.LANCZOS)

        visible_w = min(width, canvas_w - left)
        visible_h = min(height, canvas_h - top)
        if visible_w <= 0 or visible_h <= 0:
            logger.warning("tile_outside_canvas", tile_id=tile.tile_id, left=left, top=top)
            continue

        layer = tile_image.convert("RGBA")
        layer.putalpha(feather_mask(
            width,
            height,
            tile.overlap_left * effective_scale,
            tile.overlap_top * effective_scale,
        ))
        if (visible_w, visible_h) != (width, height):
            layer = layer.crop((0, 0, visible_w, visible_h))

        canvas.alpha_composite(layer, dest=(left, top))

    result = canvas.convert("RGB")
    resized = (canvas_w, canvas_h) != (target_width, target_height)
    if resized:
        logger.info(
            "stitch_exact_resize",
            canvas_width=canvas_w,
            canvas_height=canvas_h,
            target_width=target_width,
            target_height=target_height,
        )
        result = result.resize((target_width, target_height), Image.Resampling.LANCZOS)

    return StitchResult(
        image=result,
        width=target_width,
        height=target_height,
        canvas_size=(canvas_w, canvas_h),
        resized=resized,
    )
