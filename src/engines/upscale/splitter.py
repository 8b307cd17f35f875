"""
Tile Splitter

Two jobs:

1. Initial split: cut the working image into a cols x rows grid. Each cell is
   ceil(dim / grid) pixels, extended by the overlap on internal edges only.
2. Re-split between stages: cut a tile's stage output into the sub-grid the
   plan declared (split_from_previous = n * n), or into a grid derived from
   the observed pixel size when the plan is unavailable.

All tile geometry (x, y, width, height, overlap_left, overlap_top) is kept
in working-image coordinates, whatever pixel size the tile currently has.
Children of a split cover their parent's region exactly; neighbouring
children overlap by up to 2 x overlap output pixels, i.e. the same seam
width as stage-1 neighbours, expressed in the parent's scale.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from PIL import Image

from src.core.exceptions import TileSplitError
from src.core.logging import get_logger
from src.engines.upscale.templates import GPU_MAX_PIXELS

logger = get_logger(__name__)


@dataclass
class CropBox:
    col: int
    row: int
    left: int
    top: int
    right: int
    bottom: int
    overlap_left: int  # pixels this crop extends past its cell on the left
    overlap_top: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top


@dataclass
class TileCrop:
    """One cut tile: geometry in working-image coordinates plus its pixels."""
    index: int
    col: int
    row: int
    x: float
    y: float
    width: float
    height: float
    overlap_left: float
    overlap_top: float
    grid: Tuple[int, int]
    image: Optional[Image.Image] = field(default=None, repr=False)


@dataclass
class ParentTile:
    """The geometry of a tile being re-split (read from its row)."""
    tile_id: int
    x: float
    y: float
    width: float
    height: float
    overlap_left: float = 0.0
    overlap_top: float = 0.0


def compute_crop_boxes(width: int, height: int, cols: int, rows: int, overlap: int) -> List[CropBox]:
    """Row-major crop boxes for a cols x rows grid over a width x height image."""
    if cols < 1 or rows < 1:
        raise TileSplitError(f"Invalid grid {cols}x{rows}")

    base_w = math.ceil(width / cols)
    base_h = math.ceil(height / rows)
    if (cols - 1) * base_w >= width or (rows - 1) * base_h >= height:
        raise TileSplitError(f"Grid {cols}x{rows} leaves empty tiles on a {width}x{height} image")

    boxes = []
    for row in range(rows):
        for col in range(cols):
            cell_left = col * base_w
            cell_top = row * base_h
            left = max(0, cell_left - overlap) if col > 0 else 0
            top = max(0, cell_top - overlap) if row > 0 else 0
            right = min(width, cell_left + base_w + (overlap if col < cols - 1 else 0))
            bottom = min(height, cell_top + base_h + (overlap if row < rows - 1 else 0))
            boxes.append(CropBox(
                col=col,
                row=row,
                left=left,
                top=top,
                right=right,
                bottom=bottom,
                overlap_left=cell_left - left,
                overlap_top=cell_top - top,
            ))
    return boxes


def split_image(image: Image.Image, cols: int, rows: int, overlap: int) -> List[TileCrop]:
    """Initial split of the working image into stage-1 tiles."""
    width, height = image.size
    tiles = []
    for index, box in enumerate(compute_crop_boxes(width, height, cols, rows, overlap)):
        tiles.append(TileCrop(
            index=index,
            col=box.col,
            row=box.row,
            x=float(box.left),
            y=float(box.top),
            width=float(box.width),
            height=float(box.height),
            overlap_left=float(box.overlap_left),
            overlap_top=float(box.overlap_top),
            grid=(cols, rows),
            image=image.crop((box.left, box.top, box.right, box.bottom)),
        ))

    logger.debug("image_split", width=width, height=height, cols=cols, rows=rows, tiles=len(tiles))
    return tiles


def sub_grid_for_split_factor(split_factor: int) -> Tuple[int, int]:
    """Plan-declared split factor -> square sub-grid (4 -> 2x2, 9 -> 3x3)."""
    side = math.ceil(math.sqrt(split_factor))
    if side * side != split_factor:
        raise TileSplitError(f"Split factor {split_factor} is not a square grid")
    return side, side


def calculate_split_grid(width: int, height: int, next_multiplier: int = 1) -> Tuple[int, int]:
    """
    Degraded-path grid derived from observed pixels: split the longer side
    first until one sub-tile's next-stage output fits the GPU budget.
    """
    cols, rows = 1, 1
    while (math.ceil(width / cols) * next_multiplier) * (math.ceil(height / rows) * next_multiplier) > GPU_MAX_PIXELS:
        if math.ceil(width / cols) >= math.ceil(height / rows):
            cols += 1
        else:
            rows += 1
    return cols, rows


def split_tile(
    parent: ParentTile,
    image: Image.Image,
    grid: Tuple[int, int],
    overlap: int
) -> List[TileCrop]:
    """
    Cut a tile's current output into grid[0] x grid[1] children.

    Child geometry is mapped back through the parent's pixel/coordinate
    ratio, so children stay in working-image coordinates.
    """
    cols, rows = grid
    out_w, out_h = image.size
    scale_x = out_w / parent.width
    scale_y = out_h / parent.height

    children = []
    for index, box in enumerate(compute_crop_boxes(out_w, out_h, cols, rows, overlap)):
        children.append(TileCrop(
            index=index,
            col=box.col,
            row=box.row,
            x=parent.x + box.left / scale_x,
            y=parent.y + box.top / scale_y,
            width=box.width / scale_x,
            height=box.height / scale_y,
            overlap_left=box.overlap_left / scale_x if box.col > 0 else parent.overlap_left,
            overlap_top=box.overlap_top / scale_y if box.row > 0 else parent.overlap_top,
            grid=(cols, rows),
            image=image.crop((box.left, box.top, box.right, box.bottom)),
        ))

    logger.debug(
        "tile_split",
        parent_tile_id=parent.tile_id,
        output_width=out_w,
        output_height=out_h,
        grid=[cols, rows],
        children=len(children),
    )
    return children
