import numpy as np
import pytest
from PIL import Image

from src.core.exceptions import StitchError, TileSplitError
from src.engines.upscale.splitter import (
    ParentTile,
    calculate_split_grid,
    compute_crop_boxes,
    split_image,
    split_tile,
    sub_grid_for_split_factor,
)
from src.engines.upscale.stitcher import StitchTile, feather_mask, stitch_tiles
from src.engines.upscale.templates import GPU_MAX_PIXELS
from tests.factories import make_image


# =============================================================================
# Splitter
# =============================================================================

@pytest.mark.parametrize("width,height,cols,rows", [
    (720, 540, 2, 2),
    (640, 480, 4, 3),
    (101, 57, 3, 2),
])
def test_initial_split_covers_image(width, height, cols, rows):
    covered = np.zeros((height, width), dtype=bool)
    for box in compute_crop_boxes(width, height, cols, rows, overlap=32):
        covered[box.top:box.bottom, box.left:box.right] = True
    assert covered.all()


def test_initial_split_overlaps_internal_edges_only():
    tiles = split_image(make_image(720, 540), 2, 2, overlap=32)

    assert [t.index for t in tiles] == [0, 1, 2, 3]
    first, second, third, _ = tiles
    assert (first.x, first.y, first.width, first.height) == (0.0, 0.0, 392.0, 302.0)
    assert (first.overlap_left, first.overlap_top) == (0.0, 0.0)
    assert (second.x, second.overlap_left) == (328.0, 32.0)
    assert (third.y, third.overlap_top) == (238.0, 32.0)
    assert second.image.size == (392, 302)


def test_grid_with_empty_tiles_is_rejected():
    with pytest.raises(TileSplitError):
        compute_crop_boxes(3, 3, 4, 1, overlap=0)


def test_sub_grid_for_split_factor():
    assert sub_grid_for_split_factor(1) == (1, 1)
    assert sub_grid_for_split_factor(4) == (2, 2)
    assert sub_grid_for_split_factor(9) == (3, 3)
    with pytest.raises(TileSplitError):
        sub_grid_for_split_factor(6)


def test_split_tile_children_cover_parent_in_working_coordinates():
    parent = ParentTile(tile_id=5, x=328.0, y=0.0, width=392.0, height=302.0, overlap_left=32.0)
    # A 4x stage output of the parent
    output = make_image(392 * 4, 302 * 4)

    children = split_tile(parent, output, (2, 2), overlap=32)

    assert len(children) == 4
    assert min(c.x for c in children) == pytest.approx(parent.x)
    assert min(c.y for c in children) == pytest.approx(parent.y)
    assert max(c.x + c.width for c in children) == pytest.approx(parent.x + parent.width)
    assert max(c.y + c.height for c in children) == pytest.approx(parent.y + parent.height)

    # Outer children keep the parent's own overlap toward its neighbours
    assert children[0].overlap_left == pytest.approx(32.0)
    assert children[1].overlap_left == pytest.approx(8.0)

    # Area only grows by the internal overlap bands
    area = sum(c.width * c.height for c in children)
    parent_area = parent.width * parent.height
    assert parent_area <= area <= parent_area + 2 * 16 * (parent.width + parent.height)


def test_degraded_split_grid_fits_next_stage_budget():
    cols, rows = calculate_split_grid(2880, 2160, next_multiplier=2)
    tile_w = -(-2880 // cols) * 2
    tile_h = -(-2160 // rows) * 2
    assert tile_w * tile_h <= GPU_MAX_PIXELS
    assert calculate_split_grid(500, 500, next_multiplier=2) == (1, 1)


# =============================================================================
# Stitcher
# =============================================================================

def _tiles_for(width, height, cols, rows, scale, colors=None):
    tiles = []
    for crop in split_image(make_image(width, height), cols, rows, overlap=4):
        color = colors[crop.index] if colors else (10 * crop.index, 100, 200)
        tiles.append(StitchTile(
            tile_id=crop.index,
            x=crop.x,
            y=crop.y,
            width=crop.width,
            height=crop.height,
            overlap_left=crop.overlap_left,
            overlap_top=crop.overlap_top,
            image=make_image(int(crop.width * scale), int(crop.height * scale), color),
        ))
    return tiles


def test_feather_mask_ramps_across_bands():
    mask = np.asarray(feather_mask(16, 8, band_left=8, band_top=0))
    assert mask[0, 0] == 0
    assert mask[0, 4] == 128
    assert (mask[:, 8:] == 255).all()

    corner = np.asarray(feather_mask(8, 8, band_left=4, band_top=4))
    assert corner[2, 2] == 64
    assert corner[7, 7] == 255


def test_stitch_canvas_is_working_size_times_effective_scale():
    tiles = _tiles_for(72, 54, 2, 2, scale=8)

    result = stitch_tiles(tiles, 72, 54, 8, 576, 432)

    assert result.canvas_size == (576, 432)
    assert result.resized is False
    assert result.image.size == (576, 432)


def test_stitch_resizes_to_exact_target_when_chain_overshoots():
    tiles = _tiles_for(60, 40, 2, 1, scale=20)

    # Requested 17x of the 60x40 source; the stage chain produced 20x
    result = stitch_tiles(tiles, 60, 40, 20, 1020, 680)

    assert result.canvas_size == (1200, 800)
    assert result.resized is True
    assert (result.width, result.height) == (1020, 680)
    assert result.image.size == (1020, 680)


def test_stitch_is_deterministic():
    first = stitch_tiles(_tiles_for(64, 48, 2, 2, scale=2), 64, 48, 2, 128, 96)
    second = stitch_tiles(_tiles_for(64, 48, 2, 2, scale=2), 64, 48, 2, 128, 96)
    assert first.image.tobytes() == second.image.tobytes()


def test_stitch_keeps_tile_interiors_and_blends_seams():
    red, blue = (255, 0, 0), (0, 0, 255)
    tiles = _tiles_for(64, 32, 2, 1, scale=1, colors=[red, blue])

    image = stitch_tiles(tiles, 64, 32, 1, 64, 32).image

    assert image.getpixel((2, 16)) == red
    assert image.getpixel((60, 16)) == blue
    # Inside the right tile's left band both colours contribute
    seam = image.getpixel((29, 16))
    assert seam[0] > 0 and seam[2] > 0


def test_stitch_names_tile_without_image():
    tiles = _tiles_for(64, 48, 2, 2, scale=2)
    tiles[2].image = None

    with pytest.raises(StitchError) as exc_info:
        stitch_tiles(tiles, 64, 48, 2, 128, 96)

    assert exc_info.value.tile_id == 2
    assert "tile 2" in exc_info.value.message


def test_stitch_without_tiles_fails():
    with pytest.raises(StitchError):
        stitch_tiles([], 10, 10, 2, 20, 20)


def test_stitch_resizes_mismatched_tile_output():
    tiles = _tiles_for(64, 48, 2, 2, scale=2)
    tiles[0].image = tiles[0].image.resize((10, 10), Image.Resampling.NEAREST)

    result = stitch_tiles(tiles, 64, 48, 2, 128, 96)
    assert result.image.size == (128, 96)
