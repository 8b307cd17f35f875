import io
from typing import List, Tuple

from PIL import Image


class RecordingDispatcher:
    """Collects follow-up work instead of queueing Celery tasks."""

    def __init__(self):
        self.tiles: List[Tuple[str, int, int, float]] = []
        self.splits: List[Tuple[str, int]] = []
        self.stitches: List[str] = []

    def dispatch_tile(self, job_id, tile_id, stage, countdown=0):
        self.tiles.append((job_id, tile_id, stage, countdown))

    def dispatch_split(self, job_id, stage):
        self.splits.append((job_id, stage))

    def dispatch_stitch(self, job_id):
        self.stitches.append(job_id)

    def tiles_for(self, stage: int) -> List[int]:
        return [tile_id for _, tile_id, s, _ in self.tiles if s == stage]


def make_image(width: int, height: int, color=(200, 80, 40)) -> Image.Image:
    return Image.new("RGB", (width, height), color)


def make_png(width: int, height: int, color=(200, 80, 40)) -> bytes:
    buffer = io.BytesIO()
    make_image(width, height, color).save(buffer, format="PNG")
    return buffer.getvalue()
