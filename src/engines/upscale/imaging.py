"""
Image I/O helpers shared by the splitter, stitcher and workers.
"""

import io
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from src.core.exceptions import ImageDecodeError, StorageError
from src.core.logging import get_logger
from src.core.storage import IStorage

logger = get_logger(__name__)

# Pillow refuses anything larger by default; stitched canvases can be big
Image.MAX_IMAGE_PIXELS = 20000 * 20000 * 4


def decode_image(data: bytes, tile_id: Optional[int] = None) -> Image.Image:
    """Decode bytes into a fully loaded RGB image."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        label = f"tile {tile_id}" if tile_id is not None else "image"
        raise ImageDecodeError(f"Failed to decode {label}: {e}", tile_id=tile_id)
    if image.mode != "RGB":
        image = image.convert("RGB")
    return image


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


async def fetch_bytes(url: str, storage: IStorage, timeout: float = 60.0) -> bytes:
    """Read one of our own blobs directly, anything else over HTTP."""
    storage_key = storage.key_from_url(url)
    if storage_key is not None:
        return await storage.download(storage_key)

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to fetch {url}: {e}")
        return response.content


async def fetch_image(url: str, storage: IStorage, tile_id: Optional[int] = None) -> Image.Image:
    return decode_image(await fetch_bytes(url, storage), tile_id=tile_id)
