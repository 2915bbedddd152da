"""Image decode, re-encode and size reconciliation built on Pillow."""

import hashlib
import io
from datetime import datetime
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from ..config.types import ImageFormat
from ..resilience.types import CorruptedImageError
from .types import Snapshot

_PIL_FORMATS = {
    ImageFormat.PNG: "PNG",
    ImageFormat.JPEG: "JPEG",
    ImageFormat.WEBP: "WEBP",
}


def content_hash(data: bytes) -> str:
    return hashlib.blake2b(data, digest_size=32).hexdigest()


def decode(data: bytes) -> Image.Image:
    """Decode to an RGB image; transparency is flattened onto white."""
    if not data:
        raise CorruptedImageError("Empty image data")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise CorruptedImageError(f"Cannot decode image: {str(e)}") from e

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[3])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def to_array(img: Image.Image) -> np.ndarray:
    """H x W x 3 uint8 array."""
    return np.asarray(img.convert("RGB"), dtype=np.uint8)


def encode(
    img: Image.Image, image_format: ImageFormat = ImageFormat.PNG, quality: int = 80
) -> bytes:
    buffer = io.BytesIO()
    if image_format == ImageFormat.PNG:
        img.save(buffer, format="PNG", optimize=False)
    else:
        img.convert("RGB").save(buffer, format=_PIL_FORMATS[image_format], quality=quality)
    return buffer.getvalue()


def make_snapshot(
    page_id: str,
    url: str,
    raster: bytes,
    image_format: ImageFormat = ImageFormat.PNG,
    quality: int = 80,
    captured_at: Optional[datetime] = None,
) -> Snapshot:
    """Re-encode a raw raster and wrap it as an immutable snapshot."""
    img = decode(raster)
    data = encode(img, image_format, quality)
    return Snapshot(
        page_id=page_id,
        url=url,
        image_bytes=data,
        width=img.width,
        height=img.height,
        content_hash=content_hash(data),
        image_format=image_format,
        captured_at=captured_at or datetime.utcnow(),
    )


def snapshot_from_bytes(
    page_id: str,
    url: str,
    data: bytes,
    image_format: ImageFormat = ImageFormat.PNG,
    captured_at: Optional[datetime] = None,
) -> Snapshot:
    """Wrap already-encoded bytes without re-encoding them.

    Unreadable data is kept as-is with zero dimensions so the diff engine
    can report it as corrupted.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError, ValueError):
        width, height = 0, 0
    return Snapshot(
        page_id=page_id,
        url=url,
        image_bytes=data,
        width=width,
        height=height,
        content_hash=content_hash(data),
        image_format=image_format,
        captured_at=captured_at or datetime.utcnow(),
    )


def pad_to_common(
    a: Image.Image, b: Image.Image, color: tuple[int, int, int] = (255, 255, 255)
) -> tuple[Image.Image, Image.Image]:
    """Paste both images top-left onto canvases of the max width and height."""
    width = max(a.width, b.width)
    height = max(a.height, b.height)
    return _pad(a, width, height, color), _pad(b, width, height, color)


def _pad(img: Image.Image, width: int, height: int, color) -> Image.Image:
    if img.size == (width, height):
        return img
    canvas = Image.new("RGB", (width, height), color)
    canvas.paste(img, (0, 0))
    return canvas


def clip_to_common(a: Image.Image, b: Image.Image) -> tuple[Image.Image, Image.Image]:
    """Crop both images to their common top-left area."""
    width = min(a.width, b.width)
    height = min(a.height, b.height)
    box = (0, 0, width, height)
    return (
        a if a.size == (width, height) else a.crop(box),
        b if b.size == (width, height) else b.crop(box),
    )


def render_diff_overlay(
    img: Image.Image,
    mask: np.ndarray,
    color: tuple[int, int, int] = (255, 0, 0),
    fade: float = 0.7,
) -> bytes:
    """PNG of ``img`` faded towards white with differing pixels painted ``color``."""
    if mask.shape != (img.height, img.width):
        raise ValueError(f"Mask shape {mask.shape} does not match image size {img.size}")
    base = img.convert("RGB")
    overlay = Image.blend(base, Image.new("RGB", base.size, (255, 255, 255)), fade)
    highlight = Image.fromarray(mask.astype(np.uint8) * 255)
    overlay.paste(color, (0, 0, base.width, base.height), highlight)
    return encode(overlay, ImageFormat.PNG)
