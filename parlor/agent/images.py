"""Fit attachment images into per-image size budgets."""

import base64
from io import BytesIO

from loguru import logger
from PIL import Image, UnidentifiedImageError

QUALITY_STEPS = (85, 70, 55, 40)
SCALE_STEP = 0.75
MIN_DIMENSION = 256


class ImageTooLarge(ValueError):
    """Raised when an image cannot be brought under its budget."""


def base64_size(raw_len: int) -> int:
    """Length of the base64 encoding of ``raw_len`` bytes."""
    return 4 * ((raw_len + 2) // 3)


def _encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def fit_image(data: bytes, media_type: str, max_base64_bytes: int) -> tuple[bytes, str]:
    """
    Make an image fit a base64 size budget.

    Images already under budget are returned untouched. Otherwise the image
    is re-encoded as JPEG, stepping quality down first and then shrinking
    dimensions.

    Returns:
        ``(data, media_type)`` of the fitted image.

    Raises:
        ImageTooLarge: If nothing fits, or the bytes are not a readable image.
    """
    if base64_size(len(data)) <= max_base64_bytes:
        return data, media_type

    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageTooLarge(f"unreadable image: {e}") from e

    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    try:
        for quality in QUALITY_STEPS:
            out = _encode_jpeg(img, quality)
            if base64_size(len(out)) <= max_base64_bytes:
                logger.debug(f"JPEG quality {quality} brought image to {len(out)} bytes")
                return out, "image/jpeg"

        width, height = img.size
        while min(width, height) * SCALE_STEP >= MIN_DIMENSION:
            width, height = int(width * SCALE_STEP), int(height * SCALE_STEP)
            scaled = img.resize((width, height), Image.LANCZOS)
            out = _encode_jpeg(scaled, QUALITY_STEPS[-1])
            scaled.close()
            if base64_size(len(out)) <= max_base64_bytes:
                logger.debug(f"Scaled image to {width}x{height} ({len(out)} bytes)")
                return out, "image/jpeg"
    finally:
        img.close()

    raise ImageTooLarge(f"{len(data) / (1024 * 1024):.1f}MB does not fit {max_base64_bytes} base64 bytes")


def encode_image(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
