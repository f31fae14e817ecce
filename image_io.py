"""
Image decoding, resampling and encoding for the cutout pipeline.
"""
import base64
import binascii
import logging
import math
from io import BytesIO
from typing import Tuple, Union

from PIL import Image, ImageOps, UnidentifiedImageError

from cutout_types import PixelBuffer
from errors import DecodeError

logger = logging.getLogger(__name__)

ImageSource = Union[bytes, bytearray, str, Image.Image, PixelBuffer]

_MIME_TYPES = {"PNG": "image/png", "WEBP": "image/webp"}


def resize_keeping_aspect(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """
    Compute target dimensions that fit within the bounds.

    Dimensions that already fit are returned unchanged; larger ones are scaled
    down uniformly and rounded to the nearest pixel. Never upscales.
    """
    if width <= max_width and height <= max_height:
        return width, height

    scale = min(max_width / width, max_height / height)
    new_width = max(1, math.floor(width * scale + 0.5))
    new_height = max(1, math.floor(height * scale + 0.5))
    return min(new_width, width), min(new_height, height)


def _decode_base64(source: str) -> bytes:
    if source.startswith("data:image"):
        # Remove data URL prefix
        source = source.split(",", 1)[1] if "," in source else ""
    try:
        return base64.b64decode(source, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 image data: {e}") from e


def decode_image(source: ImageSource) -> Image.Image:
    """Decode raw bytes, a base64 string or a PIL image into an RGBA image."""
    if isinstance(source, PixelBuffer):
        return source.to_image()

    if isinstance(source, Image.Image):
        image = source
    else:
        if isinstance(source, str):
            source = _decode_base64(source)
        if not isinstance(source, (bytes, bytearray)):
            raise DecodeError(f"Unsupported image source type: {type(source).__name__}")
        if not source:
            raise DecodeError("Empty image data")
        try:
            image = Image.open(BytesIO(source))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise DecodeError(f"Could not decode image: {e}") from e

    try:
        # Phone photos carry their rotation in EXIF
        image = ImageOps.exif_transpose(image)
        return image.convert("RGBA")
    except (Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"Could not convert image to RGBA: {e}") from e


def to_pixel_buffer(image: Image.Image, max_width: int, max_height: int) -> PixelBuffer:
    """Resample the image into a fresh pixel buffer bounded by max_width x max_height."""
    width, height = resize_keeping_aspect(image.width, image.height, max_width, max_height)
    if (width, height) != image.size:
        logger.info(f"Resizing {image.width}x{image.height} -> {width}x{height}")
        image = image.resize((width, height), Image.LANCZOS)
    return PixelBuffer.from_image(image)


def encode_image(pixels: PixelBuffer, fmt: str = "PNG", quality: float = 0.9) -> Tuple[bytes, str]:
    """
    Encode the buffer in a format that keeps the alpha channel.

    Returns:
        tuple: (encoded bytes, mime type)
    """
    image = pixels.to_image()
    buffer = BytesIO()
    fmt = fmt.upper()

    if fmt == "WEBP":
        try:
            image.save(buffer, format="WEBP", quality=int(round(quality * 100)), method=6, lossless=False)
            logger.info(f"✅ Cutout WebP compression: {len(buffer.getvalue()) / 1024:.1f} KB")
            return buffer.getvalue(), _MIME_TYPES["WEBP"]
        except (OSError, KeyError) as webp_error:
            logger.info(f"WebP not available, falling back to optimized PNG: {webp_error}")
            buffer.seek(0)
            buffer.truncate()
    elif fmt != "PNG":
        raise ValueError(f"Unsupported output format: {fmt}")

    # PNG is lossless, quality does not apply
    image.save(buffer, format="PNG", optimize=True)
    logger.info(f"✅ Cutout PNG compression: {len(buffer.getvalue()) / 1024:.1f} KB")
    return buffer.getvalue(), _MIME_TYPES["PNG"]


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode()}"
