"""
Dominant colour extraction and clothing category guess for cutouts.
"""
import logging
from collections import Counter
from typing import List

import numpy as np

from cutout_types import (
    BoundingBox,
    PixelBuffer,
    CATEGORY_BOTTOMS,
    CATEGORY_DRESSES,
    CATEGORY_SHOES,
    CATEGORY_TOPS,
    GRAY_SENTINEL,
)

logger = logging.getLogger(__name__)

MAX_SAMPLES = 10_000
QUANT_STEP = 32
MIN_COLORS = 3
MAX_COLORS = 5
VISIBLE_ALPHA = 128


def quantize_channel(values: np.ndarray) -> np.ndarray:
    """Round each channel to the nearest multiple of QUANT_STEP, capped at 255."""
    q = np.floor(values.astype(np.float32) / QUANT_STEP + 0.5) * QUANT_STEP
    return np.minimum(q, 255).astype(np.int32)


def extract_dominant_colors(pixels: PixelBuffer) -> List[str]:
    """
    Ranked palette of the visible pixels as hex strings.

    Samples at most ~MAX_SAMPLES pixels, ignores pixels with alpha below 128,
    and always returns between 3 and 5 colours (padded with gray).
    """
    flat = pixels.data.reshape(-1, 4)
    stride = max(1, flat.shape[0] // MAX_SAMPLES)
    sampled = flat[::stride]

    visible = sampled[sampled[:, 3] >= VISIBLE_ALPHA]
    quantized = quantize_channel(visible[:, :3])

    # Counter keeps first-seen order for equal counts
    counts = Counter(map(tuple, quantized.tolist()))
    colors = [f"#{r:02x}{g:02x}{b:02x}" for (r, g, b), _ in counts.most_common(MAX_COLORS)]

    while len(colors) < MIN_COLORS:
        colors.append(GRAY_SENTINEL)

    logger.info(f"🎨 Palette from {len(visible)} of {len(sampled)} sampled pixels: {colors}")
    return colors


def detect_category(bbox: BoundingBox, image_height: int) -> str:
    """
    Guess the clothing category from the subject box geometry.

    A suggestion only; callers should let the user override it.
    """
    if bbox.height > 0:
        aspect_ratio = bbox.width / bbox.height
    else:
        # A single-row subject is as wide as it gets
        aspect_ratio = float("inf") if bbox.width > 0 else 1.0
    top_position = bbox.min_y / image_height if image_height > 0 else 0.0

    if aspect_ratio > 1.3:
        return CATEGORY_DRESSES
    if top_position < 0.3:
        return CATEGORY_TOPS
    if top_position > 0.5:
        return CATEGORY_BOTTOMS
    if aspect_ratio < 0.8:
        return CATEGORY_SHOES
    return CATEGORY_TOPS
