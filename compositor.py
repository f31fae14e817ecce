"""
Mask-guided compositing: mask confidence becomes the alpha channel.
"""
import logging
from typing import Tuple

import numpy as np

from cutout_types import BoundingBox, PixelBuffer, SegmentationMask
from errors import MaskDimensionError, NoSubjectDetected

logger = logging.getLogger(__name__)

# Confidence at or above this marks a pixel as subject (128/255 on the alpha scale)
SUBJECT_THRESHOLD = 0.5


def mask_to_alpha(mask: SegmentationMask) -> np.ndarray:
    """Linear confidence -> 0..255 alpha, keeping soft edges."""
    return np.floor(mask.confidence * 255.0 + 0.5).astype(np.uint8)


def subject_bounding_box(mask: SegmentationMask) -> BoundingBox:
    """
    Smallest box containing every confident pixel.

    Raises:
        NoSubjectDetected: if no pixel reaches SUBJECT_THRESHOLD
    """
    subject = mask.confidence >= SUBJECT_THRESHOLD
    rows = np.any(subject, axis=1)
    cols = np.any(subject, axis=0)

    if not np.any(rows) or not np.any(cols):
        raise NoSubjectDetected("No pixel of the segmentation mask reached the subject threshold")

    y_min, y_max = np.where(rows)[0][[0, -1]]
    x_min, x_max = np.where(cols)[0][[0, -1]]
    return BoundingBox(int(x_min), int(y_min), int(x_max), int(y_max))


def apply_mask(pixels: PixelBuffer, mask: SegmentationMask) -> Tuple[PixelBuffer, BoundingBox]:
    """
    Apply the segmentation mask to a copy of the pixel buffer.

    Args:
        pixels: RGBA buffer the mask was computed against
        mask: Confidence mask of the same dimensions

    Returns:
        tuple: (masked copy of the buffer, subject bounding box)

    Raises:
        MaskDimensionError: if mask and buffer sizes differ
        NoSubjectDetected: if the mask holds no confident pixel; the input buffer is left untouched
    """
    if mask.width != pixels.width or mask.height != pixels.height:
        raise MaskDimensionError(
            f"Mask is {mask.width}x{mask.height} but pixel buffer is {pixels.width}x{pixels.height}"
        )

    bbox = subject_bounding_box(mask)

    masked = pixels.copy()
    masked.data[..., 3] = mask_to_alpha(mask)

    logger.info(
        f"Mask applied: subject box ({bbox.min_x}, {bbox.min_y}) to ({bbox.max_x}, {bbox.max_y}) "
        f"in {pixels.width}x{pixels.height}"
    )
    return masked, bbox
