"""
Data model shared by the cutout pipeline stages.
"""
import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple, Dict, Any

import numpy as np
from PIL import Image

# Clothing categories produced by the geometric heuristic
CATEGORY_TOPS = "tops"
CATEGORY_BOTTOMS = "bottoms"
CATEGORY_DRESSES = "dresses"
CATEGORY_SHOES = "shoes"

# Neutral gray used to pad short palettes
GRAY_SENTINEL = "#808080"


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    DECODING = "decoding"
    AWAITING_MODEL = "awaiting_model"
    SEGMENTING = "segmenting"
    COMPOSITING = "compositing"
    REFINING = "refining"
    ANALYZING = "analyzing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED_FALLBACK = "failed_fallback"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)


@dataclass
class PixelBuffer:
    """Row-major RGBA pixels, 8 bits per channel, shaped (height, width, 4)."""

    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        if self.data.dtype != np.uint8:
            raise ValueError(f"PixelBuffer data must be uint8, got {self.data.dtype}")
        if self.data.shape != (self.height, self.width, 4):
            raise ValueError(
                f"PixelBuffer data shape {self.data.shape} does not match "
                f"({self.height}, {self.width}, 4)"
            )

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        rgba = np.array(image.convert("RGBA"), dtype=np.uint8)
        return cls(width=image.width, height=image.height, data=rgba)

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.data, "RGBA")

    @property
    def alpha(self) -> np.ndarray:
        return self.data[..., 3]

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.width, self.height, self.data.copy())


@dataclass
class SegmentationMask:
    """Per-pixel subject confidence in [0, 1], shaped (height, width)."""

    width: int
    height: int
    confidence: np.ndarray

    def __post_init__(self):
        if self.confidence.shape != (self.height, self.width):
            raise ValueError(
                f"Mask shape {self.confidence.shape} does not match ({self.height}, {self.width})"
            )
        self.confidence = np.clip(self.confidence.astype(np.float32, copy=False), 0.0, 1.0)


@dataclass(frozen=True)
class BoundingBox:
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y

    def to_dict(self) -> Dict[str, int]:
        return {"min_x": self.min_x, "min_y": self.min_y, "max_x": self.max_x, "max_y": self.max_y}


@dataclass(frozen=True)
class ProcessingOptions:
    """Per-run settings. Defaults are the only implicit values."""

    quality: float = 0.9
    edge_blur_radius: int = 2
    target_max_width: int = 1024
    target_max_height: int = 1024

    def __post_init__(self):
        if not 0.0 <= self.quality <= 1.0:
            raise ValueError(f"quality must be between 0 and 1, got {self.quality}")
        if self.edge_blur_radius < 0:
            raise ValueError(f"edge_blur_radius must not be negative, got {self.edge_blur_radius}")
        if self.target_max_width < 1 or self.target_max_height < 1:
            raise ValueError(
                f"target size must be positive, got {self.target_max_width}x{self.target_max_height}"
            )


@dataclass(frozen=True)
class ProgressEvent:
    state: PipelineState
    percent: int


@dataclass(frozen=True)
class ProcessingResult:
    image: bytes
    mime_type: str
    width: int
    height: int
    dominant_colors: Tuple[str, ...]
    category: Optional[str]
    processing_time_ms: float
    subject_detected: bool = True
    bounding_box: Optional[BoundingBox] = None
    fallback_reason: Optional[str] = None
    pixels: Optional[PixelBuffer] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view; the image is embedded as a base64 data URL."""
        from image_io import to_data_url

        return {
            "image": to_data_url(self.image, self.mime_type),
            "width": self.width,
            "height": self.height,
            "dominant_colors": list(self.dominant_colors),
            "category": self.category,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "subject_detected": self.subject_detected,
            "bounding_box": self.bounding_box.to_dict() if self.bounding_box else None,
            "fallback_reason": self.fallback_reason,
        }
