"""
Loomi Cutout - Segmentation Backends
====================================

Pluggable inference backends that turn an RGBA pixel buffer into a per-pixel
subject confidence mask.

Model Attribution:
- Base Model: Segformer B2 for Clothing Segmentation
- Source: mattmdjaga/segformer_b2_clothes
- Alternative: rembg U2-Net sessions (u2net_human_seg, u2netp)

Dependencies:
- Transformers (Hugging Face) - Apache 2.0 License
- PyTorch - BSD License
- rembg / onnxruntime - MIT License
"""

import abc
import logging
import threading
import time
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
import torch.nn.functional as F
from PIL import Image

from cutout_types import PixelBuffer, SegmentationMask

# Suppress transformers warnings for cleaner logs
warnings.filterwarnings("ignore", message=".*feature_extractor_type.*")
warnings.filterwarnings("ignore", message=".*reduce_labels.*")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelConfig:
    """One way of constructing a segmenter."""

    name: str
    checkpoint: str
    input_size: int = 512
    precision: str = "float32"
    force_cpu: bool = False
    cache_dir: Optional[str] = None


class Segmenter(abc.ABC):
    """A loaded model. Shared read-only by every pipeline run."""

    def __init__(self, model_config: ModelConfig, device: str):
        self.model_config = model_config
        self.device = device

    @abc.abstractmethod
    def segment(self, pixels: PixelBuffer) -> SegmentationMask:
        """Blocking inference; the mask matches the buffer's dimensions."""

    def dispose(self):
        """Release model weights."""


class SegmentationBackend(abc.ABC):
    """Numeric runtime able to build segmenters."""

    name = "base"

    def __init__(self):
        self.device: Optional[str] = None

    @abc.abstractmethod
    def is_acceleration_available(self) -> bool:
        """Synchronous check for a hardware accelerator."""

    @abc.abstractmethod
    def initialize(self) -> str:
        """Select the compute device and return its name."""

    @abc.abstractmethod
    def load(self, model_config: ModelConfig) -> Segmenter:
        """Construct a segmenter. Blocking; called from a worker thread."""

    def release(self):
        """Free runtime-held memory after the segmenter has been disposed."""
        self.device = None

    def default_configs(self, cfg) -> tuple:
        """(primary, secondary) model configurations for this backend."""
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Segformer (transformers + torch)
# ---------------------------------------------------------------------------

class SegformerSegmenter(Segmenter):
    """Clothing Segformer; subject confidence is 1 - P(background)."""

    BACKGROUND_CLASS = 0

    def __init__(self, model_config: ModelConfig, device: str, processor, model, dtype):
        super().__init__(model_config, device)
        self.processor = processor
        self.model = model
        self.dtype = dtype
        self._lock = threading.Lock()

    def segment(self, pixels: PixelBuffer) -> SegmentationMask:
        image = Image.fromarray(pixels.data[..., :3], "RGB")

        with self._lock:
            inference_start = time.time()
            inputs = self.processor(images=image, return_tensors="pt")
            pixel_values = inputs["pixel_values"].to(self.device, dtype=self.dtype)

            with torch.no_grad():
                logits = self.model(pixel_values=pixel_values).logits

                # Upsample logits to the buffer size for a full-resolution mask
                logits = F.interpolate(
                    logits.float(),
                    size=(pixels.height, pixels.width),
                    mode="bilinear",
                    align_corners=False,
                )
                probs = torch.softmax(logits, dim=1)[0]
                confidence = (1.0 - probs[self.BACKGROUND_CLASS]).cpu().numpy()

            logger.info(f"⏱️ Model inference completed in {time.time() - inference_start:.2f}s")

        return SegmentationMask(width=pixels.width, height=pixels.height, confidence=confidence)

    def dispose(self):
        self.model = None
        self.processor = None


class SegformerBackend(SegmentationBackend):
    name = "segformer"

    def is_acceleration_available(self) -> bool:
        if torch.cuda.is_available():
            return True
        mps = getattr(torch.backends, "mps", None)
        return bool(mps and mps.is_available())

    def initialize(self) -> str:
        if torch.cuda.is_available():
            self.device = "cuda"
        elif self.is_acceleration_available():
            self.device = "mps"
        else:
            self.device = "cpu"
            # Limit CPU threads for stability
            torch.set_num_threads(4)
        logger.info(f"Using device: {self.device}")
        return self.device

    def load(self, model_config: ModelConfig) -> Segmenter:
        from transformers import SegformerImageProcessor, AutoModelForSemanticSegmentation

        device = "cpu" if model_config.force_cpu else (self.device or self.initialize())
        # Half precision only pays off on CUDA
        dtype = torch.float16 if model_config.precision == "float16" and device == "cuda" else torch.float32

        logger.info(f"Loading SegformerImageProcessor ({model_config.checkpoint})...")
        processor = SegformerImageProcessor.from_pretrained(
            model_config.checkpoint,
            size={"height": model_config.input_size, "width": model_config.input_size},
            cache_dir=model_config.cache_dir,
        )

        logger.info("Loading AutoModelForSemanticSegmentation...")
        model = AutoModelForSemanticSegmentation.from_pretrained(
            model_config.checkpoint,
            torch_dtype=dtype,
            low_cpu_mem_usage=True,
            cache_dir=model_config.cache_dir,
        )

        logger.info(f"Moving model to {device}...")
        model.to(device)
        model.eval()

        return SegformerSegmenter(model_config, device, processor, model, dtype)

    def release(self):
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        super().release()

    def default_configs(self, cfg) -> tuple:
        primary = ModelConfig(
            name="segformer-primary",
            checkpoint=cfg.primary_checkpoint,
            input_size=cfg.primary_input_size,
            precision="float16",
            cache_dir=cfg.hf_cache_dir,
        )
        secondary = ModelConfig(
            name="segformer-conservative",
            checkpoint=cfg.secondary_checkpoint,
            input_size=cfg.secondary_input_size,
            precision="float32",
            force_cpu=True,
            cache_dir=cfg.hf_cache_dir,
        )
        return primary, secondary


# ---------------------------------------------------------------------------
# rembg (U2-Net on onnxruntime)
# ---------------------------------------------------------------------------

class RembgSegmenter(Segmenter):
    def __init__(self, model_config: ModelConfig, device: str, session):
        super().__init__(model_config, device)
        self.session = session
        self._lock = threading.Lock()

    def segment(self, pixels: PixelBuffer) -> SegmentationMask:
        from rembg import remove

        image = Image.fromarray(pixels.data[..., :3], "RGB")
        with self._lock:
            inference_start = time.time()
            mask_image = remove(image, session=self.session, only_mask=True)
            logger.info(f"⏱️ Model inference completed in {time.time() - inference_start:.2f}s")

        mask_image = mask_image.convert("L")
        if mask_image.size != (pixels.width, pixels.height):
            mask_image = mask_image.resize((pixels.width, pixels.height), Image.BILINEAR)
        confidence = np.asarray(mask_image, dtype=np.float32) / 255.0
        return SegmentationMask(width=pixels.width, height=pixels.height, confidence=confidence)

    def dispose(self):
        self.session = None


class RembgBackend(SegmentationBackend):
    name = "rembg"

    def is_acceleration_available(self) -> bool:
        import onnxruntime

        return "CUDAExecutionProvider" in onnxruntime.get_available_providers()

    def initialize(self) -> str:
        self.device = "cuda" if self.is_acceleration_available() else "cpu"
        logger.info(f"Using device: {self.device}")
        return self.device

    def load(self, model_config: ModelConfig) -> Segmenter:
        from rembg import new_session

        device = "cpu" if model_config.force_cpu else (self.device or self.initialize())
        logger.info(f"Creating rembg session ({model_config.checkpoint})...")
        if device == "cpu":
            session = new_session(model_config.checkpoint, providers=["CPUExecutionProvider"])
        else:
            session = new_session(model_config.checkpoint)
        return RembgSegmenter(model_config, device, session)

    def default_configs(self, cfg) -> tuple:
        primary = ModelConfig(name="rembg-primary", checkpoint="u2net_human_seg", input_size=320)
        secondary = ModelConfig(name="rembg-conservative", checkpoint="u2netp", input_size=320, force_cpu=True)
        return primary, secondary


_BACKENDS = {
    SegformerBackend.name: SegformerBackend,
    RembgBackend.name: RembgBackend,
}


def get_backend(name: str) -> SegmentationBackend:
    """Instantiate a backend by name (chosen once at startup)."""
    try:
        return _BACKENDS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown segmentation backend '{name}'. Available: {sorted(_BACKENDS)}") from None
