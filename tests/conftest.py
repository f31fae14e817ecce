"""Pytest configuration and fixtures."""
import struct
import time
import zlib
from io import BytesIO
from typing import Callable, Optional

import numpy as np
import pytest
from PIL import Image

from cutout_types import PixelBuffer, SegmentationMask
from model_manager import ModelCache
from pipeline import BackgroundRemover
from segmentation_backend import ModelConfig, SegmentationBackend, Segmenter

PRIMARY = ModelConfig(name="fake-primary", checkpoint="fake/primary", input_size=512, precision="float16")
SECONDARY = ModelConfig(name="fake-secondary", checkpoint="fake/secondary", input_size=256, force_cpu=True)


def full_mask(pixels: PixelBuffer) -> np.ndarray:
    return np.ones((pixels.height, pixels.width), dtype=np.float32)


def empty_mask(pixels: PixelBuffer) -> np.ndarray:
    return np.zeros((pixels.height, pixels.width), dtype=np.float32)


class FakeSegmenter(Segmenter):
    def __init__(self, model_config, device, mask_fn):
        super().__init__(model_config, device)
        self.mask_fn = mask_fn
        self.disposed = False
        self.calls = 0

    def segment(self, pixels):
        self.calls += 1
        confidence = self.mask_fn(pixels)
        return SegmentationMask(width=pixels.width, height=pixels.height, confidence=confidence)

    def dispose(self):
        self.disposed = True


class FakeBackend(SegmentationBackend):
    """In-memory backend that counts model constructions."""

    name = "fake"

    def __init__(self, mask_fn: Callable = full_mask, fail_configs=(), load_delay: float = 0.0,
                 accelerated: bool = False):
        super().__init__()
        self.mask_fn = mask_fn
        self.fail_configs = set(fail_configs)
        self.load_delay = load_delay
        self.accelerated = accelerated
        self.load_calls = []
        self.release_calls = 0
        self.segmenters = []

    def is_acceleration_available(self):
        return self.accelerated

    def initialize(self):
        self.device = "cuda" if self.accelerated else "cpu"
        return self.device

    def load(self, model_config):
        self.load_calls.append(model_config.name)
        if self.load_delay:
            time.sleep(self.load_delay)
        if model_config.name in self.fail_configs:
            raise RuntimeError(f"cannot build {model_config.name}")
        device = "cpu" if model_config.force_cpu else self.device
        segmenter = FakeSegmenter(model_config, device, lambda pixels: self.mask_fn(pixels))
        self.segmenters.append(segmenter)
        return segmenter

    def release(self):
        self.release_calls += 1
        super().release()

    def default_configs(self, cfg):
        return PRIMARY, SECONDARY


def make_pixels(width: int, height: int, rgba=(255, 0, 0, 255)) -> PixelBuffer:
    data = np.empty((height, width, 4), dtype=np.uint8)
    data[...] = rgba
    return PixelBuffer(width=width, height=height, data=data)


def png_bytes(width: int, height: int, color=(255, 0, 0), mode: str = "RGB") -> bytes:
    image = Image.new(mode, (width, height), color)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def oversized_png(width: int, height: int) -> bytes:
    """A 1-bit grayscale PNG whose header declares width x height, with no pixel rows."""
    def chunk(kind: bytes, payload: bytes) -> bytes:
        crc = zlib.crc32(kind + payload) & 0xFFFFFFFF
        return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", crc)

    header = struct.pack(">IIBBBBB", width, height, 1, 0, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IDAT", zlib.compress(b"")) + chunk(b"IEND", b"")


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def model_cache(fake_backend):
    return ModelCache(fake_backend, PRIMARY, SECONDARY)


@pytest.fixture
def remover(model_cache):
    return BackgroundRemover(model_cache)


@pytest.fixture
def red_png():
    return png_bytes(500, 500, (255, 0, 0))
