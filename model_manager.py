"""
Async model management for the Loomi Cutout pipeline.
"""
import asyncio
import logging
import time
from typing import Optional

from errors import ModelLoadError
from segmentation_backend import ModelConfig, SegmentationBackend, Segmenter

logger = logging.getLogger(__name__)

class ModelCache:
    """Owns at most one segmenter and loads it on first use."""

    def __init__(self, backend: SegmentationBackend, primary: ModelConfig, secondary: Optional[ModelConfig] = None):
        self.backend = backend
        self.primary_config = primary
        self.secondary_config = secondary
        self.segmenter: Optional[Segmenter] = None
        self.active_config: Optional[ModelConfig] = None
        self.model_loading = False
        self.loading_task: Optional[asyncio.Task] = None
        self.load_count = 0
        self._lock = asyncio.Lock()

    @property
    def model_loaded(self) -> bool:
        return self.segmenter is not None

    def is_acceleration_available(self) -> bool:
        return self.backend.is_acceleration_available()

    async def get_segmenter(self) -> Segmenter:
        """Return the cached segmenter, loading it if needed.

        Concurrent callers share one in-flight load. A caller that gives up
        waiting does not cancel it. The returned handle is never one that a
        concurrent cleanup has disposed.
        """
        while True:
            if self.segmenter is not None:
                return self.segmenter

            async with self._lock:
                if self.segmenter is not None:
                    return self.segmenter

                if self.loading_task is None:
                    # Start loading task
                    self.model_loading = True
                    self.loading_task = asyncio.create_task(self._load_model())
                task = self.loading_task

            segmenter = await asyncio.shield(task)

            # A cleanup may have disposed this handle while the load settled
            async with self._lock:
                if self.segmenter is segmenter:
                    return segmenter
            logger.info("Loaded model was released before use, loading again")

    async def preload(self):
        """Load the model ahead of the first request."""
        await self.get_segmenter()

    async def _load_model(self) -> Segmenter:
        """Initialize the backend, then try the primary and secondary configs in turn."""
        start = time.time()
        loop = asyncio.get_running_loop()
        attempts = []
        last_error: Optional[BaseException] = None

        try:
            logger.info("Starting model loading in background...")

            # Run blocking backend work in thread pool to avoid blocking
            try:
                device = await loop.run_in_executor(None, self.backend.initialize)
            except Exception as e:
                logger.error(f"Failed to initialize {self.backend.name} backend: {e}")
                raise ModelLoadError(f"Backend initialization failed: {e}", [f"initialize: {e}"]) from e

            for model_config in (self.primary_config, self.secondary_config):
                if model_config is None:
                    continue
                try:
                    segmenter = await loop.run_in_executor(None, self.backend.load, model_config)
                except Exception as e:
                    logger.warning(f"⚠️ Model config '{model_config.name}' failed to load: {e}")
                    attempts.append(f"{model_config.name}: {e}")
                    last_error = e
                    continue

                self.segmenter = segmenter
                self.active_config = model_config
                self.load_count += 1
                logger.info(
                    f"✅ Model '{model_config.name}' loaded on {device} in {time.time() - start:.2f}s"
                )
                return segmenter

            logger.error(f"Failed to load model after {len(attempts)} attempts")
            raise ModelLoadError("All model configurations failed to load", attempts) from last_error
        finally:
            self.model_loading = False
            self.loading_task = None

    async def cleanup(self):
        """Dispose the segmenter and free backend memory; the next use reloads from scratch."""
        async with self._lock:
            task = self.loading_task
            if task is not None:
                try:
                    await asyncio.shield(task)
                except ModelLoadError as e:
                    logger.info(f"In-flight model load ended with an error during cleanup: {e}")

            if self.segmenter is not None:
                self.segmenter.dispose()
                self.segmenter = None
                self.active_config = None
            self.backend.release()
        logger.info("Segmentation model released")

    def get_status(self) -> dict:
        """Get current model status for health checks."""
        return {
            "backend": self.backend.name,
            "model_loaded": self.model_loaded,
            "model_loading": self.model_loading,
            "device": self.segmenter.device if self.segmenter is not None else self.backend.device,
            "active_config": self.active_config.name if self.active_config else None,
            "load_count": self.load_count,
            "acceleration_available": self.is_acceleration_available(),
        }
