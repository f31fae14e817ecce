"""
Background removal pipeline: decode -> segment -> composite -> refine -> analyze -> encode.
"""
import asyncio
import logging
import time
from typing import AsyncIterator, Callable, List, Optional

from analysis import detect_category, extract_dominant_colors
from compositor import apply_mask
from config import config
from cutout_types import (
    GRAY_SENTINEL,
    PipelineState,
    PixelBuffer,
    ProcessingOptions,
    ProcessingResult,
    ProgressEvent,
)
from edge_refiner import refine_edges
from errors import InferenceError, NoSubjectDetected
from image_io import ImageSource, decode_image, encode_image, to_pixel_buffer
from model_manager import ModelCache
from segmentation_backend import Segmenter, get_backend

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

FALLBACK_NO_SUBJECT = "no_subject"
FALLBACK_INFERENCE_ERROR = "inference_error"


class ProgressChannel:
    """
    Progress of a single run.

    Can be polled (``state``/``percent``), consumed as an async stream of
    ProgressEvent via ``events()``, or forwarded to plain callbacks. Percent
    never decreases. Callback failures are logged and otherwise ignored.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.state = PipelineState.IDLE
        self.percent = 0
        self.history: List[ProgressEvent] = []
        self._callbacks: List[ProgressCallback] = [callback] if callback else []
        self._queue: asyncio.Queue = asyncio.Queue()

    def add_callback(self, callback: ProgressCallback):
        self._callbacks.append(callback)

    def remove_callback(self, callback: ProgressCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def publish(self, state: PipelineState, percent: int):
        self.percent = max(self.percent, percent)
        self.state = state
        event = ProgressEvent(state=state, percent=self.percent)
        self.history.append(event)
        self._queue.put_nowait(event)
        logger.info(f"Pipeline state -> {state.value} ({self.percent}%)")

        for callback in self._callbacks:
            try:
                callback(self.percent)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events as they are published, ending after a terminal state."""
        while True:
            event = await self._queue.get()
            yield event
            if event.state.is_terminal:
                return


class BackgroundRemover:
    """Runs the cutout pipeline against a shared ModelCache."""

    def __init__(self, model_cache: ModelCache, output_format: str = "PNG",
                 default_options: Optional[ProcessingOptions] = None):
        self.model_cache = model_cache
        self.output_format = output_format
        self.default_options = default_options or ProcessingOptions()

    @classmethod
    def from_config(cls, cfg=config) -> "BackgroundRemover":
        backend = get_backend(cfg.segmentation_backend)
        primary, secondary = backend.default_configs(cfg)
        default_options = ProcessingOptions(
            quality=cfg.default_quality,
            edge_blur_radius=cfg.default_edge_blur_radius,
            target_max_width=cfg.target_max_width,
            target_max_height=cfg.target_max_height,
        )
        return cls(ModelCache(backend, primary, secondary), cfg.output_format, default_options)

    async def remove_background(
        self,
        image_source: ImageSource,
        options: Optional[ProcessingOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
        progress: Optional[ProgressChannel] = None,
    ) -> ProcessingResult:
        """
        Cut the subject out of an image.

        Args:
            image_source: Raw image bytes, base64/data URL string, PIL image or PixelBuffer
            options: Processing options (defaults when omitted)
            on_progress: Optional callback receiving 0..100
            progress: Optional channel to observe state transitions

        Returns:
            ProcessingResult: always carries an image; the unmasked one when no subject
            was found or inference failed

        Raises:
            DecodeError: input could not be decoded
            ModelLoadError: no model configuration could be loaded
        """
        start = time.perf_counter()
        options = options or self.default_options
        progress = progress or ProgressChannel()
        if on_progress is not None:
            progress.add_callback(on_progress)

        try:
            return await self._run(image_source, options, progress, start)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.error(f"❌ Background removal failed after {elapsed_ms:.0f}ms: {e}")
            progress.publish(PipelineState.FAILED, progress.percent)
            raise
        finally:
            # on_progress only follows this run, even on a shared channel
            if on_progress is not None:
                progress.remove_callback(on_progress)

    async def _run(self, image_source: ImageSource, options: ProcessingOptions,
                   progress: ProgressChannel, start: float) -> ProcessingResult:
        # Step 1: Decode and resample
        progress.publish(PipelineState.DECODING, 10)
        decode_start = time.time()
        image = decode_image(image_source)
        pixels = to_pixel_buffer(image, options.target_max_width, options.target_max_height)
        del image
        logger.info(f"⏱️ Decoding completed in {time.time() - decode_start:.2f}s ({pixels.width}x{pixels.height})")
        progress.publish(PipelineState.DECODING, 20)

        # Step 2: Model
        progress.publish(PipelineState.AWAITING_MODEL, 30)
        segmenter = await self.model_cache.get_segmenter()

        # Step 3: Segmentation and compositing
        progress.publish(PipelineState.SEGMENTING, 50)
        try:
            mask = await self._segment(segmenter, pixels)
            progress.publish(PipelineState.COMPOSITING, 70)
            masked, bbox = apply_mask(pixels, mask)
            del mask
        except NoSubjectDetected:
            logger.warning("⚠️ No subject detected, returning original image")
            return self._fallback(pixels, options, progress, start, FALLBACK_NO_SUBJECT)
        except InferenceError as e:
            logger.warning(f"⚠️ Inference failed ({e}), returning original image")
            return self._fallback(pixels, options, progress, start, FALLBACK_INFERENCE_ERROR)

        # Step 4: Edge refinement
        progress.publish(PipelineState.REFINING, 80)
        refined = refine_edges(masked, options.edge_blur_radius)

        # Step 5: Palette and category
        progress.publish(PipelineState.ANALYZING, 85)
        colors = extract_dominant_colors(refined)
        category = detect_category(bbox, refined.height)

        # Step 6: Encoding
        progress.publish(PipelineState.ENCODING, 95)
        data, mime_type = encode_image(refined, self.output_format, options.quality)

        elapsed_ms = (time.perf_counter() - start) * 1000
        result = ProcessingResult(
            image=data,
            mime_type=mime_type,
            width=refined.width,
            height=refined.height,
            dominant_colors=tuple(colors),
            category=category,
            processing_time_ms=elapsed_ms,
            subject_detected=True,
            bounding_box=bbox,
            pixels=refined,
        )
        progress.publish(PipelineState.DONE, 100)
        logger.info(f"🚀 TOTAL background removal completed in {elapsed_ms / 1000:.2f}s (category: {category})")
        return result

    async def _segment(self, segmenter: Segmenter, pixels: PixelBuffer):
        """Run inference off the event loop; model failures become InferenceError."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, segmenter.segment, pixels)
        except Exception as e:
            raise InferenceError(f"Segmentation failed: {e}") from e

    def _fallback(self, pixels: PixelBuffer, options: ProcessingOptions,
                  progress: ProgressChannel, start: float, reason: str) -> ProcessingResult:
        """Return the unmasked image with the neutral palette and no category."""
        progress.publish(PipelineState.FAILED_FALLBACK, 70)
        progress.publish(PipelineState.ENCODING, 95)
        data, mime_type = encode_image(pixels, self.output_format, options.quality)

        elapsed_ms = (time.perf_counter() - start) * 1000
        result = ProcessingResult(
            image=data,
            mime_type=mime_type,
            width=pixels.width,
            height=pixels.height,
            dominant_colors=(GRAY_SENTINEL,) * 3,
            category=None,
            processing_time_ms=elapsed_ms,
            subject_detected=False,
            fallback_reason=reason,
            pixels=pixels,
        )
        progress.publish(PipelineState.DONE, 100)
        return result


# Global remover singleton (to reuse model)
_default_remover: Optional[BackgroundRemover] = None

def get_default_remover() -> BackgroundRemover:
    """Get global remover instance (lazy-init, model not loaded yet)."""
    global _default_remover
    if _default_remover is None:
        _default_remover = BackgroundRemover.from_config(config)
    return _default_remover

async def preload_model():
    """Load the segmentation model early to hide first-request latency."""
    await get_default_remover().model_cache.preload()

async def remove_background(image_source: ImageSource, options: Optional[ProcessingOptions] = None,
                            on_progress: Optional[ProgressCallback] = None) -> ProcessingResult:
    """Convenience wrapper around the global remover."""
    return await get_default_remover().remove_background(image_source, options, on_progress)

async def cleanup_model():
    """Release the global model; a later call reloads it."""
    if _default_remover is not None:
        await _default_remover.model_cache.cleanup()

def is_acceleration_available() -> bool:
    return get_default_remover().model_cache.is_acceleration_available()
