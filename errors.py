"""
Error taxonomy for the cutout pipeline.

DecodeError and ModelLoadError are fatal for a run and reach the caller.
InferenceError is caught by the pipeline, which then returns the unmasked image.
NoSubjectDetected is not an error: it signals the documented pass-through.
"""


class CutoutError(Exception):
    """Base class for pipeline failures."""


class DecodeError(CutoutError):
    """Input could not be decoded as an image."""


class ModelLoadError(CutoutError):
    """Neither the primary nor the secondary model configuration could be loaded."""

    def __init__(self, message: str, attempts=None):
        super().__init__(message)
        self.attempts = list(attempts or [])


class InferenceError(CutoutError):
    """The loaded model failed while segmenting a specific image."""


class MaskDimensionError(ValueError):
    """Mask and pixel buffer sizes differ."""


class NoSubjectDetected(Exception):
    """No pixel of the mask reached the subject threshold."""
