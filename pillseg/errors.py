"""
Exceptions raised by the pill segmentation core.
"""


class SegmentationError(Exception):
    """Base class for all pipeline errors."""


class InvalidInputError(SegmentationError, ValueError):
    """
    Raised when an input cannot be processed: empty image, wrong channel
    count or dtype, mask/image shape mismatch, non-binary mask, unknown mode
    string or an option outside its valid range.
    """


class DegenerateInputError(SegmentationError):
    """
    Raised on request when a valid image produced zero instances.

    The pipeline itself never raises this: an empty result is a valid
    answer. Callers that treat "nothing found" as a failure opt in through
    PillCountResult.raise_if_empty().
    """
