"""
Perceptual scalar fields extracted from a BGR image.

Lightness is the 8-bit L* channel; chroma is the hue-independent magnitude
of the (a*, b*) plane. Saturated pills score high on chroma while a white,
gray or black background stays close to zero.
"""

from dataclasses import dataclass

import cv2
import numpy as np

from pillseg.errors import InvalidInputError


@dataclass
class ColorMetrics:
    """Lightness and chroma fields of one image."""
    lightness: np.ndarray   # (H, W) uint8
    chroma: np.ndarray      # (H, W) float32, >= 0


def validate_image(image: np.ndarray) -> None:
    """Raise InvalidInputError unless image is a non-empty (H, W, 3) uint8 array."""
    if image is None or not isinstance(image, np.ndarray):
        raise InvalidInputError("Image must be a numpy array")
    if image.size == 0:
        raise InvalidInputError("Image is empty")
    if image.ndim != 3 or image.shape[2] != 3:
        raise InvalidInputError(f"Image must have 3 channels, got shape {image.shape}")
    if image.dtype != np.uint8:
        raise InvalidInputError(f"Image must be 8-bit, got dtype {image.dtype}")


def lightness_channel(image: np.ndarray) -> np.ndarray:
    """8-bit L* channel of the Lab conversion."""
    validate_image(image)
    lab = cv2.cvtColor(image, cv2.COLOR_BGR2Lab)
    return lab[:, :, 0].copy()


def chroma_magnitude(image: np.ndarray) -> np.ndarray:
    """
    C = sqrt(a*^2 + b*^2) as float32.

    Computed on the floating point Lab conversion (input scaled to [0, 1]),
    where a* and b* keep their real range instead of the 8-bit offset encoding.
    """
    validate_image(image)
    scaled = image.astype(np.float32) / 255.0
    lab = cv2.cvtColor(scaled, cv2.COLOR_BGR2Lab)
    _, a, b = cv2.split(lab)
    return cv2.magnitude(a, b)


def normalize_to_u8(field: np.ndarray) -> np.ndarray:
    """Min-max stretch a float field to 0..255. A constant field maps to zeros."""
    lo = float(field.min())
    hi = float(field.max())
    if hi <= lo:
        return np.zeros(field.shape, dtype=np.uint8)
    scaled = (field.astype(np.float32) - lo) * (255.0 / (hi - lo))
    return np.clip(scaled, 0, 255).astype(np.uint8)


def extract_color_metrics(image: np.ndarray) -> ColorMetrics:
    return ColorMetrics(
        lightness=lightness_channel(image),
        chroma=chroma_magnitude(image),
    )
