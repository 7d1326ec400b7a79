"""
Foreground masks from lightness and chroma, and their fusion.

All masks are uint8 arrays holding only 0 (background) and 255 (foreground).
"""

import logging
from typing import Tuple, Union

import cv2
import numpy as np

from pillseg.color_metrics import normalize_to_u8
from pillseg.config import ChromaMode, LuminanceMode, parse_chroma_mode, parse_luminance_mode
from pillseg.errors import InvalidInputError

logger = logging.getLogger(__name__)

# Below these spreads a field is treated as flat (no usable evidence)
MIN_LIGHTNESS_SPREAD = 8        # 8-bit levels after equalization
MIN_CHROMA_SPREAD = 4.0         # Lab chroma units

KMEANS_CRITERIA = (cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_MAX_ITER, 20, 1e-3)
KMEANS_ATTEMPTS = 2


def ellipse_kernel(size: int = 3) -> np.ndarray:
    return cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))


def ensure_odd(k: int) -> int:
    k = max(1, int(k))
    if k % 2 == 0:
        k += 1
    return k


def auto_clip_limit(lightness: np.ndarray, clip_min: float = 1.5, clip_max: float = 5.0) -> float:
    """
    CLAHE clip limit scaled with global contrast.

    clip = clip_min + clamp(stddev / 64, 0, 1) * (clip_max - clip_min)
    """
    stddev = float(np.std(lightness))
    t = min(1.0, max(0.0, stddev / 64.0))
    return clip_min + t * (clip_max - clip_min)


def auto_block_size(shape: Tuple[int, ...]) -> int:
    """Adaptive threshold neighbourhood: max(15, (min(H, W) / 16) * 2 + 1), odd."""
    h, w = shape[:2]
    return ensure_odd(max(15, (min(h, w) // 16) * 2 + 1))


def adaptive_offset(equalized: np.ndarray) -> float:
    """Constant subtracted from the local mean: clamp(0.05 * stddev, 2, 12)."""
    return max(2.0, min(12.0, 0.05 * float(np.std(equalized))))


def _check_field(field: np.ndarray, name: str) -> None:
    if field is None or not isinstance(field, np.ndarray):
        raise InvalidInputError(f"{name} field must be a numpy array")
    if field.ndim != 2 or field.size == 0:
        raise InvalidInputError(f"{name} field must be a non-empty 2-D array, got shape {field.shape}")


def check_binary_mask(mask: np.ndarray, name: str = "mask") -> np.ndarray:
    """
    Return mask as uint8 {0, 255}. Boolean masks are converted; anything
    else with values outside {0, 255} is rejected.
    """
    if mask is None or not isinstance(mask, np.ndarray):
        raise InvalidInputError(f"{name} must be a numpy array")
    if mask.ndim != 2 or mask.size == 0:
        raise InvalidInputError(f"{name} must be a non-empty 2-D array, got shape {mask.shape}")
    if mask.dtype == np.bool_:
        return mask.astype(np.uint8) * 255
    if mask.dtype != np.uint8:
        raise InvalidInputError(f"{name} must be uint8, got dtype {mask.dtype}")
    if not np.isin(mask, (0, 255)).all():
        raise InvalidInputError(f"{name} is not binary: values must be 0 or 255")
    return mask


def _border_median(field: np.ndarray) -> float:
    border = np.concatenate([field[0, :], field[-1, :], field[:, 0], field[:, -1]])
    return float(np.median(border))


def luminance_mask(
    lightness: np.ndarray,
    mode: Union[str, LuminanceMode] = LuminanceMode.ADAPTIVE,
    tile_grid: Tuple[int, int] = (8, 8),
    clip_min: float = 1.5,
    clip_max: float = 5.0,
) -> np.ndarray:
    """
    Binary mask from the lightness channel.

    CLAHE first flattens soft shadows, a 3x3 blur removes pixel noise, then:

    * global: Otsu threshold. The image border is taken as background, so
      whichever Otsu population the border belongs to becomes background.
    * adaptive: Gaussian local mean minus a contrast-derived offset. Pixels
      that are not darker than their neighbourhood are kept; shadow bands and
      the darker crease between two touching objects drop out.

    A flat field carries no objects and returns an all-background mask.
    """
    _check_field(lightness, "Lightness")
    if lightness.dtype != np.uint8:
        raise InvalidInputError(f"Lightness field must be uint8, got dtype {lightness.dtype}")
    mode = parse_luminance_mode(mode)

    clip = auto_clip_limit(lightness, clip_min, clip_max)
    clahe = cv2.createCLAHE(clipLimit=clip, tileGridSize=tuple(int(v) for v in tile_grid))
    equalized = clahe.apply(lightness)
    equalized = cv2.GaussianBlur(equalized, (3, 3), 0)

    spread = int(equalized.max()) - int(equalized.min())
    if spread < MIN_LIGHTNESS_SPREAD:
        logger.debug("Lightness spread %d below %d, no luminance foreground", spread, MIN_LIGHTNESS_SPREAD)
        return np.zeros(lightness.shape, dtype=np.uint8)

    if mode is LuminanceMode.GLOBAL:
        thresh, _ = cv2.threshold(equalized, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)
        bright_background = _border_median(equalized) > thresh
        flag = cv2.THRESH_BINARY_INV if bright_background else cv2.THRESH_BINARY
        _, mask = cv2.threshold(equalized, thresh, 255, flag)
        logger.debug("Global lightness threshold %.1f (bright background: %s)", thresh, bright_background)
    else:
        block = auto_block_size(equalized.shape)
        offset = adaptive_offset(equalized)
        mask = cv2.adaptiveThreshold(
            equalized, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C, cv2.THRESH_BINARY, block, offset
        )
        logger.debug("Adaptive lightness threshold: block=%d C=%.2f clip=%.2f", block, offset, clip)

    return cv2.morphologyEx(mask, cv2.MORPH_CLOSE, ellipse_kernel(3))


def _kmeans_foreground(chroma: np.ndarray, seed: int) -> np.ndarray:
    """Two-cluster k-means on chroma values; the higher centroid is foreground."""
    samples = chroma.reshape(-1, 1).astype(np.float32)

    # First attempt starts from the midpoint split, the restart from k-means++
    midpoint = (float(samples.min()) + float(samples.max())) / 2.0
    initial = (samples > midpoint).astype(np.int32)

    # OpenCV's RNG is per thread, so seeding it here keeps concurrent calls reproducible
    cv2.setRNGSeed(int(seed))
    _, labels, centers = cv2.kmeans(
        samples, 2, initial, KMEANS_CRITERIA, KMEANS_ATTEMPTS,
        cv2.KMEANS_USE_INITIAL_LABELS | cv2.KMEANS_PP_CENTERS,
    )
    fg_label = int(np.argmax(centers[:, 0]))
    logger.debug("Chroma k-means centers: %s (foreground cluster %d)", centers.ravel().tolist(), fg_label)

    mask = np.zeros(chroma.shape, dtype=np.uint8)
    mask[labels.reshape(chroma.shape) == fg_label] = 255
    return mask


def chroma_mask(
    chroma: np.ndarray,
    mode: Union[str, ChromaMode] = ChromaMode.OTSU,
    seed: int = 0,
    flat_foreground: bool = True,
) -> np.ndarray:
    """
    Binary mask from the chroma magnitude field.

    * otsu: normalize to 8 bits and apply Otsu; high chroma is foreground.
    * kmeans: split the chroma values into two clusters; the cluster with the
      higher centroid is foreground.

    An achromatic scene (chroma spread under MIN_CHROMA_SPREAD) has no colour
    evidence either way. With flat_foreground the mask is then all foreground
    so that fusion leaves the decision to the luminance mask; otherwise it is
    all background. Only a luminance mask that knows which side is the tray
    (global mode) can be trusted on its own.
    """
    _check_field(chroma, "Chroma")
    mode = parse_chroma_mode(mode)

    spread = float(chroma.max()) - float(chroma.min())
    if spread < MIN_CHROMA_SPREAD:
        logger.debug(
            "Chroma spread %.2f below %.2f, chroma mask %s",
            spread, MIN_CHROMA_SPREAD, "passes everything" if flat_foreground else "is empty",
        )
        fill = 255 if flat_foreground else 0
        return np.full(chroma.shape, fill, dtype=np.uint8)

    if mode is ChromaMode.KMEANS:
        mask = _kmeans_foreground(chroma, seed)
    else:
        chroma_u8 = normalize_to_u8(chroma)
        _, mask = cv2.threshold(chroma_u8, 0, 255, cv2.THRESH_BINARY | cv2.THRESH_OTSU)

    return cv2.morphologyEx(mask, cv2.MORPH_OPEN, ellipse_kernel(3))


def intersect_masks(lum_mask: np.ndarray, chroma_mask: np.ndarray) -> np.ndarray:
    """Pixel-wise AND: foreground only where both detectors agree."""
    lum_mask = check_binary_mask(lum_mask, "luminance mask")
    chroma_mask = check_binary_mask(chroma_mask, "chroma mask")
    if lum_mask.shape != chroma_mask.shape:
        raise InvalidInputError(
            f"Mask shapes differ: luminance {lum_mask.shape} vs chroma {chroma_mask.shape}"
        )
    return cv2.bitwise_and(lum_mask, chroma_mask)


def fuse_masks(lum_mask: np.ndarray, chroma_mask: np.ndarray) -> np.ndarray:
    """
    Fused mask for seeding: AND of both masks followed by a small closing.

    The AND rejects shadows (dark but achromatic) and highlights on object
    edges; the closing fills the pinholes the intersection leaves behind.
    """
    fused = intersect_masks(lum_mask, chroma_mask)
    return cv2.morphologyEx(fused, cv2.MORPH_CLOSE, ellipse_kernel(3))
