"""
Image loading and rendering helpers around the segmentation core.
"""

from pathlib import Path
from typing import Iterable, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps

ALLOWED_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.bmp', '.tif', '.tiff'}

BOX_COLOR = (0, 255, 0)         # BGR
BOUNDARY_COLOR = (0, 0, 255)    # BGR


def allowed_file(filename: str) -> bool:
    return Path(filename).suffix.lower() in ALLOWED_EXTENSIONS


def load_image(source) -> np.ndarray:
    """
    Load an image as a BGR uint8 array.

    Accepts a path or a binary file object. Phone photos carry their
    orientation in EXIF, so the pixels are transposed before conversion.

    Raises:
        ValueError: If the image cannot be read
    """
    try:
        with Image.open(source) as pil:
            pil = ImageOps.exif_transpose(pil)
            rgb = np.asarray(pil.convert("RGB"))
    except (OSError, ValueError) as e:
        raise ValueError(f"Cannot read image from {source}: {e}") from e
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)


def draw_boxes(image: np.ndarray, boxes: Iterable[Tuple[int, int, int, int]],
               color=BOX_COLOR, thickness: int = 2) -> np.ndarray:
    """Copy of image with one rectangle per (left, top, width, height) box."""
    out = image.copy()
    for x, y, w, h in boxes:
        cv2.rectangle(out, (x, y), (x + w - 1, y + h - 1), color, thickness)
    return out


def draw_boundaries(image: np.ndarray, markers: np.ndarray, color=BOUNDARY_COLOR) -> np.ndarray:
    """Paint the flood boundary pixels (marker -1)."""
    out = image.copy()
    out[markers == -1] = color
    return out


def create_overlay(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """Create overlay image with red contours on original image."""
    overlay = image.copy()
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    cv2.drawContours(overlay, contours, -1, BOUNDARY_COLOR, 2)
    return overlay


def save_image(path: Union[str, Path], image: np.ndarray) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), image):
        raise ValueError(f"Cannot write image to {path}")
    return path
