"""
Pill segmentation pipeline.

Fuses a luminance mask and a chroma mask into one foreground mask, seeds a
marker-controlled flood from it and turns the grown regions into counted
instances with bounding boxes. Everything here works in memory; loading and
saving images is left to the caller.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from pillseg.color_metrics import extract_color_metrics, validate_image
from pillseg.config import ChromaMode, LuminanceMode, PipelineConfig, parse_chroma_mode, parse_luminance_mode
from pillseg.errors import DegenerateInputError, InvalidInputError
from pillseg.masks import chroma_mask, fuse_masks, luminance_mask
from pillseg.watershed import FloodStrategy, Instance, filter_instances, grow_regions, make_seeds

logger = logging.getLogger(__name__)

Box = Tuple[int, int, int, int]


@dataclass
class FusionOutputs:
    """Masks produced before seeding (all uint8 0/255)."""
    lum_mask: np.ndarray
    chroma_mask: np.ndarray
    fused: np.ndarray


@dataclass
class WatershedOutputs:
    """Cleaned instance mask, grown markers and the retained instances."""
    seg_mask: np.ndarray
    markers: np.ndarray
    instances: List[Instance] = field(default_factory=list)

    @property
    def boxes(self) -> List[Box]:
        return [inst.box for inst in self.instances]


@dataclass
class PillCountResult:
    """Everything one pipeline run produced."""
    fusion: FusionOutputs
    watershed: WatershedOutputs
    config: PipelineConfig

    @property
    def count(self) -> int:
        return len(self.watershed.instances)

    @property
    def boxes(self) -> List[Box]:
        return self.watershed.boxes

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    @property
    def stats(self) -> Dict:
        return _calculate_stats(self.watershed.seg_mask, self.watershed.instances)

    def raise_if_empty(self) -> "PillCountResult":
        """Return self, or raise DegenerateInputError when nothing was found."""
        if self.is_empty:
            raise DegenerateInputError("No objects found: the image segments to background only")
        return self


def fused_mask_for_watershed(
    image: np.ndarray,
    lum_mode: Union[str, LuminanceMode] = LuminanceMode.ADAPTIVE,
    chroma_mode: Union[str, ChromaMode] = ChromaMode.OTSU,
    tile_grid: Tuple[int, int] = (8, 8),
    clip_min: float = 1.5,
    clip_max: float = 5.0,
    kmeans_seed: int = 0,
) -> FusionOutputs:
    """
    Build the luminance mask, the chroma mask and their fusion.

    Raises:
        InvalidInputError: If the image is not a non-empty 8-bit 3-channel
            array or a mode string is unknown
    """
    validate_image(image)
    lum_mode = parse_luminance_mode(lum_mode)
    chroma_mode = parse_chroma_mode(chroma_mode)

    metrics = extract_color_metrics(image)
    lum = luminance_mask(metrics.lightness, lum_mode, tile_grid, clip_min, clip_max)
    # Adaptive thresholding keeps a flat bright tray, so colourless scenes
    # are only trusted to the lightness mask in global mode
    chroma = chroma_mask(
        metrics.chroma, chroma_mode, seed=kmeans_seed,
        flat_foreground=lum_mode is LuminanceMode.GLOBAL,
    )
    fused = fuse_masks(lum, chroma)

    logger.debug(
        "Fusion (%s/%s): luminance %d px, chroma %d px, fused %d px",
        lum_mode.value, chroma_mode.value,
        int(np.count_nonzero(lum)), int(np.count_nonzero(chroma)), int(np.count_nonzero(fused)),
    )
    return FusionOutputs(lum_mask=lum, chroma_mask=chroma, fused=fused)


def run_watershed(
    image: np.ndarray,
    fused: np.ndarray,
    fg_percentile: float = 0.65,
    min_area: Optional[int] = None,
    strategy: Optional[FloodStrategy] = None,
) -> WatershedOutputs:
    """
    Seed, grow and filter.

    Args:
        image: BGR uint8 image the fused mask was computed from
        fused: Fused binary mask (0/255)
        fg_percentile: Distance percentile that separates confident cores
        min_area: Smallest instance kept; None uses max(64, W*H/10000)
        strategy: Flood implementation, OpenCV watershed when None

    Raises:
        InvalidInputError: On a bad image, a non-binary mask or a shape mismatch
    """
    validate_image(image)
    if fused is None or not isinstance(fused, np.ndarray) or fused.shape != image.shape[:2]:
        shape = getattr(fused, "shape", None)
        raise InvalidInputError(f"Fused mask shape {shape} does not match image shape {image.shape[:2]}")

    markers = make_seeds(fused, fg_percentile, image_shape=image.shape)
    grown = grow_regions(image, markers, strategy)
    seg_mask, instances = filter_instances(grown, min_area)
    return WatershedOutputs(seg_mask=seg_mask, markers=grown, instances=instances)


def run_pill_count(
    image: np.ndarray,
    config: Optional[PipelineConfig] = None,
    strategy: Optional[FloodStrategy] = None,
) -> PillCountResult:
    """
    Run the whole pipeline on one image.

    A result with zero instances is valid; see PillCountResult.raise_if_empty
    for callers that need at least one object.
    """
    if config is None:
        config = PipelineConfig()

    fusion = fused_mask_for_watershed(
        image,
        lum_mode=config.lum_mode,
        chroma_mode=config.chroma_mode,
        tile_grid=config.tile_grid,
        clip_min=config.clip_min,
        clip_max=config.clip_max,
        kmeans_seed=config.kmeans_seed,
    )
    ws = run_watershed(image, fusion.fused, config.fg_percentile, config.min_area, strategy)

    logger.info("Counted %d objects (config %s)", len(ws.instances), config.name)
    return PillCountResult(fusion=fusion, watershed=ws, config=config)


def _calculate_stats(mask: np.ndarray, instances: List[Instance]) -> Dict:
    """Summary statistics for a segmentation result."""
    foreground_pixels = int(np.count_nonzero(mask))
    total_pixels = mask.size
    areas = [inst.area for inst in instances]

    return {
        "num_instances": len(instances),
        "area_pixels": foreground_pixels,
        "foreground_ratio": round(foreground_pixels / total_pixels, 4) if total_pixels > 0 else 0,
        "avg_instance_area": round(float(np.mean(areas)), 2) if areas else 0,
        "min_instance_area": min(areas) if areas else 0,
        "max_instance_area": max(areas) if areas else 0,
    }
