"""
Pill segmentation core: mask fusion and marker-controlled flood segmentation
for counting touching, similarly coloured objects on a plain background.
"""

from pillseg.config import ChromaMode, LuminanceMode, PipelineConfig
from pillseg.errors import DegenerateInputError, InvalidInputError, SegmentationError
from pillseg.segmentation import (
    FusionOutputs,
    PillCountResult,
    WatershedOutputs,
    fused_mask_for_watershed,
    run_pill_count,
    run_watershed,
)
from pillseg.watershed import Instance, priority_flood, watershed_flood

__all__ = [
    "ChromaMode",
    "DegenerateInputError",
    "FusionOutputs",
    "Instance",
    "InvalidInputError",
    "LuminanceMode",
    "PillCountResult",
    "PipelineConfig",
    "SegmentationError",
    "WatershedOutputs",
    "fused_mask_for_watershed",
    "priority_flood",
    "run_pill_count",
    "run_watershed",
    "watershed_flood",
]
