#!/usr/bin/env python3
"""
End-to-end checks of the pill counting pipeline on synthetic images
"""

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from pillseg import (
    DegenerateInputError,
    InvalidInputError,
    PipelineConfig,
    fused_mask_for_watershed,
    priority_flood,
    run_pill_count,
    run_watershed,
    watershed_flood,
)


def create_black_squares():
    """Two separated 20x20 black squares on a white 100x100 canvas"""
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (20, 40), (39, 59), (0, 0, 0), -1)
    cv2.rectangle(img, (60, 40), (79, 59), (0, 0, 0), -1)
    return img


def create_touching_squares():
    """A red and a blue 20x20 square sharing an edge (40x20 block)"""
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (30, 40), (49, 59), (0, 0, 255), -1)
    cv2.rectangle(img, (50, 40), (69, 59), (255, 0, 0), -1)
    return img


def test_two_separated_squares():
    result = run_pill_count(create_black_squares(), PipelineConfig(lum_mode="global"))

    assert result.count == 2
    boxes = sorted(result.boxes)
    for (x, y, w, h), expected_x in zip(boxes, (20, 60)):
        assert abs(x - expected_x) <= 2
        assert abs(y - 40) <= 2
        assert 18 <= w <= 22
        assert 18 <= h <= 22


def test_touching_squares_split_by_colour():
    config = PipelineConfig(lum_mode="adaptive", chroma_mode="kmeans")
    result = run_pill_count(create_touching_squares(), config)

    assert result.count == 2
    (left, _, _, _), (right, _, right_w, _) = sorted(result.boxes)
    assert left < 50
    assert right + right_w > 50


def create_touching_discs(gap=58, radius=30, color=(0, 0, 255)):
    """Two same-colour discs whose centres are gap px apart on a white 200x200 canvas"""
    img = np.full((200, 200, 3), 255, dtype=np.uint8)
    cx = 100 - gap // 2
    cv2.circle(img, (cx, 100), radius, color, -1)
    cv2.circle(img, (cx + gap, 100), radius, color, -1)
    return img


@pytest.mark.parametrize("strategy", [watershed_flood, priority_flood])
def test_touching_discs_of_same_colour_split_by_seeds(strategy):
    config = PipelineConfig(lum_mode="global", chroma_mode="otsu")
    result = run_pill_count(create_touching_discs(), config, strategy=strategy)

    assert result.count == 2
    left, right = sorted(result.boxes)
    assert left[0] < 70 and right[0] > 70
    for _, _, w, h in result.boxes:
        assert w <= 66 and h <= 66


def test_default_config_never_counts_an_achromatic_tray():
    result = run_pill_count(create_black_squares())

    frame = 100 * 100
    assert all(w * h < frame // 4 for _, _, w, h in result.boxes)
    assert not result.fusion.chroma_mask.any()


def test_all_white_image_has_no_objects():
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    result = run_pill_count(img)

    assert not result.fusion.fused.any()
    assert np.all(result.watershed.markers == 1)
    assert result.count == 0
    assert result.is_empty
    assert not result.watershed.seg_mask.any()
    with pytest.raises(DegenerateInputError):
        result.raise_if_empty()


def test_non_empty_result_passes_strict_check():
    result = run_pill_count(create_black_squares(), PipelineConfig(lum_mode="global"))
    assert result.raise_if_empty() is result


def test_kmeans_runs_are_deterministic():
    img = create_touching_squares()
    config = PipelineConfig(chroma_mode="kmeans", kmeans_seed=7)

    first = run_pill_count(img, config)
    second = run_pill_count(img, config)

    assert np.array_equal(first.fusion.fused, second.fusion.fused)
    assert np.array_equal(first.watershed.markers, second.watershed.markers)
    assert first.boxes == second.boxes


def test_priority_flood_end_to_end():
    result = run_pill_count(create_black_squares(), PipelineConfig(lum_mode="global"), strategy=priority_flood)

    assert result.count == 2
    assert not (result.watershed.markers == 0).any()


def test_fusion_masks_are_binary():
    fusion = fused_mask_for_watershed(create_touching_squares(), "adaptive", "kmeans")
    for mask in (fusion.lum_mask, fusion.chroma_mask, fusion.fused):
        assert mask.dtype == np.uint8
        assert set(np.unique(mask)) <= {0, 255}


def test_grown_markers_have_no_unknown_pixels():
    result = run_pill_count(create_touching_squares(), PipelineConfig(chroma_mode="kmeans"))
    markers = result.watershed.markers
    assert not (markers == 0).any()
    assert markers.min() >= -1


def test_instances_respect_min_area():
    config = PipelineConfig(lum_mode="global", min_area=500)
    result = run_pill_count(create_black_squares(), config)

    # Each square is at most 22x22, so nothing survives a 500 px floor
    assert result.count == 0
    assert all(inst.area >= 500 for inst in result.watershed.instances)


def test_stats_summary():
    result = run_pill_count(create_black_squares(), PipelineConfig(lum_mode="global"))
    stats = result.stats

    assert stats["num_instances"] == 2
    assert stats["area_pixels"] > 0
    assert 0 < stats["foreground_ratio"] < 0.2
    assert stats["min_instance_area"] <= stats["avg_instance_area"] <= stats["max_instance_area"]


@pytest.mark.parametrize("image", [
    None,
    np.zeros((0, 0, 3), dtype=np.uint8),
    np.zeros((50, 50), dtype=np.uint8),
    np.zeros((50, 50, 4), dtype=np.uint8),
    np.zeros((50, 50, 3), dtype=np.float32),
])
def test_invalid_images_rejected(image):
    with pytest.raises(InvalidInputError):
        run_pill_count(image)


def test_mask_shape_mismatch_rejected():
    img = create_black_squares()
    with pytest.raises(InvalidInputError):
        run_watershed(img, np.zeros((50, 50), dtype=np.uint8))


def test_non_binary_mask_rejected():
    img = create_black_squares()
    mask = np.ones((100, 100), dtype=np.uint8)
    with pytest.raises(InvalidInputError):
        run_watershed(img, mask)


def test_unknown_mode_rejected():
    with pytest.raises(InvalidInputError):
        fused_mask_for_watershed(create_black_squares(), lum_mode="sauvola")
    with pytest.raises(InvalidInputError):
        fused_mask_for_watershed(create_black_squares(), chroma_mode="gmm")
