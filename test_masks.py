"""
Tests for colour metrics and the luminance / chroma / fused masks
"""

import sys
from pathlib import Path

import cv2
import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from pillseg.color_metrics import (
    chroma_magnitude,
    extract_color_metrics,
    lightness_channel,
    normalize_to_u8,
    validate_image,
)
from pillseg.errors import InvalidInputError
from pillseg.masks import (
    adaptive_offset,
    auto_block_size,
    auto_clip_limit,
    chroma_mask,
    ensure_odd,
    fuse_masks,
    intersect_masks,
    luminance_mask,
)


def create_red_square():
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (30, 30), (69, 69), (0, 0, 255), -1)
    return img


def create_black_squares():
    img = np.full((100, 100, 3), 255, dtype=np.uint8)
    cv2.rectangle(img, (20, 40), (39, 59), (0, 0, 0), -1)
    cv2.rectangle(img, (60, 40), (79, 59), (0, 0, 0), -1)
    return img


def random_mask(seed, shape=(60, 80)):
    rng = np.random.default_rng(seed)
    return (rng.random(shape) > 0.5).astype(np.uint8) * 255


# ---------- Colour metrics ----------

def test_lightness_of_white_and_black():
    img = create_black_squares()
    lightness = lightness_channel(img)

    assert lightness.dtype == np.uint8
    assert lightness.shape == (100, 100)
    assert lightness[0, 0] == 255
    assert lightness[50, 30] == 0


def test_chroma_separates_colour_from_white():
    chroma = chroma_magnitude(create_red_square())

    assert chroma.dtype == np.float32
    assert chroma[0, 0] < 1.0
    assert chroma[50, 50] > 50.0
    assert chroma.min() >= 0


def test_extract_color_metrics_shapes():
    metrics = extract_color_metrics(create_red_square())
    assert metrics.lightness.shape == metrics.chroma.shape == (100, 100)


@pytest.mark.parametrize("image", [
    None,
    [[0, 0, 0]],
    np.zeros((0, 10, 3), dtype=np.uint8),
    np.zeros((10, 10), dtype=np.uint8),
    np.zeros((10, 10, 3), dtype=np.uint16),
])
def test_validate_image_rejects(image):
    with pytest.raises(InvalidInputError):
        validate_image(image)


def test_normalize_to_u8():
    ramp = np.linspace(5.0, 25.0, 50, dtype=np.float32).reshape(5, 10)
    out = normalize_to_u8(ramp)
    assert out.min() == 0 and out.max() == 255
    assert not normalize_to_u8(np.full((4, 4), 3.0, dtype=np.float32)).any()


# ---------- Parameter helpers ----------

def test_block_size_and_offset():
    assert auto_block_size((100, 100)) == 15
    assert auto_block_size((480, 640, 3)) == 61
    assert ensure_odd(14) == 15
    assert ensure_odd(15) == 15
    assert adaptive_offset(np.zeros((10, 10), dtype=np.uint8)) == 2.0
    assert adaptive_offset(np.tile(np.array([0, 255], dtype=np.uint8), (10, 5))) == pytest.approx(6.375)


def test_clip_limit_scales_with_contrast():
    flat = np.full((20, 20), 128, dtype=np.uint8)
    assert auto_clip_limit(flat) == 1.5

    checker = np.indices((20, 20)).sum(axis=0) % 2 * 255
    assert auto_clip_limit(checker.astype(np.uint8)) == 5.0


# ---------- Luminance mask ----------

@pytest.mark.parametrize("mode", ["adaptive", "global"])
def test_luminance_mask_is_binary(mode):
    lightness = lightness_channel(create_black_squares())
    mask = luminance_mask(lightness, mode)

    assert mask.dtype == np.uint8
    assert mask.shape == lightness.shape
    assert set(np.unique(mask)) <= {0, 255}


def test_global_mode_takes_border_as_background():
    mask = luminance_mask(lightness_channel(create_black_squares()), "global")
    assert mask[0, 0] == 0
    assert mask[50, 30] == 255
    assert mask[50, 70] == 255


def test_otsu_alias_for_global_mode():
    lightness = lightness_channel(create_black_squares())
    assert np.array_equal(luminance_mask(lightness, "otsu"), luminance_mask(lightness, "global"))


def test_flat_lightness_gives_empty_mask():
    flat = np.full((40, 40), 200, dtype=np.uint8)
    assert not luminance_mask(flat, "global").any()
    assert not luminance_mask(flat, "adaptive").any()


def test_luminance_mask_rejects_bad_input():
    with pytest.raises(InvalidInputError):
        luminance_mask(np.zeros((10, 10), dtype=np.uint8), "sauvola")
    with pytest.raises(InvalidInputError):
        luminance_mask(np.zeros((10, 10), dtype=np.float32), "global")
    with pytest.raises(InvalidInputError):
        luminance_mask(np.zeros((10, 10, 3), dtype=np.uint8), "global")


# ---------- Chroma mask ----------

@pytest.mark.parametrize("mode", ["otsu", "kmeans"])
def test_chroma_mask_finds_coloured_square(mode):
    mask = chroma_mask(chroma_magnitude(create_red_square()), mode)

    assert set(np.unique(mask)) <= {0, 255}
    assert mask[50, 50] == 255
    assert mask[5, 5] == 0


def test_achromatic_scene_passes_everything():
    chroma = chroma_magnitude(create_black_squares())
    assert np.all(chroma_mask(chroma, "otsu") == 255)
    assert np.all(chroma_mask(chroma, "kmeans") == 255)


def test_achromatic_scene_can_pass_nothing():
    chroma = chroma_magnitude(create_black_squares())
    assert not chroma_mask(chroma, "otsu", flat_foreground=False).any()
    assert not chroma_mask(chroma, "kmeans", flat_foreground=False).any()


def test_kmeans_seed_is_reproducible():
    chroma = chroma_magnitude(create_red_square())
    assert np.array_equal(chroma_mask(chroma, "kmeans", seed=3), chroma_mask(chroma, "kmeans", seed=3))


def test_chroma_mask_rejects_unknown_mode():
    with pytest.raises(InvalidInputError):
        chroma_mask(np.zeros((10, 10), dtype=np.float32), "gmm")


# ---------- Fusion ----------

def test_intersection_is_subset_of_both():
    a = random_mask(0)
    b = random_mask(1)
    out = intersect_masks(a, b)

    assert set(np.unique(out)) <= {0, 255}
    assert not out[a == 0].any()
    assert not out[b == 0].any()
    assert np.array_equal(out == 255, (a == 255) & (b == 255))


def test_intersection_accepts_boolean_masks():
    a = random_mask(2) > 0
    out = intersect_masks(a, np.ones_like(a))
    assert np.array_equal(out > 0, a)


def test_fuse_masks_closes_pinholes():
    lum = np.zeros((40, 40), dtype=np.uint8)
    lum[10:30, 10:30] = 255
    lum[20, 20] = 0
    chroma = np.full((40, 40), 255, dtype=np.uint8)

    fused = fuse_masks(lum, chroma)
    assert fused[20, 20] == 255
    assert fused[0, 0] == 0


def test_fusion_rejects_mismatched_or_non_binary_masks():
    with pytest.raises(InvalidInputError):
        intersect_masks(random_mask(0, (10, 10)), random_mask(1, (10, 12)))
    with pytest.raises(InvalidInputError):
        intersect_masks(np.ones((10, 10), dtype=np.uint8), random_mask(1, (10, 10)))
    with pytest.raises(InvalidInputError):
        intersect_masks(random_mask(0, (10, 10)).astype(np.int32), random_mask(1, (10, 10)))
