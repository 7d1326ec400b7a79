#!/usr/bin/env python3
"""
Count pills in one or more photographs and write boxed result images.

    python count_pills.py                       # the two sample images
    python count_pills.py tray.jpg --preset auto --show
"""

import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

import cv2

from image_processing import draw_boxes, load_image, save_image
from pillseg import PillCountResult, PipelineConfig, priority_flood, run_pill_count, watershed_flood
from pillseg.errors import SegmentationError
from presets import DEFAULT_PRESET, PRESETS, get_preset

logger = logging.getLogger("count_pills")

SAMPLE_IMAGES = [
    "images/blue-pills-white-bg.jpg",
    "images/red-pills-white-bg.jpg",
]

FLOOD_STRATEGIES = {
    "watershed": watershed_flood,
    "priority": priority_flood,
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Count touching pills on a plain background.")
    parser.add_argument("images", nargs="*", default=SAMPLE_IMAGES, help="input image paths")
    parser.add_argument("--preset", default=DEFAULT_PRESET,
                        help=f"auto, {', '.join(PRESETS)} (default: {DEFAULT_PRESET})")
    parser.add_argument("--lum-mode", help="adaptive | global (overrides the preset)")
    parser.add_argument("--chroma-mode", help="otsu | kmeans (overrides the preset)")
    parser.add_argument("--fg-percentile", type=float, help="seed distance percentile in (0, 1)")
    parser.add_argument("--min-area", type=int, help="smallest object area in pixels")
    parser.add_argument("--flood", choices=sorted(FLOOD_STRATEGIES), default="watershed",
                        help="region growing implementation")
    parser.add_argument("--output-dir", default="results", help="where boxed images are written")
    parser.add_argument("--workers", type=int, default=1, help="images processed concurrently")
    parser.add_argument("--show", action="store_true", help="display each boxed image")
    parser.add_argument("--save-masks", action="store_true",
                        help="also write the luminance, chroma, fused and segment masks")
    parser.add_argument("--strict", action="store_true", help="treat an image with no objects as an error")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, image) -> PipelineConfig:
    base = get_preset(args.preset, image)
    return PipelineConfig.from_params({
        "lum_mode": args.lum_mode,
        "chroma_mode": args.chroma_mode,
        "fg_percentile": args.fg_percentile,
        "min_area": args.min_area,
    }, base=base)


def save_masks(out_dir: Path, stem: str, result: PillCountResult) -> None:
    """Write the intermediate masks as <stem>_lum.png, _chroma, _fused and _segment."""
    masks = {
        "lum": result.fusion.lum_mask,
        "chroma": result.fusion.chroma_mask,
        "fused": result.fusion.fused,
        "segment": result.watershed.seg_mask,
    }
    for suffix, mask in masks.items():
        save_image(out_dir / f"{stem}_{suffix}.png", mask)


def process_image(path: Path, args: argparse.Namespace) -> dict:
    """Run the pipeline on one file and write its boxed image."""
    image = load_image(path)
    config = build_config(args, image)
    result = run_pill_count(image, config, strategy=FLOOD_STRATEGIES[args.flood])
    if args.strict:
        result.raise_if_empty()

    boxed = draw_boxes(image, result.boxes)
    out_path = save_image(Path(args.output_dir) / f"boxed_{path.name}", boxed)
    if args.save_masks:
        save_masks(Path(args.output_dir), path.stem, result)
    return {"path": path, "count": result.count, "boxed": boxed, "output": out_path, "config": config}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)-25s - %(levelname)-8s - %(message)s',
        datefmt='%H:%M:%S',
    )

    paths = [Path(p) for p in args.images]
    workers = max(1, args.workers)

    def run(path: Path):
        try:
            return process_image(path, args), None
        except (SegmentationError, ValueError) as e:
            return None, e

    with ThreadPoolExecutor(max_workers=workers) as pool:
        outcomes = list(pool.map(run, paths))

    failures = 0
    for path, (report, error) in zip(paths, outcomes):
        if error is not None:
            failures += 1
            print(f"{path}: error: {error}", file=sys.stderr)
            continue
        print(f"{path.stem} count: {report['count']}")
        logger.info("Boxed image written to %s (preset %s)", report["output"], report["config"].name)
        if args.show:
            cv2.imshow(f"Boxes for {path.name}", report["boxed"])

    if args.show and failures < len(paths):
        cv2.waitKey(0)
        cv2.destroyAllWindows()

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
