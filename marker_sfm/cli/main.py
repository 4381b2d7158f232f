"""
Command-line interface for the SfM pipeline.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from marker_sfm.io.annotations_io import load_annotations
from marker_sfm.io.scene_io import save_points_txt, save_scene_npz
from marker_sfm.sfm_inc.config import SfMConfig
from marker_sfm.sfm_inc.errors import SfMError
from marker_sfm.sfm_inc.incremental_sfm import run_incremental_sfm
from marker_sfm.sfm_inc.transform import GlobalTransform
from marker_sfm.viz.plotly_viz import plot_reconstruction

# CLI flag dest -> SfMConfig field
CONFIG_FLAGS = {
    "min_common_points": "min_common_points",
    "max_reprojection_error": "max_reprojection_error",
    "min_triangulation_angle": "min_triangulation_angle_deg",
    "min_inliers_for_camera": "min_inliers_for_camera",
    "min_points_for_resection": "min_points_for_resection",
    "max_evaluations": "max_evaluations",
    "max_iterations": "max_iterations",
    "seed": "random_seed",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Structure-from-Motion from manually annotated, named 2D points"
    )
    parser.add_argument(
        "--annotations",
        type=str,
        required=True,
        help="Path to the JSON annotation file",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory for the point cloud and scene files (default: output)",
    )
    parser.add_argument(
        "--min-common-points",
        type=int,
        default=None,
        help="Minimum shared points for the seed image pair (default: 5)",
    )
    parser.add_argument(
        "--max-reprojection-error",
        type=float,
        default=None,
        help="Maximum reprojection error in pixels for accepting a point (default: 6.0)",
    )
    parser.add_argument(
        "--min-triangulation-angle",
        type=float,
        default=None,
        help="Minimum ray angle in degrees for triangulating a point (default: 3.0)",
    )
    parser.add_argument(
        "--min-inliers-for-camera",
        type=int,
        default=None,
        help="Minimum PnP inliers for registering a camera (default: 6)",
    )
    parser.add_argument(
        "--min-points-for-resection",
        type=int,
        default=None,
        help="Minimum known points an image must see to be resectioned (default: 4)",
    )
    parser.add_argument(
        "--skip-incremental-ba",
        action="store_true",
        help="Only run bundle adjustment once, after all images are registered",
    )
    parser.add_argument(
        "--max-evaluations",
        type=int,
        default=None,
        help="Residual evaluation cap for incremental bundle adjustment (default: 200)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Iteration cap for incremental bundle adjustment (default: 200)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed OpenCV's RANSAC for reproducible runs",
    )
    parser.add_argument(
        "--origin-point",
        type=str,
        default=None,
        help="Name of a reconstructed point to translate to the origin",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Generate HTML visualization of the reconstruction",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> SfMConfig:
    overrides = {
        field: getattr(args, dest)
        for dest, field in CONFIG_FLAGS.items()
        if getattr(args, dest) is not None
    }
    if args.skip_incremental_ba:
        overrides["enable_incremental_ba"] = False
    return SfMConfig.from_dict(overrides)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point for the SfM pipeline.

    Usage:
        marker-sfm --annotations points.json --output-dir out/ --visualize
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = config_from_args(args)
        images = load_annotations(args.annotations)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print(f"Loaded {len(images)} annotated images from {args.annotations}")

    try:
        result = run_incremental_sfm(images, config)
    except SfMError as e:
        print(f"Error: reconstruction failed: {e}")
        print(
            "Annotate more shared points between at least two images, "
            "or lower --min-common-points."
        )
        return 1

    if args.origin_point is not None:
        if not result.reconstruction.has_point(args.origin_point):
            print(f"Error: point {args.origin_point!r} was not reconstructed")
            return 1
        origin = result.reconstruction.point(args.origin_point).xyz
        result.global_transform = GlobalTransform(translation=-origin)

    num_cams = len(result.registered_images)
    num_pts = len(result.reconstruction.points)
    print(f"SfM reconstructed {num_cams} cameras and {num_pts} 3D points")
    if result.skipped_images:
        print(f"Skipped {len(result.skipped_images)} image(s): {', '.join(result.skipped_images)}")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    points_path = output_dir / "points.txt"
    try:
        save_points_txt(str(points_path), result.points())
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Points saved to {points_path}")

    scene_path = output_dir / "scene.npz"
    save_scene_npz(str(scene_path), result)
    print(f"Scene saved to {scene_path}")

    if args.visualize:
        fig = plot_reconstruction(result)
        viz_path = output_dir / "reconstruction.html"
        fig.write_html(str(viz_path))
        print(f"Visualization saved to {viz_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
