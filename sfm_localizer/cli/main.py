"""
Command-line interface for single-image localization.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import numpy as np

from sfm_localizer.io.calib_io import load_intrinsics, load_match_data, save_pose
from sfm_localizer.localization.localizer import (
    ERobustEstimator,
    localize,
    refine_pose,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Localize an image from 2D-3D correspondences"
    )
    parser.add_argument(
        "--matches",
        type=str,
        required=True,
        help="Path to a .npz file with pt2d (N, 2), pt3d (N, 3) and optional desc_types",
    )
    parser.add_argument(
        "--calibration",
        type=str,
        default=None,
        help="Path to a calibration .npz file (K, dist_coeffs). Omit if the camera is uncalibrated",
    )
    parser.add_argument(
        "--image-size",
        type=int,
        nargs=2,
        required=True,
        metavar=("WIDTH", "HEIGHT"),
        help="Image size in pixels",
    )
    parser.add_argument(
        "--estimator",
        type=str,
        default=ERobustEstimator.ACRANSAC.value,
        choices=[e.value for e in ERobustEstimator],
        help="Robust estimator for calibrated resection (default: acransac)",
    )
    parser.add_argument(
        "--error-max",
        type=float,
        default=None,
        help="Inlier threshold in pixels (default: value stored in the matches file, or estimated automatically)",
    )
    parser.add_argument(
        "--max-iteration",
        type=int,
        default=None,
        help="Maximum number of AC-RANSAC iterations (default: value stored in the matches file or 4096)",
    )
    parser.add_argument(
        "--refine-pose",
        action="store_true",
        help="Refine the pose by bundle adjustment on the inliers",
    )
    parser.add_argument(
        "--refine-intrinsics",
        action="store_true",
        help="Also refine the intrinsics (requires --calibration)",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed of the random sampler",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Path of the .npz file receiving the pose",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print debug logs",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Usage:
        sfm-localize --matches matches.npz \\
                     --calibration calibration.npz \\
                     --image-size 1920 1080 \\
                     --estimator loransac \\
                     --refine-pose \\
                     --output pose.npz
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    image_size = (args.image_size[0], args.image_size[1])

    print(f"Loading matches from {args.matches}")
    match_data = load_match_data(args.matches)
    if args.error_max is not None:
        match_data.error_max = args.error_max
    if args.max_iteration is not None:
        match_data.max_iteration = args.max_iteration
    print(f"Loaded {match_data.num_correspondences} 2D-3D correspondences")

    intrinsics = None
    if args.calibration is not None:
        intrinsics = load_intrinsics(args.calibration, image_size)
        print(f"Camera intrinsics: {intrinsics}")
    elif args.refine_intrinsics:
        print("Error: --refine-intrinsics requires --calibration")
        return 2

    rng = np.random.default_rng(args.seed)
    estimator = ERobustEstimator.from_string(args.estimator)

    success, pose = localize(image_size, intrinsics, match_data, estimator, rng=rng)
    if not success:
        print(
            "Error: localization failed "
            f"({match_data.num_inliers} inliers, threshold {match_data.error_max:.3f}px)"
        )
        return 1

    print(
        f"Localized with {match_data.num_inliers}/{match_data.num_correspondences} "
        f"inliers, threshold {match_data.error_max:.3f}px"
    )

    if args.refine_pose or args.refine_intrinsics:
        if intrinsics is None:
            print("Skipping refinement: no calibration available")
        else:
            refined, refined_pose = refine_pose(
                intrinsics,
                pose,
                match_data,
                refine_pose=args.refine_pose,
                refine_intrinsic=args.refine_intrinsics,
            )
            if not refined:
                print("Error: pose refinement failed")
                return 1
            pose = refined_pose
            if args.refine_intrinsics:
                print(f"Refined intrinsics: {intrinsics}")

    print(f"Camera rotation R:\n{pose.R}")
    print(f"Camera center C: {pose.C}")

    if args.output is not None:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        save_pose(str(output_path), pose, match_data)
        print(f"Pose saved to {output_path}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
