"""
I/O utilities for camera intrinsics, 2D-3D matches and localized poses.

Everything is stored as NumPy .npz archives.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from sfm_localizer.camera.intrinsics import PinholeIntrinsics
from sfm_localizer.geometry.pose import Pose3
from sfm_localizer.localization.data_structures import MatchData


def save_calibration(
    output_path: str,
    K: np.ndarray,
    dist_coeffs: np.ndarray,
    image_size: Tuple[int, int] = (0, 0),
) -> None:
    """
    Save camera intrinsics and distortion coefficients to a .npz file.

    Args:
        output_path: Path where the calibration data will be saved (.npz file).
        K: Intrinsic camera matrix (3x3).
        dist_coeffs: Distortion coefficients array.
        image_size: (width, height) of the calibrated images.
    """
    np.savez(
        output_path,
        K=K,
        dist_coeffs=dist_coeffs,
        image_size=np.asarray(image_size, dtype=int),
    )


def load_calibration(
    input_path: str,
) -> tuple[np.ndarray, np.ndarray, Optional[Tuple[int, int]]]:
    """
    Load camera intrinsics and distortion coefficients from a .npz file.

    Args:
        input_path: Path to the .npz file containing calibration data.

    Returns:
        Tuple of (K, dist_coeffs, image_size) where:
        - K: Intrinsic camera matrix (3x3).
        - dist_coeffs: Distortion coefficients array.
        - image_size: (width, height) or None if the file does not store it.
    """
    with np.load(input_path) as data:
        K = data["K"]
        dist_coeffs = data["dist_coeffs"]
        image_size = None
        if "image_size" in data.files:
            image_size = tuple(int(v) for v in data["image_size"])
    return K, dist_coeffs, image_size


def load_intrinsics(
    input_path: str,
    image_size: Optional[Tuple[int, int]] = None,
) -> PinholeIntrinsics:
    """
    Load a calibration file as PinholeIntrinsics.

    Args:
        input_path: Path to a file written by save_calibration.
        image_size: Overrides the image size stored in the file.
    """
    K, dist_coeffs, stored_size = load_calibration(input_path)
    size = image_size or stored_size or (0, 0)
    return PinholeIntrinsics.from_matrix(K, dist_coeffs, size)


def save_match_data(output_path: str, match_data: MatchData) -> None:
    """
    Serialize 2D-3D correspondences (and any resection output) to a .npz file.

    Args:
        output_path: Path where the matches will be saved (.npz file).
        match_data: MatchData to save.
    """
    np.savez(
        output_path,
        pt2d=match_data.pt2d,
        pt3d=match_data.pt3d,
        desc_types=np.array([d.value for d in match_data.desc_types], dtype=str),
        max_iteration=match_data.max_iteration,
        error_max=match_data.error_max,
        inliers=match_data.inliers,
        projection_matrix=match_data.projection_matrix,
    )


def load_match_data(input_path: str) -> MatchData:
    """
    Load 2D-3D correspondences from a .npz file.

    Only `pt2d` and `pt3d` are required; the other fields fall back to the
    MatchData defaults.

    Args:
        input_path: Path to the .npz file.

    Returns:
        MatchData ready for localization.
    """
    with np.load(input_path) as data:
        kwargs = {"pt2d": data["pt2d"], "pt3d": data["pt3d"]}
        if "desc_types" in data.files:
            kwargs["desc_types"] = [str(d) for d in data["desc_types"]]
        if "max_iteration" in data.files:
            kwargs["max_iteration"] = int(data["max_iteration"])
        if "error_max" in data.files:
            kwargs["error_max"] = float(data["error_max"])
        if "inliers" in data.files:
            kwargs["inliers"] = data["inliers"]
        if "projection_matrix" in data.files:
            kwargs["projection_matrix"] = data["projection_matrix"]
    return MatchData(**kwargs)


def save_pose(output_path: str, pose: Pose3, match_data: Optional[MatchData] = None) -> None:
    """
    Save a localized pose to a .npz file.

    Args:
        output_path: Path where the pose will be saved (.npz file).
        pose: Camera pose.
        match_data: Optional resection output stored alongside the pose
            (inliers, threshold, projection matrix).
    """
    arrays = {"R": pose.R, "C": pose.C, "t": pose.translation}
    if match_data is not None:
        arrays.update(
            inliers=match_data.inliers,
            error_max=match_data.error_max,
            projection_matrix=match_data.projection_matrix,
        )
    np.savez(output_path, **arrays)


__all__ = [
    "save_calibration",
    "load_calibration",
    "load_intrinsics",
    "save_match_data",
    "load_match_data",
    "save_pose",
]
