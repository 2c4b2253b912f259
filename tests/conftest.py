"""
Shared fixtures: a synthetic pinhole camera looking at random 3D points.
"""

import cv2
import numpy as np
import pytest

from sfm_localizer.camera.intrinsics import PinholeIntrinsics
from sfm_localizer.geometry.pose import Pose3
from sfm_localizer.localization.data_structures import MatchData

IMAGE_SIZE = (640, 480)


def rotation_error(R1, R2):
    """Angle (radians) of the rotation between R1 and R2."""
    cos = (np.trace(R1.T @ R2) - 1.0) / 2.0
    return float(np.arccos(np.clip(cos, -1.0, 1.0)))


def sample_points_in_view(rng, pose, n):
    """World points that project inside a 640x480 image with f=800."""
    z = rng.uniform(4.0, 8.0, n)
    x = rng.uniform(-0.35, 0.35, n) * z
    y = rng.uniform(-0.25, 0.25, n) * z
    points_cam = np.column_stack([x, y, z])
    return points_cam @ pose.R + pose.C


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def camera():
    return PinholeIntrinsics(IMAGE_SIZE[0], IMAGE_SIZE[1], 800.0, 800.0, 320.0, 240.0)


@pytest.fixture
def distorted_camera():
    return PinholeIntrinsics(
        IMAGE_SIZE[0],
        IMAGE_SIZE[1],
        800.0,
        800.0,
        320.0,
        240.0,
        dist_coeffs=[-0.08, 0.02, 0.001, -0.0005, 0.0],
    )


@pytest.fixture
def true_pose():
    R, _ = cv2.Rodrigues(np.array([0.1, -0.2, 0.05]))
    return Pose3(R, np.array([0.5, -0.3, -1.0]))


@pytest.fixture
def make_scene(rng, camera, true_pose):
    """
    Factory building MatchData for the true pose.

    Returns (match_data, inlier_indices, outlier_indices). Outliers pair a
    world point with a random pixel at least 20px from its true projection.
    """

    def _make(n_inliers, n_outliers=0, noise=0.0, desc_type="sift", intrinsics=None):
        intrinsics = intrinsics or camera
        n = n_inliers + n_outliers

        pt3d = sample_points_in_view(rng, true_pose, n)
        pt2d = intrinsics.project(true_pose.transform(pt3d))
        pt2d[:n_inliers] += rng.normal(0.0, noise, (n_inliers, 2)) if noise > 0 else 0.0

        for i in range(n_inliers, n):
            while True:
                candidate = rng.uniform([0.0, 0.0], IMAGE_SIZE)
                if np.linalg.norm(candidate - pt2d[i]) > 20.0:
                    pt2d[i] = candidate
                    break

        order = rng.permutation(n)
        pt2d = pt2d[order]
        pt3d = pt3d[order]
        is_inlier = order < n_inliers

        match_data = MatchData(pt2d=pt2d, pt3d=pt3d, desc_types=[desc_type] * n)
        return match_data, np.flatnonzero(is_inlier), np.flatnonzero(~is_inlier)

    return _make
