"""
Shared data structures for single-image localization.

These dataclasses are intentionally simple containers used across:
- robust resection
- pose refinement
- calibration / match I/O
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List

import numpy as np

from sfm_localizer.camera.intrinsics import IntrinsicsBase
from sfm_localizer.geometry.pose import Pose3
from sfm_localizer.robust.support import DescriberType


@dataclass
class MatchData:
    """
    2D-3D correspondences of one image and the outcome of its resection.

    Created by the caller for one localization attempt and filled in place by
    `localize`. `error_max`, `inliers` are overwritten by every call;
    `projection_matrix` only when the resection succeeds.
    """

    # Observed image points (N, 2) in pixel coordinates.
    pt2d: np.ndarray
    # World points (N, 3), aligned with `pt2d` by row index.
    pt3d: np.ndarray
    # Describer type of each correspondence (N,).
    desc_types: List[DescriberType] = field(default_factory=list)
    # Hard cap on the number of AC-RANSAC sampling rounds.
    max_iteration: int = 4096
    # Inlier threshold in pixels; inf lets the estimator infer it.
    error_max: float = math.inf
    # Indices of the inlier correspondences.
    inliers: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=int))
    # Best-fit projection matrix (3x4) in pixel units.
    projection_matrix: np.ndarray = field(default_factory=lambda: np.zeros((3, 4)))

    def __post_init__(self) -> None:
        self.pt2d = np.asarray(self.pt2d, dtype=np.float64).reshape(-1, 2)
        self.pt3d = np.asarray(self.pt3d, dtype=np.float64).reshape(-1, 3)
        if not self.desc_types:
            self.desc_types = [DescriberType.UNKNOWN] * len(self.pt2d)
        self.desc_types = [DescriberType.parse(d) for d in self.desc_types]
        self.inliers = np.asarray(self.inliers, dtype=int).ravel()

        if not (len(self.pt2d) == len(self.pt3d) == len(self.desc_types)):
            raise ValueError(
                "Correspondence arrays must have equal length: "
                f"pt2d={len(self.pt2d)}, pt3d={len(self.pt3d)}, "
                f"desc_types={len(self.desc_types)}"
            )

    @property
    def num_correspondences(self) -> int:
        return len(self.pt2d)

    @property
    def num_inliers(self) -> int:
        return len(self.inliers)

    def inlier_pt2d(self) -> np.ndarray:
        return self.pt2d[self.inliers]

    def inlier_pt3d(self) -> np.ndarray:
        return self.pt3d[self.inliers]


@dataclass
class Observation:
    """
    A 2D observation of a landmark in a particular view.

    `x` is (2,) numpy array in pixel coordinates.
    """

    view_id: int
    x: np.ndarray


@dataclass
class Landmark:
    """A single 3D point observed once in the refined view."""

    id: int
    # 3D location (X, Y, Z) in world coordinates.
    X: np.ndarray
    observation: Observation


@dataclass
class MinimalScene:
    """
    Throwaway one-view scene handed to the bundle adjuster.

    Holds its own copy of the pose and a clone of the intrinsics, never the
    caller's objects.
    """

    pose: Pose3
    intrinsics: IntrinsicsBase
    landmarks: List[Landmark] = field(default_factory=list)
    view_id: int = 0

    def points3d(self) -> np.ndarray:
        if not self.landmarks:
            return np.zeros((0, 3))
        return np.array([lm.X for lm in self.landmarks], dtype=np.float64)

    def observations2d(self) -> np.ndarray:
        if not self.landmarks:
            return np.zeros((0, 2))
        return np.array([lm.observation.x for lm in self.landmarks], dtype=np.float64)


__all__ = ["MatchData", "Observation", "Landmark", "MinimalScene"]
