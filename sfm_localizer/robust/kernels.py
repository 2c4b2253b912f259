"""
Resection kernels for the robust estimators.

A kernel owns the (normalized) correspondences and exposes what the
estimators need: minimal-sample fitting, squared residuals in normalized
units, the a-contrario constants, and how to map a model and an error back to
pixel units.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from sfm_localizer.geometry.resection import (
    P3PSolver,
    SixPointResectionSolver,
    squared_residuals,
)


def preconditioner_from_image_size(width: int, height: int) -> np.ndarray:
    """
    Normalization matrix mapping the image to a unit-area frame centered on
    the image center.

    Args:
        width, height: Image size in pixels.

    Returns:
        3x3 normalization matrix.
    """
    norm = 1.0 / np.sqrt(float(width * height))
    return np.array(
        [
            [norm, 0.0, -0.5 * width * norm],
            [0.0, norm, -0.5 * height * norm],
            [0.0, 0.0, 1.0],
        ]
    )


def apply_transformation_to_points(pts: np.ndarray, T: np.ndarray) -> np.ndarray:
    ones = np.ones((pts.shape[0], 1))
    pts_h = np.hstack([pts, ones]) @ T.T
    return pts_h[:, :2] / pts_h[:, 2:3]


def _check_correspondences(pt2d: np.ndarray, pt3d: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    pt2d = np.asarray(pt2d, dtype=np.float64).reshape(-1, 2)
    pt3d = np.asarray(pt3d, dtype=np.float64).reshape(-1, 3)
    if len(pt2d) != len(pt3d):
        raise ValueError(
            f"2D/3D correspondence count mismatch: {len(pt2d)} vs {len(pt3d)}"
        )
    return pt2d, pt3d


class ResectionKernel:
    """Uncalibrated resection: six-point solver on image-size normalized points."""

    solver = SixPointResectionSolver
    MINIMUM_SAMPLES = SixPointResectionSolver.MINIMUM_SAMPLES
    MAX_MODELS = SixPointResectionSolver.MAX_MODELS

    def __init__(self, pt2d: np.ndarray, width: int, height: int, pt3d: np.ndarray):
        pt2d, self.pt3d = _check_correspondences(pt2d, pt3d)
        if width <= 0 or height <= 0:
            raise ValueError(f"Image size must be positive, got {width}x{height}")
        self.N = preconditioner_from_image_size(width, height)
        self.pt2d = apply_transformation_to_points(pt2d, self.N)
        self.logalpha0 = np.log10(np.pi)
        # Residuals are squared point-to-point distances.
        self.mult_error = 1.0

    @property
    def num_samples(self) -> int:
        return len(self.pt2d)

    @property
    def normalizer2(self) -> np.ndarray:
        return self.N

    def fit(self, sample: Sequence[int]) -> List[np.ndarray]:
        sample = np.asarray(sample)
        return self.solver.solve(self.pt2d[sample], self.pt3d[sample])

    def errors(self, model: np.ndarray) -> np.ndarray:
        return squared_residuals(model, self.pt2d, self.pt3d)

    def unnormalize(self, model: np.ndarray) -> np.ndarray:
        return np.linalg.solve(self.N, model)

    def unnormalize_error(self, value: float) -> float:
        return float(np.sqrt(value) / self.N[0, 0])


class ResectionKernelK(ResectionKernel):
    """Calibrated resection: P3P on points normalized by the inverse of K."""

    solver = P3PSolver
    MINIMUM_SAMPLES = P3PSolver.MINIMUM_SAMPLES
    MAX_MODELS = P3PSolver.MAX_MODELS

    def __init__(self, pt2d: np.ndarray, pt3d: np.ndarray, K: np.ndarray):
        pt2d, self.pt3d = _check_correspondences(pt2d, pt3d)
        self.K = np.asarray(K, dtype=np.float64)
        self.N = np.linalg.inv(self.K)
        self.pt2d = apply_transformation_to_points(pt2d, self.N)
        self.logalpha0 = np.log10(np.pi)
        self.mult_error = 1.0

    def unnormalize(self, model: np.ndarray) -> np.ndarray:
        return self.K @ model


class ResectionKernelLoRansacK(ResectionKernelK):
    """
    Calibrated resection for LO-RANSAC.

    Hypotheses come from P3P; the six-point solver refines a model from an
    arbitrary number of inliers.
    """

    solver_ls = SixPointResectionSolver
    MINIMUM_LS_SAMPLES = SixPointResectionSolver.MINIMUM_SAMPLES

    def fit_ls(self, inliers: Sequence[int]) -> List[np.ndarray]:
        inliers = np.asarray(inliers)
        if len(inliers) < self.MINIMUM_LS_SAMPLES:
            return []
        return self.solver_ls.solve(self.pt2d[inliers], self.pt3d[inliers])


__all__ = [
    "preconditioner_from_image_size",
    "apply_transformation_to_points",
    "ResectionKernel",
    "ResectionKernelK",
    "ResectionKernelLoRansacK",
]
