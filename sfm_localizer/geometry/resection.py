"""
Minimal-sample camera resection solvers and projection-matrix helpers.

Two solvers are provided:
- SixPointResectionSolver: linear DLT for the full 3x4 projection matrix.
  Works with six or more points, so it is also used as the least-squares
  solver during local optimization.
- P3PSolver: perspective-three-point for calibrated (normalized) points,
  returning up to four [R|t] hypotheses.
"""

from __future__ import annotations

from typing import List, Tuple

import cv2
import numpy as np
from scipy.linalg import rq


def normalize_points(pts: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalize points by centering and isotropic scaling.

    The mean distance to the centroid becomes sqrt(d) for d-dimensional points.

    Args:
        pts: Array of points (N, d).

    Returns:
        Tuple of (normalized_pts, T) where:
        - normalized_pts: Normalized points (N, d).
        - T: Homogeneous transformation matrix (d+1, d+1) that normalizes pts.
    """
    dim = pts.shape[1]
    mean = np.mean(pts, axis=0)
    centered = pts - mean
    scale = np.sqrt(dim) / np.mean(np.linalg.norm(centered, axis=1))
    if not np.isfinite(scale) or scale == 0:
        scale = 1.0

    T = np.eye(dim + 1)
    T[:dim, :dim] *= scale
    T[:dim, dim] = -scale * mean

    normalized_pts = centered * scale
    return normalized_pts, T


def project(P: np.ndarray, X: np.ndarray) -> np.ndarray:
    """
    Project 3D points with a 3x4 projection matrix.

    Args:
        P: Projection matrix (3, 4).
        X: 3D points (N, 3).

    Returns:
        Projected 2D points (N, 2).
    """
    X_h = np.hstack([X, np.ones((X.shape[0], 1))])
    x_h = X_h @ P.T
    return x_h[:, :2] / x_h[:, 2:3]


def squared_residuals(P: np.ndarray, pt2d: np.ndarray, pt3d: np.ndarray) -> np.ndarray:
    """
    Squared distance between observed points and the projection of their 3D points.

    Args:
        P: Projection matrix (3, 4).
        pt2d: Observed 2D points (N, 2).
        pt3d: Corresponding 3D points (N, 3).

    Returns:
        Squared reprojection errors (N,).
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        diff = project(P, pt3d) - pt2d
        errors = np.sum(diff * diff, axis=1)
    return np.where(np.isfinite(errors), errors, np.inf)


def krt_from_p(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Decompose a projection matrix P = K [R | t] (RQ decomposition, HZ A4.1.1).

    Args:
        P: Projection matrix (3, 4).

    Returns:
        Tuple of (K, R, t) where K has a positive diagonal and K[2, 2] = 1,
        R is a proper rotation and t is a (3,) translation.
    """
    K, R = rq(P[:, :3])

    # Make the diagonal of K positive.
    signs = np.sign(np.diag(K))
    signs[signs == 0] = 1.0
    S = np.diag(signs)
    K = K @ S
    R = S @ R

    t = np.linalg.solve(K, P[:, 3])

    if np.linalg.det(R) < 0:
        R = -R
        t = -t

    K = K / K[2, 2]
    return K, R, t


class SixPointResectionSolver:
    """Normalized DLT resection: full 3x4 projection matrix from >= 6 points."""

    MINIMUM_SAMPLES = 6
    MAX_MODELS = 1

    @staticmethod
    def solve(pt2d: np.ndarray, pt3d: np.ndarray) -> List[np.ndarray]:
        """
        Args:
            pt2d: 2D points (N, 2), N >= 6.
            pt3d: 3D points (N, 3).

        Returns:
            List with the estimated projection matrix (3, 4), or an empty list
            for a degenerate sample.
        """
        n = len(pt2d)
        if n < SixPointResectionSolver.MINIMUM_SAMPLES:
            raise ValueError(f"Need at least 6 point correspondences, got {n}")

        x_norm, T2 = normalize_points(pt2d)
        X_norm, T3 = normalize_points(pt3d)

        X_h = np.hstack([X_norm, np.ones((n, 1))])
        A = np.zeros((2 * n, 12))
        A[0::2, 0:4] = X_h
        A[0::2, 8:12] = -x_norm[:, 0:1] * X_h
        A[1::2, 4:8] = X_h
        A[1::2, 8:12] = -x_norm[:, 1:2] * X_h

        # Solve Ap=0 via SVD
        _, S, Vt = np.linalg.svd(A)
        if S[0] == 0 or not np.all(np.isfinite(Vt)):
            return []
        P_norm = Vt[-1].reshape(3, 4)

        # Denormalize: P = T2^-1 @ P_norm @ T3
        P = np.linalg.solve(T2, P_norm @ T3)
        return [P]


class P3PSolver:
    """Perspective-three-point solver on normalized image coordinates."""

    MINIMUM_SAMPLES = 3
    MAX_MODELS = 4

    @staticmethod
    def solve(pt2d: np.ndarray, pt3d: np.ndarray) -> List[np.ndarray]:
        """
        Args:
            pt2d: Normalized image points K^-1 x (3, 2).
            pt3d: 3D points (3, 3).

        Returns:
            Up to four [R | t] matrices (3, 4).
        """
        try:
            n_solutions, rvecs, tvecs = cv2.solveP3P(
                np.ascontiguousarray(pt3d, dtype=np.float64).reshape(-1, 1, 3),
                np.ascontiguousarray(pt2d, dtype=np.float64).reshape(-1, 1, 2),
                np.eye(3),
                None,
                flags=cv2.SOLVEPNP_P3P,
            )
        except cv2.error:
            # Degenerate (e.g. collinear) samples produce no hypothesis.
            return []

        models = []
        for rvec, tvec in zip(rvecs[:n_solutions], tvecs[:n_solutions]):
            R, _ = cv2.Rodrigues(rvec)
            Rt = np.hstack([R, np.asarray(tvec, dtype=np.float64).reshape(3, 1)])
            if np.all(np.isfinite(Rt)):
                models.append(Rt)
        return models


__all__ = [
    "normalize_points",
    "project",
    "squared_residuals",
    "krt_from_p",
    "SixPointResectionSolver",
    "P3PSolver",
]
