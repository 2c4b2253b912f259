"""
Rigid camera pose (world to camera rotation plus camera center).
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class Pose3:
    """
    Camera exterior orientation.

    `R` rotates world coordinates into the camera frame and `C` is the camera
    center in world coordinates, so that X_cam = R @ (X - C).
    """

    R: np.ndarray = field(default_factory=lambda: np.eye(3))
    C: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.C = np.asarray(self.C, dtype=np.float64).reshape(3)

    @classmethod
    def from_rt(cls, R: np.ndarray, t: np.ndarray) -> "Pose3":
        """Build a pose from a rotation and a translation (X_cam = R X + t)."""
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        t = np.asarray(t, dtype=np.float64).reshape(3)
        return cls(R, -R.T @ t)

    @property
    def translation(self) -> np.ndarray:
        return -self.R @ self.C

    def transform(self, X: np.ndarray) -> np.ndarray:
        """
        Map world points into the camera frame.

        Args:
            X: World points (N, 3) or a single point (3,).

        Returns:
            Camera-frame points with the same shape as `X`.
        """
        X = np.asarray(X, dtype=np.float64)
        if X.ndim == 1:
            return self.R @ (X - self.C)
        return (X - self.C) @ self.R.T

    def copy(self) -> "Pose3":
        return Pose3(self.R.copy(), self.C.copy())


__all__ = ["Pose3"]
