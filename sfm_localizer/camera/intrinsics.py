"""
Camera intrinsics models.

`IntrinsicsBase` is the capability interface the localizer talks to. Models
that cannot drive calibrated resection return None from
`calibration_matrix()` and are routed to the uncalibrated path.
"""

from __future__ import annotations

import copy
from typing import Optional, Tuple

import cv2
import numpy as np

# Termination criterion for iterative point undistortion.
UNDISTORT_CRITERIA = (cv2.TERM_CRITERIA_COUNT | cv2.TERM_CRITERIA_EPS, 100, 1e-12)


class IntrinsicsBase:
    """
    Base intrinsics capability.

    Subclasses implement projection and a flat parameter vector so that the
    bundle adjuster can refine them without knowing the concrete model.
    """

    def __init__(self, width: int = 0, height: int = 0):
        self.width = int(width)
        self.height = int(height)

    def is_valid(self) -> bool:
        return False

    def has_distortion(self) -> bool:
        return False

    def calibration_matrix(self) -> Optional[np.ndarray]:
        return None

    def undistort_points(self, points_2d: np.ndarray) -> np.ndarray:
        return np.asarray(points_2d, dtype=np.float64).copy()

    def undistort_point(self, point_2d: np.ndarray) -> np.ndarray:
        return self.undistort_points(np.asarray(point_2d).reshape(1, 2))[0]

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def get_params(self) -> np.ndarray:
        raise NotImplementedError

    def update_from_params(self, params: np.ndarray) -> None:
        raise NotImplementedError

    def clone(self) -> "IntrinsicsBase":
        return copy.deepcopy(self)

    def assign(self, other: "IntrinsicsBase") -> None:
        """
        Copy the state of `other` into this object in place.

        Raises:
            TypeError: If `other` is a different intrinsics model.
        """
        if type(other) is not type(self):
            raise TypeError(
                f"Cannot assign {type(other).__name__} to {type(self).__name__}"
            )
        self.__dict__.update(copy.deepcopy(other.__dict__))


class PinholeIntrinsics(IntrinsicsBase):
    """
    Pinhole camera model with optional distortion.

    Distortion follows OpenCV's Brown-Conrady model (k1, k2, p1, p2, k3).
    """

    NUM_DISTORTION_PARAMS = 5

    def __init__(
        self,
        width: int,
        height: int,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        dist_coeffs: Optional[np.ndarray] = None,
    ):
        """
        Args:
            width, height: Image size in pixels.
            fx, fy: Focal lengths in pixels.
            cx, cy: Principal point coordinates.
            dist_coeffs: Distortion coefficients (k1, k2, p1, p2[, k3]) or None.
        """
        super().__init__(width, height)
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = float(cx)
        self.cy = float(cy)

        self.dist_coeffs = np.zeros(self.NUM_DISTORTION_PARAMS)
        if dist_coeffs is not None:
            dist_coeffs = np.asarray(dist_coeffs, dtype=np.float64).ravel()
            n = min(len(dist_coeffs), self.NUM_DISTORTION_PARAMS)
            self.dist_coeffs[:n] = dist_coeffs[:n]

    @classmethod
    def from_matrix(
        cls,
        K: np.ndarray,
        dist_coeffs: Optional[np.ndarray] = None,
        image_size: Tuple[int, int] = (0, 0),
    ) -> "PinholeIntrinsics":
        """
        Create intrinsics from a 3x3 camera matrix.

        Args:
            K: Intrinsic camera matrix (3x3).
            dist_coeffs: Optional distortion coefficients.
            image_size: (width, height) tuple.
        """
        K = np.asarray(K, dtype=np.float64)
        return cls(
            image_size[0], image_size[1], K[0, 0], K[1, 1], K[0, 2], K[1, 2], dist_coeffs
        )

    @property
    def K(self) -> np.ndarray:
        return np.array(
            [
                [self.fx, 0.0, self.cx],
                [0.0, self.fy, self.cy],
                [0.0, 0.0, 1.0],
            ]
        )

    def is_valid(self) -> bool:
        values = np.array([self.fx, self.fy, self.cx, self.cy])
        return bool(
            np.all(np.isfinite(values))
            and np.all(np.isfinite(self.dist_coeffs))
            and self.fx > 0
            and self.fy > 0
        )

    def has_distortion(self) -> bool:
        return bool(np.any(self.dist_coeffs != 0))

    def calibration_matrix(self) -> Optional[np.ndarray]:
        return self.K

    def undistort_points(self, points_2d: np.ndarray) -> np.ndarray:
        """
        Remove distortion from 2D points.

        Args:
            points_2d: Nx2 array of distorted image points.

        Returns:
            Nx2 array of undistorted points in pixel coordinates.
        """
        points_2d = np.asarray(points_2d, dtype=np.float64)
        if not self.has_distortion() or len(points_2d) == 0:
            return points_2d.copy()

        K = self.K
        undistorted = cv2.undistortPoints(
            points_2d.reshape(-1, 1, 2),
            K,
            self.dist_coeffs,
            R=np.eye(3),
            P=K,
            criteria=UNDISTORT_CRITERIA,
        )
        return undistorted.reshape(-1, 2)

    def project(self, points_cam: np.ndarray) -> np.ndarray:
        """
        Project 3D points given in camera coordinates to pixels.

        Args:
            points_cam: Nx3 array of points in the camera frame.

        Returns:
            Nx2 array of image points.
        """
        points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 1, 3)
        projected, _ = cv2.projectPoints(
            points_cam, np.zeros(3), np.zeros(3), self.K, self.dist_coeffs
        )
        return projected.reshape(-1, 2)

    def get_params(self) -> np.ndarray:
        return np.concatenate([[self.fx, self.fy, self.cx, self.cy], self.dist_coeffs])

    def update_from_params(self, params: np.ndarray) -> None:
        params = np.asarray(params, dtype=np.float64)
        self.fx, self.fy, self.cx, self.cy = (float(v) for v in params[:4])
        self.dist_coeffs = params[4 : 4 + self.NUM_DISTORTION_PARAMS].copy()

    def __repr__(self):
        return (
            f"PinholeIntrinsics(fx={self.fx:.2f}, fy={self.fy:.2f}, "
            f"cx={self.cx:.2f}, cy={self.cy:.2f}, dist={self.dist_coeffs.tolist()})"
        )


__all__ = ["IntrinsicsBase", "PinholeIntrinsics"]
