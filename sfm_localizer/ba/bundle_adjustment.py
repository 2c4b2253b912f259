"""
Bundle adjustment of a single view against fixed landmarks.

Refines the pose (and optionally the intrinsics) of a MinimalScene by
minimizing reprojection error. Landmarks are never moved; which of rotation,
translation and intrinsics are free is selected with a BARefine mask.
"""

from __future__ import annotations

import logging
from enum import IntFlag
from typing import Dict, Tuple

import cv2
import numpy as np
from scipy.optimize import least_squares

from sfm_localizer.geometry.pose import Pose3
from sfm_localizer.localization.data_structures import MinimalScene

logger = logging.getLogger(__name__)


class BARefine(IntFlag):
    """Parameter blocks left free during refinement."""

    NONE = 0
    ROTATION = 1
    TRANSLATION = 2
    INTRINSICS_ALL = 4


def pack_parameters(scene: MinimalScene, refine: BARefine) -> Tuple[np.ndarray, Dict]:
    """
    Pack the free parameter blocks of the scene into a 1D parameter vector.

    Args:
        scene: MinimalScene to refine.
        refine: Blocks to pack; the others are frozen in `meta`.

    Returns:
        Tuple of (params, meta) where:
        - params: 1D array of the free parameters.
        - meta: Dictionary with slice information for unpacking:
            - meta["rotation_slice"], meta["translation_slice"],
              meta["intrinsics_slice"] -> slice object or None if frozen
            - meta["rvec"], meta["t"], meta["intrinsics"]: frozen values
    """
    rvec, _ = cv2.Rodrigues(scene.pose.R)
    blocks = {
        "rotation": (BARefine.ROTATION, rvec.flatten()),
        "translation": (BARefine.TRANSLATION, scene.pose.translation),
        "intrinsics": (BARefine.INTRINSICS_ALL, scene.intrinsics.get_params()),
    }

    param_list = []
    meta = {
        "rvec": blocks["rotation"][1],
        "t": blocks["translation"][1],
        "intrinsics": blocks["intrinsics"][1],
    }
    for name, (flag, values) in blocks.items():
        if refine & flag:
            start_idx = len(param_list)
            param_list.extend(values)
            meta[f"{name}_slice"] = slice(start_idx, len(param_list))
        else:
            meta[f"{name}_slice"] = None

    params = np.array(param_list, dtype=np.float64)
    return params, meta


def _split_parameters(params: np.ndarray, meta: Dict) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return (rvec, t, intrinsic_params), taking frozen blocks from `meta`."""
    values = []
    for name, key in (("rotation", "rvec"), ("translation", "t"), ("intrinsics", "intrinsics")):
        block_slice = meta[f"{name}_slice"]
        values.append(meta[key] if block_slice is None else params[block_slice])
    return values[0], values[1], values[2]


def unpack_parameters(
    params: np.ndarray,
    scene: MinimalScene,
    meta: Dict,
) -> None:
    """
    Unpack optimized parameters back into the MinimalScene.

    Args:
        params: 1D array of optimized parameters.
        scene: MinimalScene to update in-place.
        meta: Dictionary with slice information from pack_parameters.
    """
    rvec, t, intrinsic_params = _split_parameters(params, meta)

    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    scene.pose = Pose3.from_rt(R, t)

    if meta["intrinsics_slice"] is not None:
        scene.intrinsics.update_from_params(intrinsic_params)


def reprojection_residuals(
    params: np.ndarray,
    scene: MinimalScene,
    meta: Dict,
    points3d: np.ndarray,
    observations: np.ndarray,
) -> np.ndarray:
    """
    Compute reprojection residuals for all observations.

    Args:
        params: 1D vector of the free parameters.
        scene: MinimalScene whose intrinsics model projects the points.
        meta: Dictionary with slice information for unpacking.
        points3d: Landmark positions (N, 3).
        observations: Observed 2D points (N, 2).

    Returns:
        1D array of residuals (2 per observation: [du, dv]).
    """
    rvec, t, intrinsic_params = _split_parameters(params, meta)

    if meta["intrinsics_slice"] is not None:
        scene.intrinsics.update_from_params(intrinsic_params)

    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    points_cam = points3d @ R.T + np.asarray(t).reshape(1, 3)

    projected = scene.intrinsics.project(points_cam)
    return (projected - observations).ravel()


def run_bundle_adjustment(
    scene: MinimalScene,
    refine: BARefine,
    loss: str = "soft_l1",
    f_scale: float = 4.0,
    max_nfev: int = 100,
) -> bool:
    """
    Run bundle adjustment on a MinimalScene.

    Args:
        scene: MinimalScene to optimize in place.
        refine: Parameter blocks to optimize.
        loss: Robust loss passed to scipy.optimize.least_squares.
        f_scale: Inlier/outlier residual margin of the loss, in pixels.
        max_nfev: Maximum number of function evaluations.

    Returns:
        True if the optimization produced a usable solution.
    """
    if len(scene.landmarks) == 0:
        logger.warning("Bundle adjustment called on a scene without landmarks")
        return False

    if refine == BARefine.NONE:
        # Nothing is free, the scene is already its own optimum.
        return True

    points3d = scene.points3d()
    observations = scene.observations2d()

    # Pack parameters
    params, meta = pack_parameters(scene, refine)

    initial = reprojection_residuals(params, scene, meta, points3d, observations)
    if not np.all(np.isfinite(initial)):
        logger.warning("Non finite reprojection residuals at the initial point")
        unpack_parameters(params, scene, meta)
        return False

    logger.debug(
        "Starting bundle adjustment with %d observations, %d parameters, "
        "refine=%s, max_nfev=%d",
        len(observations),
        params.size,
        refine,
        max_nfev,
    )

    result = least_squares(
        reprojection_residuals,
        params,
        args=(scene, meta, points3d, observations),
        method="trf",
        loss=loss,
        f_scale=f_scale,
        x_scale="jac",
        verbose=0,
        max_nfev=max_nfev,
    )

    initial_rmse = float(np.sqrt(np.mean(initial**2)))
    final_rmse = float(np.sqrt(np.mean(result.fun**2)))
    logger.debug(
        "Bundle adjustment done. status=%d, nfev=%d, rmse %.4g -> %.4g",
        result.status,
        result.nfev,
        initial_rmse,
        final_rmse,
    )

    usable = result.status >= 0 and bool(np.all(np.isfinite(result.x)))

    # Unpack optimized parameters
    unpack_parameters(result.x if usable else params, scene, meta)

    return usable


__all__ = [
    "BARefine",
    "pack_parameters",
    "unpack_parameters",
    "reprojection_residuals",
    "run_bundle_adjustment",
]
