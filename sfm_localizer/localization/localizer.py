"""
Single-image localization: robust resection followed by pose refinement.

`localize` picks a minimal solver and a robust estimator depending on whether
the calibration is known, then validates the inliers. `refine_pose` polishes
the resulting pose (and optionally the intrinsics) by bundle adjustment on a
throwaway one-view scene.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np

from sfm_localizer.ba.bundle_adjustment import BARefine, run_bundle_adjustment
from sfm_localizer.camera.intrinsics import IntrinsicsBase
from sfm_localizer.geometry.pose import Pose3
from sfm_localizer.geometry.resection import krt_from_p
from sfm_localizer.localization.data_structures import (
    Landmark,
    MatchData,
    MinimalScene,
    Observation,
)
from sfm_localizer.robust.acransac import acransac
from sfm_localizer.robust.kernels import (
    ResectionKernel,
    ResectionKernelK,
    ResectionKernelLoRansacK,
)
from sfm_localizer.robust.loransac import ScoreEvaluator, lo_ransac
from sfm_localizer.robust.support import has_strong_support

logger = logging.getLogger(__name__)

# LO-RANSAC needs a finite threshold; used when the caller leaves it unbounded.
DEFAULT_LORANSAC_THRESHOLD = 4.0


class ERobustEstimator(Enum):
    """Robust estimation strategies supported by `localize`."""

    ACRANSAC = "acransac"
    LORANSAC = "loransac"

    @classmethod
    def from_string(cls, value: Union[str, "ERobustEstimator"]) -> "ERobustEstimator":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown robust estimator {value!r}, expected one of "
                f"{[e.value for e in cls]}"
            ) from None


def _is_calibrated(intrinsics: Optional[IntrinsicsBase]) -> bool:
    return (
        intrinsics is not None
        and intrinsics.calibration_matrix() is not None
        and intrinsics.is_valid()
    )


def localize(
    image_size: Tuple[int, int],
    intrinsics: Optional[IntrinsicsBase],
    match_data: MatchData,
    estimator: ERobustEstimator = ERobustEstimator.ACRANSAC,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[bool, Optional[Pose3]]:
    """
    Estimate the camera pose of one image from 2D-3D correspondences.

    Without valid pinhole intrinsics the full projection matrix is estimated
    with the six-point solver and AC-RANSAC. With known calibration, P3P is
    used with either AC-RANSAC or LO-RANSAC.

    `match_data.inliers` and `match_data.error_max` are overwritten (also on
    failure); `match_data.projection_matrix` is only set on success. The
    caller's correspondences and intrinsics are never modified.

    Args:
        image_size: (width, height) of the image in pixels.
        intrinsics: Camera intrinsics or None if unknown.
        match_data: Correspondences and resection output, updated in place.
        estimator: Robust estimator for the calibrated case.
        rng: Random generator used by the robust estimators.

    Returns:
        Tuple of (success, pose). The pose is None when the resection is not
        strongly supported.

    Raises:
        ValueError: If the estimator is not supported.
    """
    estimator = ERobustEstimator.from_string(estimator)
    if rng is None:
        rng = np.random.default_rng()

    match_data.inliers = np.zeros(0, dtype=int)

    # Admissible upper bound of the squared residual
    precision = (
        math.inf if math.isinf(match_data.error_max) else match_data.error_max**2
    )

    if not _is_calibrated(intrinsics):
        # Classic resection: estimate the entire P matrix
        kernel = ResectionKernel(
            match_data.pt2d, image_size[0], image_size[1], match_data.pt3d
        )
        minimum_samples = kernel.MINIMUM_SAMPLES
        result = acransac(kernel, match_data.max_iteration, precision, rng=rng)
        P = result.model
        match_data.inliers = result.inliers
        # AC-RANSAC's estimated precision becomes the new threshold
        match_data.error_max = result.error_max
    else:
        K = intrinsics.calibration_matrix()
        if intrinsics.has_distortion():
            pt2d = intrinsics.undistort_points(match_data.pt2d)
        else:
            pt2d = match_data.pt2d

        if estimator is ERobustEstimator.ACRANSAC:
            # K is known, only [R|t] is estimated
            kernel = ResectionKernelK(pt2d, match_data.pt3d, K)
            minimum_samples = kernel.MINIMUM_SAMPLES
            result = acransac(kernel, match_data.max_iteration, precision, rng=rng)
            P = result.model
            match_data.inliers = result.inliers
            match_data.error_max = result.error_max
        elif estimator is ERobustEstimator.LORANSAC:
            if math.isinf(match_data.error_max):
                match_data.error_max = DEFAULT_LORANSAC_THRESHOLD
                logger.debug(
                    "LO-RANSAC: error was set to infinity, a default value of %s "
                    "is going to be used",
                    match_data.error_max,
                )

            # P3P generates the hypotheses, the six-point solver refines them
            kernel = ResectionKernelLoRansacK(pt2d, match_data.pt3d, K)
            minimum_samples = kernel.MINIMUM_SAMPLES

            # The scorer works on squared residuals in normalized coordinates.
            # TODO: let the kernel own the pixel to residual unit conversion.
            n00 = kernel.normalizer2[0, 0]
            threshold = match_data.error_max * match_data.error_max * (n00 * n00)
            scorer = ScoreEvaluator(threshold)
            result = lo_ransac(kernel, scorer, rng=rng)
            P = result.model
            match_data.inliers = result.inliers
        else:
            raise ValueError(
                "[localize] Only ACRansac and LORansac are supported, got "
                f"{estimator!r}"
            )

    resection = P is not None and has_strong_support(
        match_data.inliers, match_data.desc_types, minimum_samples
    )

    pose = None
    if not resection:
        logger.debug(
            "Resection status is false: inliers=%d, minimum samples=%d",
            match_data.num_inliers,
            minimum_samples,
        )
    else:
        match_data.projection_matrix = P
        _, R, t = krt_from_p(P)
        pose = Pose3(R, -R.T @ t)

    logger.info(
        "Robust resection: status=%s, threshold (error max)=%.4g, "
        "points used=%d, inliers=%d",
        resection,
        match_data.error_max,
        match_data.num_correspondences,
        match_data.num_inliers,
    )

    return resection, pose


def build_minimal_scene(
    intrinsics: IntrinsicsBase,
    pose: Pose3,
    match_data: MatchData,
) -> MinimalScene:
    """
    Set up a one-view scene with the inlier 2D-3D correspondences.

    The scene owns a clone of the intrinsics and a copy of the pose.
    """
    scene = MinimalScene(pose=pose.copy(), intrinsics=intrinsics.clone())
    for i, idx in enumerate(match_data.inliers):
        scene.landmarks.append(
            Landmark(
                id=i,
                X=match_data.pt3d[idx].copy(),
                observation=Observation(scene.view_id, match_data.pt2d[idx].copy()),
            )
        )
    return scene


def refine_pose(
    intrinsics: IntrinsicsBase,
    pose: Pose3,
    match_data: MatchData,
    refine_pose: bool = True,
    refine_intrinsic: bool = False,
    **ba_options,
) -> Tuple[bool, Optional[Pose3]]:
    """
    Refine a pose (and optionally the intrinsics) on the resection inliers.

    Args:
        intrinsics: Camera intrinsics. Updated in place only when
            `refine_intrinsic` is set and the refinement succeeds.
        pose: Initial pose, left untouched.
        match_data: Correspondences with the inliers of a previous `localize`.
        refine_pose: Free rotation and translation.
        refine_intrinsic: Free all intrinsic parameters.
        **ba_options: Forwarded to run_bundle_adjustment (loss, f_scale, max_nfev).

    Returns:
        Tuple of (success, refined_pose); the pose is None on failure.
    """
    scene = build_minimal_scene(intrinsics, pose, match_data)

    refine_options = BARefine.NONE
    if refine_pose:
        refine_options |= BARefine.ROTATION | BARefine.TRANSLATION
    if refine_intrinsic:
        refine_options |= BARefine.INTRINSICS_ALL

    if not run_bundle_adjustment(scene, refine_options, **ba_options):
        logger.info("Pose refinement failed on %d inliers", len(scene.landmarks))
        return False, None

    if refine_intrinsic:
        if not scene.intrinsics.is_valid():
            logger.info("Pose refinement produced invalid intrinsics: %r", scene.intrinsics)
            return False, None
        intrinsics.assign(scene.intrinsics)

    return True, scene.pose


__all__ = [
    "DEFAULT_LORANSAC_THRESHOLD",
    "ERobustEstimator",
    "localize",
    "build_minimal_scene",
    "refine_pose",
]
