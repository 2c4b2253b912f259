"""
Tests for single-image localization and pose refinement.
"""

import math

import numpy as np
import pytest

from conftest import IMAGE_SIZE, rotation_error
from sfm_localizer.camera.intrinsics import IntrinsicsBase, PinholeIntrinsics
from sfm_localizer.geometry.pose import Pose3
from sfm_localizer.geometry.resection import krt_from_p, squared_residuals
from sfm_localizer.localization import localizer
from sfm_localizer.localization.data_structures import MatchData
from sfm_localizer.localization.localizer import (
    DEFAULT_LORANSAC_THRESHOLD,
    ERobustEstimator,
    build_minimal_scene,
    localize,
    refine_pose,
)

ESTIMATORS = [ERobustEstimator.ACRANSAC, ERobustEstimator.LORANSAC]


def assert_same_pose(pose, expected, rot_tol=1e-4, center_tol=1e-3):
    assert np.allclose(pose.R @ pose.R.T, np.eye(3), atol=1e-6)
    assert np.isclose(np.linalg.det(pose.R), 1.0)
    assert rotation_error(pose.R, expected.R) < rot_tol
    assert np.linalg.norm(pose.C - expected.C) < center_tol


class TestLocalizeCalibrated:
    @pytest.mark.parametrize("estimator", ESTIMATORS)
    def test_exact_correspondences(self, rng, make_scene, camera, true_pose, estimator):
        match_data, inliers, _ = make_scene(40)

        success, pose = localize(IMAGE_SIZE, camera, match_data, estimator, rng=rng)

        assert success
        assert_same_pose(pose, true_pose)
        assert match_data.num_inliers == match_data.num_correspondences
        assert list(match_data.inliers) == list(inliers)

    @pytest.mark.parametrize("estimator", ESTIMATORS)
    def test_majority_of_outliers(self, rng, make_scene, camera, true_pose, estimator):
        match_data, inliers, outliers = make_scene(60, 70, noise=0.3)

        success, pose = localize(IMAGE_SIZE, camera, match_data, estimator, rng=rng)

        assert success
        assert_same_pose(pose, true_pose, rot_tol=1e-2, center_tol=0.15)
        assert not set(match_data.inliers) & set(outliers)
        assert len(match_data.inliers) >= 0.9 * len(inliers)

    def test_projection_matrix_stored(self, rng, make_scene, camera, true_pose):
        match_data, _, _ = make_scene(40)

        success, pose = localize(IMAGE_SIZE, camera, match_data, rng=rng)

        assert success
        K, R, t = krt_from_p(match_data.projection_matrix)
        assert np.allclose(K, camera.K, atol=1e-6)
        assert np.allclose(pose.R, R)
        assert np.allclose(pose.C, -R.T @ t)

    def test_acransac_updates_threshold(self, rng, make_scene, camera):
        match_data, _, _ = make_scene(60, 20, noise=0.3)
        match_data.error_max = 10.0

        success, _ = localize(
            IMAGE_SIZE, camera, match_data, ERobustEstimator.ACRANSAC, rng=rng
        )

        assert success
        # The estimated precision replaces the looser threshold of the caller
        assert 0.0 < match_data.error_max < 10.0

    def test_loransac_substitutes_default_threshold(self, rng, make_scene, camera):
        match_data, _, _ = make_scene(60, 70, noise=0.3)
        assert math.isinf(match_data.error_max)

        success, _ = localize(
            IMAGE_SIZE, camera, match_data, ERobustEstimator.LORANSAC, rng=rng
        )

        assert success
        assert match_data.error_max == DEFAULT_LORANSAC_THRESHOLD
        errors = squared_residuals(
            match_data.projection_matrix, match_data.pt2d, match_data.pt3d
        )
        expected = np.flatnonzero(errors < DEFAULT_LORANSAC_THRESHOLD**2)
        assert list(match_data.inliers) == list(expected)

    def test_loransac_keeps_finite_threshold(self, rng, make_scene, camera):
        match_data, _, outliers = make_scene(60, 70, noise=0.3)
        match_data.error_max = 2.5

        success, _ = localize(
            IMAGE_SIZE, camera, match_data, ERobustEstimator.LORANSAC, rng=rng
        )

        assert success
        assert match_data.error_max == 2.5
        errors = squared_residuals(
            match_data.projection_matrix, match_data.pt2d, match_data.pt3d
        )
        assert np.all(errors[match_data.inliers] < 2.5**2)
        assert not set(match_data.inliers) & set(outliers)

    @pytest.mark.parametrize("estimator", ESTIMATORS)
    def test_distortion_is_removed_before_fitting(
        self, rng, make_scene, camera, distorted_camera, true_pose, estimator
    ):
        distorted, _, _ = make_scene(40, intrinsics=distorted_camera)
        undistorted = MatchData(
            pt2d=camera.project(true_pose.transform(distorted.pt3d)),
            pt3d=distorted.pt3d,
            desc_types=distorted.desc_types,
        )
        original_pt2d = distorted.pt2d.copy()

        ok_distorted, pose_distorted = localize(
            IMAGE_SIZE, distorted_camera, distorted, estimator, rng=rng
        )
        ok_undistorted, pose_undistorted = localize(
            IMAGE_SIZE, camera, undistorted, estimator, rng=rng
        )

        assert ok_distorted and ok_undistorted
        assert_same_pose(pose_distorted, pose_undistorted)
        assert_same_pose(pose_distorted, true_pose)
        # The caller's observations are left as they were
        assert np.array_equal(distorted.pt2d, original_pt2d)

    def test_weak_support_fails(self, rng, make_scene, camera):
        # 10 generic features weigh 1.4, below the P3P minimal sample size
        match_data, _, _ = make_scene(10)

        success, pose = localize(IMAGE_SIZE, camera, match_data, rng=rng)

        assert not success
        assert pose is None
        assert np.array_equal(match_data.projection_matrix, np.zeros((3, 4)))

    def test_unsupported_estimator(self, rng, make_scene, camera):
        match_data, _, _ = make_scene(10)
        with pytest.raises(ValueError):
            localize(IMAGE_SIZE, camera, match_data, "ransac", rng=rng)

    def test_intrinsics_untouched(self, rng, make_scene, distorted_camera):
        match_data, _, _ = make_scene(40, intrinsics=distorted_camera)
        params = distorted_camera.get_params().copy()

        localize(IMAGE_SIZE, distorted_camera, match_data, rng=rng)

        assert np.array_equal(distorted_camera.get_params(), params)


class TestLocalizeUncalibrated:
    def test_without_intrinsics(self, rng, make_scene, camera, true_pose):
        match_data, _, _ = make_scene(60)

        success, pose = localize(IMAGE_SIZE, None, match_data, rng=rng)

        assert success
        assert_same_pose(pose, true_pose)
        assert match_data.num_inliers == 60
        K, _, _ = krt_from_p(match_data.projection_matrix)
        assert np.allclose(K, camera.K, atol=1e-4)

    def test_invalid_intrinsics_fall_back(self, rng, make_scene, true_pose):
        match_data, _, _ = make_scene(60)
        invalid = PinholeIntrinsics(640, 480, -1.0, 800.0, 320.0, 240.0)

        success, pose = localize(
            IMAGE_SIZE, invalid, match_data, ERobustEstimator.LORANSAC, rng=rng
        )

        assert success
        assert_same_pose(pose, true_pose)

    def test_model_without_calibration_matrix(self, rng, make_scene, true_pose):
        match_data, _, _ = make_scene(60)

        success, pose = localize(IMAGE_SIZE, IntrinsicsBase(640, 480), match_data, rng=rng)

        assert success
        assert_same_pose(pose, true_pose)

    def test_majority_of_outliers(self, rng, make_scene, true_pose):
        match_data, inliers, outliers = make_scene(60, 70, noise=0.3)

        success, pose = localize(IMAGE_SIZE, None, match_data, rng=rng)

        assert success
        assert rotation_error(pose.R, true_pose.R) < 2e-2
        assert not set(match_data.inliers) & set(outliers)

    def test_estimated_threshold_replaces_looser_one(self, rng, make_scene):
        match_data, _, _ = make_scene(60, 20, noise=0.3)
        match_data.error_max = 10.0

        success, _ = localize(IMAGE_SIZE, None, match_data, rng=rng)

        assert success
        assert 0.0 < match_data.error_max < 10.0

    def test_minimal_sample_only_fails(self, rng, make_scene):
        # Six generic features cannot strongly support a six-point model
        match_data, _, _ = make_scene(6)

        success, pose = localize(IMAGE_SIZE, None, match_data, rng=rng)

        assert not success
        assert pose is None


class TestRefinePose:
    def test_minimal_scene_holds_inliers_only(self, make_scene, camera, true_pose):
        match_data, _, _ = make_scene(20)
        match_data.inliers = np.array([1, 4, 7])

        scene = build_minimal_scene(camera, true_pose, match_data)

        assert len(scene.landmarks) == 3
        assert scene.intrinsics is not camera
        assert scene.pose is not true_pose
        assert all(lm.observation.view_id == scene.view_id == 0 for lm in scene.landmarks)
        assert np.array_equal(scene.points3d(), match_data.pt3d[[1, 4, 7]])
        assert np.array_equal(scene.observations2d(), match_data.pt2d[[1, 4, 7]])

    def test_empty_mask_keeps_pose(self, make_scene, camera, true_pose):
        match_data, inliers, _ = make_scene(20, noise=0.5)
        match_data.inliers = inliers
        start = Pose3(true_pose.R, true_pose.C + [0.05, 0.0, 0.0])

        success, pose = refine_pose(camera, start, match_data, False, False)

        assert success
        assert np.allclose(pose.R, start.R)
        assert np.allclose(pose.C, start.C)

    def test_refines_perturbed_pose(self, make_scene, camera, true_pose):
        match_data, inliers, _ = make_scene(30)
        match_data.inliers = inliers
        start = Pose3(true_pose.R, true_pose.C + [0.05, -0.03, 0.02])
        params = camera.get_params().copy()

        success, pose = refine_pose(camera, start, match_data, True, False)

        assert success
        assert_same_pose(pose, true_pose)
        # The starting pose and the intrinsics are left untouched
        assert np.allclose(start.C, true_pose.C + [0.05, -0.03, 0.02])
        assert np.array_equal(camera.get_params(), params)

    def test_refine_intrinsics_mutates_in_place(self, make_scene, true_pose):
        truth = PinholeIntrinsics(640, 480, 800.0, 800.0, 320.0, 240.0)
        match_data, inliers, _ = make_scene(60, intrinsics=truth)
        match_data.inliers = inliers
        intrinsics = PinholeIntrinsics(640, 480, 812.0, 812.0, 320.0, 240.0)
        handle = intrinsics

        success, _ = refine_pose(intrinsics, true_pose, match_data, True, True)

        assert success
        assert intrinsics is handle
        assert type(intrinsics) is PinholeIntrinsics
        assert intrinsics.is_valid()
        assert abs(intrinsics.fx - 800.0) < abs(812.0 - 800.0)

    def test_invalid_refined_intrinsics_are_rejected(
        self, monkeypatch, make_scene, camera, true_pose
    ):
        match_data, inliers, _ = make_scene(20)
        match_data.inliers = inliers
        params = camera.get_params().copy()

        def diverging_adjustment(scene, refine, **kwargs):
            scene.intrinsics.fx = -5.0
            return True

        monkeypatch.setattr(localizer, "run_bundle_adjustment", diverging_adjustment)

        success, pose = refine_pose(camera, true_pose, match_data, True, True)

        assert not success
        assert pose is None
        assert np.array_equal(camera.get_params(), params)

    def test_no_inliers_fails(self, make_scene, camera, true_pose):
        match_data, _, _ = make_scene(10)

        success, pose = refine_pose(camera, true_pose, match_data, True, False)

        assert not success
        assert pose is None


def test_end_to_end_six_points(rng, make_scene, camera, true_pose):
    match_data, _, _ = make_scene(6, desc_type="cctag3")

    success, pose = localize(
        IMAGE_SIZE, camera, match_data, ERobustEstimator.ACRANSAC, rng=rng
    )

    assert success
    assert match_data.num_inliers == 6
    errors = squared_residuals(
        match_data.projection_matrix, match_data.pt2d, match_data.pt3d
    )
    assert np.sqrt(errors.max()) < 1e-4

    refined, refined_pose = refine_pose(camera, pose, match_data, True, True)

    assert refined
    assert_same_pose(refined_pose, pose, rot_tol=1e-4, center_tol=1e-3)
    assert_same_pose(refined_pose, true_pose)
