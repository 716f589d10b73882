#!/usr/bin/env python3
"""
Unit tests for the joint extrinsic and trajectory refinement.
"""

import unittest
import numpy as np
import os
import sys

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rig_extrinsic_calibration.config import RigCalibrationConfig
from rig_extrinsic_calibration.errors import OptimizationDivergenceError
from rig_extrinsic_calibration.refinement import (
    JointCalibrationRefiner,
    ReprojectionStats,
    project_points,
    robust_cost,
)
from rig_extrinsic_calibration.relative_pose import RelativePoseEstimator
from rig_extrinsic_calibration.simulation import (
    make_extrinsic, make_synthetic_rig, simulate_localization
)
from rig_extrinsic_calibration.tracking import (
    CameraIntrinsics, LocalizationResult, TrackingResultStore
)
from rig_extrinsic_calibration.utils import invert_transform, rotation_distance


def _store(tracks):
    store = TrackingResultStore()
    for camera, results in tracks.items():
        for frame, result in enumerate(results):
            store.append(camera, frame, result)
    return store


def _initial_extrinsics(store, config):
    estimator = RelativePoseEstimator(config)
    extrinsics = {0: np.eye(4)}
    for camera in store.camera_indices():
        if camera != 0:
            extrinsics[camera] = estimator.estimate(store.get(0), store.get(camera)).extrinsic
    return extrinsics


class TestProjection(unittest.TestCase):
    """Test projection and cost helpers."""

    def test_project_points(self):
        intrinsics = CameraIntrinsics.from_focal(100.0, 50.0, 40.0)
        points = np.array([[0.0, 0.0, 2.0], [1.0, -1.0, 4.0]])

        projected = project_points(points, np.eye(4), intrinsics)

        np.testing.assert_array_almost_equal(projected, [[50.0, 40.0], [75.0, 15.0]])

    def test_robust_cost(self):
        residuals = np.array([0.5, -1.0, 3.0])
        self.assertAlmostEqual(robust_cost(residuals, 'linear', 1.0), 0.5 * (0.25 + 1.0 + 9.0))
        # soft_l1 grows linearly for large residuals
        self.assertLess(robust_cost(np.array([100.0]), 'soft_l1', 1.0),
                        robust_cost(np.array([100.0]), 'linear', 1.0))
        with self.assertRaises(ValueError):
            robust_cost(residuals, 'unknown', 1.0)

    def test_reprojection_stats(self):
        stats = ReprojectionStats.from_errors(np.array([1.0, 2.0, 3.0]))
        self.assertEqual(stats.num_observations, 3)
        self.assertAlmostEqual(stats.median, 2.0)
        self.assertAlmostEqual(stats.max, 3.0)
        self.assertTrue(np.isnan(ReprojectionStats.from_errors(np.zeros(0)).median))


class TestJointCalibrationRefiner(unittest.TestCase):
    """Test the joint refinement."""

    def setUp(self):
        self.config = RigCalibrationConfig()
        self.truth = {
            0: np.eye(4),
            1: make_extrinsic((0.1, 0.0, 0.0), (0.0, 5.0, 0.0)),
            2: make_extrinsic((-0.1, 0.05, 0.0), (0.0, -5.0, 2.0)),
        }
        self.rig = make_synthetic_rig(self.truth, num_frames=8, seed=1)
        self.refiner = JointCalibrationRefiner(self.config)

    def test_seed_trajectory(self):
        """Frames missed by the reference are seeded from another camera."""
        store = _store(simulate_localization(self.rig, dropped_frames={0: [2]}))

        trajectory, sources = self.refiner.seed_trajectory(store, [0, 1, 2], self.truth)

        self.assertEqual(sorted(trajectory), list(range(8)))
        self.assertEqual(sources[2], 1)
        self.assertEqual(sources[3], 0)
        np.testing.assert_allclose(trajectory[2], self.rig.trajectory[2], atol=1e-9)

    def test_zero_noise_is_a_fixed_point(self):
        store = _store(simulate_localization(self.rig))

        result = self.refiner.refine(store, [0, 1, 2], self.truth)

        for camera, T in self.truth.items():
            np.testing.assert_allclose(result.extrinsics[camera], T, atol=1e-6)
        for frame, T in self.rig.trajectory.items():
            np.testing.assert_allclose(result.trajectory[frame], T, atol=1e-6)
        self.assertEqual(result.free_cameras, [1, 2])
        self.assertLess(result.summary.after[1].rms, 1e-4)

    def test_reference_extrinsic_stays_identity(self):
        store = _store(simulate_localization(self.rig, rotation_noise_deg=0.3,
                                             translation_noise=0.005, pixel_noise=0.3))
        extrinsics = _initial_extrinsics(store, self.config)

        result = self.refiner.refine(store, [0, 1, 2], extrinsics)

        self.assertTrue(np.array_equal(result.extrinsics[0], np.eye(4)))

    def test_refinement_improves_noisy_initialization(self):
        store = _store(simulate_localization(self.rig, rotation_noise_deg=0.3,
                                             translation_noise=0.005, pixel_noise=0.3, seed=2))
        extrinsics = _initial_extrinsics(store, self.config)

        result = self.refiner.refine(store, [0, 1, 2], extrinsics)

        for camera in (1, 2):
            error = np.linalg.norm(result.extrinsics[camera][:3, 3] - self.truth[camera][:3, 3])
            self.assertLess(error, 0.01)
            error_deg = np.rad2deg(rotation_distance(
                result.extrinsics[camera][:3, :3], self.truth[camera][:3, :3]))
            self.assertLess(error_deg, 0.1)
        self.assertLess(result.summary.final_cost, result.summary.initial_cost)

    def test_corrupted_point_stays_outlier(self):
        """One wrong 3D point keeps a large residual while the median improves."""
        tracks = simulate_localization(self.rig, rotation_noise_deg=0.5,
                                       translation_noise=0.005, pixel_noise=0.3, seed=3)
        original = tracks[1][4]
        points_3d = np.array(original.points_3d)
        points_3d[0] += [1.5, 1.0, 0.0]
        tracks[1][4] = LocalizationResult(
            pose=original.pose, valid=True, intrinsics=original.intrinsics,
            points_2d=original.points_2d, points_3d=points_3d, point_ids=original.point_ids)
        store = _store(tracks)
        extrinsics = _initial_extrinsics(store, self.config)

        result = self.refiner.refine(store, [0, 1, 2], extrinsics)

        errors = self.refiner.reprojection_errors(
            store, [0, 1, 2], result.extrinsics, result.trajectory)
        self.assertGreater(errors[(4, 1)][0], 50.0)

        summary = result.summary
        for camera in (0, 1, 2):
            self.assertLess(summary.after[camera].median, summary.before[camera].median)
            self.assertLess(summary.after[camera].median, 1.0)

    def test_iteration_budget_exhausted(self):
        store = _store(simulate_localization(self.rig, rotation_noise_deg=0.5,
                                             translation_noise=0.01, pixel_noise=0.5))
        extrinsics = _initial_extrinsics(store, self.config)
        refiner = JointCalibrationRefiner(RigCalibrationConfig(max_iterations=1))

        with self.assertRaises(OptimizationDivergenceError) as ctx:
            refiner.refine(store, [0, 1, 2], extrinsics)

        self.assertIsNotNone(ctx.exception.summary)
        self.assertEqual(ctx.exception.summary.status, 0)
        # The budget counts residual evaluations
        self.assertEqual(ctx.exception.summary.iterations, 1)

    def test_no_correspondences(self):
        results = [LocalizationResult(pose=self.rig.camera_pose(0, f), valid=True)
                   for f in range(3)]
        store = _store({0: results})

        with self.assertRaises(OptimizationDivergenceError):
            self.refiner.refine(store, [0], {0: np.eye(4)})

    def test_camera_pose_convention(self):
        """Observations are explained by inv(T_world_ref @ T_ref_cam)."""
        store = _store(simulate_localization(self.rig))
        result = store.get(2)[5]

        T_cam_world = invert_transform(self.rig.trajectory[5] @ self.truth[2])
        projected = project_points(result.points_3d, T_cam_world, result.intrinsics)

        np.testing.assert_allclose(projected, result.points_2d, atol=1e-6)


if __name__ == '__main__':
    unittest.main()
