#!/usr/bin/env python3
"""
Unit tests for the rigid transform utilities.
"""

import unittest
import cv2
import numpy as np
import os
import sys

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from scipy.spatial.transform import Rotation

from rig_extrinsic_calibration.utils import (
    quaternion_from_matrix,
    matrix_from_quaternion,
    transform_to_matrix,
    matrix_to_transform,
    make_transform,
    invert_transform,
    compose_transforms,
    transform_points,
    is_rigid_transform,
    rotation_distance,
    pose_from_rvec_tvec,
    rvec_tvec_from_pose,
    perturb_transform,
)


class TestTransformUtils(unittest.TestCase):
    """Test transformation utility functions."""

    def test_quaternion_roundtrip(self):
        """Test quaternion to matrix and back."""
        R_identity = np.eye(3)
        q = quaternion_from_matrix(R_identity)
        np.testing.assert_array_almost_equal(q, [0, 0, 0, 1], decimal=9)
        np.testing.assert_array_almost_equal(matrix_from_quaternion(q), R_identity, decimal=9)

        R_random = Rotation.from_rotvec([0.3, -1.1, 0.7]).as_matrix()
        q = quaternion_from_matrix(R_random)
        self.assertGreaterEqual(q[3], 0.0)
        np.testing.assert_array_almost_equal(R_random, matrix_from_quaternion(q), decimal=9)

    def test_transform_roundtrip(self):
        """Test transform to matrix and back."""
        translation = np.array([1.0, 2.0, 3.0])
        quaternion = np.array([0.0, 0.0, 0.707, 0.707])  # 90 deg around Z
        quaternion = quaternion / np.linalg.norm(quaternion)

        T = transform_to_matrix(translation, quaternion)
        t_back, q_back = matrix_to_transform(T)

        np.testing.assert_array_almost_equal(translation, t_back, decimal=6)
        if np.dot(quaternion, q_back) < 0:
            q_back = -q_back
        np.testing.assert_array_almost_equal(quaternion, q_back, decimal=6)

    def test_invert_transform(self):
        """Test transform inversion."""
        T = make_transform(Rotation.from_euler('z', 45, degrees=True).as_matrix(), [1.0, 2.0, 3.0])

        T_inv = invert_transform(T)

        np.testing.assert_array_almost_equal(compose_transforms(T, T_inv), np.eye(4), decimal=9)
        np.testing.assert_array_almost_equal(T_inv, np.linalg.inv(T), decimal=9)

    def test_compose_transforms(self):
        """Rightmost transform is applied first."""
        T1 = make_transform(Rotation.from_euler('z', 90, degrees=True).as_matrix(), [1.0, 0.0, 0.0])
        T2 = make_transform(np.eye(3), [0.0, 1.0, 0.0])

        T_composed = compose_transforms(T1, T2)

        # T2 moves the origin to (0, 1, 0), T1 rotates it to (-1, 0, 0) and adds (1, 0, 0)
        np.testing.assert_array_almost_equal(T_composed[:3, 3], [0.0, 0.0, 0.0], decimal=9)
        np.testing.assert_array_almost_equal(compose_transforms(), np.eye(4))

    def test_transform_points(self):
        T = make_transform(Rotation.from_euler('x', 90, degrees=True).as_matrix(), [0.0, 0.0, 1.0])
        points = np.array([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0]])

        np.testing.assert_array_almost_equal(
            transform_points(T, points), [[0.0, 0.0, 2.0], [1.0, 0.0, 1.0]], decimal=9)

    def test_is_rigid_transform(self):
        self.assertTrue(is_rigid_transform(np.eye(4)))
        scaled = np.eye(4)
        scaled[:3, :3] *= 2.0
        self.assertFalse(is_rigid_transform(scaled))
        reflected = np.diag([1.0, 1.0, -1.0, 1.0])
        self.assertFalse(is_rigid_transform(reflected))
        self.assertFalse(is_rigid_transform(np.eye(3)))

    def test_rotation_distance(self):
        R1 = np.eye(3)
        R2 = Rotation.from_euler('y', 30, degrees=True).as_matrix()
        self.assertAlmostEqual(np.rad2deg(rotation_distance(R1, R2)), 30.0, places=9)

    def test_pose_from_rvec_tvec(self):
        """solvePnP output maps world to camera; poses are stored camera to world."""
        rvec = np.array([0.1, -0.2, 0.3])
        tvec = np.array([0.5, -0.1, 2.0])
        T_world_cam = pose_from_rvec_tvec(rvec, tvec)

        point_world = np.array([[0.2, 0.3, 4.0]])
        R, _ = cv2.Rodrigues(rvec)
        expected = point_world @ R.T + tvec
        np.testing.assert_array_almost_equal(
            transform_points(invert_transform(T_world_cam), point_world), expected, decimal=9)

        rvec_back, tvec_back = rvec_tvec_from_pose(invert_transform(T_world_cam))
        np.testing.assert_array_almost_equal(rvec_back.ravel(), rvec, decimal=7)
        np.testing.assert_array_almost_equal(tvec_back.ravel(), tvec, decimal=7)

    def test_perturb_transform(self):
        T = make_transform(Rotation.from_euler('z', 20, degrees=True).as_matrix(), [1.0, 2.0, 3.0])
        np.testing.assert_array_almost_equal(perturb_transform(T, np.zeros(6)), T, decimal=12)

        # A pure translation increment is expressed in T's own frame
        moved = perturb_transform(T, np.array([0, 0, 0, 1.0, 0, 0]))
        np.testing.assert_array_almost_equal(moved[:3, 3], T[:3, 3] + T[:3, 0], decimal=12)


if __name__ == '__main__':
    unittest.main()
