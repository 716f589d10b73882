"""
Rigid transform utilities for rig extrinsic calibration.

All poses are 4x4 homogeneous matrices. Naming follows ``T_a_b``: the
transform taking coordinates expressed in frame ``b`` into frame ``a``.
"""

import cv2
import numpy as np
from scipy.spatial.transform import Rotation
from typing import Tuple


def quaternion_from_matrix(R: np.ndarray) -> np.ndarray:
    """
    Convert a 3x3 rotation matrix to quaternion [x, y, z, w].

    Args:
        R: 3x3 rotation matrix

    Returns:
        Quaternion as [x, y, z, w] with non-negative w
    """
    q = Rotation.from_matrix(R).as_quat()
    if q[3] < 0:
        q = -q
    return q


def matrix_from_quaternion(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [x, y, z, w] to 3x3 rotation matrix."""
    return Rotation.from_quat(q).as_matrix()


def transform_to_matrix(translation: np.ndarray, quaternion: np.ndarray) -> np.ndarray:
    """
    Create 4x4 transformation matrix from translation and quaternion.

    Args:
        translation: [x, y, z] position
        quaternion: [x, y, z, w] rotation

    Returns:
        4x4 homogeneous transformation matrix
    """
    T = np.eye(4)
    T[:3, :3] = matrix_from_quaternion(quaternion)
    T[:3, 3] = translation
    return T


def matrix_to_transform(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Extract translation and quaternion from 4x4 transformation matrix.

    Returns:
        Tuple of (translation [x,y,z], quaternion [x,y,z,w])
    """
    translation = T[:3, 3].copy()
    quaternion = quaternion_from_matrix(T[:3, :3])
    return translation, quaternion


def make_transform(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Build a 4x4 transform from a rotation matrix and a translation."""
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T


def invert_transform(T: np.ndarray) -> np.ndarray:
    """
    Invert a 4x4 rigid transformation matrix.

    Args:
        T: 4x4 homogeneous transformation matrix

    Returns:
        Inverted 4x4 transformation matrix
    """
    R = T[:3, :3]
    t = T[:3, 3]

    T_inv = np.eye(4)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t

    return T_inv


def compose_transforms(*transforms: np.ndarray) -> np.ndarray:
    """
    Compose transformation matrices left to right: T1 @ T2 @ ... @ Tn.

    The rightmost transform is applied first.
    """
    result = np.eye(4)
    for T in transforms:
        result = result @ T
    return result


def transform_points(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to an (N, 3) array of points."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


def is_rigid_transform(T: np.ndarray, atol: float = 1e-6) -> bool:
    """Check that T is a 4x4 matrix with an orthonormal, right-handed rotation block."""
    T = np.asarray(T)
    if T.shape != (4, 4) or not np.all(np.isfinite(T)):
        return False
    R = T[:3, :3]
    if not np.allclose(R.T @ R, np.eye(3), atol=atol):
        return False
    if not np.isclose(np.linalg.det(R), 1.0, atol=atol):
        return False
    return np.allclose(T[3], [0.0, 0.0, 0.0, 1.0], atol=atol)


def rotation_angle(R: np.ndarray) -> float:
    """Geodesic angle in radians of a 3x3 rotation matrix."""
    return float(np.linalg.norm(Rotation.from_matrix(R).as_rotvec()))


def rotation_distance(R1: np.ndarray, R2: np.ndarray) -> float:
    """Geodesic angle in radians between two rotation matrices."""
    return rotation_angle(R1.T @ R2)


def pose_from_rvec_tvec(rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
    """
    Convert an OpenCV ``solvePnP`` result into a camera-to-world pose.

    ``solvePnP`` returns the world-to-camera transform; localization results
    are stored as camera-to-world ``T_world_cam``.
    """
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    T_cam_world = make_transform(R, np.asarray(tvec, dtype=np.float64).reshape(3))
    return invert_transform(T_cam_world)


def rvec_tvec_from_pose(T_cam_world: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Split a world-to-camera transform into OpenCV rvec/tvec."""
    rvec, _ = cv2.Rodrigues(np.ascontiguousarray(T_cam_world[:3, :3]))
    tvec = T_cam_world[:3, 3].reshape(3, 1).copy()
    return rvec, tvec


def perturb_transform(T: np.ndarray, delta: np.ndarray) -> np.ndarray:
    """
    Apply a local 6-vector increment ``[rotvec, translation]`` to T.

    The increment is expressed in T's own (right-hand) frame: T @ exp(delta).
    """
    D = make_transform(Rotation.from_rotvec(delta[:3]).as_matrix(), delta[3:6])
    return T @ D

