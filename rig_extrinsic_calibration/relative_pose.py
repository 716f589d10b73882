"""
Robust initial estimate of a camera's offset relative to the reference camera.

Only per-frame poses are used: for every frame where both cameras localized,
the candidate offset is T_ref_cam = inv(T_world_ref) @ T_world_cam. The
candidates are aggregated with a consensus rotation, a chordal rotation mean
and a median translation, followed by one outlier rejection pass.
"""

import logging
import numpy as np
from dataclasses import dataclass, field
from scipy.spatial.transform import Rotation
from typing import List, Tuple

from .config import RigCalibrationConfig
from .errors import InsufficientOverlapError
from .tracking import CameraTrack
from .utils import invert_transform, make_transform

logger = logging.getLogger(__name__)


@dataclass
class RelativePoseEstimate:
    """Initial extrinsic of one camera and the frames it was computed from."""
    camera_index: int
    extrinsic: np.ndarray                 # 4x4 T_ref_cam
    candidate_frames: List[int] = field(default_factory=list)
    inlier_frames: List[int] = field(default_factory=list)
    rotation_spread_deg: float = 0.0      # median deviation of the inliers
    translation_spread: float = 0.0

    @property
    def outlier_frames(self) -> List[int]:
        inliers = set(self.inlier_frames)
        return [f for f in self.candidate_frames if f not in inliers]


def consensus_rotation_index(rotations: Rotation) -> int:
    """
    Index of the candidate minimizing the summed geodesic angle to all others.
    """
    costs = np.array([
        np.sum((rotations[i].inv() * rotations).magnitude())
        for i in range(len(rotations))
    ])
    return int(np.argmin(costs))


def average_rotations(rotations: Rotation) -> Rotation:
    """Chordal L2 mean of a set of rotations."""
    return rotations.mean()


def median_translation(translations: np.ndarray) -> np.ndarray:
    """Component-wise median of (N, 3) translations."""
    return np.median(np.asarray(translations).reshape(-1, 3), axis=0)


class RelativePoseEstimator:
    """
    Computes the initial extrinsic of a non-reference camera.

    Each camera is processed independently from read-only tracks, so several
    cameras can be estimated concurrently.
    """

    def __init__(self, config: RigCalibrationConfig = None):
        self.config = config or RigCalibrationConfig()

    @property
    def rotation_threshold(self) -> float:
        return np.deg2rad(self.config.max_rotation_deviation_deg)

    def candidate_frames(self, reference_track: CameraTrack,
                         camera_track: CameraTrack) -> List[int]:
        """Frames where both the reference and the camera localized."""
        return sorted(f for f in camera_track.valid_frames()
                      if reference_track.is_valid(f))

    def relative_poses(self, reference_track: CameraTrack, camera_track: CameraTrack,
                       frames: List[int]) -> np.ndarray:
        """Candidate T_ref_cam for each frame, as an (N, 4, 4) array."""
        return np.array([
            invert_transform(reference_track.pose(f)) @ camera_track.pose(f)
            for f in frames
        ]).reshape(-1, 4, 4)

    def aggregate(self, transforms: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Robustly aggregate candidate transforms.

        Args:
            transforms: (N, 4, 4) candidate relative poses

        Returns:
            Tuple of (aggregated 4x4 transform, boolean inlier mask)
        """
        rotations = Rotation.from_matrix(transforms[:, :3, :3])
        translations = transforms[:, :3, 3]

        # Consensus: keep the candidates close to the medoid rotation
        medoid = rotations[consensus_rotation_index(rotations)]
        keep = np.flatnonzero((medoid.inv() * rotations).magnitude() <= self.rotation_threshold)
        R_agg = average_rotations(rotations[keep])
        t_agg = median_translation(translations[keep])

        # Single outlier rejection pass against the first aggregate
        inliers = self._inlier_mask(rotations, translations, R_agg, t_agg)
        if np.any(inliers):
            idx = np.flatnonzero(inliers)
            R_agg = average_rotations(rotations[idx])
            t_agg = median_translation(translations[idx])

        return make_transform(R_agg.as_matrix(), t_agg), inliers

    def _inlier_mask(self, rotations: Rotation, translations: np.ndarray,
                     R_agg: Rotation, t_agg: np.ndarray) -> np.ndarray:
        rot_dev = (R_agg.inv() * rotations).magnitude()
        trans_dev = np.linalg.norm(translations - t_agg, axis=1)
        return (rot_dev <= self.rotation_threshold) & \
               (trans_dev <= self.config.max_translation_deviation)

    def estimate(self, reference_track: CameraTrack,
                 camera_track: CameraTrack) -> RelativePoseEstimate:
        """
        Estimate the extrinsic T_ref_cam of ``camera_track``.

        Raises:
            InsufficientOverlapError: if fewer than ``min_overlap_frames``
                frames are valid for both cameras, or survive outlier rejection
        """
        camera_index = camera_track.camera_index
        required = self.config.min_overlap_frames

        frames = self.candidate_frames(reference_track, camera_track)
        if len(frames) < required:
            raise InsufficientOverlapError(camera_index, len(frames), required)

        transforms = self.relative_poses(reference_track, camera_track, frames)
        extrinsic, inliers = self.aggregate(transforms)

        num_inliers = int(np.count_nonzero(inliers))
        if num_inliers < required:
            raise InsufficientOverlapError(
                camera_index, num_inliers, required, reason="consistent relative poses")

        rotations = Rotation.from_matrix(transforms[inliers, :3, :3])
        R_agg = Rotation.from_matrix(extrinsic[:3, :3])
        rot_spread = np.rad2deg(np.median((R_agg.inv() * rotations).magnitude()))
        trans_spread = np.median(
            np.linalg.norm(transforms[inliers, :3, 3] - extrinsic[:3, 3], axis=1))

        inlier_frames = [f for f, ok in zip(frames, inliers) if ok]
        logger.info(
            "Camera %d: %d/%d relative poses kept, spread %.3f deg / %.4f",
            camera_index, num_inliers, len(frames), rot_spread, trans_spread)

        return RelativePoseEstimate(
            camera_index=camera_index,
            extrinsic=extrinsic,
            candidate_frames=frames,
            inlier_frames=inlier_frames,
            rotation_spread_deg=float(rot_spread),
            translation_spread=float(trans_spread),
        )
