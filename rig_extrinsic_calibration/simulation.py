"""
Synthetic camera rigs localized against a synthetic map.

Used to exercise the calibration without real footage: a rig with known
extrinsics moves through a cloud of map points and each camera reports
what an ideal (or noisy) localizer would.
"""

import numpy as np
from dataclasses import dataclass
from scipy.spatial.transform import Rotation
from typing import Dict, Iterable, List, Optional, Tuple

from .tracking import CameraIntrinsics, LocalizationResult
from .utils import invert_transform, make_transform, perturb_transform, transform_points
from .refinement import project_points


@dataclass
class SyntheticRig:
    """Ground truth of a simulated capture."""
    extrinsics: Dict[int, np.ndarray]     # camera -> T_ref_cam
    trajectory: Dict[int, np.ndarray]     # frame -> T_world_ref
    map_points: np.ndarray                # (N, 3)
    intrinsics: CameraIntrinsics
    image_size: Tuple[int, int] = (640, 480)

    def camera_pose(self, camera_index: int, frame_index: int) -> np.ndarray:
        """True T_world_cam."""
        return self.trajectory[frame_index] @ self.extrinsics[camera_index]


def make_map_points(num_points: int = 300, extent: Tuple[float, float] = (4.0, 3.0),
                    depth: Tuple[float, float] = (4.0, 8.0),
                    rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Random map points in a box in front of the rig (+z)."""
    rng = rng if rng is not None else np.random.default_rng(0)
    x = rng.uniform(-extent[0], extent[0], num_points)
    y = rng.uniform(-extent[1], extent[1], num_points)
    z = rng.uniform(depth[0], depth[1], num_points)
    return np.column_stack([x, y, z])


def make_rig_trajectory(num_frames: int, step: float = 0.1,
                        max_rotation_deg: float = 3.0) -> Dict[int, np.ndarray]:
    """Smooth rig trajectory T_world_ref moving along x with small rotations."""
    trajectory = {}
    for f in range(num_frames):
        phase = 0.7 * f
        angles = max_rotation_deg * np.array([np.sin(phase), np.cos(phase), 0.5 * np.sin(2 * phase)])
        R = Rotation.from_euler('xyz', angles, degrees=True).as_matrix()
        t = np.array([step * f, 0.05 * np.sin(phase), 0.02 * f])
        trajectory[f] = make_transform(R, t)
    return trajectory


def make_extrinsic(translation: Iterable[float], euler_deg: Iterable[float] = (0.0, 0.0, 0.0)) -> np.ndarray:
    """T_ref_cam from a translation and xyz Euler angles in degrees."""
    R = Rotation.from_euler('xyz', list(euler_deg), degrees=True).as_matrix()
    return make_transform(R, np.asarray(list(translation), dtype=np.float64))


def make_synthetic_rig(extrinsics: Dict[int, np.ndarray], num_frames: int = 10,
                       num_points: int = 300, focal: float = 800.0,
                       image_size: Tuple[int, int] = (640, 480),
                       seed: int = 0) -> SyntheticRig:
    rng = np.random.default_rng(seed)
    width, height = image_size
    return SyntheticRig(
        extrinsics={c: np.array(T, dtype=np.float64) for c, T in extrinsics.items()},
        trajectory=make_rig_trajectory(num_frames),
        map_points=make_map_points(num_points, rng=rng),
        intrinsics=CameraIntrinsics.from_focal(focal, width / 2.0, height / 2.0),
        image_size=image_size,
    )


def visible_points(rig: SyntheticRig, T_world_cam: np.ndarray,
                   min_depth: float = 0.5) -> Tuple[np.ndarray, np.ndarray]:
    """Indices and exact projections of the map points inside the image."""
    T_cam_world = invert_transform(T_world_cam)
    in_camera = transform_points(T_cam_world, rig.map_points)
    in_front = np.flatnonzero(in_camera[:, 2] > min_depth)
    if in_front.size == 0:
        return in_front, np.zeros((0, 2))
    projected = project_points(rig.map_points[in_front], T_cam_world, rig.intrinsics)
    width, height = rig.image_size
    inside = (projected[:, 0] >= 0) & (projected[:, 0] < width) & \
             (projected[:, 1] >= 0) & (projected[:, 1] < height)
    return in_front[inside], projected[inside]


def simulate_localization(rig: SyntheticRig,
                          rotation_noise_deg: float = 0.0,
                          translation_noise: float = 0.0,
                          pixel_noise: float = 0.0,
                          dropped_frames: Optional[Dict[int, Iterable[int]]] = None,
                          seed: int = 0) -> Dict[int, List[LocalizationResult]]:
    """
    Per-camera localization results of a synthetic rig.

    Observations are the exact projections plus ``pixel_noise``; the reported
    pose is the true pose perturbed by the rotation/translation noise.
    Frames listed in ``dropped_frames[camera]`` are reported as not localized.

    Returns:
        Dict mapping camera index -> results ordered by frame index
    """
    rng = np.random.default_rng(seed)
    dropped = {c: set(frames) for c, frames in (dropped_frames or {}).items()}
    tracks = {}

    for camera in sorted(rig.extrinsics):
        results = []
        for frame in sorted(rig.trajectory):
            if frame in dropped.get(camera, ()):
                results.append(LocalizationResult.failed(rig.intrinsics))
                continue

            T_world_cam = rig.camera_pose(camera, frame)
            ids, observed = visible_points(rig, T_world_cam)
            if pixel_noise > 0:
                observed = observed + rng.normal(0.0, pixel_noise, observed.shape)

            pose = T_world_cam
            if rotation_noise_deg > 0 or translation_noise > 0:
                delta = np.concatenate([
                    rng.normal(0.0, np.deg2rad(rotation_noise_deg), 3),
                    rng.normal(0.0, translation_noise, 3),
                ])
                pose = perturb_transform(T_world_cam, delta)

            results.append(LocalizationResult(
                pose=pose,
                valid=True,
                intrinsics=rig.intrinsics,
                points_2d=observed,
                points_3d=rig.map_points[ids],
                point_ids=ids,
            ))
        tracks[camera] = results

    return tracks
