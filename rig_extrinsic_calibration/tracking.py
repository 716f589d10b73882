"""
Per-camera localization results and the store holding them.
"""

import numpy as np
from dataclasses import dataclass, field
from types import MappingProxyType
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from .errors import DuplicateFrameError, InvalidInputError

# Distortion vector lengths accepted by cv2.projectPoints
DIST_COEFF_LENGTHS = (0, 4, 5, 8, 12, 14)


def _readonly(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=np.float64)
    array.setflags(write=False)
    return array


class Correspondence(NamedTuple):
    """A 2D observation paired with the 3D map point it was matched to."""
    point_id: int
    point_2d: np.ndarray  # pixel coordinates (u, v)
    point_3d: np.ndarray  # map coordinates (x, y, z)


@dataclass(frozen=True, eq=False)
class CameraIntrinsics:
    """Pinhole intrinsics with OpenCV-ordered distortion coefficients."""
    camera_matrix: np.ndarray
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(5))

    def __post_init__(self):
        K = np.asarray(self.camera_matrix, dtype=np.float64)
        if K.shape != (3, 3):
            raise InvalidInputError(f"camera_matrix must be 3x3, got {K.shape}")
        object.__setattr__(self, 'camera_matrix', _readonly(K))
        dist = np.asarray(self.dist_coeffs, dtype=np.float64).ravel()
        if len(dist) == 3:
            # Radial-only k1, k2, k3 in OpenCV order
            dist = np.array([dist[0], dist[1], 0.0, 0.0, dist[2]])
        elif len(dist) not in DIST_COEFF_LENGTHS:
            raise InvalidInputError(
                f"dist_coeffs must have 3 or one of {DIST_COEFF_LENGTHS} values, got {len(dist)}")
        object.__setattr__(self, 'dist_coeffs', _readonly(dist))

    @classmethod
    def from_focal(cls, focal: float, cx: float, cy: float,
                   dist_coeffs: Optional[np.ndarray] = None) -> 'CameraIntrinsics':
        K = np.array([[focal, 0.0, cx], [0.0, focal, cy], [0.0, 0.0, 1.0]])
        return cls(K, np.zeros(5) if dist_coeffs is None else dist_coeffs)


@dataclass(frozen=True, eq=False)
class LocalizationResult:
    """
    Output of the single-camera localizer for one frame.

    ``pose`` is the camera-to-world transform T_world_cam. The inlier
    correspondences are held as aligned arrays.
    """
    pose: Optional[np.ndarray]
    valid: bool
    intrinsics: Optional[CameraIntrinsics] = None
    points_2d: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    points_3d: np.ndarray = field(default_factory=lambda: np.zeros((0, 3)))
    point_ids: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __post_init__(self):
        if self.pose is not None:
            pose = np.asarray(self.pose, dtype=np.float64)
            if pose.shape != (4, 4):
                raise InvalidInputError(f"pose must be a 4x4 matrix, got {pose.shape}")
            object.__setattr__(self, 'pose', _readonly(pose))
        elif self.valid:
            raise InvalidInputError("A valid localization result requires a pose")

        points_2d = np.asarray(self.points_2d, dtype=np.float64).reshape(-1, 2)
        points_3d = np.asarray(self.points_3d, dtype=np.float64).reshape(-1, 3)
        if len(points_2d) != len(points_3d):
            raise InvalidInputError(
                f"{len(points_2d)} 2D observations for {len(points_3d)} 3D points")

        point_ids = np.array(self.point_ids, dtype=np.int64).ravel()
        if len(point_ids) == 0 and len(points_2d) > 0:
            point_ids = np.arange(len(points_2d), dtype=np.int64)
        if len(point_ids) != len(points_2d):
            raise InvalidInputError("point_ids must match the number of correspondences")
        point_ids.setflags(write=False)

        object.__setattr__(self, 'valid', bool(self.valid))
        object.__setattr__(self, 'points_2d', _readonly(points_2d))
        object.__setattr__(self, 'points_3d', _readonly(points_3d))
        object.__setattr__(self, 'point_ids', point_ids)

    @classmethod
    def from_correspondences(cls, pose: Optional[np.ndarray], valid: bool,
                             intrinsics: Optional[CameraIntrinsics],
                             correspondences: List[Correspondence]) -> 'LocalizationResult':
        return cls(
            pose=pose,
            valid=valid,
            intrinsics=intrinsics,
            points_2d=np.array([c.point_2d for c in correspondences]).reshape(-1, 2),
            points_3d=np.array([c.point_3d for c in correspondences]).reshape(-1, 3),
            point_ids=np.array([c.point_id for c in correspondences], dtype=np.int64),
        )

    @classmethod
    def failed(cls, intrinsics: Optional[CameraIntrinsics] = None) -> 'LocalizationResult':
        """A frame the localizer could not localize."""
        return cls(pose=None, valid=False, intrinsics=intrinsics)

    @property
    def num_correspondences(self) -> int:
        return len(self.points_2d)

    @property
    def correspondences(self) -> List[Correspondence]:
        return [Correspondence(int(i), p2, p3)
                for i, p2, p3 in zip(self.point_ids, self.points_2d, self.points_3d)]

    @property
    def usable_for_reprojection(self) -> bool:
        return self.valid and self.intrinsics is not None and self.num_correspondences > 0


class CameraTrack(Mapping):
    """Read-only view of one camera's results, keyed by frame index."""

    def __init__(self, camera_index: int, results: Dict[int, LocalizationResult]):
        self.camera_index = camera_index
        self._results = MappingProxyType(results)

    def __getitem__(self, frame_index: int) -> LocalizationResult:
        return self._results[frame_index]

    def __iter__(self) -> Iterator[int]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def is_valid(self, frame_index: int) -> bool:
        result = self._results.get(frame_index)
        return result is not None and result.valid

    def valid_frames(self) -> List[int]:
        return [f for f, r in self._results.items() if r.valid]

    def pose(self, frame_index: int) -> np.ndarray:
        return self._results[frame_index].pose


class TrackingResultStore:
    """
    Append-only container of per-camera, per-frame localization results.

    Frame indices are shared across cameras: frame f of every camera was
    captured at the same synchronized instant. Appending never triggers any
    computation.
    """

    def __init__(self):
        self._tracks: Dict[int, Dict[int, LocalizationResult]] = {}

    def append(self, camera_index: int, frame_index: int, result: LocalizationResult):
        """
        Record the result of one camera for one frame.

        Raises:
            DuplicateFrameError: if (camera_index, frame_index) is already recorded
            InvalidInputError: on negative indices, a non monotonic frame index
                or a result that is not a LocalizationResult
        """
        self.extend(camera_index, [(frame_index, result)])

    def extend(self, camera_index: int,
               items: Iterable[Tuple[int, LocalizationResult]]):
        """
        Record several (frame_index, result) pairs of one camera.

        Every pair is checked before anything is recorded, so a rejected
        call leaves the store unchanged. Raises as ``append``.
        """
        items = list(items)
        if camera_index < 0:
            raise InvalidInputError(f"Negative camera index: {camera_index}")

        track = self._tracks.get(camera_index, {})
        last = next(reversed(track)) if track else None
        seen = set()
        for frame_index, result in items:
            if frame_index < 0:
                raise InvalidInputError(
                    f"Negative frame index (camera={camera_index}, frame={frame_index})")
            if not isinstance(result, LocalizationResult):
                raise InvalidInputError(
                    f"Expected a LocalizationResult, got {type(result).__name__}")
            if frame_index in track or frame_index in seen:
                raise DuplicateFrameError(camera_index, frame_index)
            if last is not None and frame_index < last:
                raise InvalidInputError(
                    f"Camera {camera_index}: frame {frame_index} arrives after frame {last}")
            seen.add(frame_index)
            last = frame_index

        if items:
            self._tracks.setdefault(camera_index, {}).update(items)

    def has_camera(self, camera_index: int) -> bool:
        return camera_index in self._tracks

    def get(self, camera_index: int) -> CameraTrack:
        if camera_index not in self._tracks:
            raise InvalidInputError(f"No track recorded for camera {camera_index}")
        return CameraTrack(camera_index, self._tracks[camera_index])

    def camera_count(self) -> int:
        return len(self._tracks)

    def camera_indices(self) -> List[int]:
        return sorted(self._tracks)

    def valid_frames(self, camera_index: int) -> List[int]:
        return self.get(camera_index).valid_frames()

    def frame_range(self) -> Optional[Tuple[int, int]]:
        """Inclusive (first, last) frame index over all cameras, None if empty."""
        frames = [f for track in self._tracks.values() for f in track]
        if not frames:
            return None
        return min(frames), max(frames)
