"""
Rig calibration from independent per-camera localization results.

Usage:
    rig = Rig(config)
    for camera_index, results in enumerate(per_camera_results):
        rig.set_tracking_result(results, camera_index)
    rig.initialize_calibration()
    rig.optimize_calibration()
    rig.extrinsics   # camera -> T_ref_cam
    rig.trajectory   # frame -> RigPose (T_world_ref)
"""

import logging
import numpy as np
import collections.abc
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .config import RigCalibrationConfig
from .errors import (
    InsufficientOverlapError, InvalidInputError, OptimizationDivergenceError, OutOfOrderError
)
from .refinement import JointCalibrationRefiner, RefinementSummary
from .relative_pose import RelativePoseEstimate, RelativePoseEstimator
from .tracking import LocalizationResult, TrackingResultStore
from .utils import compose_transforms

logger = logging.getLogger(__name__)


class CameraStatus(Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZED = 'initialized'
    REFINED = 'refined'
    FAILED = 'failed'


class CalibrationStage(Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZED = 'initialized'
    REFINED = 'refined'


class CalibrationWarning(Enum):
    CAMERA_FAILED = 'camera_failed'
    REFINEMENT_DIVERGED = 'refinement_diverged'


@dataclass
class CalibrationIssue:
    """A non fatal failure reported by a calibration stage."""
    code: CalibrationWarning
    message: str
    camera_index: Optional[int] = None


@dataclass
class RigPose:
    """
    Pose of the rig reference frame in the map for one frame.

    When only uncalibrated (failed) cameras localized the frame, ``pose`` is
    that camera's own T_world_cam and ``calibrated`` is False.
    """
    pose: np.ndarray
    source_camera: int
    calibrated: bool = True


@dataclass
class CalibrationState:
    """Output artifact of the rig calibration."""
    stage: CalibrationStage = CalibrationStage.UNINITIALIZED
    reference_camera: int = 0
    extrinsics: Dict[int, np.ndarray] = field(default_factory=dict)
    trajectory: Dict[int, RigPose] = field(default_factory=dict)
    camera_status: Dict[int, CameraStatus] = field(default_factory=dict)
    failure_reasons: Dict[int, str] = field(default_factory=dict)
    estimates: Dict[int, RelativePoseEstimate] = field(default_factory=dict)
    warnings: List[CalibrationIssue] = field(default_factory=list)
    refinement: Optional[RefinementSummary] = None

    @property
    def refined(self) -> bool:
        return self.stage == CalibrationStage.REFINED

    def usable_cameras(self) -> List[int]:
        return sorted(c for c, s in self.camera_status.items()
                      if s in (CameraStatus.INITIALIZED, CameraStatus.REFINED))

    def failed_cameras(self) -> List[int]:
        return sorted(c for c, s in self.camera_status.items() if s == CameraStatus.FAILED)


TrackInput = Union[Sequence[LocalizationResult], Mapping[int, LocalizationResult]]


class Rig:
    """
    Calibrates a rig of cameras from their per-frame localization results.

    Calibration runs in two explicit stages: ``initialize_calibration``
    computes a robust initial extrinsic per camera from poses only, then
    ``optimize_calibration`` jointly refines extrinsics and rig trajectory
    from the reprojection of every inlier correspondence.
    """

    def __init__(self, config: RigCalibrationConfig = None):
        self.config = config or RigCalibrationConfig()
        self.store = TrackingResultStore()
        self.state = CalibrationState(reference_camera=self.config.reference_camera)
        self._estimator = RelativePoseEstimator(self.config)
        self._refiner = JointCalibrationRefiner(self.config)

    @property
    def reference_camera(self) -> int:
        return self.config.reference_camera

    def set_tracking_result(self, results: TrackInput, camera_index: int):
        """
        Append the whole track of one camera.

        Args:
            results: Localization results, either a sequence (frame index is
                the position) or a mapping frame index -> result
            camera_index: Index of the camera in the rig

        Raises:
            InvalidInputError: on a negative index, an empty track, frames out of
                order or a result that is not a LocalizationResult
            DuplicateFrameError: if a frame of this camera was already recorded

        Nothing is recorded when the call raises.
        """
        if camera_index < 0:
            raise InvalidInputError(f"Camera index must be >= 0, got {camera_index}")
        if results is None or len(results) == 0:
            raise InvalidInputError(f"Empty track for camera {camera_index}")

        if isinstance(results, collections.abc.Mapping):
            items = sorted(results.items())
        else:
            items = list(enumerate(results))

        self.store.extend(camera_index, items)

        num_valid = sum(1 for _, r in items if r.valid)
        logger.info("Camera %d: %d frames, %d localized", camera_index, len(items), num_valid)

    def initialize_calibration(self) -> bool:
        """
        Estimate the initial extrinsic of every camera.

        Cameras sharing too few jointly valid frames with the reference are
        marked FAILED and reported in ``state.warnings``; the others are
        unaffected.

        Returns:
            True if every camera was initialized

        Raises:
            InvalidInputError: if the reference camera has no track
        """
        if not self.store.has_camera(self.reference_camera):
            raise InvalidInputError(
                f"No track for the reference camera {self.reference_camera}")

        logger.info("Rig calibration initialization (%d cameras)", self.store.camera_count())
        state = CalibrationState(reference_camera=self.reference_camera)
        state.extrinsics[self.reference_camera] = np.eye(4)
        state.camera_status[self.reference_camera] = CameraStatus.INITIALIZED

        others = [c for c in self.store.camera_indices() if c != self.reference_camera]
        for camera, outcome in self._estimate_all(others):
            if isinstance(outcome, InsufficientOverlapError):
                logger.warning("Camera %d calibration failed: %s", camera, outcome)
                state.camera_status[camera] = CameraStatus.FAILED
                state.failure_reasons[camera] = str(outcome)
                state.warnings.append(
                    CalibrationIssue(CalibrationWarning.CAMERA_FAILED, str(outcome), camera))
            else:
                state.extrinsics[camera] = outcome.extrinsic
                state.estimates[camera] = outcome
                state.camera_status[camera] = CameraStatus.INITIALIZED

        trajectory, sources = self._refiner.seed_trajectory(
            self.store, state.usable_cameras(), state.extrinsics)
        state.trajectory = self._fuse_trajectory(state, trajectory, sources)
        state.stage = CalibrationStage.INITIALIZED
        self.state = state

        logger.info("Initialized %d/%d cameras, %d frames in trajectory",
                    len(state.usable_cameras()), self.store.camera_count(),
                    len(state.trajectory))
        return not state.failed_cameras()

    def _estimate_all(self, cameras: List[int]):
        reference_track = self.store.get(self.reference_camera)

        def estimate(camera):
            try:
                return camera, self._estimator.estimate(reference_track, self.store.get(camera))
            except InsufficientOverlapError as e:
                return camera, e

        if self.config.num_workers > 1 and len(cameras) > 1:
            with ThreadPoolExecutor(max_workers=self.config.num_workers) as pool:
                return list(pool.map(estimate, cameras))
        return [estimate(c) for c in cameras]

    def _fuse_trajectory(self, state: CalibrationState, trajectory: Dict[int, np.ndarray],
                         sources: Dict[int, int]) -> Dict[int, RigPose]:
        """Calibrated rig poses plus raw poses of frames only failed cameras saw."""
        fused = {f: RigPose(T, sources[f], True) for f, T in trajectory.items()}
        for camera in state.failed_cameras():
            track = self.store.get(camera)
            for frame in track.valid_frames():
                if frame not in fused:
                    fused[frame] = RigPose(np.array(track.pose(frame)), camera, False)
        return dict(sorted(fused.items()))

    def optimize_calibration(self) -> bool:
        """
        Jointly refine the extrinsics and the rig trajectory.

        Refinement starts from the last accepted state. If the solver
        diverges the previous extrinsics are kept and a REFINEMENT_DIVERGED
        warning is recorded.

        Returns:
            True if the refinement was accepted

        Raises:
            OutOfOrderError: if called before ``initialize_calibration``
        """
        state = self.state
        if state.stage == CalibrationStage.UNINITIALIZED:
            raise OutOfOrderError("optimize_calibration called before initialize_calibration")

        logger.info("Rig calibration optimization")
        cameras = state.usable_cameras()
        previous = {f: rp.pose for f, rp in state.trajectory.items() if rp.calibrated}
        try:
            result = self._refiner.refine(self.store, cameras, state.extrinsics, previous)
        except OptimizationDivergenceError as e:
            logger.warning("Rig calibration refinement failed, keeping initial extrinsics: %s", e)
            state.refinement = e.summary
            state.warnings.append(
                CalibrationIssue(CalibrationWarning.REFINEMENT_DIVERGED, str(e)))
            return False

        # Cameras without usable correspondences keep their initial extrinsic
        refined_cameras = set(result.free_cameras) | {self.reference_camera}
        for camera in cameras:
            state.extrinsics[camera] = result.extrinsics[camera]
            if camera in refined_cameras:
                state.camera_status[camera] = CameraStatus.REFINED
        state.trajectory = self._fuse_trajectory(state, result.trajectory, result.sources)
        state.refinement = result.summary
        state.stage = CalibrationStage.REFINED
        return True

    @property
    def extrinsics(self) -> Dict[int, np.ndarray]:
        """Extrinsic T_ref_cam of every calibrated camera."""
        return {c: self.state.extrinsics[c].copy() for c in self.state.usable_cameras()}

    @property
    def trajectory(self) -> Dict[int, RigPose]:
        return dict(self.state.trajectory)

    def camera_status(self, camera_index: int) -> CameraStatus:
        if camera_index in self.state.camera_status:
            return self.state.camera_status[camera_index]
        if self.store.has_camera(camera_index):
            return CameraStatus.UNINITIALIZED
        raise InvalidInputError(f"Unknown camera {camera_index}")

    def get_extrinsic(self, camera_index: int) -> np.ndarray:
        status = self.camera_status(camera_index)
        if status not in (CameraStatus.INITIALIZED, CameraStatus.REFINED):
            raise InvalidInputError(
                f"Camera {camera_index} has no extrinsic (status: {status.value})")
        return self.state.extrinsics[camera_index].copy()

    def get_rig_pose(self, frame_index: int) -> Optional[RigPose]:
        return self.state.trajectory.get(frame_index)

    def camera_pose(self, camera_index: int, frame_index: int) -> Optional[np.ndarray]:
        """Calibrated T_world_cam of a camera at a frame, from the rig pose."""
        rig_pose = self.get_rig_pose(frame_index)
        if rig_pose is None or not rig_pose.calibrated:
            return None
        return compose_transforms(rig_pose.pose, self.get_extrinsic(camera_index))
