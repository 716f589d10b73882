"""
Joint refinement of camera extrinsics and the rig trajectory.

Unknowns are the extrinsics T_ref_cam of every usable non-reference camera
and the rig pose T_world_ref of every frame observed through at least one
correspondence. A map point X seen by camera c at frame f is projected with

    T_cam_world = inv(T_world_ref(f) @ T_ref_cam(c))

and compared to its observed pixel. The reference extrinsic is the identity
and is not a parameter. Map points are not refined.
"""

import logging
import cv2
import numpy as np
from dataclasses import dataclass, field
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix
from typing import Dict, List, Optional, Sequence, Tuple

from .config import RigCalibrationConfig
from .errors import OptimizationDivergenceError
from .tracking import CameraIntrinsics, LocalizationResult, TrackingResultStore
from .utils import invert_transform, perturb_transform, rvec_tvec_from_pose

logger = logging.getLogger(__name__)

POSE_DOF = 6


@dataclass
class ReprojectionStats:
    """Reprojection error statistics of one camera, in pixels."""
    num_observations: int = 0
    median: float = float('nan')
    rms: float = float('nan')
    max: float = float('nan')

    @classmethod
    def from_errors(cls, errors: np.ndarray) -> 'ReprojectionStats':
        errors = np.asarray(errors, dtype=np.float64).ravel()
        if errors.size == 0:
            return cls()
        return cls(
            num_observations=int(errors.size),
            median=float(np.median(errors)),
            rms=float(np.sqrt(np.mean(errors ** 2))),
            max=float(np.max(errors)),
        )


@dataclass
class RefinementSummary:
    """Solver report of one refinement run."""
    initial_cost: float = float('nan')
    final_cost: float = float('nan')
    iterations: int = 0
    status: int = 0
    message: str = ''
    num_parameters: int = 0
    num_residuals: int = 0
    before: Dict[int, ReprojectionStats] = field(default_factory=dict)
    after: Dict[int, ReprojectionStats] = field(default_factory=dict)


@dataclass
class RefinementResult:
    extrinsics: Dict[int, np.ndarray]
    trajectory: Dict[int, np.ndarray]     # frame -> T_world_ref
    sources: Dict[int, int]               # frame -> camera the seed came from
    optimized_frames: List[int]
    free_cameras: List[int]               # non-reference cameras whose extrinsic was optimized
    summary: RefinementSummary


@dataclass
class _Block:
    """Residual rows of one (frame, camera) observation set."""
    frame: int
    camera: int
    result: LocalizationResult
    start: int

    @property
    def stop(self) -> int:
        return self.start + 2 * self.result.num_correspondences


def project_points(points_3d: np.ndarray, T_cam_world: np.ndarray,
                   intrinsics: CameraIntrinsics) -> np.ndarray:
    """Project (N, 3) map points into the image of a camera, returns (N, 2)."""
    rvec, tvec = rvec_tvec_from_pose(T_cam_world)
    projected, _ = cv2.projectPoints(
        np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 1, 3),
        rvec, tvec,
        np.ascontiguousarray(intrinsics.camera_matrix),
        np.ascontiguousarray(intrinsics.dist_coeffs))
    return projected.reshape(-1, 2)


def robust_cost(residuals: np.ndarray, loss: str, f_scale: float) -> float:
    """Cost as minimized by scipy.optimize.least_squares: 0.5 * sum(rho(f**2))."""
    z = (np.asarray(residuals) / f_scale) ** 2
    if loss == 'linear':
        rho = z
    elif loss == 'huber':
        rho = np.where(z <= 1, z, 2 * np.sqrt(z) - 1)
    elif loss == 'soft_l1':
        rho = 2 * (np.sqrt(1 + z) - 1)
    elif loss == 'cauchy':
        rho = np.log1p(z)
    elif loss == 'arctan':
        rho = np.arctan(z)
    else:
        raise ValueError(f"Unknown loss: {loss}")
    return float(0.5 * f_scale ** 2 * np.sum(rho))


class JointCalibrationRefiner:
    """
    Nonlinear least-squares refinement over all usable cameras and frames.
    """

    def __init__(self, config: RigCalibrationConfig = None):
        self.config = config or RigCalibrationConfig()

    @property
    def reference_camera(self) -> int:
        return self.config.reference_camera

    def seed_trajectory(self, store: TrackingResultStore, cameras: Sequence[int],
                        extrinsics: Dict[int, np.ndarray],
                        previous: Optional[Dict[int, np.ndarray]] = None
                        ) -> Tuple[Dict[int, np.ndarray], Dict[int, int]]:
        """
        Initial rig pose for every frame at least one usable camera localized.

        A frame already in ``previous`` keeps that pose. Otherwise the
        reference camera pose is used when valid, else the pose of the first
        other valid camera composed with the inverse of its extrinsic.

        Returns:
            Tuple of (frame -> T_world_ref, frame -> source camera)
        """
        previous = previous or {}
        ordered = [self.reference_camera] + sorted(c for c in cameras if c != self.reference_camera)
        ordered = [c for c in ordered if c in cameras and store.has_camera(c)]

        trajectory: Dict[int, np.ndarray] = {}
        sources: Dict[int, int] = {}
        for camera in ordered:
            track = store.get(camera)
            T_cam_ref = invert_transform(extrinsics[camera])
            for frame in track.valid_frames():
                if frame in trajectory:
                    continue
                if frame in previous:
                    trajectory[frame] = np.array(previous[frame], dtype=np.float64)
                else:
                    trajectory[frame] = track.pose(frame) @ T_cam_ref
                sources[frame] = camera
        return dict(sorted(trajectory.items())), dict(sorted(sources.items()))

    def _blocks(self, store: TrackingResultStore, cameras: Sequence[int],
                frames: Sequence[int]) -> List[_Block]:
        blocks = []
        start = 0
        frame_set = set(frames)
        for camera in sorted(cameras):
            track = store.get(camera)
            for frame, result in track.items():
                if frame not in frame_set or not result.usable_for_reprojection:
                    continue
                block = _Block(frame, camera, result, start)
                blocks.append(block)
                start = block.stop
        return blocks

    def reprojection_errors(self, store: TrackingResultStore, cameras: Sequence[int],
                            extrinsics: Dict[int, np.ndarray],
                            trajectory: Dict[int, np.ndarray]
                            ) -> Dict[Tuple[int, int], np.ndarray]:
        """
        Per-correspondence reprojection error norms, keyed by (frame, camera).
        """
        errors = {}
        for block in self._blocks(store, cameras, list(trajectory)):
            T_cam_world = invert_transform(trajectory[block.frame] @ extrinsics[block.camera])
            projected = project_points(block.result.points_3d, T_cam_world,
                                       block.result.intrinsics)
            errors[(block.frame, block.camera)] = np.linalg.norm(
                projected - block.result.points_2d, axis=1)
        return errors

    def reprojection_stats(self, store: TrackingResultStore, cameras: Sequence[int],
                           extrinsics: Dict[int, np.ndarray],
                           trajectory: Dict[int, np.ndarray]) -> Dict[int, ReprojectionStats]:
        errors = self.reprojection_errors(store, cameras, extrinsics, trajectory)
        stats = {}
        for camera in sorted(cameras):
            camera_errors = [e for (_, c), e in errors.items() if c == camera]
            stats[camera] = ReprojectionStats.from_errors(
                np.concatenate(camera_errors) if camera_errors else np.zeros(0))
        return stats

    def refine(self, store: TrackingResultStore, cameras: Sequence[int],
               extrinsics: Dict[int, np.ndarray],
               previous_trajectory: Optional[Dict[int, np.ndarray]] = None) -> RefinementResult:
        """
        Jointly refine the extrinsics of ``cameras`` and the rig trajectory.

        Args:
            store: Tracking results of all cameras
            cameras: Usable camera indices, the reference camera included
            extrinsics: Current T_ref_cam per usable camera
            previous_trajectory: Last accepted T_world_ref per frame, used as seed

        Raises:
            OptimizationDivergenceError: if the solver runs out of iterations,
                produces a non finite cost or ends above the initial cost
        """
        cameras = sorted(set(cameras) | {self.reference_camera})
        extrinsics = {c: np.array(extrinsics[c], dtype=np.float64) for c in cameras}
        extrinsics[self.reference_camera] = np.eye(4)

        seeds, sources = self.seed_trajectory(store, cameras, extrinsics, previous_trajectory)
        blocks = self._blocks(store, cameras, list(seeds))
        if not blocks:
            raise OptimizationDivergenceError("No correspondences available for refinement")

        observed = {b.camera for b in blocks}
        free_cameras = [c for c in cameras if c != self.reference_camera and c in observed]
        frames = sorted({b.frame for b in blocks})
        camera_slot = {c: i for i, c in enumerate(free_cameras)}
        frame_slot = {f: len(free_cameras) + i for i, f in enumerate(frames)}
        num_params = POSE_DOF * (len(free_cameras) + len(frames))
        num_residuals = blocks[-1].stop

        def unpack(x):
            E = dict(extrinsics)
            for c, slot in camera_slot.items():
                E[c] = perturb_transform(extrinsics[c], x[POSE_DOF * slot:POSE_DOF * (slot + 1)])
            P = {f: perturb_transform(seeds[f], x[POSE_DOF * slot:POSE_DOF * (slot + 1)])
                 for f, slot in frame_slot.items()}
            return E, P

        def residuals(x):
            E, P = unpack(x)
            out = np.empty(num_residuals)
            for block in blocks:
                T_cam_world = invert_transform(P[block.frame] @ E[block.camera])
                projected = project_points(block.result.points_3d, T_cam_world,
                                           block.result.intrinsics)
                out[block.start:block.stop] = (projected - block.result.points_2d).ravel()
            return out

        sparsity = lil_matrix((num_residuals, num_params), dtype=int)
        for block in blocks:
            slot = frame_slot[block.frame]
            sparsity[block.start:block.stop, POSE_DOF * slot:POSE_DOF * (slot + 1)] = 1
            if block.camera in camera_slot:
                slot = camera_slot[block.camera]
                sparsity[block.start:block.stop, POSE_DOF * slot:POSE_DOF * (slot + 1)] = 1

        x0 = np.zeros(num_params)
        summary = RefinementSummary(
            initial_cost=robust_cost(residuals(x0), self.config.robust_loss,
                                     self.config.robust_loss_scale),
            num_parameters=num_params,
            num_residuals=num_residuals,
            before=self.reprojection_stats(store, cameras, extrinsics, seeds),
        )
        logger.info("Refining %d cameras and %d frames: %d parameters, %d residuals",
                    len(cameras), len(frames), num_params, num_residuals)

        result = least_squares(
            residuals, x0,
            jac_sparsity=sparsity,
            method='trf',
            x_scale='jac',
            loss=self.config.robust_loss,
            f_scale=self.config.robust_loss_scale,
            xtol=self.config.convergence_tolerance,
            max_nfev=self.config.max_iterations,
        )

        summary.final_cost = float(result.cost)
        summary.iterations = int(result.nfev)
        summary.status = int(result.status)
        summary.message = str(result.message)
        logger.debug("Solver finished: status=%d, %s, cost %.6g -> %.6g",
                     summary.status, summary.message, summary.initial_cost, summary.final_cost)

        if result.status == 0:
            raise OptimizationDivergenceError(
                f"Refinement did not converge within {self.config.max_iterations} "
                "residual evaluations",
                summary)
        if not np.isfinite(summary.final_cost):
            raise OptimizationDivergenceError("Refinement produced a non finite cost", summary)
        # Relative slack absorbs rounding between our cost and the solver's
        bound = self.config.divergence_ratio * summary.initial_cost
        if summary.final_cost > bound + 1e-9 * max(1.0, summary.initial_cost):
            raise OptimizationDivergenceError(
                f"Refinement cost increased: {summary.initial_cost:.6g} -> "
                f"{summary.final_cost:.6g}", summary)

        refined_extrinsics, refined_poses = unpack(result.x)
        refined_extrinsics[self.reference_camera] = np.eye(4)

        # Frames without correspondences are re-seeded with the refined extrinsics
        trajectory, sources = self.seed_trajectory(
            store, cameras, refined_extrinsics, refined_poses)
        summary.after = self.reprojection_stats(store, cameras, refined_extrinsics, refined_poses)

        for camera in cameras:
            before, after = summary.before[camera], summary.after[camera]
            logger.info("Camera %d: median reprojection error %.3f -> %.3f px (%d observations)",
                        camera, before.median, after.median, after.num_observations)

        return RefinementResult(
            extrinsics=refined_extrinsics,
            trajectory=trajectory,
            sources=sources,
            optimized_frames=frames,
            free_cameras=free_cameras,
            summary=summary,
        )
