# rig_extrinsic_calibration package
"""
Multi-camera rig extrinsic calibration from per-camera localization.

Each camera of the rig is localized independently against a prebuilt map;
this package recovers the rigid offsets between the cameras and the rig
trajectory from those per-frame results.
"""

from .config import RigCalibrationConfig, load_calibration_config
from .errors import (
    DuplicateFrameError,
    InsufficientOverlapError,
    InvalidInputError,
    OptimizationDivergenceError,
    OutOfOrderError,
    RigCalibrationError,
)
from .rig import CalibrationStage, CalibrationState, CameraStatus, Rig, RigPose
from .tracking import CameraIntrinsics, Correspondence, LocalizationResult, TrackingResultStore

__all__ = [
    'Rig',
    'RigCalibrationConfig',
    'load_calibration_config',
    'CalibrationState',
    'CalibrationStage',
    'CameraStatus',
    'RigPose',
    'CameraIntrinsics',
    'Correspondence',
    'LocalizationResult',
    'TrackingResultStore',
    'RigCalibrationError',
    'InvalidInputError',
    'OutOfOrderError',
    'DuplicateFrameError',
    'InsufficientOverlapError',
    'OptimizationDivergenceError',
]
