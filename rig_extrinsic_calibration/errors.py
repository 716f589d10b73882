"""
Exceptions raised by the rig calibration engine.
"""

from typing import Any, Optional


class RigCalibrationError(Exception):
    """Base class for all rig calibration errors."""


class InvalidInputError(RigCalibrationError, ValueError):
    """Malformed or empty input, bad frame indexing or malformed configuration."""


class OutOfOrderError(InvalidInputError):
    """A calibration stage was invoked before the stage it depends on."""


class DuplicateFrameError(InvalidInputError):
    """Two localization results were reported for the same (camera, frame)."""

    def __init__(self, camera_index: int, frame_index: int):
        super().__init__(
            f"Camera {camera_index} already has a result for frame {frame_index}")
        self.camera_index = camera_index
        self.frame_index = frame_index


class InsufficientOverlapError(RigCalibrationError):
    """A camera shares too few jointly-valid frames with the reference camera."""

    def __init__(self, camera_index: int, num_frames: int, required: int,
                 reason: str = "jointly valid frames"):
        super().__init__(
            f"Camera {camera_index}: {num_frames} {reason} with the reference "
            f"camera, at least {required} required")
        self.camera_index = camera_index
        self.num_frames = num_frames
        self.required = required


class OptimizationDivergenceError(RigCalibrationError):
    """The joint refinement did not converge."""

    def __init__(self, message: str, summary: Optional[Any] = None):
        super().__init__(message)
        self.summary = summary
