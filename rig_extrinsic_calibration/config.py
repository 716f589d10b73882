"""
Policy knobs of the rig calibration engine.
"""

import yaml
from dataclasses import dataclass, asdict, fields
from typing import Any, Dict

from .errors import InvalidInputError


ROBUST_LOSSES = ('linear', 'huber', 'soft_l1', 'cauchy', 'arctan')


@dataclass
class RigCalibrationConfig:
    """
    Configuration of initialization and refinement.

    Attributes:
        reference_camera: Index of the camera defining the rig frame
        min_overlap_frames: Minimum jointly-valid frames with the reference
            camera required to initialize a camera
        max_rotation_deviation_deg: Relative pose samples whose rotation
            deviates more than this from the aggregate are outliers
        max_translation_deviation: Same for translation, in map units
        robust_loss: Loss passed to scipy.optimize.least_squares
        robust_loss_scale: Inlier/outlier margin of the loss, in pixels
        max_iterations: Solver budget, counted in residual evaluations
            (max_nfev of scipy.optimize.least_squares, Jacobian evaluations excluded)
        convergence_tolerance: Tolerance on the parameter update (xtol)
        divergence_ratio: Refinement fails if final cost > ratio * initial cost
        num_workers: Threads used to initialize cameras in parallel
    """
    reference_camera: int = 0
    min_overlap_frames: int = 3
    max_rotation_deviation_deg: float = 5.0
    max_translation_deviation: float = 0.05
    robust_loss: str = 'soft_l1'
    robust_loss_scale: float = 2.0
    max_iterations: int = 100
    convergence_tolerance: float = 1e-8
    divergence_ratio: float = 1.0
    num_workers: int = 1

    def __post_init__(self):
        self.validate()

    def validate(self):
        """Raise InvalidInputError if a value is out of range."""
        if self.reference_camera < 0:
            raise InvalidInputError("reference_camera must be >= 0")
        if self.min_overlap_frames < 1:
            raise InvalidInputError("min_overlap_frames must be >= 1")
        if self.max_rotation_deviation_deg <= 0 or self.max_translation_deviation <= 0:
            raise InvalidInputError("outlier thresholds must be > 0")
        if self.robust_loss not in ROBUST_LOSSES:
            raise InvalidInputError(
                f"Unknown robust loss: {self.robust_loss} (expected one of {ROBUST_LOSSES})")
        if self.robust_loss_scale <= 0:
            raise InvalidInputError("robust_loss_scale must be > 0")
        if self.max_iterations < 1:
            raise InvalidInputError("max_iterations must be >= 1")
        if self.convergence_tolerance <= 0:
            raise InvalidInputError("convergence_tolerance must be > 0")
        if self.divergence_ratio < 1.0:
            raise InvalidInputError("divergence_ratio must be >= 1")
        if self.num_workers < 1:
            raise InvalidInputError("num_workers must be >= 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RigCalibrationConfig':
        """Build a config from a mapping, rejecting unknown keys."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidInputError("Calibration config must be a mapping")

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidInputError(f"Unknown calibration config keys: {sorted(unknown)}")

        kwargs = {}
        for key, value in data.items():
            default = getattr(cls, key)
            try:
                converted = type(default)(value)
            except (TypeError, ValueError) as e:
                raise InvalidInputError(f"Invalid value for {key}: {value!r}") from e
            # Reject lossy conversions such as 2.9 -> 2
            if isinstance(value, (int, float)) and converted != value:
                raise InvalidInputError(
                    f"Invalid value for {key}: {value!r} is not a {type(default).__name__}")
            kwargs[key] = converted
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_calibration_config(config_path: str) -> RigCalibrationConfig:
    """
    Load the calibration configuration from a YAML file.

    The keys may sit at top level or under a ``rig_calibration`` section.
    """
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if isinstance(data, dict) and 'rig_calibration' in data:
        data = data['rig_calibration']
    return RigCalibrationConfig.from_dict(data)
