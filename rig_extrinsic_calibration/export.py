"""
Export of a rig calibration to YAML and URDF.

The exporters only read a CalibrationState; the calibration itself does not
depend on them.
"""

import logging
import numpy as np
import yaml
from scipy.spatial.transform import Rotation
from typing import Any, Dict, Optional

from .rig import CalibrationState
from .utils import matrix_to_transform, transform_to_matrix

logger = logging.getLogger(__name__)


def calibration_to_dict(state: CalibrationState) -> Dict[str, Any]:
    """
    Plain-data view of a calibration state.

    Cameras map to their 4x4 extrinsic T_ref_cam, translation, quaternion
    [x, y, z, w] and status; frames map to the 4x4 rig pose T_world_ref.
    """
    cameras = {}
    for camera, status in sorted(state.camera_status.items()):
        entry = {'status': status.value}
        if camera in state.extrinsics and camera not in state.failed_cameras():
            T = state.extrinsics[camera]
            t, q = matrix_to_transform(T)
            entry.update({
                'transform_matrix': T.tolist(),
                'translation': t.tolist(),
                'quaternion': q.tolist(),
            })
        else:
            entry['reason'] = state.failure_reasons.get(camera, '')
        cameras[int(camera)] = entry

    trajectory = {
        int(frame): {
            'transform_matrix': rig_pose.pose.tolist(),
            'source_camera': int(rig_pose.source_camera),
            'calibrated': bool(rig_pose.calibrated),
        }
        for frame, rig_pose in sorted(state.trajectory.items())
    }

    return {
        'stage': state.stage.value,
        'reference_camera': int(state.reference_camera),
        'cameras': cameras,
        'trajectory': trajectory,
        'warnings': [
            {'code': w.code.value, 'message': w.message, 'camera': w.camera_index}
            for w in state.warnings
        ],
    }


def save_calibration_yaml(state: CalibrationState, output_path: str,
                          reference_frame: Optional[str] = None,
                          include_trajectory: bool = True):
    """
    Save extrinsics (and optionally the rig trajectory) to a YAML file.

    Each calibrated camera is written as
    ``value: [x_m, y_m, z_m, qx, qy, qz, qw]`` relative to the reference.
    """
    reference_frame = reference_frame or f"camera_{state.reference_camera}"
    lines = [
        "# Rig extrinsic calibration computed by rig_extrinsic_calibration",
        f"# Reference frame: {reference_frame}",
        f"# Stage: {state.stage.value}",
        "# Position xyz; Quaternions xyzw",
        "# [ x_m, y_m, z_m, qx, qy, qz, qw]",
    ]

    for camera, status in sorted(state.camera_status.items()):
        lines.append(f"camera_{camera}:")
        lines.append(f'  parent: "{reference_frame}"')
        lines.append(f'  child: "camera_{camera}"')
        lines.append(f"  status: {status.value}")
        if camera in state.failed_cameras() or camera not in state.extrinsics:
            continue
        t, q = matrix_to_transform(state.extrinsics[camera])
        lines.append(f"  value: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}, "
                     f"{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")

    if include_trajectory and state.trajectory:
        lines.append("trajectory:")
        for frame, rig_pose in sorted(state.trajectory.items()):
            t, q = matrix_to_transform(rig_pose.pose)
            lines.append(f"  {frame}:")
            lines.append(f"    source_camera: {rig_pose.source_camera}")
            lines.append(f"    calibrated: {str(rig_pose.calibrated).lower()}")
            lines.append(f"    value: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}, "
                         f"{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")

    with open(output_path, 'w') as f:
        f.write('\n'.join(lines) + '\n')

    logger.info("Saved extrinsics to %s", output_path)


def load_calibration_yaml(input_path: str) -> Dict[int, np.ndarray]:
    """Read back the camera extrinsics written by save_calibration_yaml."""
    with open(input_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    extrinsics = {}
    for key, entry in data.items():
        if not key.startswith('camera_') or 'value' not in entry:
            continue
        value = np.asarray(entry['value'], dtype=np.float64)
        extrinsics[int(key[len('camera_'):])] = transform_to_matrix(value[:3], value[3:])
    return extrinsics


def save_extrinsics_urdf(state: CalibrationState, output_path: str,
                         reference_frame: Optional[str] = None):
    """
    Save calibrated extrinsics to URDF fixed joints for visualization tools.
    """
    reference_frame = reference_frame or f"camera_{state.reference_camera}"
    lines = [
        '<?xml version="1.0"?>',
        '<robot name="rig_extrinsics">',
        f'  <link name="{reference_frame}"/>',
    ]

    for camera in state.usable_cameras():
        if camera == state.reference_camera:
            continue
        t, q = matrix_to_transform(state.extrinsics[camera])
        rpy = Rotation.from_quat(q).as_euler('xyz')
        name = f"camera_{camera}"

        lines.extend([
            f'  <link name="{name}"/>',
            f'  <joint name="{reference_frame}_to_{name}" type="fixed">',
            f'    <parent link="{reference_frame}"/>',
            f'    <child link="{name}"/>',
            f'    <origin xyz="{t[0]:.6f} {t[1]:.6f} {t[2]:.6f}" rpy="{rpy[0]:.6f} {rpy[1]:.6f} {rpy[2]:.6f}"/>',
            '  </joint>',
        ])

    lines.append('</robot>')

    with open(output_path, 'w') as f:
        f.write('\n'.join(lines))

    logger.info("Saved URDF to %s", output_path)
