"""
YAML files holding one camera's per-frame localization results.

Format::

    camera_index: 0
    frames:
      - frame: 0
        valid: true
        pose: [[...4x4 camera-to-world...]]
        camera_matrix: [[fx, 0, cx], [0, fy, cy], [0, 0, 1]]
        dist_coeffs: [k1, k2, p1, p2, k3]
        point_ids: [...]
        points_2d: [[u, v], ...]
        points_3d: [[x, y, z], ...]
"""

import os
import re
import numpy as np
import yaml
from typing import Dict, List, Optional

from .errors import InvalidInputError
from .tracking import CameraIntrinsics, LocalizationResult
from .utils import is_rigid_transform


def _result_to_dict(frame_index: int, result: LocalizationResult) -> Dict:
    entry = {'frame': int(frame_index), 'valid': bool(result.valid)}
    if result.pose is not None:
        entry['pose'] = result.pose.tolist()
    if result.intrinsics is not None:
        entry['camera_matrix'] = result.intrinsics.camera_matrix.tolist()
        entry['dist_coeffs'] = result.intrinsics.dist_coeffs.tolist()
    if result.num_correspondences:
        entry['point_ids'] = result.point_ids.tolist()
        entry['points_2d'] = result.points_2d.tolist()
        entry['points_3d'] = result.points_3d.tolist()
    return entry


def _result_from_dict(entry: Dict) -> LocalizationResult:
    intrinsics = None
    if 'camera_matrix' in entry:
        intrinsics = CameraIntrinsics(
            np.array(entry['camera_matrix'], dtype=np.float64),
            np.array(entry.get('dist_coeffs', np.zeros(5)), dtype=np.float64))
    return LocalizationResult(
        pose=entry.get('pose'),
        valid=bool(entry.get('valid', False)),
        intrinsics=intrinsics,
        points_2d=np.array(entry.get('points_2d', []), dtype=np.float64),
        points_3d=np.array(entry.get('points_3d', []), dtype=np.float64),
        point_ids=np.array(entry.get('point_ids', []), dtype=np.int64),
    )


def save_camera_track(results: Dict[int, LocalizationResult], output_path: str,
                      camera_index: Optional[int] = None):
    """Write a camera track (frame index -> result) to YAML."""
    data = {
        'camera_index': camera_index,
        'frames': [_result_to_dict(f, r) for f, r in sorted(results.items())],
    }
    with open(output_path, 'w') as f:
        yaml.safe_dump(data, f, default_flow_style=None, sort_keys=False)


def load_camera_track(track_path: str) -> Dict[int, LocalizationResult]:
    """
    Load a camera track written by save_camera_track.

    Returns:
        Dict mapping frame index -> LocalizationResult

    Raises:
        InvalidInputError: if the file is not a valid track
    """
    with open(track_path, 'r') as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict) or not isinstance(data.get('frames'), list):
        raise InvalidInputError(f"{track_path}: missing 'frames' list")

    results = {}
    for entry in data['frames']:
        try:
            frame_index = int(entry['frame'])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"{track_path}: frame entry without index") from e
        if entry.get('pose') is not None and not is_rigid_transform(np.asarray(entry['pose'])):
            raise InvalidInputError(f"{track_path}: frame {frame_index} pose is not a rigid transform")
        results[frame_index] = _result_from_dict(entry)
    return results


def find_camera_tracks(tracks_dir: str) -> Dict[int, str]:
    """
    Find ``<camera_index>.yaml`` track files in a directory.

    Returns:
        Dict mapping camera index -> file path, sorted by index
    """
    pattern = re.compile(r'^(\d+)\.ya?ml$')
    tracks = {}
    for name in os.listdir(tracks_dir):
        match = pattern.match(name)
        if match:
            tracks[int(match.group(1))] = os.path.join(tracks_dir, name)
    return dict(sorted(tracks.items()))


def track_statistics(results: Dict[int, LocalizationResult]) -> Dict[str, float]:
    """Frame and correspondence counts of a camera track."""
    localized = [r for r in results.values() if r.valid]
    counts: List[int] = [r.num_correspondences for r in localized]
    return {
        'num_frames': len(results),
        'num_localized': len(localized),
        'total_correspondences': int(sum(counts)),
        'mean_correspondences': float(np.mean(counts)) if counts else 0.0,
        'min_correspondences': int(min(counts)) if counts else 0,
        'max_correspondences': int(max(counts)) if counts else 0,
    }
