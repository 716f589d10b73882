#!/usr/bin/env python3
"""
Generate synthetic per-camera localization results for a camera rig.

Writes one ``<camera_index>.yaml`` track per camera, ready for
calibrate_rig.py, together with the ground truth extrinsics.

Usage:
    python3 simulate_rig_tracks.py --output-dir /tmp/rig_tracks \
        --camera 0.1,0,0,0,5,0 --camera -0.1,0,0,0,-5,0
"""

import argparse
import os
import sys

try:
    from rig_extrinsic_calibration.simulation import (
        make_extrinsic, make_synthetic_rig, simulate_localization
    )
    from rig_extrinsic_calibration.track_io import save_camera_track
    from rig_extrinsic_calibration.utils import matrix_to_transform
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from rig_extrinsic_calibration.simulation import (
        make_extrinsic, make_synthetic_rig, simulate_localization
    )
    from rig_extrinsic_calibration.track_io import save_camera_track
    from rig_extrinsic_calibration.utils import matrix_to_transform


def parse_camera(value: str):
    """Parse 'x,y,z,rx,ry,rz' (meters, degrees) into an extrinsic."""
    parts = [float(v) for v in value.split(',')]
    if len(parts) != 6:
        raise argparse.ArgumentTypeError("camera must be x,y,z,rx,ry,rz")
    return make_extrinsic(parts[:3], parts[3:])


def main():
    parser = argparse.ArgumentParser(
        description='Generate synthetic localization results for a camera rig'
    )
    parser.add_argument('--output-dir', type=str, required=True,
                        help='Directory receiving the <camera_index>.yaml tracks')
    parser.add_argument('--camera', type=parse_camera, action='append', default=[],
                        help='Extrinsic of an additional camera: x,y,z,rx,ry,rz')
    parser.add_argument('--frames', type=int, default=20,
                        help='Number of frames (default: 20)')
    parser.add_argument('--points', type=int, default=300,
                        help='Number of map points (default: 300)')
    parser.add_argument('--rotation-noise', type=float, default=0.2,
                        help='Pose rotation noise in degrees (default: 0.2)')
    parser.add_argument('--translation-noise', type=float, default=0.005,
                        help='Pose translation noise (default: 0.005)')
    parser.add_argument('--pixel-noise', type=float, default=0.5,
                        help='Observation noise in pixels (default: 0.5)')
    parser.add_argument('--seed', type=int, default=0)

    args = parser.parse_args()

    extrinsics = {0: make_extrinsic((0.0, 0.0, 0.0))}
    for i, T in enumerate(args.camera, start=1):
        extrinsics[i] = T

    rig = make_synthetic_rig(extrinsics, num_frames=args.frames,
                             num_points=args.points, seed=args.seed)
    tracks = simulate_localization(
        rig,
        rotation_noise_deg=args.rotation_noise,
        translation_noise=args.translation_noise,
        pixel_noise=args.pixel_noise,
        seed=args.seed,
    )

    os.makedirs(args.output_dir, exist_ok=True)
    for camera, results in tracks.items():
        path = os.path.join(args.output_dir, f"{camera}.yaml")
        save_camera_track(dict(enumerate(results)), path, camera)
        t, q = matrix_to_transform(rig.extrinsics[camera])
        print(f"Camera {camera}: {path}")
        print(f"  Ground truth: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}, "
              f"{q[0]:.6f}, {q[1]:.6f}, {q[2]:.6f}, {q[3]:.6f}]")


if __name__ == '__main__':
    main()
