#!/usr/bin/env python3
"""
Compute rig extrinsic calibration from per-camera localization results.

Each camera of the rig has been localized frame by frame against the same
map; its results are stored in ``<tracks-dir>/<camera_index>.yaml``. Frame
indices are shared across cameras.

Usage:
    python3 calibrate_rig.py \
        --tracks-dir /path/to/tracks \
        --config /path/to/rig_calibration.yaml \
        --output /path/to/rig_extrinsics.yaml
"""

import argparse
import logging
import os
import sys

import numpy as np

# Add package to path for standalone execution
try:
    from rig_extrinsic_calibration import Rig, RigCalibrationConfig, load_calibration_config
    from rig_extrinsic_calibration.export import save_calibration_yaml, save_extrinsics_urdf
    from rig_extrinsic_calibration.track_io import (
        find_camera_tracks, load_camera_track, track_statistics
    )
except ImportError:
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from rig_extrinsic_calibration import Rig, RigCalibrationConfig, load_calibration_config
    from rig_extrinsic_calibration.export import save_calibration_yaml, save_extrinsics_urdf
    from rig_extrinsic_calibration.track_io import (
        find_camera_tracks, load_camera_track, track_statistics
    )


def main():
    parser = argparse.ArgumentParser(
        description='Calibrate a camera rig from per-camera localization results'
    )

    parser.add_argument('--tracks-dir', type=str, required=True,
                        help='Directory containing <camera_index>.yaml localization results')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to rig_calibration.yaml (default: built-in defaults)')
    parser.add_argument('--nb-cameras', type=int, default=None,
                        help='Only use cameras 0 .. N-1 (default: all tracks found)')
    parser.add_argument('--output', '-o', type=str, default='rig_extrinsics.yaml',
                        help='Output file path for extrinsics (default: rig_extrinsics.yaml)')
    parser.add_argument('--output-urdf', type=str, default=None,
                        help='Output URDF file path (optional)')
    parser.add_argument('--skip-refinement', action='store_true',
                        help='Only run the initialization stage')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s')

    print("Loading configuration...")
    config = load_calibration_config(args.config) if args.config else RigCalibrationConfig()

    track_files = find_camera_tracks(args.tracks_dir)
    if args.nb_cameras is not None:
        track_files = {c: p for c, p in track_files.items() if c < args.nb_cameras}

    if not track_files:
        print(f"ERROR: No camera tracks found in {args.tracks_dir}")
        sys.exit(1)

    print(f"\nCameras: {sorted(track_files)}")
    print(f"Reference camera: {config.reference_camera}")

    rig = Rig(config)

    for camera, path in track_files.items():
        print(f"\n{'='*60}")
        print(f"Camera {camera}: {os.path.basename(path)}")
        print('='*60)

        results = load_camera_track(path)
        stats = track_statistics(results)
        rig.set_tracking_result(results, camera)

        print(f"  Localized {stats['num_localized']}/{stats['num_frames']} frames")
        print(f"  Correspondences: {stats['total_correspondences']} overall")
        print(f"  Mean correspondences per frame: {stats['mean_correspondences']:.1f}")
        print(f"  Max correspondences per frame:  {stats['max_correspondences']}")
        print(f"  Min correspondences per frame:  {stats['min_correspondences']}")

    print("\n" + "="*60)
    print("RIG CALIBRATION INITIALIZATION")
    print("="*60)

    if not rig.initialize_calibration():
        for camera, reason in rig.state.failure_reasons.items():
            print(f"  ✗ Camera {camera}: {reason}")

    for camera, estimate in sorted(rig.state.estimates.items()):
        print(f"  ✓ Camera {camera}: {len(estimate.inlier_frames)}/"
              f"{len(estimate.candidate_frames)} frames, "
              f"spread {estimate.rotation_spread_deg:.3f} deg / {estimate.translation_spread:.4f}")

    if not args.skip_refinement:
        print("\n" + "="*60)
        print("RIG CALIBRATION OPTIMIZATION")
        print("="*60)

        refined = rig.optimize_calibration()
        summary = rig.state.refinement
        if refined:
            print(f"  Cost: {summary.initial_cost:.6g} -> {summary.final_cost:.6g} "
                  f"({summary.iterations} evaluations)")
            for camera in sorted(summary.after):
                before, after = summary.before[camera], summary.after[camera]
                print(f"  Camera {camera}: median reprojection error "
                      f"{before.median:.3f} -> {after.median:.3f} px")
        else:
            print("  WARNING: refinement failed, keeping the initial calibration")
            print(f"  {rig.state.warnings[-1].message}")

    print("\n" + "="*60)
    print("CALIBRATION RESULTS")
    print("="*60)

    for camera, T in rig.extrinsics.items():
        t = T[:3, 3]
        print(f"\nCamera {camera} ({rig.camera_status(camera).value}, "
              f"relative to camera {config.reference_camera}):")
        print(f"  Translation: [{t[0]:.6f}, {t[1]:.6f}, {t[2]:.6f}]")
        print(f"  Rotation:\n{np.array2string(T[:3, :3], precision=6, prefix='  ')}")
        print(f"  Distance:    {np.linalg.norm(t):.4f}")

    save_calibration_yaml(rig.state, args.output)
    if args.output_urdf:
        save_extrinsics_urdf(rig.state, args.output_urdf)

    print("\n✓ Calibration complete!")
    print(f"  Extrinsics saved to: {args.output}")
    if args.output_urdf:
        print(f"  URDF saved to: {args.output_urdf}")


if __name__ == '__main__':
    main()
