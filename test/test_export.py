#!/usr/bin/env python3
"""
Unit tests for calibration export and track files.
"""

import unittest
import numpy as np
import os
import shutil
import sys
import tempfile

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rig_extrinsic_calibration import InvalidInputError, Rig
from rig_extrinsic_calibration.export import (
    calibration_to_dict,
    load_calibration_yaml,
    save_calibration_yaml,
    save_extrinsics_urdf,
)
from rig_extrinsic_calibration.simulation import (
    make_extrinsic, make_synthetic_rig, simulate_localization
)
from rig_extrinsic_calibration.track_io import (
    find_camera_tracks,
    load_camera_track,
    save_camera_track,
    track_statistics,
)


class _TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp_dir)


class TestExport(_TempDirTestCase):
    """Test the calibration exporters."""

    def setUp(self):
        super().setUp()
        self.truth = {
            0: np.eye(4),
            1: make_extrinsic((0.1, 0.02, 0.0), (0.0, 5.0, 1.0)),
            2: make_extrinsic((-0.1, 0.0, 0.0)),
        }
        synthetic = make_synthetic_rig(self.truth, num_frames=5)
        tracks = simulate_localization(synthetic, dropped_frames={2: [0, 1, 2]})
        self.rig = Rig()
        for camera, results in tracks.items():
            self.rig.set_tracking_result(results, camera)
        self.rig.initialize_calibration()

    def test_calibration_to_dict(self):
        data = calibration_to_dict(self.rig.state)

        self.assertEqual(data['stage'], 'initialized')
        self.assertEqual(data['reference_camera'], 0)
        self.assertEqual(data['cameras'][1]['status'], 'initialized')
        np.testing.assert_allclose(data['cameras'][1]['transform_matrix'], self.truth[1], atol=1e-9)
        self.assertEqual(len(data['cameras'][1]['quaternion']), 4)
        self.assertEqual(data['cameras'][2]['status'], 'failed')
        self.assertIn('reason', data['cameras'][2])
        self.assertNotIn('transform_matrix', data['cameras'][2])
        self.assertEqual(sorted(data['trajectory']), [0, 1, 2, 3, 4])
        self.assertEqual(data['warnings'][0]['code'], 'camera_failed')
        self.assertEqual(data['warnings'][0]['camera'], 2)

    def test_yaml_roundtrip(self):
        path = os.path.join(self.tmp_dir, 'extrinsics.yaml')
        save_calibration_yaml(self.rig.state, path)

        extrinsics = load_calibration_yaml(path)

        self.assertEqual(sorted(extrinsics), [0, 1])
        np.testing.assert_allclose(extrinsics[0], np.eye(4), atol=1e-6)
        np.testing.assert_allclose(extrinsics[1], self.truth[1], atol=1e-5)

        with open(path) as f:
            text = f.read()
        self.assertIn('parent: "camera_0"', text)
        self.assertIn('camera_2:', text)
        self.assertIn('trajectory:', text)

    def test_yaml_without_trajectory(self):
        path = os.path.join(self.tmp_dir, 'extrinsics.yaml')
        save_calibration_yaml(self.rig.state, path, reference_frame='rig', include_trajectory=False)

        with open(path) as f:
            text = f.read()
        self.assertIn('parent: "rig"', text)
        self.assertNotIn('trajectory:', text)

    def test_urdf(self):
        path = os.path.join(self.tmp_dir, 'rig.urdf')
        save_extrinsics_urdf(self.rig.state, path)

        with open(path) as f:
            text = f.read()
        self.assertIn('<link name="camera_0"/>', text)
        self.assertIn('<joint name="camera_0_to_camera_1" type="fixed">', text)
        self.assertNotIn('camera_0_to_camera_0', text)
        self.assertNotIn('camera_2', text)
        self.assertTrue(text.rstrip().endswith('</robot>'))


class TestTrackFiles(_TempDirTestCase):
    """Test camera track files."""

    def setUp(self):
        super().setUp()
        synthetic = make_synthetic_rig({0: np.eye(4), 1: make_extrinsic((0.1, 0.0, 0.0))},
                                       num_frames=4)
        self.tracks = simulate_localization(synthetic, pixel_noise=0.5, dropped_frames={1: [2]})

    def test_track_roundtrip(self):
        path = os.path.join(self.tmp_dir, '1.yaml')
        save_camera_track(dict(enumerate(self.tracks[1])), path, camera_index=1)

        loaded = load_camera_track(path)

        self.assertEqual(sorted(loaded), [0, 1, 2, 3])
        self.assertFalse(loaded[2].valid)
        self.assertIsNone(loaded[2].pose)
        original = self.tracks[1][3]
        np.testing.assert_allclose(loaded[3].pose, original.pose)
        np.testing.assert_allclose(loaded[3].points_2d, original.points_2d)
        np.testing.assert_array_equal(loaded[3].point_ids, original.point_ids)
        np.testing.assert_allclose(loaded[3].intrinsics.camera_matrix,
                                   original.intrinsics.camera_matrix)

    def test_invalid_track_file(self):
        path = os.path.join(self.tmp_dir, '0.yaml')
        with open(path, 'w') as f:
            f.write("camera_index: 0\n")

        with self.assertRaises(InvalidInputError):
            load_camera_track(path)

    def test_non_rigid_pose(self):
        path = os.path.join(self.tmp_dir, '0.yaml')
        with open(path, 'w') as f:
            f.write("frames:\n"
                    "  - frame: 0\n"
                    "    valid: true\n"
                    "    pose: [[2, 0, 0, 0], [0, 1, 0, 0], [0, 0, 1, 0], [0, 0, 0, 1]]\n")

        with self.assertRaises(InvalidInputError):
            load_camera_track(path)

    def test_find_camera_tracks(self):
        for name in ('0.yaml', '3.yml', '12.yaml', 'notes.yaml', 'extrinsics.yaml'):
            open(os.path.join(self.tmp_dir, name), 'w').close()

        tracks = find_camera_tracks(self.tmp_dir)

        self.assertEqual(list(tracks), [0, 3, 12])
        self.assertTrue(tracks[3].endswith('3.yml'))

    def test_track_statistics(self):
        results = dict(enumerate(self.tracks[1]))
        counts = [r.num_correspondences for r in self.tracks[1] if r.valid]

        stats = track_statistics(results)

        self.assertEqual(stats['num_frames'], 4)
        self.assertEqual(stats['num_localized'], 3)
        self.assertEqual(stats['total_correspondences'], sum(counts))
        self.assertEqual(stats['min_correspondences'], min(counts))


if __name__ == '__main__':
    unittest.main()
