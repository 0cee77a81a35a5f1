import unittest
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

from aslam.trajectory import (
    TrajectoryHistory,
    find_closest_keyframe_in_time,
    reconstruct_whole_path,
)
from aslam.types.enums import VariableKind
from aslam.types.key import KeyframeKeys, VariableId
from aslam.types.localization import LocalizationUpdate
from aslam.types.variables import Keyframe, Pose3D, Twist3D


def kf(index, timestamp):
    return Keyframe(VariableId(index, VariableKind.KEYFRAME), timestamp, KeyframeKeys(index))


class TestTrajectoryHistory(unittest.TestCase):
    def test_keyframe_entries_always_recorded(self):
        history = TrajectoryHistory(record_all=False)
        anchor = VariableId(0, VariableKind.KEYFRAME)
        self.assertFalse(history.record(LocalizationUpdate(0.5, anchor, Pose3D())))
        self.assertTrue(history.record(LocalizationUpdate(1.0, anchor, Pose3D()), is_keyframe_time=True))
        self.assertEqual(len(history), 1)

    def test_entries_sorted_by_time(self):
        history = TrajectoryHistory(record_all=True)
        anchor = VariableId(0, VariableKind.KEYFRAME)
        for t in (0.3, 0.1, 0.2):
            history.record(LocalizationUpdate(t, anchor, Pose3D()))
        self.assertEqual([e.timestamp for e in history.entries()], [0.1, 0.2, 0.3])


class TestReconstruction(unittest.TestCase):
    def setUp(self):
        self.k0, self.k1, self.k2 = kf(0, 0.0), kf(1, 1.0), kf(2, 2.0)
        self.keyframes = {k.id: k for k in (self.k0, self.k1, self.k2)}
        self.poses = {self.k0.id: Pose3D(), self.k1.id: Pose3D((1.0, 0.0, 0.0))}
        self.entries = [
            LocalizationUpdate(0.5, self.k0.id, Pose3D((0.5, 0.0, 0.0)), Twist3D((1.0, 0, 0))),
            LocalizationUpdate(1.0, self.k1.id, Pose3D(), Twist3D((0.9, 0, 0))),
            LocalizationUpdate(1.5, self.k1.id, Pose3D((0.0, 0.5, 0.0))),
            LocalizationUpdate(2.5, self.k2.id, Pose3D((0.5, 0.0, 0.0))),
        ]

    def reconstruct(self):
        return reconstruct_whole_path(
            self.keyframes,
            self.entries,
            lambda k: self.poses.get(k.id),
            lambda k: None,
        )

    def test_entries_composed_with_anchor(self):
        path = self.reconstruct()
        self.assertEqual(path.timestamps(), [0.0, 0.5, 1.0, 1.5])
        np.testing.assert_allclose(path.poses[1.5].position, [1.0, 0.5, 0.0])
        self.assertEqual(path.id2time, {self.k0.id: 0.0, self.k1.id: 1.0})
        self.assertEqual(path.twists[1.0], Twist3D((0.9, 0, 0)))
        self.assertNotIn(1.5, path.twists)

    def test_anchor_delta_propagates(self):
        before = self.reconstruct()
        yaw = np.pi / 2
        self.poses[self.k1.id] = Pose3D((1.0, 0.2, 0.0), (0.0, 0.0, np.sin(yaw / 2), np.cos(yaw / 2)))
        after = self.reconstruct()
        np.testing.assert_allclose(after.poses[1.5].position, [0.5, 0.2, 0.0], atol=1e-9)
        np.testing.assert_allclose(after.poses[0.5].position, before.poses[0.5].position)

    def test_closest_keyframe(self):
        time2kf = {0.0: self.k0.id, 1.0: self.k1.id}
        self.assertEqual(find_closest_keyframe_in_time(time2kf, 0.7), self.k1.id)
        self.assertEqual(find_closest_keyframe_in_time(time2kf, -3.0), self.k0.id)
        self.assertIsNone(find_closest_keyframe_in_time({}, 1.0))


if __name__ == '__main__':
    unittest.main()
