import unittest
import os
import sys
import tempfile
import threading
import types
from pathlib import Path
from unittest import mock

import numpy as np
from gtsam.gtsam import Pose3, Rot3, StereoCamera

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

from aslam import (
    AslamBackend,
    BackendParameters,
    CameraIntrinsics,
    FactorDynamicsConstVel,
    FactorRelativePose3,
    FactorStereoProjectionPose,
    GapTooLarge,
    ImuSample,
    InvalidTimestamp,
    LocalizationUpdate,
    LockTimeout,
    Pose3D,
    PoseCovariance6,
    SmartFactorIMU,
    SmartFactorStereoProjectionPose,
    SolveFailure,
    StateVectorType,
    StereoObservation,
    UnknownVariable,
    UnsupportedFactor,
    UsageFault,
    VariableId,
    VariableKind,
)
from aslam.backends.gtsam.conversions import get_stereo_calibration, key_to_string
from aslam.persistence import load_map, load_tum_trajectory

try:
    import gtsam_unstable
    HAVE_SMART_STEREO = hasattr(gtsam_unstable, 'SmartStereoProjectionPoseFactor')
except ImportError:
    HAVE_SMART_STEREO = False

COVARIANCE = PoseCovariance6.isotropic(0.01, 0.01)
INTRINSICS = CameraIntrinsics(500.0, 500.0, 320.0, 240.0)
BASELINE = 0.1
LANDMARK = np.array([0.5, 0.2, 5.0])


def step(x):
    return Pose3D((x, 0.0, 0.0))


def observe(x, point=LANDMARK):
    """Stereo measurement of ``point`` from a camera at (x, 0, 0) looking along +z."""
    K = get_stereo_calibration(INTRINSICS, INTRINSICS, BASELINE)
    measured = StereoCamera(Pose3(Rot3(), np.array([x, 0.0, 0.0])), K).project(point)
    return StereoObservation(measured.uL(), measured.uR(), measured.v())


class BackendTestCase(unittest.TestCase):
    state_vector = StateVectorType.SE3

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.backend = AslamBackend(self.make_params())

    def make_params(self, **overrides):
        params = dict(
            state_vector=self.state_vector,
            map_directory=self.tmp.name,
            lock_timeout=1.0,
        )
        params.update(overrides)
        return BackendParameters(**params)

    def position(self, kf_id):
        return np.array(self.backend.keyframe_pose(kf_id).position)

    def chain(self, count, dt=1.0):
        """Root plus ``count`` keyframes one meter apart along x, linked by relative poses."""
        kfs = [self.backend.add_keyframe(0.0, is_first=True)]
        for n in range(1, count + 1):
            kfs.append(self.backend.add_keyframe(n * dt))
            self.backend.add_factor(FactorRelativePose3(kfs[-2], kfs[-1], step(1.0), COVARIANCE))
        return kfs


class TestKeyframes(BackendTestCase):
    def test_root_keyframe_is_anchored(self):
        k0 = self.backend.add_keyframe(0.0, is_first=True, initial_pose=step(2.0))
        self.assertTrue(self.backend.keyframe(k0).is_root)
        self.assertEqual(self.backend.root_kf_id, k0)
        self.assertIsNone(self.backend.keyframe_pose(k0))
        self.assertTrue(self.backend.commit())
        np.testing.assert_allclose(self.position(k0), [2.0, 0, 0], atol=1e-6)

    def test_first_keyframe_is_root_without_flag(self):
        k0 = self.backend.add_keyframe(0.0)
        k1 = self.backend.add_keyframe(1.0)
        self.assertTrue(self.backend.keyframe(k0).is_root)
        self.assertFalse(self.backend.keyframe(k1).is_root)
        with self.assertRaises(UsageFault):
            self.backend.add_keyframe(2.0, is_first=True)

    def test_timestamps_must_increase(self):
        self.backend.add_keyframe(1.0)
        for t in (1.0, 0.5, float('nan')):
            with self.subTest(t=t):
                with self.assertRaises(InvalidTimestamp):
                    self.backend.add_keyframe(t)
        self.assertEqual(len(self.backend.keyframes), 1)

    def test_ids_are_unique_across_kinds(self):
        k0 = self.backend.add_keyframe(0.0)
        cam = self.backend.create_stereo_camera(INTRINSICS, INTRINSICS, BASELINE)
        lm = self.backend.create_landmark()
        k1 = self.backend.add_keyframe(1.0)
        self.assertEqual(len({k0.index, cam.index, lm.index, k1.index}), 4)

    def test_unknown_keyframe(self):
        with self.assertRaises(UnknownVariable):
            self.backend.keyframe(VariableId(99, VariableKind.KEYFRAME))


class TestExampleScenario(BackendTestCase):
    def test_relative_pose_chain(self):
        k0 = self.backend.add_keyframe(0.0, is_first=True)
        self.backend.commit()
        np.testing.assert_allclose(self.position(k0), [0, 0, 0], atol=1e-6)

        k1 = self.backend.add_keyframe(1.0)
        factor_id = self.backend.add_factor(FactorRelativePose3(k0, k1, step(1.0), COVARIANCE))
        self.assertEqual(factor_id, 0)
        self.assertFalse(self.backend.keyframe_has_value(k1))
        self.backend.commit()
        self.assertTrue(self.backend.keyframe_has_value(k1))
        np.testing.assert_allclose(self.position(k1), [1.0, 0, 0], atol=1e-6)
        np.testing.assert_allclose(
            self.backend.keyframe_pose(k1).orientation, [0, 0, 0, 1], atol=1e-6
        )

    @unittest.skipUnless(HAVE_SMART_STEREO, 'gtsam_unstable has no smart stereo factor')
    def test_smart_stereo_landmark(self):
        cam = self.backend.create_stereo_camera(INTRINSICS, INTRINSICS, BASELINE)
        k0, k1 = self.chain(1)
        self.backend.commit()

        smart = SmartFactorStereoProjectionPose(cam, 17, [(k0, observe(0.0)), (k1, observe(1.0))])
        factor_id = self.backend.add_factor(smart)
        self.assertEqual(self.backend.add_factor(smart), factor_id)
        self.assertTrue(self.backend.commit())
        self.assertEqual(self.backend.smart_factor_count, 1)
        self.assertFalse(
            any(key_to_string(k).startswith('l') for k in self.backend.published_estimate.keys)
        )
        state = next(iter(self.backend.incorporation.smart_landmarks.values()))
        first_slot = state.slot

        k2 = self.backend.add_keyframe(2.0)
        self.backend.add_factor(FactorRelativePose3(k1, k2, step(1.0), COVARIANCE))
        again = self.backend.add_factor(SmartFactorStereoProjectionPose(cam, 17, [(k2, observe(2.0))]))
        self.assertEqual(again, factor_id)
        self.assertIn(first_slot, self.backend.estimator.pending.changed_slots)
        self.assertEqual(state.observing_keyframes, [k0, k1, k2])

        self.assertTrue(self.backend.commit())
        self.assertEqual(self.backend.smart_factor_count, 1)
        self.assertNotIn(first_slot, self.backend.estimator.solver.slots)
        self.assertIn(state.slot, self.backend.estimator.solver.slots)
        self.assertEqual(state.record.slots, [first_slot, state.slot])
        np.testing.assert_allclose(self.position(k2), [2.0, 0, 0], atol=1e-4)
        self.assertIsNone(self.backend.landmark_position(state.landmark_id))

    def test_single_observation_smart_factor_stays_pending(self):
        cam = self.backend.create_stereo_camera(INTRINSICS, INTRINSICS, BASELINE)
        k0 = self.backend.add_keyframe(0.0)
        self.backend.add_factor(SmartFactorStereoProjectionPose(cam, 3, [(k0, observe(0.0))]))
        self.assertEqual(self.backend.smart_factor_count, 0)
        self.assertEqual(self.backend.factor_count, 1)

    def test_smart_stereo_without_factor_class_is_unsupported(self):
        cam = self.backend.create_stereo_camera(INTRINSICS, INTRINSICS, BASELINE)
        k0, k1 = self.chain(1)
        smart = SmartFactorStereoProjectionPose(cam, 5, [(k0, observe(0.0)), (k1, observe(1.0))])
        pending = dict(self.backend.estimator.pending.factors)
        with mock.patch.dict(sys.modules, {'gtsam_unstable': types.ModuleType('gtsam_unstable')}):
            with self.assertRaises(UnsupportedFactor):
                self.backend.add_factor(smart)
        self.assertEqual(self.backend.factor_count, 1)
        self.assertEqual(self.backend.smart_factor_count, 0)
        self.assertEqual(dict(self.backend.estimator.pending.factors), pending)


class TestFactors(BackendTestCase):
    def test_unknown_variable_leaves_state_untouched(self):
        k0 = self.backend.add_keyframe(0.0)
        ghost = VariableId(42, VariableKind.KEYFRAME)
        pending = dict(self.backend.estimator.pending.factors)
        with self.assertRaises(UnknownVariable):
            self.backend.add_factor(FactorRelativePose3(k0, ghost, step(1.0), COVARIANCE))
        self.assertEqual(self.backend.factor_count, 0)
        self.assertEqual(dict(self.backend.estimator.pending.factors), pending)

    def test_wrong_id_kind(self):
        k0 = self.backend.add_keyframe(0.0)
        lm = self.backend.create_landmark()
        with self.assertRaises(UsageFault):
            self.backend.add_factor(FactorRelativePose3(k0, lm, step(1.0), COVARIANCE))

    def test_unsupported_factor_type(self):
        with self.assertRaises(UnsupportedFactor):
            self.backend.add_factor(object())

    def test_dynamics_needs_velocity_state(self):
        k0, k1 = self.chain(1)
        with self.assertRaises(UnsupportedFactor):
            self.backend.add_factor(FactorDynamicsConstVel(k0, k1))
        self.assertEqual(self.backend.factor_count, 1)

    def test_raw_covariance_matrix(self):
        k0 = self.backend.add_keyframe(0.0)
        k1 = self.backend.add_keyframe(1.0)
        cov = np.diag([1e-4, 1e-4, 1e-4, 1e-6, 1e-6, 1e-6])
        self.backend.add_factor(FactorRelativePose3(k0, k1, step(0.5), cov))
        self.backend.commit()
        np.testing.assert_allclose(self.position(k1), [0.5, 0, 0], atol=1e-6)

    def test_factor_ids_and_records_only_grow(self):
        kfs = self.chain(3)
        records = self.backend.incorporation.records
        self.assertEqual([r.factor_id for r in records], [0, 1, 2])
        self.assertEqual(records[1].caller_ids, [kfs[1], kfs[2]])
        self.backend.commit()
        self.assertEqual(self.backend.factor_count, 3)

    def test_single_view_stereo_landmark(self):
        cam = self.backend.create_stereo_camera(INTRINSICS, INTRINSICS, BASELINE)
        lm = self.backend.create_landmark()
        k0, k1 = self.chain(1)
        self.backend.add_factor(FactorStereoProjectionPose(k0, lm, cam, observe(0.0)))
        self.backend.add_factor(FactorStereoProjectionPose(k1, lm, cam, observe(1.0)))
        self.assertIsNone(self.backend.landmark_position(lm))
        self.backend.commit()
        np.testing.assert_allclose(self.backend.landmark_position(lm), LANDMARK, atol=1e-4)

    def test_stereo_landmark_needs_disparity_or_guess(self):
        cam = self.backend.create_stereo_camera(INTRINSICS, INTRINSICS, BASELINE)
        k0 = self.backend.add_keyframe(0.0)
        lm = self.backend.create_landmark()
        with self.assertRaises(UsageFault):
            self.backend.add_factor(
                FactorStereoProjectionPose(k0, lm, cam, StereoObservation(300.0, 300.0, 240.0))
            )
        with_guess = self.backend.create_landmark(initial_position=LANDMARK)
        self.backend.add_factor(
            FactorStereoProjectionPose(k0, with_guess, cam, observe(0.0))
        )

    def test_camera_must_be_rectified(self):
        with self.assertRaises(UsageFault):
            self.backend.create_stereo_camera(
                INTRINSICS, CameraIntrinsics(500.0, 500.0, 320.0, 250.0), BASELINE
            )

    def test_unknown_landmark(self):
        with self.assertRaises(UnknownVariable):
            self.backend.landmark_position(VariableId(77, VariableKind.LANDMARK))


class TestVelocityState(BackendTestCase):
    state_vector = StateVectorType.SE3_VEL

    def test_dynamics_gap_policy(self):
        k0 = self.backend.add_keyframe(0.0)
        k1 = self.backend.add_keyframe(0.5)
        self.backend.add_factor(FactorRelativePose3(k0, k1, step(0.0), COVARIANCE))
        self.backend.add_factor(FactorDynamicsConstVel(k0, k1))
        self.assertTrue(self.backend.commit())
        np.testing.assert_allclose(self.position(k1), np.zeros(3), atol=1e-6)
        np.testing.assert_allclose(
            self.backend.keyframe_twist(k1).linear, np.zeros(3), atol=1e-6
        )

        k2 = self.backend.add_keyframe(10.0)
        count = self.backend.factor_count
        for a, b in ((k1, k2), (k1, k0)):
            with self.subTest(pair=(str(a), str(b))):
                with self.assertLogs('aslam.incorporation', level='WARNING'):
                    with self.assertRaises(GapTooLarge):
                        self.backend.add_factor(FactorDynamicsConstVel(a, b))
        self.assertEqual(self.backend.factor_count, count)

    def test_dynamics_at_exact_limit_is_accepted(self):
        k0 = self.backend.add_keyframe(0.0)
        k1 = self.backend.add_keyframe(5.0)
        self.backend.add_factor(FactorDynamicsConstVel(k0, k1))
        self.assertEqual(self.backend.factor_count, 1)

    def test_imu_at_rest(self):
        k0 = self.backend.add_keyframe(0.0)
        k1 = self.backend.add_keyframe(1.0)
        samples = [ImuSample((0.0, 0.0, 9.81), (0.0, 0.0, 0.0), 0.01)] * 100
        self.backend.add_factor(SmartFactorIMU(k0, k1, samples))
        self.assertEqual(len(self.backend.incorporation.active_imu_factors), 1)
        self.assertIsNotNone(self.backend.incorporation.bias_key)
        self.assertTrue(self.backend.commit())
        np.testing.assert_allclose(self.position(k1), np.zeros(3), atol=1e-3)
        np.testing.assert_allclose(self.backend.keyframe_twist(k1).linear, np.zeros(3), atol=1e-3)

        with self.assertRaises(InvalidTimestamp):
            self.backend.add_factor(SmartFactorIMU(k1, k0, samples))

    def test_velocity_only_through_relative_poses(self):
        k0, k1, k2 = self.chain(2)
        self.assertTrue(self.backend.commit())
        np.testing.assert_allclose(self.position(k2), [2.0, 0, 0], atol=1e-6)
        self.assertIsNotNone(self.backend.keyframe_twist(k2))


class TestCommit(BackendTestCase):
    def test_commit_failure_keeps_last_estimate(self):
        k0, k1 = self.chain(1)
        self.backend.commit()
        published = self.backend.published_estimate
        k2 = self.backend.add_keyframe(2.0)
        self.backend.add_factor(FactorRelativePose3(k1, k2, step(1.0), COVARIANCE))

        solver = self.backend.estimator.solver
        with mock.patch.object(solver, 'update', side_effect=RuntimeError('indefinite')):
            with self.assertRaises(SolveFailure):
                self.backend.commit()
        self.assertIs(self.backend.published_estimate, published)
        self.assertIsNone(self.backend.keyframe_pose(k2))

        self.assertTrue(self.backend.commit())
        np.testing.assert_allclose(self.position(k2), [2.0, 0, 0], atol=1e-6)

    def test_noop_commit(self):
        self.chain(1)
        self.assertTrue(self.backend.commit())
        self.assertFalse(self.backend.commit())
        self.assertFalse(self.backend.spin_once())

    def test_batch_solver(self):
        self.backend = AslamBackend(self.make_params(use_incremental_solver=False))
        kfs = self.chain(3)
        self.backend.commit()
        np.testing.assert_allclose(self.position(kfs[-1]), [3.0, 0, 0], atol=1e-6)

    def test_lock_slam_blocks_commits_from_other_threads(self):
        self.backend = AslamBackend(self.make_params(lock_timeout=0.05))
        self.chain(1)
        errors = []

        def commit():
            try:
                self.backend.commit()
            except LockTimeout as e:
                errors.append(e)

        self.backend.lock_slam()
        try:
            worker = threading.Thread(target=commit)
            worker.start()
            worker.join(5.0)
        finally:
            self.backend.unlock_slam()
        self.assertEqual(len(errors), 1)
        self.assertTrue(self.backend.commit())

    def test_publications_follow_commit_order(self):
        k0, k1 = self.chain(1)
        refresh = self.backend._refresh_publication
        refreshed = []
        in_first_refresh = threading.Event()
        second_done = threading.Event()
        overlapped = []

        def second_commit():
            k2 = self.backend.add_keyframe(2.0)
            self.backend.add_factor(FactorRelativePose3(k1, k2, step(1.0), COVARIANCE))
            self.backend.commit()
            second_done.set()

        def slow_refresh(published):
            refreshed.append(published.commit_index)
            if len(refreshed) == 1:
                in_first_refresh.set()
                overlapped.append(second_done.wait(0.3))
            refresh(published)

        with mock.patch.object(self.backend, '_refresh_publication', side_effect=slow_refresh):
            worker = threading.Thread(target=second_commit)
            first = threading.Thread(target=self.backend.commit)
            first.start()
            self.assertTrue(in_first_refresh.wait(5.0))
            worker.start()
            first.join(5.0)
            worker.join(5.0)

        self.assertEqual(overlapped, [False])
        self.assertEqual(refreshed, sorted(refreshed))
        self.assertEqual(len(refreshed), 2)
        snapshot = self.backend.vizmap.snapshot()
        self.assertEqual(len(self.backend.keyframes), 3)
        for kf_id in self.backend.keyframes:
            np.testing.assert_allclose(
                snapshot.keyframe_poses[kf_id].position, self.position(kf_id), atol=1e-9
            )


class TestLocalizationAndTrajectory(BackendTestCase):
    def setUp(self):
        super().setUp()
        self.prefix = os.path.join(self.tmp.name, 'out', 'trajectory')
        self.backend = AslamBackend(self.make_params(save_trajectory_file_prefix=self.prefix))
        self.k0, self.k1 = self.chain(1)
        self.backend.commit()

    def test_latest_localization_is_absolute(self):
        self.assertIsNone(self.backend.latest_localization())
        self.backend.advertise_updated_localization(
            LocalizationUpdate(1.5, self.k1, step(0.5))
        )
        latest = self.backend.latest_localization()
        np.testing.assert_allclose(latest.pose.position, [1.5, 0, 0], atol=1e-6)
        self.assertEqual(latest.reference_kf, self.k1)

    def test_unknown_reference_keyframe(self):
        with self.assertRaises(UnknownVariable):
            self.backend.advertise_updated_localization(
                LocalizationUpdate(1.5, VariableId(50, VariableKind.KEYFRAME), step(0.5))
            )

    def test_reconstruction_follows_keyframe_updates(self):
        for t in (0.25, 0.5):
            self.backend.advertise_updated_localization(LocalizationUpdate(t, self.k0, step(t)))
        self.backend.advertise_updated_localization(LocalizationUpdate(1.5, self.k1, step(0.5)))

        path = self.backend.reconstruct_trajectory()
        self.assertEqual(path.timestamps(), [0.0, 0.25, 0.5, 1.0, 1.5])
        self.assertEqual(path.time2id[1.0], self.k1)
        again = self.backend.reconstruct_trajectory()
        for t in path.timestamps():
            np.testing.assert_array_equal(path.poses[t].position, again.poses[t].position)

        # a second, conflicting measurement moves K1
        self.backend.add_factor(FactorRelativePose3(self.k0, self.k1, step(1.2), COVARIANCE))
        self.backend.commit()
        moved = self.backend.reconstruct_trajectory()
        delta = moved.poses[1.0].position[0] - path.poses[1.0].position[0]
        self.assertGreater(abs(delta), 0.05)
        self.assertAlmostEqual(moved.poses[1.5].position[0] - path.poses[1.5].position[0], delta)
        self.assertAlmostEqual(moved.poses[0.5].position[0], path.poses[0.5].position[0])

        latest = self.backend.latest_localization()
        self.assertAlmostEqual(latest.pose.position[0], moved.poses[1.5].position[0])

    def test_keyframe_only_history_without_prefix(self):
        backend = AslamBackend(self.make_params())
        k0 = backend.add_keyframe(0.0)
        backend.commit()
        backend.advertise_updated_localization(LocalizationUpdate(0.5, k0, step(0.5)))
        backend.advertise_updated_localization(LocalizationUpdate(0.0, k0, step(0.0)))
        self.assertEqual(len(backend.trajectory), 1)
        self.assertEqual(backend.reconstruct_trajectory().timestamps(), [0.0])

    def test_closest_keyframe(self):
        self.assertEqual(self.backend.find_closest_keyframe_in_time(0.4), self.k0)
        self.assertEqual(self.backend.find_closest_keyframe_in_time(0.6), self.k1)

    def test_on_quit_writes_outputs(self):
        self.backend.advertise_updated_localization(LocalizationUpdate(1.5, self.k1, step(0.5)))
        k2 = self.backend.add_keyframe(2.0)
        self.backend.add_factor(FactorRelativePose3(self.k1, k2, step(1.0), COVARIANCE))
        self.backend.on_quit()
        self.backend.on_quit()

        tum = load_tum_trajectory(self.prefix + '.tum')
        np.testing.assert_allclose(tum[:, 0], [0.0, 1.0, 1.5, 2.0])
        np.testing.assert_allclose(tum[-1, 1:4], [2.0, 0, 0], atol=1e-6)
        self.assertTrue(os.path.exists(self.prefix + '.csv'))

        document = load_map(os.path.join(self.tmp.name, 'aslam_map.yaml'))
        self.assertEqual([kf['id'] for kf in document['keyframes']], [str(self.k0), str(self.k1), str(k2)])
        self.assertTrue(document['keyframes'][0]['is_root'])
        self.assertEqual(len(document['edges']), 2)


class TestVisualization(BackendTestCase):
    def test_spin_once_hands_snapshot_to_renderer(self):
        rendered = []
        done = threading.Event()

        def renderer(snapshot):
            rendered.append(snapshot)
            done.set()

        backend = AslamBackend(self.make_params(enable_visualization=True), renderer=renderer)
        k0 = backend.add_keyframe(0.0)
        k1 = backend.add_keyframe(1.0)
        backend.add_factor(FactorRelativePose3(k0, k1, step(1.0), COVARIANCE))
        self.assertTrue(backend.spin_once())
        self.assertTrue(done.wait(5.0))
        snapshot = rendered[-1]
        self.assertEqual(set(snapshot.keyframe_poses), {k0, k1})
        self.assertEqual(snapshot.edges, {0: (k0, k1)})
        backend.on_quit()
        self.assertFalse(backend._worker.alive)

    def test_default_renderer_writes_png(self):
        output = os.path.join(self.tmp.name, 'graph.png')
        backend = AslamBackend(
            self.make_params(enable_visualization=True, visualization_output=output)
        )
        k0 = backend.add_keyframe(0.0)
        k1 = backend.add_keyframe(1.0)
        backend.add_factor(FactorRelativePose3(k0, k1, step(1.0), COVARIANCE))
        backend.spin_once()
        self.assertTrue(backend._worker.wait_idle(10.0))
        self.assertEqual(backend._worker.failed, 0)
        self.assertTrue(os.path.exists(output))
        backend.on_quit()


if __name__ == '__main__':
    unittest.main()
