import unittest
import os
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'src'))

from aslam.config import BackendParameters
from aslam.errors import ConfigurationFault
from aslam.types.enums import StateVectorType


class TestBackendParameters(unittest.TestCase):
    def test_defaults(self):
        params = BackendParameters()
        self.assertEqual(params.state_vector, StateVectorType.SE3)
        self.assertTrue(params.use_incremental_solver)
        self.assertEqual(params.max_interval_between_kfs_for_dynamic_model, 5.0)
        self.assertEqual(len(params.root_pose_prior_sigmas), 6)
        self.assertFalse(params.has_velocity)

    def test_state_vector_by_name(self):
        params = BackendParameters.from_dict({'state_vector': 'se3_vel'})
        self.assertEqual(params.state_vector, StateVectorType.SE3_VEL)
        self.assertTrue(params.has_velocity)

    def test_unsupported_state_vectors(self):
        for name in ('SE2', 'SE2_VEL', 'UNDEFINED', 'SO3'):
            with self.subTest(name=name):
                with self.assertRaises(ConfigurationFault):
                    BackendParameters.from_dict({'state_vector': name})

    def test_invalid_values(self):
        bad = [
            {'const_vel_model_std_pos': 0.0},
            {'isam2_relinearize_skip': 0},
            {'isam2_additional_update_steps': -1},
            {'lock_timeout': 'soon'},
            {'root_pose_prior_sigmas': [1.0] * 5},
            {'use_incremental_solver': 'maybe'},
        ]
        for params in bad:
            with self.subTest(params=params):
                with self.assertRaises(ConfigurationFault):
                    BackendParameters.from_dict(params)

    def test_unknown_key(self):
        with self.assertRaises(ConfigurationFault):
            BackendParameters.from_dict({'max_gap': 1.0})

    def test_to_dict_round_trip(self):
        params = BackendParameters(state_vector=StateVectorType.SE3_VEL, stereo_noise_sigma=2.0)
        self.assertEqual(BackendParameters.from_dict(params.to_dict()), params)

    def test_from_yaml_with_params_block(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'backend.yaml')
            with open(path, 'w') as f:
                f.write(
                    'params:\n'
                    '  state_vector: SE3_VEL\n'
                    '  use_incremental_solver: false\n'
                    '  max_interval_between_kfs_for_dynamic_model: 2.5\n'
                )
            params = BackendParameters.from_yaml(path)
        self.assertEqual(params.state_vector, StateVectorType.SE3_VEL)
        self.assertFalse(params.use_incremental_solver)
        self.assertEqual(params.max_interval_between_kfs_for_dynamic_model, 2.5)

    def test_from_yaml_errors(self):
        with self.assertRaises(ConfigurationFault):
            BackendParameters.from_yaml('/nonexistent/backend.yaml')
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'broken.yaml')
            with open(path, 'w') as f:
                f.write('- just\n- a list\n')
            with self.assertRaises(ConfigurationFault):
                BackendParameters.from_yaml(path)


if __name__ == '__main__':
    unittest.main()
