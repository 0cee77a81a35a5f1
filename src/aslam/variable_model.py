"""
Per-keyframe state representation.

Decides how many internal keys a keyframe occupies, their value types,
and which priors accompany keyframe creation.
"""
import logging
from typing import Dict, List, Optional

import numpy as np
from gtsam.gtsam import Pose3

from .backends.gtsam.conversions import POSE_CHAR, VELOCITY_CHAR, KeyAllocator
from .backends.gtsam.factors import get_pose_prior_factor, get_velocity_prior_factor
from .config import BackendParameters
from .errors import UnsupportedFactor
from .types.enums import FactorKind, StateVectorType
from .types.key import KeyframeKeys

logger = logging.getLogger(__name__)

VELOCITY_FACTOR_KINDS = (FactorKind.DYNAMICS_CONST_VEL, FactorKind.IMU)


class VariableModel:
    def __init__(self, params: BackendParameters, key_allocator: KeyAllocator):
        self.params = params
        self._keys = key_allocator

    @property
    def state_vector(self) -> StateVectorType:
        return self.params.state_vector

    @property
    def has_velocity(self) -> bool:
        return self.params.has_velocity

    @property
    def keys_per_keyframe(self) -> int:
        return 2 if self.has_velocity else 1

    def allocate_keyframe_keys(self) -> KeyframeKeys:
        pose = self._keys.allocate(POSE_CHAR)
        velocity = self._keys.allocate(VELOCITY_CHAR) if self.has_velocity else None
        return KeyframeKeys(pose, velocity)

    def initial_values(
        self, keys: KeyframeKeys, pose: Pose3, velocity: Optional[np.ndarray] = None
    ) -> Dict[int, object]:
        """Initial values of every key of one keyframe (velocity defaults to zero)."""
        values = {keys.pose: pose}
        if keys.velocity is not None:
            if velocity is None:
                velocity = np.zeros(3)
            values[keys.velocity] = np.asarray(velocity, dtype=float).reshape(3)
        return values

    def root_priors(self, keys: KeyframeKeys, pose: Pose3) -> List:
        """Gauge-fixing priors of the root keyframe."""
        priors = [get_pose_prior_factor(keys.pose, pose, self.params.root_pose_prior_sigmas)]
        if keys.velocity is not None:
            priors.append(
                get_velocity_prior_factor(
                    keys.velocity, np.zeros(3), self.params.velocity_prior_sigma
                )
            )
        return priors

    def weak_velocity_prior(self, keys: KeyframeKeys, mean: Optional[np.ndarray] = None):
        """Loose prior for a velocity no factor constrains yet."""
        if keys.velocity is None:
            raise ValueError("keyframe has no velocity key")
        if mean is None:
            mean = np.zeros(3)
        return get_velocity_prior_factor(
            keys.velocity, mean, self.params.weak_velocity_prior_sigma
        )

    def requires_velocity(self, kind: FactorKind) -> bool:
        return kind in VELOCITY_FACTOR_KINDS

    def check_supported(self, kind: FactorKind) -> None:
        """
        Raises:
            UnsupportedFactor: the factor needs velocity variables and the
                state vector has none
        """
        if self.requires_velocity(kind) and not self.has_velocity:
            raise UnsupportedFactor(
                f"{kind.value} factors need state_vector SE3_VEL, "
                f"configured {self.state_vector.name}"
            )
