"""
Back-end parameters.

Every field is validated at construction; violations raise
ConfigurationFault so that a misconfigured back-end never builds any
estimator state.
"""
import logging
from typing import Any, Mapping, Tuple

import attrs
from attrs import define, field
import numpy as np
import yaml

from .errors import ConfigurationFault
from .types.enums import StateVectorType

logger = logging.getLogger(__name__)

SUPPORTED_STATE_VECTORS = (StateVectorType.SE3, StateVectorType.SE3_VEL)


def _to_state_vector(value) -> StateVectorType:
    if isinstance(value, StateVectorType):
        return value
    try:
        return StateVectorType[str(value).upper()]
    except KeyError:
        raise ConfigurationFault(f"unknown state_vector {value!r}") from None


def _to_bool(value) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
        raise ConfigurationFault(f"cannot interpret {value!r} as a boolean")
    return bool(value)


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationFault(f"expected a number, got {value!r}") from None


def _to_int(value) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigurationFault(f"expected an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationFault(f"expected an integer, got {value!r}") from None


def _to_sigmas(value) -> Tuple[float, ...]:
    try:
        return tuple(float(v) for v in value)
    except (TypeError, ValueError):
        raise ConfigurationFault(f"expected a sequence of numbers, got {value!r}") from None


def _positive(instance, attribute, value) -> None:
    if not np.isfinite(value) or value <= 0:
        raise ConfigurationFault(f"{attribute.name} must be positive, got {value}")


def _non_negative(instance, attribute, value) -> None:
    if value < 0:
        raise ConfigurationFault(f"{attribute.name} must be >= 0, got {value}")


def _at_least_one(instance, attribute, value) -> None:
    if value < 1:
        raise ConfigurationFault(f"{attribute.name} must be >= 1, got {value}")


def _supported_state_vector(instance, attribute, value) -> None:
    if value not in SUPPORTED_STATE_VECTORS:
        raise ConfigurationFault(
            f"state_vector {value.name} is not supported; "
            f"use one of {[s.name for s in SUPPORTED_STATE_VECTORS]}"
        )


def _six_positive_sigmas(instance, attribute, value) -> None:
    if len(value) != 6:
        raise ConfigurationFault(f"{attribute.name} needs 6 sigmas (rot, trans), got {len(value)}")
    if not all(np.isfinite(v) and v > 0 for v in value):
        raise ConfigurationFault(f"{attribute.name} must be positive, got {value}")


@define
class BackendParameters:
    """
    Tunables of the back-end. Defaults follow the reference SLAM back-end.
    """

    state_vector: StateVectorType = field(
        default=StateVectorType.SE3,
        converter=_to_state_vector,
        validator=_supported_state_vector,
        metadata={"description": "Per-keyframe state: SE3 (pose) or SE3_VEL (pose+velocity)"},
    )

    # solver
    use_incremental_solver: bool = field(default=True, converter=_to_bool)
    isam2_additional_update_steps: int = field(
        default=0, converter=_to_int, validator=_non_negative
    )
    isam2_relinearize_threshold: float = field(
        default=0.1, converter=_to_float, validator=_positive
    )
    isam2_relinearize_skip: int = field(default=1, converter=_to_int, validator=_at_least_one)

    # persistence
    save_trajectory_file_prefix: str = field(default="", converter=str)
    save_map_at_end: bool = field(default=True, converter=_to_bool)
    map_directory: str = field(default=".", converter=str)

    # constant-velocity dynamics model
    const_vel_model_std_pos: float = field(default=0.1, converter=_to_float, validator=_positive)
    const_vel_model_std_vel: float = field(default=1.0, converter=_to_float, validator=_positive)
    max_interval_between_kfs_for_dynamic_model: float = field(
        default=5.0, converter=_to_float, validator=_positive
    )

    # priors
    root_pose_prior_sigmas: Tuple[float, ...] = field(
        default=(1e-6,) * 6,
        converter=_to_sigmas,
        validator=_six_positive_sigmas,
        metadata={"description": "Root pose prior sigmas ordered (rx, ry, rz, x, y, z)"},
    )
    velocity_prior_sigma: float = field(default=1e-3, converter=_to_float, validator=_positive)
    weak_velocity_prior_sigma: float = field(
        default=10.0, converter=_to_float, validator=_positive
    )

    # sensors
    stereo_noise_sigma: float = field(default=1.0, converter=_to_float, validator=_positive)
    imu_gravity: float = field(default=9.81, converter=_to_float)
    imu_accel_noise_sigma: float = field(default=0.1, converter=_to_float, validator=_positive)
    imu_gyro_noise_sigma: float = field(default=0.01, converter=_to_float, validator=_positive)
    imu_integration_sigma: float = field(default=1e-4, converter=_to_float, validator=_positive)
    imu_bias_prior_sigma: float = field(default=1e-3, converter=_to_float, validator=_positive)

    # runtime
    lock_timeout: float = field(default=5.0, converter=_to_float, validator=_positive)
    enable_diagnostics: bool = field(default=False, converter=_to_bool)
    enable_visualization: bool = field(default=False, converter=_to_bool)
    visualization_output: str = field(default="", converter=str)

    @property
    def has_velocity(self) -> bool:
        return self.state_vector.has_velocity

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "BackendParameters":
        """
        Builds parameters from a mapping, rejecting unknown keys.

        Raises:
            ConfigurationFault: unknown key or invalid value
        """
        known = {a.name for a in attrs.fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            raise ConfigurationFault(f"unknown parameter(s): {', '.join(unknown)}")
        try:
            return cls(**params)
        except (TypeError, ValueError) as e:
            raise ConfigurationFault(str(e)) from e

    @classmethod
    def from_yaml(cls, path: str) -> "BackendParameters":
        """
        Loads parameters from a YAML file. An optional top-level ``params``
        block is unwrapped.
        """
        try:
            with open(path, "r") as f:
                document = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationFault(f"cannot read parameters from {path}: {e}") from e
        if document is None:
            document = {}
        if not isinstance(document, dict):
            raise ConfigurationFault(f"{path}: expected a mapping at top level")
        if "params" in document and isinstance(document["params"], dict):
            document = document["params"]
        logger.info(f"[config] loaded {len(document)} parameter(s) from {path}")
        return cls.from_dict(document)

    def to_dict(self) -> dict:
        d = attrs.asdict(self)
        d["state_vector"] = self.state_vector.name
        d["root_pose_prior_sigmas"] = list(self.root_pose_prior_sigmas)
        return d
