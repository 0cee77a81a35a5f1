"""
Caller-facing factor types.

Factors reference variables only through caller ids (VariableId); the
incorporation layer translates them into solver factors on internal keys.
"""
from typing import Tuple, Union

from attrs import define, field, validators
import numpy as np
from numpy import ndarray

from .covariance import PoseCovariance6
from .enums import FactorKind
from .key import VariableId
from .variables import Pose3D
from ..utils.validation import positive_validator, to_float_tuple, tuple_length_validator

_variable_id = validators.instance_of(VariableId)


@define(frozen=True)
class StereoObservation:
    """
    A rectified stereo pixel measurement (left column, right column, row).
    """

    u_left: float = field(converter=float, metadata={"description": "Left image column"})
    u_right: float = field(converter=float, metadata={"description": "Right image column"})
    v: float = field(converter=float, metadata={"description": "Image row (both images)"})

    def __attrs_post_init__(self):
        if not np.all(np.isfinite([self.u_left, self.u_right, self.v])):
            raise ValueError(f"stereo observation must be finite: {self}")
        if self.disparity < 0.0:
            raise ValueError(
                f"stereo disparity must be non-negative, got {self.disparity}"
            )

    @property
    def disparity(self) -> float:
        return self.u_left - self.u_right


@define(frozen=True)
class ImuSample:
    """
    One inertial measurement: specific force, angular rate and the time
    step it covers.
    """

    accel: Tuple[float, float, float] = field(
        converter=to_float_tuple,
        validator=tuple_length_validator(3),
        metadata={"description": "Measured specific force (m/s^2) in the body frame"},
    )
    gyro: Tuple[float, float, float] = field(
        converter=to_float_tuple,
        validator=tuple_length_validator(3),
        metadata={"description": "Measured angular rate (rad/s) in the body frame"},
    )
    dt: float = field(
        converter=float,
        validator=positive_validator,
        metadata={"description": "Integration interval in seconds"},
    )


@define(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics of one camera of a rectified stereo pair."""

    fx: float = field(converter=float, validator=positive_validator)
    fy: float = field(converter=float, validator=positive_validator)
    cx: float = field(converter=float)
    cy: float = field(converter=float)
    skew: float = field(default=0.0, converter=float)


@define(frozen=True)
class FactorRelativePose3:
    """Relative SE(3) pose of ``to_kf`` expressed in the frame of ``from_kf``."""

    from_kf: VariableId = field(validator=_variable_id)
    to_kf: VariableId = field(validator=_variable_id)
    rel_pose: Pose3D = field(validator=validators.instance_of(Pose3D))
    covariance: Union[PoseCovariance6, ndarray] = field(
        validator=validators.instance_of((PoseCovariance6, ndarray)),
        eq=False,
        metadata={"description": "6x6 covariance ordered (x, y, z, roll, pitch, yaw)"},
    )

    kind = FactorKind.RELATIVE_POSE


@define(frozen=True)
class FactorDynamicsConstVel:
    """Constant-velocity motion model between two keyframes."""

    from_kf: VariableId = field(validator=_variable_id)
    to_kf: VariableId = field(validator=_variable_id)

    kind = FactorKind.DYNAMICS_CONST_VEL


@define(frozen=True)
class FactorStereoProjectionPose:
    """Single-view stereo observation of an explicit landmark variable."""

    observing_kf: VariableId = field(validator=_variable_id)
    observed_landmark: VariableId = field(validator=_variable_id)
    camera_id: VariableId = field(validator=_variable_id)
    observation: StereoObservation = field(
        validator=validators.instance_of(StereoObservation)
    )

    kind = FactorKind.STEREO_PROJECTION


def _to_observation_tuple(observations) -> tuple:
    return tuple((kf_id, obs) for kf_id, obs in observations)


def _observations_validator(instance, attribute, value) -> None:
    if len(value) == 0:
        raise ValueError(f"{attribute.name} must contain at least one observation")
    for kf_id, obs in value:
        if not isinstance(kf_id, VariableId):
            raise TypeError(f"{attribute.name}: {kf_id!r} is not a VariableId")
        if not isinstance(obs, StereoObservation):
            raise TypeError(f"{attribute.name}: {obs!r} is not a StereoObservation")


@define(frozen=True)
class SmartFactorStereoProjectionPose:
    """
    Multi-view stereo observations of one feature. The same ``feature_id``
    may be delivered repeatedly; its observations accumulate in a single
    smart factor and no landmark variable is ever created.
    """

    camera_id: VariableId = field(validator=_variable_id)
    feature_id: int = field(validator=validators.instance_of(int))
    observations: Tuple[Tuple[VariableId, StereoObservation], ...] = field(
        converter=_to_observation_tuple, validator=_observations_validator
    )

    kind = FactorKind.SMART_STEREO_PROJECTION


def _samples_validator(instance, attribute, value) -> None:
    if len(value) == 0:
        raise ValueError(f"{attribute.name} must contain at least one sample")
    for sample in value:
        if not isinstance(sample, ImuSample):
            raise TypeError(f"{attribute.name}: {sample!r} is not an ImuSample")


@define(frozen=True)
class SmartFactorIMU:
    """Preintegrated inertial measurements between two keyframes."""

    from_kf: VariableId = field(validator=_variable_id)
    to_kf: VariableId = field(validator=_variable_id)
    samples: Tuple[ImuSample, ...] = field(converter=tuple, validator=_samples_validator)

    kind = FactorKind.IMU


Factor = Union[
    FactorRelativePose3,
    FactorDynamicsConstVel,
    FactorStereoProjectionPose,
    SmartFactorStereoProjectionPose,
    SmartFactorIMU,
]
