"""
Enumerations for state-vector kinds and identifier domains.
"""
from enum import Enum


class StateVectorType(Enum):
    """Per-keyframe state representation."""
    UNDEFINED = -1
    SE2 = 0
    SE3 = 1
    SE2_VEL = 2
    SE3_VEL = 3

    @property
    def has_velocity(self) -> bool:
        return self in (StateVectorType.SE2_VEL, StateVectorType.SE3_VEL)


class VariableKind(Enum):
    """What a caller-facing identifier refers to."""
    KEYFRAME = "K"
    LANDMARK = "L"
    CAMERA = "C"


class FactorKind(Enum):
    """Factor variants accepted by the incorporation layer."""
    RELATIVE_POSE = "relative_pose"
    DYNAMICS_CONST_VEL = "dynamics_const_vel"
    STEREO_PROJECTION = "stereo_projection"
    SMART_STEREO_PROJECTION = "smart_stereo_projection"
    IMU = "imu"
