"""
Localization types delivered to and published by the back-end.
"""
from typing import Optional

from attrs import define, field, validators

from .key import VariableId
from .variables import Pose3D, Twist3D


@define(frozen=True)
class LocalizationUpdate:
    """
    A delivered pose, relative to the keyframe it is anchored to.
    """

    timestamp: float = field(converter=float)
    reference_kf: VariableId = field(validator=validators.instance_of(VariableId))
    pose: Pose3D = field(
        validator=validators.instance_of(Pose3D),
        metadata={"description": "Pose relative to reference_kf"},
    )
    twist: Optional[Twist3D] = field(
        default=None, validator=validators.optional(validators.instance_of(Twist3D))
    )


@define(frozen=True)
class LatestLocalization:
    """
    The most recent absolute pose for low-latency consumers, together with
    the anchor it was derived from so it can be re-anchored after a commit.
    """

    timestamp: float = field(converter=float)
    reference_kf: VariableId = field(validator=validators.instance_of(VariableId))
    relative_pose: Pose3D = field(validator=validators.instance_of(Pose3D))
    pose: Pose3D = field(
        validator=validators.instance_of(Pose3D),
        metadata={"description": "Absolute pose in the map frame"},
    )
    twist: Optional[Twist3D] = field(
        default=None, validator=validators.optional(validators.instance_of(Twist3D))
    )
