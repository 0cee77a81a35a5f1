"""
Variable types for the estimator (poses, twists, points and keyframes).
"""
from typing import Optional, Tuple

from attrs import define, field, validators
import numpy as np
from numpy import ndarray

from .key import KeyframeKeys, VariableId
from ..utils.validation import (
    quaternion_validator,
    to_float_tuple,
    tuple_length_validator,
    _check_transformation_matrix,
)
from ..utils.transformations import (
    get_quat_from_rotation_matrix,
    get_rotation_matrix_from_quat,
    get_rotation_matrix_from_transformation_matrix,
    get_translation_from_transformation_matrix,
    invert_transformation_matrix,
)


@define(frozen=True)
class Pose3D:
    """
    3D pose with position (x, y, z) and orientation (quaternion).
    """

    position: Tuple[float, float, float] = field(
        default=(0.0, 0.0, 0.0),
        converter=to_float_tuple,
        validator=tuple_length_validator(3),
        metadata={"description": "The position (x, y, z) of the pose"},
    )
    orientation: Tuple[float, float, float, float] = field(
        default=(0.0, 0.0, 0.0, 1.0),
        converter=to_float_tuple,
        validator=quaternion_validator(),
        metadata={"description": "The orientation quaternion (x, y, z, w) of the pose"},
    )

    @classmethod
    def identity(cls) -> "Pose3D":
        return cls()

    @classmethod
    def from_matrix(cls, T: ndarray) -> "Pose3D":
        """Builds a pose from a 4x4 homogeneous transformation matrix."""
        _check_transformation_matrix(T)
        R = get_rotation_matrix_from_transformation_matrix(T)
        t = get_translation_from_transformation_matrix(T)
        return cls(tuple(t), tuple(get_quat_from_rotation_matrix(R)))

    @property
    def rotation_matrix(self) -> ndarray:
        return get_rotation_matrix_from_quat(np.array(self.orientation))

    @property
    def transformation_matrix(self) -> ndarray:
        """Returns the 4x4 homogeneous transformation matrix."""
        T = np.eye(4)
        T[:3, :3] = self.rotation_matrix
        T[:3, 3] = np.array(self.position)
        return T

    def compose(self, other: "Pose3D") -> "Pose3D":
        """self ∘ other"""
        return Pose3D.from_matrix(self.transformation_matrix @ other.transformation_matrix)

    def inverse(self) -> "Pose3D":
        return Pose3D.from_matrix(invert_transformation_matrix(self.transformation_matrix))

    def between(self, other: "Pose3D") -> "Pose3D":
        """self^-1 ∘ other"""
        return self.inverse().compose(other)


@define(frozen=True)
class Twist3D:
    """
    Linear and angular velocity of a keyframe or trajectory sample.
    """

    linear: Tuple[float, float, float] = field(
        default=(0.0, 0.0, 0.0),
        converter=to_float_tuple,
        validator=tuple_length_validator(3),
        metadata={"description": "Linear velocity (vx, vy, vz) in the world frame"},
    )
    angular: Tuple[float, float, float] = field(
        default=(0.0, 0.0, 0.0),
        converter=to_float_tuple,
        validator=tuple_length_validator(3),
        metadata={"description": "Angular velocity (wx, wy, wz)"},
    )


@define(frozen=True)
class Point3D:
    """
    3D landmark position.
    """

    position: Tuple[float, float, float] = field(
        converter=to_float_tuple,
        validator=tuple_length_validator(3),
        metadata={"description": "The position (x, y, z) of the point"},
    )

    @property
    def array(self) -> ndarray:
        return np.array(self.position)


@define(frozen=True)
class Keyframe:
    """
    A caller-visible state variable: an id, a timestamp and the internal
    keys it occupies. Exactly one keyframe per session is root.
    """

    id: VariableId = field(validator=validators.instance_of(VariableId))
    timestamp: float = field(converter=float)
    keys: KeyframeKeys = field(validator=validators.instance_of(KeyframeKeys))
    is_root: bool = field(default=False, validator=validators.instance_of(bool))
    initial_pose: Optional[Pose3D] = field(
        default=None,
        validator=validators.optional(validators.instance_of(Pose3D)),
        metadata={"description": "Caller supplied initial guess, if any"},
    )
