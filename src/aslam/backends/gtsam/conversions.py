"""
Conversion utilities between internal types and GTSAM types.

This module converts between our attrs types (Pose3D, Twist3D, covariances,
camera intrinsics) and GTSAM's native types, and allocates the integer
symbols used as internal variable keys.
"""
import threading
from collections import defaultdict
from typing import Dict

import numpy as np

from gtsam.gtsam import Cal3_S2Stereo, Pose3, Rot3, StereoPoint2, Symbol, symbol

from ...types.factors import CameraIntrinsics, StereoObservation
from ...types.variables import Pose3D, Twist3D
from ...utils.validation import _check_transformation_matrix

POSE_CHAR = "x"
VELOCITY_CHAR = "v"
LANDMARK_CHAR = "l"
BIAS_CHAR = "b"


class KeyAllocator:
    """
    Per-kind counters producing gtsam symbols (x0, x1, ..., v0, ..., l0, ...).

    Internal keys are allocated here and nowhere else; they are unrelated
    to caller ids.
    """

    def __init__(self):
        self._next: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def allocate(self, char: str) -> int:
        with self._lock:
            index = self._next[char]
            self._next[char] = index + 1
        return symbol(char, index)

    def allocated(self, char: str) -> int:
        """Number of keys handed out for this kind so far."""
        with self._lock:
            return self._next[char]


def key_to_string(key: int) -> str:
    """Human readable form of a gtsam key, for logs."""
    return Symbol(key).string()


def get_pose3_from_matrix(pose_matrix: np.ndarray) -> Pose3:
    """
    Convert a 3D transformation matrix to a GTSAM Pose3.

    Args:
        pose_matrix: 4x4 homogeneous transformation matrix.

    Returns:
        GTSAM Pose3 object.
    """
    _check_transformation_matrix(pose_matrix, dim=3)
    rot_matrix = pose_matrix[:3, :3]
    tx, ty, tz = pose_matrix[:3, 3]
    return Pose3(Rot3(rot_matrix), np.array([tx, ty, tz]))  # type: ignore


def get_pose3_from_pose3d(pose: Pose3D) -> Pose3:
    return get_pose3_from_matrix(pose.transformation_matrix)


def get_pose3d_from_pose3(pose: Pose3) -> Pose3D:
    return Pose3D.from_matrix(pose.matrix())


def get_twist3d_from_velocity(velocity: np.ndarray) -> Twist3D:
    """Keyframe velocity variables hold the linear part only."""
    return Twist3D(linear=tuple(np.asarray(velocity, dtype=float).reshape(3)))


def get_gtsam_pose_covariance(covariance: np.ndarray) -> np.ndarray:
    """
    Reorders a 6x6 covariance from (x, y, z, roll, pitch, yaw) to the
    GTSAM Pose3 tangent ordering (rx, ry, rz, x, y, z).
    """
    assert covariance.shape == (6, 6), "pose covariance must be 6x6"
    perm = [3, 4, 5, 0, 1, 2]
    return covariance[np.ix_(perm, perm)]


def get_stereo_calibration(
    left: CameraIntrinsics, right: CameraIntrinsics, baseline: float
) -> Cal3_S2Stereo:
    """
    Builds a rectified stereo calibration. Both cameras must share focal
    lengths and principal row.

    Raises:
        ValueError: the pair is not rectified or the baseline is not positive
    """
    if not baseline > 0.0:
        raise ValueError(f"stereo baseline must be positive, got {baseline}")
    if not (
        np.isclose(left.fx, right.fx)
        and np.isclose(left.fy, right.fy)
        and np.isclose(left.cy, right.cy)
    ):
        raise ValueError(
            f"stereo pair must be rectified (equal fx, fy, cy): left={left} right={right}"
        )
    return Cal3_S2Stereo(left.fx, left.fy, left.skew, left.cx, left.cy, float(baseline))


def get_stereo_point(observation: StereoObservation) -> StereoPoint2:
    return StereoPoint2(observation.u_left, observation.u_right, observation.v)
