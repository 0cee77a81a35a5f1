"""
Transformation matrix utilities for pose and rotation conversions.
"""
import numpy as np
import scipy.spatial.transform
from .validation import _check_square, _check_rotation_matrix, _check_transformation_matrix


def get_rotation_matrix_from_transformation_matrix(T: np.ndarray) -> np.ndarray:
    """Returns the rotation matrix from the transformation matrix.

    Args:
        T: the transformation matrix

    Returns:
        the rotation matrix
    """
    _check_square(T)
    dim = T.shape[0] - 1
    return T[:dim, :dim]


def get_translation_from_transformation_matrix(T: np.ndarray) -> np.ndarray:
    """Returns the translation from a transformation matrix.

    Args:
        T: the transformation matrix

    Returns:
        the translation vector
    """
    _check_square(T)
    dim = T.shape[0] - 1
    return T[:dim, dim]


def get_rotation_matrix_from_quat(quat: np.ndarray) -> np.ndarray:
    """Returns the rotation matrix from a quaternion in scalar-last (x, y, z, w) format.

    Args:
        quat: the quaternion as (x, y, z, w)

    Returns:
        3x3 rotation matrix
    """
    assert quat.shape == (4,)
    rot = scipy.spatial.transform.Rotation.from_quat(quat)
    rot_mat = rot.as_matrix()
    assert rot_mat.shape == (3, 3)

    _check_rotation_matrix(rot_mat, assert_test=True)
    return rot_mat


def get_quat_from_rotation_matrix(mat: np.ndarray) -> np.ndarray:
    """Returns the quaternion from a 3x3 rotation matrix in scalar-last
    (x, y, z, w) format. Ensures w is non-negative by convention, given
    R(-q) = R(q).

    Args:
        mat: the rotation matrix

    Returns:
        quaternion as (x, y, z, w)
    """
    _check_rotation_matrix(mat, assert_test=True)
    rot = scipy.spatial.transform.Rotation.from_matrix(mat)
    quat = rot.as_quat()

    if quat[-1] < 0:
        quat = np.negative(quat)

    return quat


def get_transformation_matrix(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Builds the 4x4 homogeneous transform from a rotation and a translation."""
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3)
    return T


def invert_transformation_matrix(T: np.ndarray) -> np.ndarray:
    """Closed-form inverse of a rigid 4x4 transform.

    Args:
        T: the homogeneous transformation matrix

    Returns:
        T^-1
    """
    _check_transformation_matrix(T)
    R = get_rotation_matrix_from_transformation_matrix(T)
    t = get_translation_from_transformation_matrix(T)
    return get_transformation_matrix(R.T, -R.T @ t)
