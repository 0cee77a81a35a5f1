"""
Validation utilities for estimator types.
"""
from typing import Optional
from attrs import validators
import numpy as np


def bound_validator(a: float, b: float):
    """
    Returns a validator that checks if a value is within the bounds [a, b].
    """
    return validators.and_(validators.ge(a), validators.le(b))


def tuple_length_validator(length: int):
    """
    Returns a validator that checks if a value is a tuple of finite floats of a
    specific length.
    """

    def _validator(instance, attribute, value):
        if not isinstance(value, tuple):
            raise TypeError(f"{attribute.name} must be a tuple.")
        if len(value) != length:
            raise ValueError(f"{attribute.name} must have {length} elements.")
        if not all(np.isfinite(v) for v in value):
            raise ValueError(f"{attribute.name} must be finite: {value}")

    return _validator


def quaternion_validator():
    """
    Validates if a quaternion is normalized (i.e., its norm is close to 1).
    """

    def _validator(instance, attribute, quat):
        if not isinstance(quat, tuple):
            raise TypeError(f"{attribute.name} must be a tuple.")

        if len(quat) != 4:
            raise ValueError(f"{attribute.name} must have 4 elements.")
        norm = sum(x**2 for x in quat)
        if not np.isclose(norm, 1.0):
            raise ValueError(f"{attribute.name} is not normalized. Norm: {norm}")

    return _validator


def positive_validator(instance, attribute, value) -> None:
    """Checks that a scalar is strictly positive and finite."""
    if not np.isfinite(value) or value <= 0.0:
        raise ValueError(f"{attribute.name} must be positive and finite, got {value}")


def to_float_tuple(value) -> tuple:
    """attrs converter: any 1D sequence (list, tuple, ndarray) to a tuple of floats."""
    return tuple(float(v) for v in np.asarray(value, dtype=float).reshape(-1))


def _check_square(mat: np.ndarray) -> None:
    """Checks that a matrix is square"""
    assert mat.shape[0] == mat.shape[1], "matrix must be square"


def _check_positive_definite(mat: np.ndarray, name: str = "matrix") -> None:
    """
    Checks that a matrix is symmetric positive definite.

    Raises:
        ValueError: the matrix is not square, not symmetric or has a
            non-positive eigenvalue
    """
    if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
        raise ValueError(f"{name} must be square, got shape {mat.shape}")
    if not np.allclose(mat, mat.T):
        raise ValueError(f"{name} must be symmetric.")
    eigvals = np.linalg.eigvalsh(mat)
    if not np.all(eigvals > 0):
        raise ValueError(f"{name} must be positive definite. Eigenvalues: {eigvals}")


def _check_transformation_matrix(
    T: np.ndarray, assert_test: bool = True, dim: Optional[int] = None
) -> None:
    """Checks that the matrix passed in is a homogeneous transformation matrix.

    Args:
        T: the homogeneous transformation matrix to test
        assert_test: Whether this is a 'hard' test with assertions or 'soft' test
        dim: dimension of the homogeneous transformation matrix
    """
    _check_square(T)
    matrix_dim = T.shape[0]
    if dim is not None:
        assert (
            matrix_dim == dim + 1
        ), f"matrix dimension {matrix_dim} != dim + 1 {dim + 1}"

    assert matrix_dim == 4, f"Was {T.shape} but must be 4x4 for a 3D transformation matrix"

    R = T[:-1, :-1]
    _check_rotation_matrix(R, assert_test=assert_test)

    bottom = T[-1, :]
    bottom_expected = np.array([0] * (matrix_dim - 1) + [1])
    assert np.allclose(
        bottom.flatten(), bottom_expected
    ), f"Transformation matrix bottom row is {bottom} but should be {bottom_expected}"


def _check_rotation_matrix(R: np.ndarray, assert_test: bool = False) -> None:
    """
    Checks that R is a rotation matrix.

    Args:
        R: the candidate rotation matrix
        assert_test: if false the check is silent, otherwise raise error

    Raises:
        ValueError: the candidate rotation matrix is not orthogonal
        ValueError: the candidate rotation matrix determinant is incorrect
    """
    d = R.shape[0]
    is_orthogonal = np.allclose(R @ R.T, np.eye(d), rtol=1e-3, atol=1e-3)
    if not is_orthogonal:
        if assert_test:
            raise ValueError(f"R is not orthogonal {R @ R.T}")

    has_correct_det = abs(np.linalg.det(R) - 1) < 1e-3
    if not has_correct_det:
        if assert_test:
            raise ValueError(f"R det incorrect {np.linalg.det(R)}")
