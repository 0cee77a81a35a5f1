"""
Covariance types for relative pose measurements.
"""
from typing import Union

from attrs import define, field, validators
import numpy as np
from numpy import ndarray

from ..utils.validation import bound_validator, _check_positive_definite


@define(frozen=True)
class PoseCovariance6:
    """
    A 6D covariance for relative pose measurements, ordered
    (x, y, z, roll, pitch, yaw).
    """

    sigma_x: float = field(
        validator=validators.gt(0.0),
        metadata={"description": "Standard deviation in x direction"},
    )
    sigma_y: float = field(
        validator=validators.gt(0.0),
        metadata={"description": "Standard deviation in y direction"},
    )
    sigma_z: float = field(
        validator=validators.gt(0.0),
        metadata={"description": "Standard deviation in z direction"},
    )
    sigma_roll: float = field(
        validator=validators.gt(0.0),
        metadata={"description": "Standard deviation in roll"},
    )
    sigma_pitch: float = field(
        validator=validators.gt(0.0),
        metadata={"description": "Standard deviation in pitch"},
    )
    sigma_yaw: float = field(
        validator=validators.gt(0.0),
        metadata={"description": "Standard deviation in yaw"},
    )
    rho_xy: float = field(
        default=0.0,
        validator=bound_validator(-1.0, 1.0),
        metadata={"description": "Correlation between x and y"},
    )
    rho_xyaw: float = field(
        default=0.0,
        validator=bound_validator(-1.0, 1.0),
        metadata={"description": "Correlation between x and yaw"},
    )
    rho_yyaw: float = field(
        default=0.0,
        validator=bound_validator(-1.0, 1.0),
        metadata={"description": "Correlation between y and yaw"},
    )

    def __attrs_post_init__(self):
        _check_positive_definite(self.covariance_matrix, "Covariance matrix")

    @classmethod
    def isotropic(cls, sigma_translation: float, sigma_rotation: float) -> "PoseCovariance6":
        return cls(
            sigma_translation,
            sigma_translation,
            sigma_translation,
            sigma_rotation,
            sigma_rotation,
            sigma_rotation,
        )

    @property
    def covariance_matrix(self) -> ndarray:
        """
        Returns the covariance matrix as a 6x6 numpy array.
        """
        sigmas = np.array(
            [
                self.sigma_x,
                self.sigma_y,
                self.sigma_z,
                self.sigma_roll,
                self.sigma_pitch,
                self.sigma_yaw,
            ]
        )
        covar = np.diag(sigmas**2)
        covar[0, 1] = covar[1, 0] = self.rho_xy * self.sigma_x * self.sigma_y
        covar[0, 5] = covar[5, 0] = self.rho_xyaw * self.sigma_x * self.sigma_yaw
        covar[1, 5] = covar[5, 1] = self.rho_yyaw * self.sigma_y * self.sigma_yaw
        return covar


def as_covariance_matrix(covariance: Union[PoseCovariance6, ndarray]) -> ndarray:
    """
    Normalizes a caller supplied covariance (attrs type or raw 6x6 array in
    (x, y, z, roll, pitch, yaw) order) into a symmetric 6x6 matrix.

    Raises:
        ValueError: the matrix has the wrong shape or is not positive definite
    """
    if isinstance(covariance, PoseCovariance6):
        return covariance.covariance_matrix
    mat = np.asarray(covariance, dtype=float)
    if mat.shape != (6, 6):
        raise ValueError(f"relative pose covariance must be 6x6, got {mat.shape}")
    mat = 0.5 * (mat + mat.T)
    _check_positive_definite(mat, "Covariance matrix")
    return mat
