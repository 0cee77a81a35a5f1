"""
Factor creation utilities for GTSAM.

This module builds every GTSAM factor the estimator uses from internal keys
and already-converted measurement data. It does not know about caller ids.
"""
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np

import gtsam
from gtsam.gtsam import (
    BetweenFactorPose3,
    Cal3_S2Stereo,
    CustomFactor,
    GenericStereoFactor3D,
    ImuFactor,
    NavState,
    Pose3,
    PreintegratedImuMeasurements,
    PreintegrationParams,
    PriorFactorConstantBias,
    PriorFactorPose3,
    PriorFactorVector,
    StereoPoint2,
    Values,
    noiseModel,
)

from ...errors import UnsupportedFactor
from ...types.factors import ImuSample
from .conversions import key_to_string

logger = logging.getLogger(__name__)


def make_spd(cov: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Symmetrize a covariance and add diagonal jitter until it is SPD."""
    cov = np.array(cov, dtype=float)
    cov = 0.5 * (cov + cov.T)
    dim = cov.shape[0]
    try:
        np.linalg.cholesky(cov)
        return cov
    except np.linalg.LinAlgError:
        pass
    jitter = eps
    for _ in range(10):
        try:
            np.linalg.cholesky(cov + np.eye(dim) * jitter)
            return cov + np.eye(dim) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    return cov + np.eye(dim) * jitter


def gaussian_from_covariance(cov: np.ndarray):
    """GTSAM Gaussian noise model from a full covariance (symmetrized, SPD)."""
    cov = np.array(make_spd(cov), dtype=np.float64, order="C")
    return noiseModel.Gaussian.Covariance(cov)


def get_pose_prior_factor(key: int, pose: Pose3, sigmas: Sequence[float]) -> PriorFactorPose3:
    """
    Absolute pose prior.

    Args:
        key: the pose key
        pose: the prior mean
        sigmas: 6 sigmas in GTSAM tangent order (rx, ry, rz, x, y, z)
    """
    noise = noiseModel.Diagonal.Sigmas(np.asarray(sigmas, dtype=float))
    return PriorFactorPose3(key, pose, noise)


def get_velocity_prior_factor(key: int, mean: np.ndarray, sigma: float) -> PriorFactorVector:
    noise = noiseModel.Isotropic.Sigma(3, sigma)
    return PriorFactorVector(key, np.asarray(mean, dtype=float).reshape(3), noise)


def get_relative_pose_factor(
    i_sym: int, j_sym: int, rel_pose: Pose3, covariance: np.ndarray
) -> BetweenFactorPose3:
    """
    Create a GTSAM BetweenFactorPose3 with a full Gaussian noise model.

    Args:
        i_sym: The symbol for the first pose.
        j_sym: The symbol for the second pose.
        rel_pose: pose of j in the frame of i.
        covariance: 6x6 covariance in GTSAM tangent order.

    Returns:
        BetweenFactorPose3.
    """
    noise = gaussian_from_covariance(covariance)
    logger.debug(
        f"[relative_pose] {key_to_string(i_sym)}->{key_to_string(j_sym)} "
        f"variances {np.diag(covariance)}"
    )
    return BetweenFactorPose3(i_sym, j_sym, rel_pose, noise)


def const_vel_sigmas(dt: float, std_pos: float, std_vel: float) -> np.ndarray:
    """Sigmas of the constant-velocity residual, scaled by the elapsed time."""
    return np.array([std_pos * dt] * 3 + [std_vel * dt] * 3)


def const_vel_error(
    pose_i: Pose3,
    vel_i: np.ndarray,
    pose_j: Pose3,
    vel_j: np.ndarray,
    dt: float,
    jacobians: Optional[List[np.ndarray]] = None,
) -> np.ndarray:
    """
    Residual of the constant-velocity model:

        [ p_j - p_i - v_i * dt ]
        [ v_j - v_i            ]

    Jacobians are w.r.t. (pose_i, vel_i, pose_j, vel_j); a Pose3 tangent is
    ordered (rot, trans) and its translation perturbs as R * delta.
    """
    p_i = pose_i.translation()
    p_j = pose_j.translation()
    vel_i = np.asarray(vel_i, dtype=float).reshape(3)
    vel_j = np.asarray(vel_j, dtype=float).reshape(3)
    error = np.concatenate([p_j - p_i - vel_i * dt, vel_j - vel_i])

    if jacobians is not None:
        eye = np.eye(3)
        H_pose_i = np.zeros((6, 6))
        H_pose_i[:3, 3:] = -pose_i.rotation().matrix()
        H_vel_i = np.zeros((6, 3))
        H_vel_i[:3, :] = -dt * eye
        H_vel_i[3:, :] = -eye
        H_pose_j = np.zeros((6, 6))
        H_pose_j[:3, 3:] = pose_j.rotation().matrix()
        H_vel_j = np.zeros((6, 3))
        H_vel_j[3:, :] = eye
        jacobians[0] = H_pose_i
        jacobians[1] = H_vel_i
        jacobians[2] = H_pose_j
        jacobians[3] = H_vel_j
    return error


def get_const_vel_factor(
    pose_i: int,
    vel_i: int,
    pose_j: int,
    vel_j: int,
    dt: float,
    std_pos: float,
    std_vel: float,
) -> CustomFactor:
    """4-key constant-velocity CustomFactor between two keyframes."""
    noise = noiseModel.Diagonal.Sigmas(const_vel_sigmas(dt, std_pos, std_vel))

    def error_func(this: CustomFactor, values: Values, jacobians: Optional[List[np.ndarray]]):
        keys = this.keys()
        return const_vel_error(
            values.atPose3(keys[0]),
            values.atVector(keys[1]),
            values.atPose3(keys[2]),
            values.atVector(keys[3]),
            dt,
            jacobians,
        )

    return CustomFactor(noise, [pose_i, vel_i, pose_j, vel_j], error_func)


def get_stereo_factor(
    measured: StereoPoint2, sigma: float, pose_key: int, landmark_key: int, K: Cal3_S2Stereo
) -> GenericStereoFactor3D:
    noise = noiseModel.Isotropic.Sigma(3, sigma)
    return GenericStereoFactor3D(measured, noise, pose_key, landmark_key, K)


def get_smart_stereo_factor(
    observations: Sequence[Tuple[StereoPoint2, int]], K: Cal3_S2Stereo, sigma: float
):
    """
    Builds a fresh smart stereo factor holding every observation of one
    landmark. A factor object is never mutated once handed to a solver, so
    each new observation produces a new object.

    Raises:
        UnsupportedFactor: gtsam_unstable is not available or was built
            without smart stereo support
    """
    try:
        import gtsam_unstable
    except ImportError as e:
        raise UnsupportedFactor(
            "smart stereo factors need the gtsam_unstable python module"
        ) from e
    if not hasattr(gtsam_unstable, "SmartStereoProjectionPoseFactor"):
        raise UnsupportedFactor(
            "this gtsam_unstable build does not provide SmartStereoProjectionPoseFactor"
        )

    noise = noiseModel.Isotropic.Sigma(3, sigma)
    params = gtsam.SmartProjectionParams()
    params.setLinearizationMode(gtsam.LinearizationMode.HESSIAN)
    params.setDegeneracyMode(gtsam.DegeneracyMode.ZERO_ON_DEGENERACY)
    factor = gtsam_unstable.SmartStereoProjectionPoseFactor(noise, params, Pose3())
    for measured, pose_key in observations:
        factor.add(measured, pose_key, K)
    return factor


def get_preintegration_params(
    gravity: float, accel_sigma: float, gyro_sigma: float, integration_sigma: float
) -> PreintegrationParams:
    """Preintegration parameters for a z-up navigation frame."""
    params = PreintegrationParams.MakeSharedU(gravity)
    params.setAccelerometerCovariance(np.eye(3) * accel_sigma**2)
    params.setGyroscopeCovariance(np.eye(3) * gyro_sigma**2)
    params.setIntegrationCovariance(np.eye(3) * integration_sigma**2)
    return params


def preintegrate(
    samples: Sequence[ImuSample],
    params: PreintegrationParams,
    bias: Optional[gtsam.imuBias.ConstantBias] = None,
) -> PreintegratedImuMeasurements:
    if bias is None:
        bias = gtsam.imuBias.ConstantBias()
    pim = PreintegratedImuMeasurements(params, bias)
    for sample in samples:
        pim.integrateMeasurement(np.array(sample.accel), np.array(sample.gyro), sample.dt)
    return pim


def predict_navstate(
    pim: PreintegratedImuMeasurements,
    pose_i: Pose3,
    vel_i: np.ndarray,
    bias: Optional[gtsam.imuBias.ConstantBias] = None,
) -> Tuple[Pose3, np.ndarray]:
    """Propagates (pose, velocity) through the preintegrated motion."""
    if bias is None:
        bias = gtsam.imuBias.ConstantBias()
    predicted = pim.predict(NavState(pose_i, np.asarray(vel_i, dtype=float)), bias)
    return predicted.pose(), np.asarray(predicted.velocity())


def get_imu_factor(
    pose_i: int, vel_i: int, pose_j: int, vel_j: int, bias: int, pim: PreintegratedImuMeasurements
) -> ImuFactor:
    return ImuFactor(pose_i, vel_i, pose_j, vel_j, bias, pim)


def get_bias_prior_factor(key: int, sigma: float) -> PriorFactorConstantBias:
    noise = noiseModel.Isotropic.Sigma(6, sigma)
    return PriorFactorConstantBias(key, gtsam.imuBias.ConstantBias(), noise)
