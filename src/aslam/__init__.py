"""aslam package init.

Keyframe-based SLAM back-end on GTSAM. Exposes the back-end facade, its
parameters, the error hierarchy and the caller-facing types at package
level for convenient imports.
"""
from .backend import AslamBackend
from .config import BackendParameters
from .errors import (
    AslamError,
    UsageFault,
    NotFound,
    UnknownVariable,
    DuplicateRegistration,
    InvalidTimestamp,
    GapTooLarge,
    UnsupportedFactor,
    ConfigurationFault,
    NumericFault,
    SolveFailure,
    ResourceFault,
    LockTimeout,
)
from .types import VariableId, StateVectorType, VariableKind, FactorKind
from .types.covariance import PoseCovariance6
from .types.factors import (
    CameraIntrinsics,
    StereoObservation,
    ImuSample,
    FactorRelativePose3,
    FactorDynamicsConstVel,
    FactorStereoProjectionPose,
    SmartFactorStereoProjectionPose,
    SmartFactorIMU,
)
from .types.localization import LocalizationUpdate, LatestLocalization
from .types.variables import Pose3D, Twist3D, Point3D, Keyframe
from .trajectory import WholePath

__all__ = [
    "AslamBackend",
    "BackendParameters",
    "AslamError",
    "UsageFault",
    "NotFound",
    "UnknownVariable",
    "DuplicateRegistration",
    "InvalidTimestamp",
    "GapTooLarge",
    "UnsupportedFactor",
    "ConfigurationFault",
    "NumericFault",
    "SolveFailure",
    "ResourceFault",
    "LockTimeout",
    "VariableId",
    "StateVectorType",
    "VariableKind",
    "FactorKind",
    "PoseCovariance6",
    "CameraIntrinsics",
    "StereoObservation",
    "ImuSample",
    "FactorRelativePose3",
    "FactorDynamicsConstVel",
    "FactorStereoProjectionPose",
    "SmartFactorStereoProjectionPose",
    "SmartFactorIMU",
    "LocalizationUpdate",
    "LatestLocalization",
    "Pose3D",
    "Twist3D",
    "Point3D",
    "Keyframe",
    "WholePath",
]
