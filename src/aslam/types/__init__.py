"""
Types package for estimator data structures.
"""
from .key import VariableId, KeyframeKeys, IdAllocator
from .enums import StateVectorType, VariableKind, FactorKind

__all__ = [
    "VariableId",
    "KeyframeKeys",
    "IdAllocator",
    "StateVectorType",
    "VariableKind",
    "FactorKind",
]

# Note: Other types (covariance, variables, factors, localization) should be
# imported explicitly from their modules. They are re-exported by the main
# aslam package.
