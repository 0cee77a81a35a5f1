"""
GTSAM backend for the estimator.

This module provides GTSAM-specific conversions, factor construction and
solvers (incremental iSAM2 and batch Levenberg-Marquardt).
"""

from .conversions import (
    KeyAllocator,
    get_pose3_from_pose3d,
    get_pose3d_from_pose3,
    get_stereo_calibration,
)
from .solvers import (
    GraphSolver,
    Isam2Solver,
    LevenbergMarquardtSolver,
    diagnose_optimization_problem,
)

__all__ = [
    "KeyAllocator",
    "get_pose3_from_pose3d",
    "get_pose3d_from_pose3",
    "get_stereo_calibration",
    "GraphSolver",
    "Isam2Solver",
    "LevenbergMarquardtSolver",
    "diagnose_optimization_problem",
]
