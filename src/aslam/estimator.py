"""
Incremental estimator: the pending-update buffer, the solver and the
published estimate.

Idle: the pending buffer may grow and readers see the last commit.
Committing: transient, holds the solver lock for the whole solve.
"""
import itertools
import logging
from collections import OrderedDict
from typing import Dict, Optional, Set

import numpy as np
from attrs import define, field
from gtsam.gtsam import Pose3, Values

from .backends.gtsam.conversions import key_to_string
from .backends.gtsam.solvers import (
    SOLVER_ERRORS,
    GraphSolver,
    Isam2Solver,
    LevenbergMarquardtSolver,
    diagnose_optimization_problem,
)
from .config import BackendParameters
from .errors import SolveFailure
from .types.key import KeyframeKeys
from .utils.locks import TimedRLock
from .values import PublishedEstimate
from .variable_model import VariableModel

logger = logging.getLogger(__name__)


def make_solver(params: BackendParameters) -> GraphSolver:
    """The solver selected by use_incremental_solver."""
    if params.use_incremental_solver:
        return Isam2Solver(
            relinearize_threshold=params.isam2_relinearize_threshold,
            relinearize_skip=params.isam2_relinearize_skip,
            additional_update_steps=params.isam2_additional_update_steps,
        )
    return LevenbergMarquardtSolver()


def _to_values(values: Dict[int, object]) -> Values:
    result = Values()
    for key, value in values.items():
        result.insert(key, value)
    return result


@define
class PendingUpdate:
    """
    Factors and initial values proposed since the last commit, plus the
    committed slots whose factor is being replaced.
    """

    factors: "OrderedDict[int, object]" = field(factory=OrderedDict)
    values: Dict[int, object] = field(factory=dict)
    changed_slots: Set[int] = field(factory=set)

    def is_empty(self) -> bool:
        """Nothing to solve: values alone never trigger a solve."""
        return not self.factors and not self.changed_slots

    def referenced_keys(self) -> Set[int]:
        keys = set()
        for factor in self.factors.values():
            keys.update(factor.keys())
        return keys


class IncrementalEstimator:
    """
    Owns the pending buffer, the solver and the published estimate, all
    guarded by the solver lock.

    Graph slots are allocated here, monotonically; the solver maps them to
    its own factor indices.
    """

    def __init__(
        self,
        variable_model: VariableModel,
        solver: Optional[GraphSolver] = None,
        lock_timeout: float = 5.0,
        enable_diagnostics: bool = False,
    ):
        self.variable_model = variable_model
        self._solver = solver if solver is not None else make_solver(variable_model.params)
        self.lock = TimedRLock("solver", lock_timeout)
        self.enable_diagnostics = enable_diagnostics
        self.pending = PendingUpdate()
        self._published = PublishedEstimate()
        self._slots = itertools.count()
        self._commit_count = 0
        self._keyframe_keys: Dict[int, KeyframeKeys] = {}

    @property
    def solver(self) -> GraphSolver:
        return self._solver

    @property
    def published(self) -> PublishedEstimate:
        """Reference read; the snapshot itself is immutable."""
        return self._published

    @property
    def commit_count(self) -> int:
        return self._commit_count

    def track_keyframe(self, keys: KeyframeKeys) -> None:
        with self.lock.hold("track_keyframe"):
            self._keyframe_keys[keys.pose] = keys

    def add_factor(self, factor) -> int:
        """Appends a factor to the pending buffer and returns its graph slot."""
        with self.lock.hold("add_factor"):
            slot = next(self._slots)
            self.pending.factors[slot] = factor
            logger.debug(f"[add_factor] slot {slot}: {type(factor).__name__}")
            return slot

    def replace_pending_factor(self, slot: int, factor) -> None:
        with self.lock.hold("replace_pending_factor"):
            if slot not in self.pending.factors:
                raise KeyError(f"slot {slot} is not pending")
            self.pending.factors[slot] = factor

    def mark_changed(self, slot: int) -> None:
        """Flags a committed slot whose factor is being replaced."""
        with self.lock.hold("mark_changed"):
            if not self.is_committed(slot):
                raise KeyError(f"slot {slot} is not committed")
            self.pending.changed_slots.add(slot)

    def is_pending(self, slot: int) -> bool:
        return slot in self.pending.factors

    def is_committed(self, slot: int) -> bool:
        return slot in self._solver.slots and slot not in self.pending.changed_slots

    def insert_value(self, key: int, value) -> None:
        """
        Proposes the initial value of a variable that has none yet.

        Raises:
            ValueError: the variable already has a value
        """
        with self.lock.hold("insert_value"):
            if self.has_value(key):
                raise ValueError(f"{key_to_string(key)} already has a value")
            self.pending.values[key] = value

    def insert_values(self, values: Dict[int, object]) -> None:
        with self.lock.hold("insert_values"):
            for key in values:
                if self.has_value(key):
                    raise ValueError(f"{key_to_string(key)} already has a value")
            self.pending.values.update(values)

    def has_value(self, key: int) -> bool:
        return self._published.exists(key) or key in self.pending.values

    def has_published_value(self, key: int) -> bool:
        return self._published.exists(key)

    def pose_value(self, key: int) -> Optional[Pose3]:
        """Last published pose, else its pending initial guess."""
        pose = self._published.pose(key)
        if pose is None:
            pose = self.pending.values.get(key)
        return pose

    def vector_value(self, key: int) -> Optional[np.ndarray]:
        vector = self._published.vector(key)
        if vector is None and key in self.pending.values:
            vector = np.asarray(self.pending.values[key])
        return vector

    def _weak_velocity_priors(self, referenced: Set[int]) -> "OrderedDict[int, object]":
        """
        A keyframe entering the graph through its pose whose velocity no
        pending factor touches gets a loose prior on that velocity. The
        priors only join this commit's factors, never the pending buffer.
        """
        priors = OrderedDict()
        for key in list(self.pending.values):
            keys = self._keyframe_keys.get(key)
            if keys is None or keys.velocity is None or key not in referenced:
                continue
            if keys.velocity in referenced or keys.velocity not in self.pending.values:
                continue
            priors[next(self._slots)] = self.variable_model.weak_velocity_prior(
                keys, self.pending.values[keys.velocity]
            )
            logger.debug(f"[commit] weak velocity prior on {key_to_string(keys.velocity)}")
        return priors

    def commit(self) -> bool:
        """
        Folds the pending buffer into the estimate and publishes it.

        Returns:
            True if a solve ran, False for a no-op commit

        Raises:
            SolveFailure: the solve failed; the pending buffer and changed set
                are preserved and the published estimate is untouched
        """
        with self.lock.hold("commit"):
            if self.pending.is_empty():
                logger.debug("[commit] nothing pending")
                return False

            referenced = self.pending.referenced_keys()
            factors = OrderedDict(self.pending.factors)
            for slot, prior in self._weak_velocity_priors(referenced).items():
                factors[slot] = prior
                referenced.update(prior.keys())

            ready = {k: v for k, v in self.pending.values.items() if k in referenced}
            deferred = {k: v for k, v in self.pending.values.items() if k not in referenced}
            changed = set(self.pending.changed_slots)

            new_values = _to_values(ready)
            try:
                estimate = self._solver.update(factors, new_values, changed)
            except SOLVER_ERRORS as e:
                logger.error(
                    f"[commit] solve failed with {len(factors)} new factor(s), "
                    f"{len(ready)} new value(s), {len(changed)} changed slot(s): {e}"
                )
                if self.enable_diagnostics:
                    self._diagnose(factors, new_values, changed)
                raise SolveFailure(f"commit failed: {e}") from e

            self._commit_count += 1
            self._published = PublishedEstimate.from_values(estimate, self._commit_count)
            self.pending = PendingUpdate(values=deferred)
            logger.info(
                f"[commit] #{self._commit_count}: {len(factors)} factor(s), "
                f"{len(ready)} variable(s), {len(changed)} relinearized slot(s); "
                f"{len(self._published)} variable(s) published"
            )
            return True

    def _diagnose(self, factors, new_values: Values, changed: Set[int]) -> dict:
        graph = self._solver.live_graph(exclude=changed)
        for factor in factors.values():
            graph.add(factor)
        initial = Values(self._solver.estimate)
        initial.insert(new_values)
        return diagnose_optimization_problem(graph, initial, verbose=True)
