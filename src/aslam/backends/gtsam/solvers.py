"""
GTSAM optimization solvers.

A solver owns the committed factor graph and the last estimate. Factors are
addressed by estimator-owned graph slots; each solver maps slots to its own
factor indices so that slots stay valid across a solver reset.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Set

import numpy as np

from gtsam.gtsam import (
    ISAM2,
    ISAM2Params,
    LevenbergMarquardtOptimizer,
    LevenbergMarquardtParams,
    NonlinearFactorGraph,
    Values,
)

from .conversions import key_to_string

logger = logging.getLogger(__name__)

# exceptions gtsam raises through pybind11 for failed solves
SOLVER_ERRORS = (RuntimeError, ValueError, IndexError)


def diagnose_optimization_problem(
    graph: NonlinearFactorGraph, initial_vals: Values, verbose: bool = True
) -> dict:
    """
    Diagnose why a GTSAM solve might fail.

    Performs:
    - Sanity counts (factors, variables)
    - Key coverage (keys without initial values and vice versa)
    - Per-factor error analysis at the initial values
    - Singular values of the linearized system

    Args:
        graph: The factor graph to diagnose
        initial_vals: Initial values for variables
        verbose: If True, log warnings with diagnostic info

    Returns:
        Dictionary with diagnostic results
    """
    diagnostics = {}

    num_factors = graph.size()
    num_vars = initial_vals.size()
    diagnostics["num_factors"] = num_factors
    diagnostics["num_vars"] = num_vars

    if verbose:
        logger.warning(f"[diagnostics] #factors={num_factors}  #vars={num_vars}")

    graph_keys = set(graph.keyVector())
    init_keys = set(initial_vals.keys())
    diagnostics["missing_in_initial"] = [
        key_to_string(k) for k in sorted(graph_keys - init_keys)[:20]
    ]
    diagnostics["unused_in_graph"] = [
        key_to_string(k) for k in sorted(init_keys - graph_keys)[:20]
    ]
    if verbose:
        logger.warning(f"[diagnostics] missing-in-initial: {diagnostics['missing_in_initial']}")
        logger.warning(f"[diagnostics] unused-in-graph: {diagnostics['unused_in_graph']}")

    tot_error = 0.0
    nan_errors = 0
    for i in range(min(num_factors, 200)):
        try:
            e = graph.at(i).error(initial_vals)
        except SOLVER_ERRORS as ex:
            if verbose:
                logger.warning(f"[diagnostics] factor[{i}] error() threw: {ex}")
            continue
        if np.isnan(e):
            nan_errors += 1
        else:
            tot_error += e
    diagnostics["total_error"] = tot_error
    diagnostics["nan_errors"] = nan_errors
    if verbose:
        logger.warning(f"[diagnostics] sum of errors = {tot_error:.6g}, nans = {nan_errors}")

    if not diagnostics["missing_in_initial"]:
        try:
            linear = graph.linearize(initial_vals)
            A, _ = linear.jacobian()
            s = np.linalg.svd(A, compute_uv=False)
            min_singular = s[-1] if len(s) > 0 else 0.0
            max_singular = s[0] if len(s) > 0 else 0.0
            diagnostics["min_singular_value"] = min_singular
            diagnostics["condition_number"] = (
                max_singular / min_singular if min_singular > 1e-15 else np.inf
            )
            diagnostics["matrix_rank"] = int(np.sum(s > 1e-10 * max_singular))
            diagnostics["expected_rank"] = min(A.shape)
            if verbose:
                logger.warning(
                    f"[diagnostics] min singular value = {min_singular:.3e}, "
                    f"condition number = {diagnostics['condition_number']:.3e}, "
                    f"rank = {diagnostics['matrix_rank']}/{diagnostics['expected_rank']}"
                )
        except SOLVER_ERRORS as ex:
            diagnostics["linearization_error"] = str(ex)
            if verbose:
                logger.warning(f"[diagnostics] linearization failed: {ex}")

    return diagnostics


def _build_graph(factors: Iterable) -> NonlinearFactorGraph:
    graph = NonlinearFactorGraph()
    for factor in factors:
        graph.add(factor)
    return graph


def _merged_values(base: Values, new_values: Values) -> Values:
    merged = Values(base)
    merged.insert(new_values)
    return merged


class GraphSolver(ABC):
    """
    The solve primitive behind commit(). Not reentrant: callers serialize
    updates with the solver lock.
    """

    def __init__(self):
        self._factors: Dict[int, object] = {}
        self._estimate = Values()

    @property
    def estimate(self) -> Values:
        """Last successful estimate (do not mutate)."""
        return self._estimate

    @property
    def slots(self) -> List[int]:
        """Live graph slots, in insertion order."""
        return list(self._factors)

    def factor(self, slot: int):
        return self._factors[slot]

    def update(
        self,
        new_factors: Mapping[int, object],
        new_values: Values,
        changed_slots: Set[int],
    ) -> Values:
        """
        Folds new factors and initial values into the estimate.

        Args:
            new_factors: slot -> gtsam factor, in insertion order
            new_values: initial values of variables never seen before
            changed_slots: committed slots whose factor is being replaced by
                one of new_factors; they are retired from the graph

        Returns:
            the new estimate

        Raises:
            KeyError: a changed slot is not live
            RuntimeError, ValueError, IndexError: the solve failed; the
                committed graph and estimate are unchanged
        """
        unknown = set(changed_slots) - set(self._factors)
        if unknown:
            raise KeyError(f"changed slots {sorted(unknown)} are not live")
        estimate = self._specific_update(new_factors, new_values, set(changed_slots))
        for slot in changed_slots:
            del self._factors[slot]
        self._factors.update(new_factors)
        self._estimate = estimate
        return estimate

    @abstractmethod
    def _specific_update(
        self, new_factors: Mapping[int, object], new_values: Values, changed_slots: Set[int]
    ) -> Values:
        pass

    def live_graph(self, exclude: Iterable[int] = ()) -> NonlinearFactorGraph:
        exclude = set(exclude)
        return _build_graph(f for s, f in self._factors.items() if s not in exclude)


class Isam2Solver(GraphSolver):
    """
    Incremental solver on top of gtsam.ISAM2.

    When an update fails the ISAM2 instance can no longer be trusted; it is
    discarded and the next update replays the committed graph, linearized at
    the last good estimate, together with the new factors.
    """

    def __init__(
        self,
        relinearize_threshold: float = 0.1,
        relinearize_skip: int = 1,
        additional_update_steps: int = 0,
    ):
        super().__init__()
        self.relinearize_threshold = relinearize_threshold
        self.relinearize_skip = relinearize_skip
        self.additional_update_steps = additional_update_steps
        self._isam2 = self._make_isam2()
        self._index_of_slot: Dict[int, int] = {}
        self._needs_rebuild = False

    def _make_isam2(self) -> ISAM2:
        parameters = ISAM2Params()
        parameters.setRelinearizeThreshold(self.relinearize_threshold)
        parameters.relinearizeSkip = self.relinearize_skip
        logger.debug(
            f"[isam2] threshold={self.relinearize_threshold} skip={self.relinearize_skip}"
        )
        return ISAM2(parameters)

    @property
    def needs_rebuild(self) -> bool:
        return self._needs_rebuild

    def _specific_update(self, new_factors, new_values, changed_slots):
        try:
            if self._needs_rebuild:
                return self._rebuild_and_update(new_factors, new_values, changed_slots)
            return self._incremental_update(new_factors, new_values, changed_slots)
        except SOLVER_ERRORS as e:
            logger.error(f"[isam2] update failed, discarding solver state: {e}")
            self._needs_rebuild = True
            raise

    def _incremental_update(self, new_factors, new_values, changed_slots) -> Values:
        graph = _build_graph(new_factors.values())
        first_index = self._isam2.getFactorsUnsafe().size()
        if changed_slots:
            remove = sorted(self._index_of_slot[slot] for slot in changed_slots)
            self._isam2.update(graph, new_values, remove)
        else:
            self._isam2.update(graph, new_values)
        for _ in range(self.additional_update_steps):
            self._isam2.update()
        estimate = self._isam2.calculateEstimate()

        for slot in changed_slots:
            del self._index_of_slot[slot]
        for offset, slot in enumerate(new_factors):
            self._index_of_slot[slot] = first_index + offset
        return estimate

    def _rebuild_and_update(self, new_factors, new_values, changed_slots) -> Values:
        kept = {s: f for s, f in self._factors.items() if s not in changed_slots}
        replay = dict(kept)
        replay.update(new_factors)
        logger.info(
            f"[isam2] rebuilding from {len(kept)} committed and {len(new_factors)} new factor(s)"
        )
        isam2 = self._make_isam2()
        isam2.update(_build_graph(replay.values()), _merged_values(self._estimate, new_values))
        for _ in range(self.additional_update_steps):
            isam2.update()
        estimate = isam2.calculateEstimate()

        self._isam2 = isam2
        self._index_of_slot = {slot: index for index, slot in enumerate(replay)}
        self._needs_rebuild = False
        return estimate


class LevenbergMarquardtSolver(GraphSolver):
    """
    Batch solver: re-solves every live factor from the last estimate on
    each update.
    """

    def __init__(self, max_iterations: int = 100):
        super().__init__()
        self.max_iterations = max_iterations

    def _specific_update(self, new_factors, new_values, changed_slots):
        factors = [f for s, f in self._factors.items() if s not in changed_slots]
        factors.extend(new_factors.values())
        graph = _build_graph(factors)
        initial_vals = _merged_values(self._estimate, new_values)

        graph_keys = set(graph.keyVector())
        missing = graph_keys - set(initial_vals.keys())
        if missing:
            raise ValueError(
                f"Variables in graph but not in initial values: "
                f"{[key_to_string(k) for k in sorted(missing)]}"
            )

        params = LevenbergMarquardtParams()
        params.setMaxIterations(self.max_iterations)
        initial_error = graph.error(initial_vals)
        try:
            result = LevenbergMarquardtOptimizer(graph, initial_vals, params).optimize()
        except SOLVER_ERRORS as e:
            logger.error(f"[levenberg_marquardt] optimization failed: {e}")
            raise
        logger.debug(
            f"[levenberg_marquardt] error {initial_error:.6f} -> {graph.error(result):.6f}"
        )
        return result
