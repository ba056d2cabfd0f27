"""
Refinement of a deformation against interpolated mismatch data.

The total penalty of a deformation is its regularization penalty (evaluated
on the composition with a prior deformation, if any) plus the data penalty of
the mismatch surrogate. Two regimes are provided:

1. Smooth interpolation (quadratic or higher): a bound-constrained
   quasi-Newton solve.
2. Linear interpolation: the gradient jumps across grid lines, so a
   subgradient descent with a fixed largest-coordinate step is used, and a
   step is only accepted when it strictly lowers the penalty.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .solvers import BoundedSolver, LBFGSBSolver, make_bounded_solver
from ..core.deformation import GridDeformation, compose
from ..core.errors import ConfigurationError, NonConvergenceWarning
from ..core.mismatch import InterpolationOrder, MismatchSurrogate
from ..core.parameters import OptimizerParameters
from ..core.penalty import AffinePenalty, TemporalPenalty
from ..core.status import TerminationStatus
from ..utils.arrays import as_field, as_vector, box_bounds, uclamp

logger = logging.getLogger(__name__)


@dataclass
class RefinementResult:
    """
    Outcome of a refinement.

    Attributes:
        deformation: Refined deformation (a list for sequences), updated in place
        value: Total penalty of ``deformation``
        initial_value: Total penalty at the starting point
        status: Termination status
        iterations: Iterations performed (accepted steps for the subgradient
            regime)
        history: Accepted penalty values, starting with ``initial_value``
        improved: True if the refinement did not increase the penalty
    """

    deformation: Union[GridDeformation, List[GridDeformation]]
    value: float
    initial_value: float
    status: TerminationStatus
    iterations: int = 0
    history: List[float] = field(default_factory=list)
    improved: bool = True


# =============================================================================
# Objectives
# =============================================================================

class DeformationObjective:
    """
    Total penalty of a single deformation as a function of its displacements.

    Calling the objective with a flat vector returns ``(value, gradient)``.
    """

    def __init__(
        self,
        phi: GridDeformation,
        penalty: AffinePenalty,
        mmis: MismatchSurrogate,
        phi_old: Optional[GridDeformation] = None,
    ):
        if mmis.gridsize != phi.gridsize:
            raise ConfigurationError(
                f"mismatch grid {mmis.gridsize} does not match deformation grid {phi.gridsize}"
            )
        if penalty.gridsize != phi.gridsize:
            raise ConfigurationError(
                f"penalty grid {penalty.gridsize} does not match deformation grid {phi.gridsize}"
            )
        self.phi = phi
        self.penalty = penalty
        self.mmis = mmis
        self.phi_old = None if phi_old is None or phi_old.is_identity else phi_old

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.phi.u.shape

    def evaluate(self, u: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        """Penalty and gradient for a displacement field shaped like ``phi.u``."""
        g_reg = np.empty_like(u)
        g_data = np.empty_like(u)
        if self.phi_old is None:
            reg = self.penalty.evaluate(u, g_reg)
        else:
            composition = compose(self.phi_old, GridDeformation(u, self.phi.nodes))
            reg = self.penalty.evaluate_composed(composition, g_reg)
        data = self.mmis.penalty(u, g_data)
        return reg + data, g_reg + g_data

    def __call__(self, x: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        value, grad = self.evaluate(as_field(x, self.shape))
        return value, as_vector(grad)


class SequenceObjective:
    """
    Total penalty of a sequence of deformations with temporal coupling.

    All time points are packed into one flat vector, time-major.
    """

    def __init__(
        self,
        phis: Sequence[GridDeformation],
        penalty: AffinePenalty,
        lambda_t: float,
        mmis: Sequence[MismatchSurrogate],
        phis_old: Optional[Sequence[GridDeformation]] = None,
    ):
        if len(mmis) != len(phis):
            raise ConfigurationError(f"{len(mmis)} mismatch surrogates given for {len(phis)} time points")
        if phis_old is None:
            phis_old = [None] * len(phis)
        elif len(phis_old) != len(phis):
            raise ConfigurationError(f"{len(phis_old)} prior deformations given for {len(phis)} time points")
        self.frames = [
            DeformationObjective(phi, penalty, mmi, phi_old)
            for phi, mmi, phi_old in zip(phis, mmis, phis_old)
        ]
        self.temporal = TemporalPenalty(lambda_t)
        self.shape = (len(phis),) + phis[0].u.shape

    def evaluate(self, us: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        grad = np.empty_like(us)
        value = self.temporal.evaluate(us, grad)
        for t, frame in enumerate(self.frames):
            v, g = frame.evaluate(us[t])
            value += v
            grad[t] += g
        return value, grad

    def __call__(self, x: NDArray[np.float64]) -> Tuple[float, NDArray[np.float64]]:
        value, grad = self.evaluate(as_field(x, self.shape))
        return value, as_vector(grad)


# =============================================================================
# Optimizers
# =============================================================================

def _minimize(objective, solver: BoundedSolver, x0, bound, count):
    """Run a bound-constrained solve and keep the start if it is not improved."""
    f0, _ = objective(x0)
    if not np.isfinite(f0):
        raise ValueError(f"Initial value must be finite, got {f0}")

    lower, upper = box_bounds(bound, count)
    res = solver.minimize(objective, x0, lower, upper)
    if not res.status.is_optimal:
        warnings.warn(f"solution was not optimal: {res.message}", NonConvergenceWarning, stacklevel=3)

    improved = bool(np.isfinite(res.fun) and res.fun <= f0)
    if improved:
        return res.x, res.fun, f0, res, improved
    logger.debug(f"refinement increased the penalty from {f0:.6g} to {res.fun:.6g}")
    return x0, f0, f0, res, improved


class SmoothOptimizer:
    """
    Refinement for smoothly interpolated mismatch data.

    Args:
        params: Optimizer parameters (used to build the solver)
        solver: Bounded solver overriding the one selected by ``params``
    """

    def __init__(self, params: Optional[OptimizerParameters] = None, solver: Optional[BoundedSolver] = None):
        self.params = params if params is not None else OptimizerParameters()
        self.solver = solver if solver is not None else make_bounded_solver(self.params)

    def optimize(
        self,
        phi: GridDeformation,
        penalty: AffinePenalty,
        mmis: MismatchSurrogate,
        phi_old: Optional[GridDeformation] = None,
    ) -> RefinementResult:
        """
        Refine ``phi`` in place.

        Raises:
            ValueError: If the penalty at the starting point is not finite
        """
        objective = DeformationObjective(phi, penalty, mmis, phi_old)
        x, value, f0, res, improved = _minimize(
            objective, self.solver, as_vector(phi.u), mmis.bounds(), phi.nnodes
        )
        phi.u[...] = as_field(x, phi.u.shape)
        return RefinementResult(phi, value, f0, res.status, res.nit, [f0, value], improved)


class SubgradientOptimizer:
    """
    Subgradient descent for linearly interpolated mismatch data.

    Each trial step moves the coordinate with the largest gradient magnitude
    by exactly ``step_size``; the step is kept only if it strictly lowers the
    penalty, otherwise the descent stops.

    Args:
        step_size: Length of the largest coordinate move, in pixels
        max_iter: Cap on accepted steps
    """

    def __init__(self, step_size: float = 1.0, max_iter: int = 10000):
        self.step_size = step_size
        self.max_iter = max_iter

    def optimize(
        self,
        phi: GridDeformation,
        penalty: AffinePenalty,
        mmis: MismatchSurrogate,
        phi_old: Optional[GridDeformation] = None,
    ) -> RefinementResult:
        """Refine ``phi`` in place."""
        objective = DeformationObjective(phi, penalty, mmis, phi_old)
        u = phi.u.copy()
        value, g = objective.evaluate(u)
        f0 = value
        history = [f0]
        status = TerminationStatus.LOCALLY_OPTIMAL
        nit = 0

        while True:
            gmax = np.max(np.abs(g))
            if gmax == 0 or not np.isfinite(gmax):
                break
            if nit >= self.max_iter:
                warnings.warn(
                    f"subgradient descent stopped after {nit} steps without settling",
                    NonConvergenceWarning,
                    stacklevel=2,
                )
                status = TerminationStatus.ITERATION_LIMIT
                break

            trial = u - (self.step_size / gmax) * g
            uclamp(trial, mmis.maxshift)
            p, g_trial = objective.evaluate(trial)
            if not p < value:
                break
            u, value, g = trial, p, g_trial
            history.append(value)
            nit += 1

        logger.debug(f"subgradient descent: {nit} accepted steps, penalty {f0:.6g} -> {value:.6g}")
        phi.u[...] = u
        return RefinementResult(phi, value, f0, status, nit, history, value <= f0)


def make_optimizer(order: InterpolationOrder, params: Optional[OptimizerParameters] = None):
    """
    Select the refinement regime for an interpolation order.

    Returns:
        SmoothOptimizer for quadratic or higher order, SubgradientOptimizer
        for linear interpolation
    """
    params = params if params is not None else OptimizerParameters()
    if InterpolationOrder(order).is_smooth:
        return SmoothOptimizer(params)
    return SubgradientOptimizer(params.step_size, params.max_subgradient_iter)


def optimize(
    phi: GridDeformation,
    penalty: AffinePenalty,
    mmis: MismatchSurrogate,
    phi_old: Optional[GridDeformation] = None,
    params: Optional[OptimizerParameters] = None,
    solver: Optional[BoundedSolver] = None,
) -> RefinementResult:
    """
    Refine a deformation against mismatch data.

    Args:
        phi: Starting deformation, updated in place
        penalty: Regularization penalty
        mmis: Mismatch surrogate on the same grid as ``phi``
        phi_old: Prior deformation; the regularization is evaluated on its
            composition with ``phi``
        params: Optimizer parameters
        solver: Bounded solver for the smooth regime

    Returns:
        RefinementResult
    """
    params = params if params is not None else OptimizerParameters()
    params.validate()
    if solver is not None and mmis.order.is_smooth:
        optimizer = SmoothOptimizer(params, solver)
    else:
        optimizer = make_optimizer(mmis.order, params)
    return optimizer.optimize(phi, penalty, mmis, phi_old)


def optimize_sequence(
    phis: Sequence[GridDeformation],
    penalty: AffinePenalty,
    lambda_t: float,
    mmis: Sequence[MismatchSurrogate],
    phis_old: Optional[Sequence[GridDeformation]] = None,
    params: Optional[OptimizerParameters] = None,
) -> RefinementResult:
    """
    Refine a sequence of deformations jointly with temporal coupling.

    Args:
        phis: One deformation per time point, updated in place
        penalty: Regularization penalty shared by all time points
        lambda_t: Temporal coefficient
        mmis: One mismatch surrogate per time point
        phis_old: Optional prior deformation per time point
        params: Optimizer parameters (``x_tol`` is the step tolerance)

    Returns:
        RefinementResult whose ``deformation`` is the list ``phis``
    """
    params = params if params is not None else OptimizerParameters()
    params.validate()
    phis = list(phis)
    objective = SequenceObjective(phis, penalty, lambda_t, mmis, phis_old)
    solver = LBFGSBSolver(
        tol=params.tol,
        ftol=params.ftol,
        max_iter=params.max_iter,
        x_tol=params.x_tol,
        progress=params.progress,
    )
    x0 = as_vector(np.stack([phi.u for phi in phis]))
    count = len(phis) * phis[0].nnodes
    x, value, f0, res, improved = _minimize(objective, solver, x0, mmis[0].bounds(), count)

    us = as_field(x, objective.shape)
    for phi, u in zip(phis, us):
        phi.u[...] = u
    return RefinementResult(phis, value, f0, res.status, res.nit, [f0, value], improved)
