"""
Complete deformation optimizers.

Combines the initial guess from quadratic fits with the refinement against
interpolated mismatch data for a fixed regularization coefficient.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from .core.deformation import GridDeformation
from .core.errors import ConfigurationError
from .core.mismatch import MismatchSurrogate
from .core.parameters import OptimizerParameters
from .core.penalty import AffinePenalty
from .algorithms.initial_guess import initial_deformation
from .algorithms.refine import RefinementResult, optimize, optimize_sequence
from .algorithms.solvers import ConjugateGradientSolver, InteriorPointSolver
from .utils.arrays import uclamp
from .utils.logging import log_step

logger = logging.getLogger(__name__)

# Trust radii below this are not tried
MIN_TRUST_RADIUS = 1e-16


@dataclass
class OptimizationResult:
    """
    Result of a complete optimization.

    Attributes:
        deformation: Optimal deformation (a list for sequences)
        value: Total penalty (data + regularization) of ``deformation``
        converged_initial: Whether the initial-guess solve converged
        attempts: Number of refinement runs performed
        refinement: Result of the last refinement run
    """

    deformation: Union[GridDeformation, List[GridDeformation]]
    value: float
    converged_initial: bool
    attempts: int
    refinement: RefinementResult


@log_step
def fixed_lambda(
    cs: NDArray[np.float64],
    Qs: NDArray[np.float64],
    nodes: Sequence[NDArray[np.float64]],
    penalty: AffinePenalty,
    mmis: MismatchSurrogate,
    phi_old: Optional[GridDeformation] = None,
    params: Optional[OptimizerParameters] = None,
) -> OptimizationResult:
    """
    Optimal deformation for the regularization weight of ``penalty``.

    The initial guess comes from the quadratic fits ``cs``/``Qs``; if that
    solve fails and produces non-finite values, ``cs`` itself is used. The
    guess is clamped to the mismatch bounds and refined. When the refinement
    does not lower the penalty, it is retried with the interior-point solver,
    shrinking its initial trust radius tenfold per attempt.

    Args:
        cs: Local minimizing displacements, shape ``(*gridsize, N)``
        Qs: Local curvature matrices, shape ``(*gridsize, N, N)``
        nodes: One ascending coordinate array per axis
        penalty: Affine regularization penalty
        mmis: Mismatch surrogate
        phi_old: Prior deformation composed with the result for regularization
        params: Optimizer parameters

    Returns:
        OptimizationResult
    """
    params = params if params is not None else OptimizerParameters()
    params.validate()
    cs = np.asarray(cs, dtype=np.float64)

    u0, converged = initial_deformation(penalty, cs, Qs, solver=ConjugateGradientSolver(params.cg_rtol))
    if not converged and not np.all(np.isfinite(u0)):
        logger.info("initial guess is not finite, starting from the quadratic-fit minima")
        u0 = cs.copy()
    uclamp(u0, mmis.maxshift)
    start = u0.copy()

    phi = GridDeformation(u0, nodes)
    result = optimize(phi, penalty, mmis, phi_old, params)
    attempts = 1

    radius = params.trust_radius
    while not result.improved and radius > MIN_TRUST_RADIUS:
        logger.info(f"refinement did not improve the penalty, retrying with trust radius {radius:g}")
        phi.u[...] = start
        solver = InteriorPointSolver(
            tol=params.tol,
            max_iter=params.max_iter,
            initial_tr_radius=radius,
            progress=params.progress,
        )
        result = optimize(phi, penalty, mmis, phi_old, params, solver=solver)
        attempts += 1
        radius /= 10

    logger.info(f"penalty {result.initial_value:.6g} -> {result.value:.6g} after {attempts} attempt(s)")
    return OptimizationResult(phi, result.value, converged, attempts, result)


@log_step
def fixed_lambda_sequence(
    cs: NDArray[np.float64],
    Qs: NDArray[np.float64],
    nodes: Sequence[NDArray[np.float64]],
    penalty: AffinePenalty,
    lambda_t: float,
    mmis: Sequence[MismatchSurrogate],
    phis_old: Optional[Sequence[GridDeformation]] = None,
    params: Optional[OptimizerParameters] = None,
) -> OptimizationResult:
    """
    Optimal deformation sequence with temporal coupling.

    Args:
        cs: Local minimizing displacements, shape ``(T, *gridsize, N)``
        Qs: Local curvature matrices, shape ``(T, *gridsize, N, N)``
        nodes: One ascending coordinate array per axis
        penalty: Affine regularization penalty
        lambda_t: Temporal coefficient
        mmis: One mismatch surrogate per time point
        phis_old: Optional prior deformation per time point
        params: Optimizer parameters

    Returns:
        OptimizationResult whose ``deformation`` is a list of deformations
    """
    params = params if params is not None else OptimizerParameters()
    params.validate()
    cs = np.asarray(cs, dtype=np.float64)
    if cs.ndim != len(nodes) + 2:
        raise ConfigurationError(f"cs must have shape (T, *gridsize, N), got {cs.shape}")
    if len(mmis) != cs.shape[0]:
        raise ConfigurationError(f"{len(mmis)} mismatch surrogates given for {cs.shape[0]} time points")

    logger.info("Calculating initial guess")
    u0, converged = initial_deformation(
        penalty, cs, Qs, lambda_t=lambda_t, solver=ConjugateGradientSolver(params.cg_rtol)
    )
    uclamp(u0, mmis[0].maxshift)
    phis = [GridDeformation(u0[t].copy(), nodes) for t in range(u0.shape[0])]

    logger.info("Starting sequence refinement")
    result = optimize_sequence(phis, penalty, lambda_t, mmis, phis_old, params)
    return OptimizationResult(result.deformation, result.value, converged, 1, result)
