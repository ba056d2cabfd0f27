"""
Initial guess from per-aperture quadratic fits.

Each aperture's mismatch has been summarized by a quadratic with minimum
``c_i`` and curvature ``Q_i``. The initial deformation minimizes

    R(u) + sum_i (u_i - c_i)^T Q_i (u_i - c_i)

(plus the temporal penalty for sequences), which is a linear system solved
matrix-free with conjugate gradients.
"""

from __future__ import annotations

import logging
import warnings
from typing import Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .hessian import QuadraticHessian, TemporalHessian
from .solvers import ConjugateGradientSolver, LinearSolver
from ..core.errors import ConfigurationError, NonConvergenceWarning
from ..core.penalty import AffinePenalty
from ..utils.validation import check_fit_shapes

logger = logging.getLogger(__name__)


def prepare_rhs(cs: NDArray[np.float64], Qs: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Right-hand side ``b_i = Q_i c_i`` stacked into a flat vector.

    Apertures whose ``Q_i`` is identically zero contribute nothing, even when
    their ``c_i`` is not finite.
    """
    cs = np.asarray(cs, dtype=np.float64)
    Qs = np.asarray(Qs, dtype=np.float64)
    active = np.any(Qs != 0, axis=(-2, -1))
    c = np.where(active[..., None], cs, 0.0)
    return np.einsum("...ab,...b->...a", Qs, c).reshape(-1)


def initial_deformation(
    penalty: AffinePenalty,
    cs: NDArray[np.float64],
    Qs: NDArray[np.float64],
    lambda_t: Optional[float] = None,
    solver: Optional[LinearSolver] = None,
) -> Tuple[NDArray[np.float64], bool]:
    """
    Compute the initial displacement field.

    Args:
        penalty: Affine regularization penalty (its weight is lambda)
        cs: Local minimizing displacements, shape ``(*gridsize, N)`` or
            ``(T, *gridsize, N)``
        Qs: Local curvature matrices, shape ``(*gridsize, N, N)`` or
            ``(T, *gridsize, N, N)``
        lambda_t: Temporal coefficient; requires a leading time axis
        solver: Linear solver; defaults to conjugate gradients

    Returns:
        Tuple of (displacements shaped like ``cs``, converged)

    Raises:
        ConfigurationError: If the shapes of ``cs``, ``Qs`` and the penalty
            grid disagree
    """
    cs = np.asarray(cs, dtype=np.float64)
    Qs = np.asarray(Qs, dtype=np.float64)
    N, leading = check_fit_shapes(cs, Qs, penalty.gridsize)
    if N != penalty.ndim:
        raise ConfigurationError(f"Dimensionality {penalty.ndim} of the penalty does not match {N}")
    temporal = len(leading) > N
    if lambda_t is not None and not temporal:
        raise ConfigurationError("a temporal penalty requires cs and Qs with a leading time axis")

    if penalty.weight == 0 and not lambda_t:
        return cs.copy(), True

    b = prepare_rhs(cs, Qs)
    if not np.any(b):
        return np.zeros_like(cs), True

    operator = QuadraticHessian(penalty, Qs)
    if lambda_t is not None:
        operator = TemporalHessian(operator, lambda_t)
    if solver is None:
        solver = ConjugateGradientSolver()

    x, converged = solver.solve(operator, b)
    if not converged:
        warnings.warn(
            f"initial deformation did not converge (lambda={penalty.weight}, lambda_t={lambda_t})",
            NonConvergenceWarning,
            stacklevel=2,
        )
    logger.debug(f"initial deformation: dimension={operator.dimension()}, converged={converged}")
    return x.reshape(cs.shape), converged
