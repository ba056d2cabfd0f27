"""
Matrix-free Hessian operators for the initial-guess solve.

The quadratic model of the total penalty is ``R(u) + sum_i (u_i - c_i)^T Q_i
(u_i - c_i)``; its normal equations are solved without ever forming the
(N * nodeCount)-square matrix. The operators below only supply the
matrix-vector product.

All Numba-accelerated functions are at module level for optimal performance.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray
from numba import njit
from scipy.sparse.linalg import LinearOperator

from ..core.deformation import GridDeformation, compose
from ..core.errors import ConfigurationError
from ..core.penalty import AffinePenalty, TemporalPenalty

logger = logging.getLogger(__name__)


# =============================================================================
# Module-level Numba-accelerated functions
# =============================================================================

@njit(cache=True, fastmath=True)
def _block_matvec(Qs: NDArray, v: NDArray, out: NDArray, fac: float) -> None:
    """Add ``Q_i v_i + fac * v_i`` to ``out`` for every node ``i``."""
    n, N, _ = Qs.shape
    for i in range(n):
        for a in range(N):
            acc = fac * v[i, a]
            for b in range(N):
                acc += Qs[i, a, b] * v[i, b]
            out[i, a] += acc


@njit(cache=True)
def _trace_sum(Qs: NDArray) -> float:
    """Sum of the traces of all blocks."""
    total = 0.0
    for i in range(Qs.shape[0]):
        for a in range(Qs.shape[1]):
            total += Qs[i, a, a]
    return total


# =============================================================================
# Operators
# =============================================================================

class QuadraticHessian(LinearOperator):
    """
    Hessian of the regularized quadratic model.

    ``apply(v)`` returns ``lambda * (I - F F^T) v + Q v + fac * v``, where the
    stabilizer ``fac = cbrt(eps) * sum_i tr(Q_i) / nodeCount`` keeps the
    system positive definite when some ``Q_i`` vanish. With a prior
    deformation, the regularization term is evaluated on the composition of
    the prior with ``v``.

    Attributes:
        penalty: Regularization penalty (defines the grid)
        Qs: Curvature blocks, shape ``(*gridsize, N, N)`` or
            ``(T, *gridsize, N, N)``
        phi_old: Optional prior deformation (one per time point when ``Qs``
            has a time axis)
        fac: Stabilizer coefficient
    """

    def __init__(
        self,
        penalty: AffinePenalty,
        Qs: NDArray[np.float64],
        phi_old: Optional[Union[GridDeformation, Sequence[GridDeformation]]] = None,
    ):
        Qs = np.asarray(Qs, dtype=np.float64)
        N = penalty.ndim
        gridsize = penalty.gridsize
        if Qs.ndim < 2 or Qs.shape[-2:] != (N, N):
            raise ConfigurationError(
                f"Qs blocks must be {N}x{N} for a {N}-dimensional grid, got shape {Qs.shape}"
            )
        leading = Qs.shape[:-2]
        if leading[len(leading) - N:] != gridsize or len(leading) - N not in (0, 1):
            raise ConfigurationError(
                f"Qs with grid {leading} is incommensurate with penalty grid {gridsize}"
            )

        self.penalty = penalty
        self.Qs = Qs
        self.ntimes = leading[0] if len(leading) > N else None
        self.field_shape = leading + (N,)
        self._blocks = np.ascontiguousarray(Qs.reshape(-1, N, N))

        self.phi_old = None
        if phi_old is not None:
            priors = [phi_old] if isinstance(phi_old, GridDeformation) else list(phi_old)
            if len(priors) != (self.ntimes or 1):
                raise ConfigurationError(
                    f"{len(priors)} prior deformations given for {self.ntimes or 1} time points"
                )
            if not all(p.is_identity for p in priors):
                self.phi_old = priors

        nnodes = self._blocks.shape[0]
        trace = _trace_sum(self._blocks)
        if trace == 0:
            trace = 1.0
        self.fac = np.cbrt(np.finfo(np.float64).eps) * trace / nnodes

        n = nnodes * N
        super().__init__(dtype=np.float64, shape=(n, n))
        logger.debug(f"Hessian operator: dimension {n}, stabilizer {self.fac:.3g}")

    def dimension(self) -> int:
        """Length of the vectors this operator acts on."""
        return self.shape[0]

    def apply(self, v: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Apply the operator to a flat vector.

        Raises:
            ConfigurationError: If ``len(v) != dimension()``
        """
        v = np.asarray(v, dtype=np.float64)
        if v.ndim != 1 or v.shape[0] != self.dimension():
            raise ConfigurationError(
                f"input of length {v.size} does not match operator dimension {self.dimension()}"
            )

        u = v.reshape(self.field_shape)
        g = np.empty_like(u)
        weight = self.penalty.weight * self.penalty.nnodes / 2
        if self.phi_old is None:
            self.penalty.evaluate(u, g, weight)
        else:
            slices = u if self.ntimes else u[None]
            gslices = g if self.ntimes else g[None]
            for phi_prior, ut, gt in zip(self.phi_old, slices, gslices):
                composition = compose(phi_prior, GridDeformation(ut, self.penalty.nodes))
                self.penalty.evaluate_composed(composition, gt, weight)

        N = self.penalty.ndim
        _block_matvec(self._blocks, u.reshape(-1, N), g.reshape(-1, N), self.fac)
        return g.reshape(-1)

    def _matvec(self, x):
        x = np.asarray(x)
        return self.apply(x.reshape(-1)).reshape(x.shape)

    def _rmatvec(self, x):
        return self._matvec(x)


class TemporalHessian(LinearOperator):
    """
    Quadratic Hessian of a sequence plus temporal coupling.

    ``apply(v) = base.apply(v) + lambda_t * T v`` with ``T`` the
    free-boundary second difference along the time axis.
    """

    def __init__(self, base: QuadraticHessian, lambda_t: float):
        if base.ntimes is None:
            raise ConfigurationError("temporal coupling requires Qs with a leading time axis")
        self.base = base
        self.temporal = TemporalPenalty(lambda_t)
        super().__init__(dtype=np.float64, shape=base.shape)

    @property
    def lambda_t(self) -> float:
        return self.temporal.weight

    def dimension(self) -> int:
        return self.base.dimension()

    def apply(self, v: NDArray[np.float64]) -> NDArray[np.float64]:
        out = self.base.apply(v)
        u = np.asarray(v, dtype=np.float64).reshape(self.base.field_shape)
        self.temporal.accumulate(u, out.reshape(self.base.field_shape))
        return out

    def _matvec(self, x):
        x = np.asarray(x)
        return self.apply(x.reshape(-1)).reshape(x.shape)

    def _rmatvec(self, x):
        return self._matvec(x)
