"""
Regularization penalties.

AffinePenalty penalizes the part of a displacement field that is not an
affine function of the node coordinates. TemporalPenalty couples consecutive
time points of a sequence.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from numpy.typing import NDArray
from numba import njit

from .deformation import Composition
from .errors import ConfigurationError
from ..utils.arrays import node_grid


# =============================================================================
# Module-level Numba-accelerated functions
# =============================================================================

@njit(cache=True, fastmath=True)
def _second_difference(u: NDArray, out: NDArray, weight: float) -> None:
    """
    Add ``weight * T u`` to ``out``.

    ``u`` and ``out`` have shape ``(T, m)``. ``T`` is the free-boundary second
    difference along the first axis.
    """
    nt, m = u.shape
    for t in range(nt):
        for j in range(m):
            acc = 0.0
            if t > 0:
                acc += u[t, j] - u[t - 1, j]
            if t < nt - 1:
                acc += u[t, j] - u[t + 1, j]
            out[t, j] += weight * acc


# =============================================================================
# Penalties
# =============================================================================

class AffinePenalty:
    """
    Penalize deviations from an affine displacement field.

    With ``U`` the ``(n, N)`` matrix of node displacements and ``F`` an
    orthonormal basis of the affine functions sampled at the nodes, the value
    is ``(w / n) * ||U - F F^T U||^2``.

    Attributes:
        nodes: One ascending coordinate array per axis
        weight: Regularization coefficient lambda
        F: Orthonormal affine basis, shape ``(n, k)`` with ``k <= N + 1``
    """

    def __init__(self, nodes: Sequence[NDArray[np.float64]], weight: float):
        self.nodes = tuple(np.asarray(n, dtype=np.float64) for n in nodes)
        self.weight = float(weight)
        if self.weight < 0:
            raise ConfigurationError(f"regularization weight must be non-negative, got {weight}")

        coords = node_grid(self.nodes).reshape(-1, self.ndim)
        coords = coords - coords.mean(axis=0)
        # Axes with a single node carry no affine information
        columns = [coords[:, d] for d in range(self.ndim) if np.any(coords[:, d])]
        X = np.column_stack(columns + [np.ones(len(coords))])
        self.F, _ = np.linalg.qr(X)

    @property
    def ndim(self) -> int:
        return len(self.nodes)

    @property
    def gridsize(self):
        return tuple(len(n) for n in self.nodes)

    @property
    def nnodes(self) -> int:
        return int(np.prod(self.gridsize))

    def _check(self, u: NDArray[np.float64]) -> None:
        spatial = self.gridsize + (self.ndim,)
        if u.shape[-len(spatial):] != spatial or u.ndim - len(spatial) > 1:
            raise ConfigurationError(
                f"displacement shape {u.shape} is incommensurate with grid {self.gridsize}"
            )

    def evaluate(
        self,
        u: NDArray[np.float64],
        grad: Optional[NDArray[np.float64]] = None,
        weight: Optional[float] = None,
    ) -> float:
        """
        Evaluate the penalty and optionally its gradient.

        Args:
            u: Displacements, shape ``(*gridsize, N)`` or ``(T, *gridsize, N)``
                (summed over time)
            grad: Output array shaped like ``u``; overwritten with the gradient
            weight: Weight to use instead of ``self.weight``

        Returns:
            Penalty value
        """
        u = np.asarray(u, dtype=np.float64)
        self._check(u)
        w = self.weight if weight is None else weight
        n = self.nnodes

        U = u.reshape(-1, n, self.ndim)
        residual = U - self.F @ (self.F.T @ U)
        value = w / n * float(np.sum(residual * residual))

        if grad is not None:
            grad[...] = (2.0 * w / n * residual).reshape(u.shape)
        return value

    def evaluate_composed(
        self,
        composition: Composition,
        grad: Optional[NDArray[np.float64]] = None,
        weight: Optional[float] = None,
    ) -> float:
        """
        Evaluate the penalty on a composed deformation.

        The gradient is taken with respect to the inner (correction)
        displacement.
        """
        u = composition.deformation.u
        if grad is None:
            return self.evaluate(u, weight=weight)
        gc = np.empty_like(u)
        value = self.evaluate(u, gc, weight)
        grad[...] = composition.pullback(gc)
        return value

    def __repr__(self) -> str:
        return f"AffinePenalty(gridsize={self.gridsize}, weight={self.weight})"


class TemporalPenalty:
    """
    Penalize differences between consecutive time points.

    Value ``(lambda_t / 2) * sum_t ||u_{t+1} - u_t||^2``.
    """

    def __init__(self, weight: float):
        self.weight = float(weight)
        if self.weight < 0:
            raise ConfigurationError(f"temporal weight must be non-negative, got {weight}")

    def evaluate(
        self,
        us: NDArray[np.float64],
        grad: Optional[NDArray[np.float64]] = None,
    ) -> float:
        """
        Args:
            us: Displacement sequence, shape ``(T, ...)``
            grad: Output array shaped like ``us``; overwritten with the gradient

        Returns:
            Penalty value
        """
        us = np.asarray(us, dtype=np.float64)
        diff = np.diff(us, axis=0)
        value = 0.5 * self.weight * float(np.sum(diff * diff))
        if grad is not None:
            grad[...] = 0.0
            self.accumulate(us, grad)
        return value

    def accumulate(self, u: NDArray[np.float64], out: NDArray[np.float64]) -> NDArray[np.float64]:
        """Add ``lambda_t * T u`` to ``out`` (both shaped ``(T, ...)``)."""
        if u.shape != out.shape:
            raise ConfigurationError(f"shape {u.shape} does not match output shape {out.shape}")
        nt = u.shape[0]
        flat = np.ascontiguousarray(u, dtype=np.float64).reshape(nt, -1)
        delta = np.zeros_like(flat)
        _second_difference(flat, delta, self.weight)
        out += delta.reshape(out.shape)
        return out
