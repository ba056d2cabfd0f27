"""
Grid deformations and their composition.

A deformation stores one displacement vector per node of a rectilinear grid.
Only the operations the optimizers need are provided: multilinear
interpolation with spatial gradients, and composition with chain-rule data.
"""

from __future__ import annotations

from dataclasses import dataclass
from itertools import product
from typing import Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import ConfigurationError
from ..utils.arrays import node_grid


def _locate(coords: NDArray[np.float64], x: NDArray[np.float64]):
    """
    Find the grid cell containing each coordinate along one axis.

    Positions outside the grid are clamped to the edge cell; their derivative
    weight is zero.

    Returns:
        Tuple of (lower index, upper index, fractional offset, d(offset)/dx)
    """
    n = len(coords)
    if n == 1:
        zeros = np.zeros(x.shape, dtype=np.intp)
        return zeros, zeros, np.zeros(x.shape), np.zeros(x.shape)

    lo = np.clip(np.searchsorted(coords, x, side="right") - 1, 0, n - 2)
    h = coords[lo + 1] - coords[lo]
    t = (x - coords[lo]) / h
    inside = (t >= 0.0) & (t <= 1.0)
    t = np.clip(t, 0.0, 1.0)
    dt = np.where(inside, 1.0 / h, 0.0)
    return lo, lo + 1, t, dt


@dataclass
class GridDeformation:
    """
    Displacement field sampled on a rectilinear grid.

    Attributes:
        u: Displacements, shape ``(*gridsize, N)``; modified in place by the
            refinement optimizers
        nodes: One ascending coordinate array per axis
    """

    u: NDArray[np.float64]
    nodes: Tuple[NDArray[np.float64], ...]

    def __post_init__(self):
        self.nodes = tuple(np.asarray(n, dtype=np.float64) for n in self.nodes)
        self.u = np.asarray(self.u, dtype=np.float64)
        gridsize = tuple(len(n) for n in self.nodes)
        if self.u.shape != gridsize + (len(gridsize),):
            raise ConfigurationError(
                f"displacement shape {self.u.shape} does not match grid {gridsize} "
                f"with {len(gridsize)} components"
            )
        for d, n in enumerate(self.nodes):
            if np.any(np.diff(n) <= 0):
                raise ConfigurationError(f"nodes along axis {d} must be strictly ascending")

    @classmethod
    def identity(cls, nodes: Sequence[NDArray[np.float64]]) -> "GridDeformation":
        """Create a deformation with zero displacement."""
        gridsize = tuple(len(n) for n in nodes)
        return cls(np.zeros(gridsize + (len(gridsize),)), tuple(nodes))

    @property
    def ndim(self) -> int:
        return len(self.nodes)

    @property
    def gridsize(self) -> Tuple[int, ...]:
        return tuple(len(n) for n in self.nodes)

    @property
    def nnodes(self) -> int:
        return int(np.prod(self.gridsize))

    @property
    def is_identity(self) -> bool:
        return not np.any(self.u)

    def copy(self) -> "GridDeformation":
        return GridDeformation(self.u.copy(), self.nodes)

    def node_positions(self) -> NDArray[np.float64]:
        """Node coordinates, shape ``(*gridsize, N)``."""
        return node_grid(self.nodes)

    def interpolate(
        self, points: NDArray[np.float64]
    ) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Multilinear interpolation of the displacement.

        Args:
            points: Positions, shape ``(..., N)``

        Returns:
            Tuple of (values with shape ``(..., N)``, Jacobians with shape
            ``(..., N, N)`` where ``[..., a, b] = d u_a / d x_b``)
        """
        points = np.asarray(points, dtype=np.float64)
        N = self.ndim
        if points.shape[-1] != N:
            raise ConfigurationError(f"points must have {N} coordinates, got {points.shape[-1]}")

        located = [_locate(self.nodes[d], points[..., d]) for d in range(N)]
        batch = points.shape[:-1]
        values = np.zeros(batch + (N,))
        jac = np.zeros(batch + (N, N))

        for corner in product((0, 1), repeat=N):
            index = tuple(located[d][corner[d]] for d in range(N))
            weights = [located[d][2] if corner[d] else 1.0 - located[d][2] for d in range(N)]
            dweights = [located[d][3] if corner[d] else -located[d][3] for d in range(N)]
            sample = self.u[index]

            w = np.ones(batch)
            for wd in weights:
                w = w * wd
            values += w[..., None] * sample

            for b in range(N):
                wb = np.ones(batch)
                for d in range(N):
                    wb = wb * (dweights[d] if d == b else weights[d])
                jac[..., :, b] += wb[..., None] * sample

        return values, jac


@dataclass
class Composition:
    """
    Result of composing a prior deformation with a correction.

    Attributes:
        deformation: Composed deformation
        jacobian: ``d u_composed / d u`` per node, shape ``(*gridsize, N, N)``
    """

    deformation: GridDeformation
    jacobian: NDArray[np.float64]

    def pullback(self, grad: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Chain a gradient with respect to the composed displacement back to the
        correction's displacement.
        """
        return np.einsum("...ab,...a->...b", self.jacobian, grad)


def compose(phi_old: GridDeformation, phi: GridDeformation) -> Composition:
    """
    Apply ``phi`` as a correction on top of ``phi_old``.

    The composed displacement at node ``x`` is
    ``u(x) + u_old(x + u(x))``.

    Args:
        phi_old: Prior deformation (interpolated off-grid)
        phi: Correction sampled on the same grid

    Returns:
        Composition carrying the composed field and its Jacobian
    """
    if phi_old.gridsize != phi.gridsize or any(
        not np.array_equal(a, b) for a, b in zip(phi_old.nodes, phi.nodes)
    ):
        raise ConfigurationError("deformations to compose must share the same nodes")

    positions = phi.node_positions() + phi.u
    u_old, grad_old = phi_old.interpolate(positions)
    jacobian = grad_old + np.eye(phi.ndim)
    return Composition(GridDeformation(phi.u + u_old, phi.nodes), jacobian)
