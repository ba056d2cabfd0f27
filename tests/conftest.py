"""Pytest fixtures for regoptim tests."""

import numpy as np
import pytest

from regoptim.core.mismatch import InterpolationOrder, MismatchSurrogate
from regoptim.core.penalty import AffinePenalty
from regoptim.utils.arrays import node_grid


def _quadratic_mismatch(centers, Qs, maxshift):
    """
    Numerator/denominator arrays whose ratio is an exact quadratic per aperture.

    Args:
        centers: Minimum location per aperture, shape ``(*gridsize, N)``
        Qs: Curvature per aperture, shape ``(*gridsize, N, N)``
        maxshift: Largest shift per axis

    Returns:
        Tuple of (nums, denoms), each ``(*gridsize, *shiftshape)``
    """
    centers = np.asarray(centers, dtype=np.float64)
    gridsize = centers.shape[:-1]
    shifts = node_grid([np.arange(-m, m + 1, dtype=np.float64) for m in maxshift])
    nums = np.empty(gridsize + shifts.shape[:-1])
    for i in np.ndindex(*gridsize):
        d = shifts - centers[i]
        nums[i] = np.einsum("...a,ab,...b->...", d, Qs[i], d)
    return nums, np.ones_like(nums)


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(42)


@pytest.fixture
def nodes_4x4():
    """A 4x4 rectilinear node grid."""
    return (np.linspace(1, 20, 4), np.linspace(1, 15, 4))


@pytest.fixture
def penalty_4x4(nodes_4x4):
    """Affine penalty with lambda = 1 on the 4x4 grid."""
    return AffinePenalty(nodes_4x4, 1.0)


@pytest.fixture
def random_fit(rng):
    """Factory for random symmetric-PSD curvatures and random minima."""

    def make(shape, N=2):
        QF = rng.random(shape + (N, N))
        Qs = np.einsum("...ba,...bc->...ac", QF, QF)
        cs = rng.standard_normal(shape + (N,))
        return cs, Qs

    return make


@pytest.fixture
def quadratic_mismatch():
    """Factory for exact quadratic mismatch arrays."""
    return _quadratic_mismatch


@pytest.fixture
def dense_hessian():
    """Factory assembling the dense Hessian of the regularized quadratic model."""

    def make(penalty, Qs, fac=0.0, lambda_t=None):
        N = penalty.ndim
        n = penalty.nnodes
        FF = penalty.F @ penalty.F.T
        A = penalty.weight * (np.eye(n * N) - np.kron(FF, np.eye(N)))
        blocks = np.asarray(Qs).reshape(-1, N, N)
        ntimes = blocks.shape[0] // n
        dense = np.kron(np.eye(ntimes), A)
        for i, Q in enumerate(blocks):
            dense[i * N:(i + 1) * N, i * N:(i + 1) * N] += Q
        dense += fac * np.eye(dense.shape[0])
        if lambda_t is not None:
            T = 2 * np.eye(ntimes) - np.eye(ntimes, k=1) - np.eye(ntimes, k=-1)
            T[0, 0] = T[-1, -1] = 1
            dense += lambda_t * np.kron(T, np.eye(n * N))
        return dense

    return make


@pytest.fixture
def affine_problem(quadratic_mismatch, rng):
    """Quadratic mismatch data on a 7x5 grid whose minima follow an affine map."""
    imgsz = (100, 80)
    gridsize = (7, 5)
    nodes = tuple(np.linspace(1, s, g) for s, g in zip(imgsz, gridsize))
    center = (np.array(imgsz) + 1) / 2
    S = np.eye(2) + 0.1 * rng.random((2, 2))
    rel = node_grid(nodes) - center
    shifts = rel @ S.T - rel
    maxshift = tuple(int(np.ceil(m)) + 1 for m in np.abs(shifts).max(axis=(0, 1)))
    QF = rng.random(gridsize + (2, 2))
    Qs = np.einsum("...ab,...cb->...ac", QF, QF) + 0.2 * np.eye(2)
    nums, denoms = quadratic_mismatch(shifts, Qs, maxshift)
    return nodes, shifts, Qs, MismatchSurrogate(nums, denoms, InterpolationOrder.QUADRATIC)
