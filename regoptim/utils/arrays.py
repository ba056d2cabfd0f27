"""
Array glue between grid-shaped displacement fields and flat solver vectors.

Displacement fields have shape ``(*gridsize, N)``; flattening in C order puts
the components of one node next to each other, node after node. Sequences add
a leading time axis, so each time point occupies one contiguous block.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

# Safety margin kept between a displacement and the edge of the mismatch data
REGISTER_HALF = 0.5001


def as_vector(u: NDArray[np.float64]) -> NDArray[np.float64]:
    """Flatten a displacement field (or sequence) into a solver vector."""
    return np.ascontiguousarray(u, dtype=np.float64).reshape(-1)


def as_field(x: NDArray[np.float64], shape: Tuple[int, ...]) -> NDArray[np.float64]:
    """Reshape a solver vector back into a displacement field of ``shape``."""
    x = np.asarray(x, dtype=np.float64)
    if x.size != int(np.prod(shape)):
        raise ValueError(f"vector of length {x.size} is incommensurate with shape {shape}")
    return x.reshape(shape)


def node_grid(nodes: Sequence[NDArray[np.float64]]) -> NDArray[np.float64]:
    """
    Coordinates of every grid node.

    Args:
        nodes: One ascending coordinate array per axis

    Returns:
        Array of shape ``(*gridsize, N)``
    """
    axes = np.meshgrid(*[np.asarray(n, dtype=np.float64) for n in nodes], indexing="ij")
    return np.stack(axes, axis=-1)


def shift_bounds(maxshift: Sequence[int]) -> NDArray[np.float64]:
    """Per-axis displacement bound ``maxshift - REGISTER_HALF``."""
    return np.asarray(maxshift, dtype=np.float64) - REGISTER_HALF


def box_bounds(bound: NDArray[np.float64], count: int) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Repeat a per-axis bound for ``count`` nodes.

    Returns:
        Tuple of (lower, upper) flat vectors of length ``count * N``
    """
    upper = np.tile(np.asarray(bound, dtype=np.float64), count)
    return -upper, upper


def uclamp(u: NDArray[np.float64], maxshift: Sequence[int]) -> NDArray[np.float64]:
    """
    Clamp a displacement field in place to the mismatch data bounds.

    Args:
        u: Field of shape ``(..., N)``
        maxshift: Per-axis maximum shift of the mismatch data

    Returns:
        ``u`` (clamped in place)
    """
    bound = shift_bounds(maxshift)
    np.clip(u, -bound, bound, out=u)
    return u
