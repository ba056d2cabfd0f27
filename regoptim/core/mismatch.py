"""
Interpolated per-aperture mismatch data.

Each aperture (grid node) carries a numerator and a denominator array sampled
at integer shifts ``-m..m`` along every axis. The arrays are interpolated with
tensor-product B-splines so the data penalty can be evaluated, and
differentiated, at sub-pixel displacements.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Dict, Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from scipy.interpolate import NdBSpline, make_interp_spline

from .errors import ConfigurationError
from ..utils.arrays import shift_bounds

logger = logging.getLogger(__name__)

Index = Union[int, Tuple[int, ...]]


class InterpolationOrder(IntEnum):
    """B-spline degree used to interpolate mismatch arrays."""

    LINEAR = 1
    QUADRATIC = 2
    CUBIC = 3

    @property
    def is_smooth(self) -> bool:
        """True if the interpolant has a continuous gradient."""
        return self >= InterpolationOrder.QUADRATIC


class MismatchSurrogate:
    """
    Mismatch data of all apertures with a shared interpolation order.

    Attributes:
        order: Interpolation order
        thresh: Minimum total denominator for a finite data penalty
        keep: Boolean mask over the grid of apertures that contribute
        maxshift: Largest represented shift along each axis
        gridsize: Grid shape
    """

    def __init__(
        self,
        nums: NDArray[np.float64],
        denoms: NDArray[np.float64],
        order: InterpolationOrder = InterpolationOrder.QUADRATIC,
        thresh: float = 0.0,
        keep: Optional[NDArray[np.bool_]] = None,
    ):
        """
        Args:
            nums: Numerators, shape ``(*gridsize, *shiftshape)``
            denoms: Denominators, same shape as ``nums``
            order: Interpolation order
            thresh: Minimum total denominator; at or below it the data penalty
                is ``+inf``
            keep: Apertures to include; defaults to those whose data are
                finite
        """
        nums = np.asarray(nums, dtype=np.float64)
        denoms = np.asarray(denoms, dtype=np.float64)
        if nums.shape != denoms.shape:
            raise ConfigurationError(
                f"numerator shape {nums.shape} does not match denominator shape {denoms.shape}"
            )
        if nums.ndim == 0 or nums.ndim % 2:
            raise ConfigurationError(
                f"mismatch arrays must have shape (*gridsize, *shiftshape), got {nums.shape}"
            )

        N = nums.ndim // 2
        shiftshape = nums.shape[N:]
        if any(s % 2 == 0 for s in shiftshape):
            raise ConfigurationError(f"shift axes must have odd length, got {shiftshape}")

        self.order = InterpolationOrder(order)
        if any(s < self.order + 1 for s in shiftshape):
            raise ConfigurationError(
                f"{self.order.name.lower()} interpolation needs at least {self.order + 1} "
                f"shifts per axis, got {shiftshape}"
            )

        self.thresh = float(thresh)
        self.gridsize: Tuple[int, ...] = nums.shape[:N]
        self.maxshift: Tuple[int, ...] = tuple(s // 2 for s in shiftshape)

        finite = np.isfinite(nums) & np.isfinite(denoms)
        finite = finite.reshape(self.gridsize + (-1,)).all(axis=-1)
        if keep is None:
            keep = finite
        else:
            keep = np.asarray(keep, dtype=bool)
            if keep.shape != self.gridsize:
                raise ConfigurationError(f"keep mask shape {keep.shape} does not match grid {self.gridsize}")
            keep = keep & finite
        self.keep = keep

        # Interpolation coefficients for all apertures at once, one shift axis
        # at a time; the last axis holds (num, denom)
        coefs = np.stack([nums, denoms], axis=-1)
        coefs[~finite] = 0.0
        knots = []
        for d, m in enumerate(self.maxshift):
            axis = N + d
            x = np.arange(-m, m + 1, dtype=np.float64)
            spl = make_interp_spline(x, coefs, k=int(self.order), axis=axis, check_finite=False)
            knots.append(spl.t)
            coefs = np.moveaxis(spl.c, 0, axis)

        self._knots = tuple(knots)
        self._coefs = coefs
        self._splines: Dict[int, NdBSpline] = {}
        self._units = np.eye(N, dtype=np.intp)
        logger.debug(
            f"mismatch surrogate: {int(keep.sum())} of {keep.size} apertures kept, maxshift {self.maxshift}"
        )

    @property
    def ndim(self) -> int:
        return len(self.gridsize)

    @property
    def nnodes(self) -> int:
        return int(np.prod(self.gridsize))

    def _spline(self, i: Index) -> NdBSpline:
        flat = i if isinstance(i, (int, np.integer)) else int(np.ravel_multi_index(i, self.gridsize))
        spl = self._splines.get(flat)
        if spl is None:
            index = np.unravel_index(flat, self.gridsize)
            spl = NdBSpline(self._knots, self._coefs[index], int(self.order))
            self._splines[flat] = spl
        return spl

    def evaluate(self, i: Index, shift: NDArray[np.float64]) -> Tuple[float, float]:
        """
        Interpolated (numerator, denominator) of aperture ``i`` at ``shift``.

        Args:
            i: Flat or multi-dimensional aperture index
            shift: Displacement, length ``N``
        """
        nd = self._spline(i)(np.asarray(shift, dtype=np.float64))
        return float(nd[0]), float(nd[1])

    def gradient(self, i: Index, shift: NDArray[np.float64]) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
        """
        Gradients of the numerator and denominator of aperture ``i``.

        Returns:
            Tuple of (d num / d shift, d denom / d shift), each of length ``N``
        """
        spl = self._spline(i)
        shift = np.asarray(shift, dtype=np.float64)
        derivs = np.array([spl(shift, nu=self._units[d]) for d in range(self.ndim)])
        return derivs[:, 0], derivs[:, 1]

    def penalty(
        self,
        u: NDArray[np.float64],
        grad: Optional[NDArray[np.float64]] = None,
    ) -> float:
        """
        Data penalty ``sum(num_i(u_i)) / sum(denom_i(u_i))`` over kept apertures.

        Args:
            u: Displacements, shape ``(*gridsize, N)``
            grad: Output array shaped like ``u``; overwritten with the gradient

        Returns:
            Penalty value, ``+inf`` if the total denominator is at or below
            ``thresh``
        """
        u = np.asarray(u, dtype=np.float64)
        if u.shape != self.gridsize + (self.ndim,):
            raise ConfigurationError(
                f"displacement shape {u.shape} is incommensurate with mismatch grid {self.gridsize}"
            )

        U = u.reshape(-1, self.ndim)
        kept = np.flatnonzero(self.keep.reshape(-1))
        num = 0.0
        den = 0.0
        if grad is not None:
            dnum = np.zeros_like(U)
            dden = np.zeros_like(U)
        for i in kept:
            n_i, d_i = self.evaluate(int(i), U[i])
            num += n_i
            den += d_i
            if grad is not None:
                dnum[i], dden[i] = self.gradient(int(i), U[i])

        if not den > self.thresh:
            if grad is not None:
                grad[...] = 0.0
            return np.inf

        value = num / den
        if grad is not None:
            grad[...] = ((dnum - value * dden) / den).reshape(u.shape)
        return value

    def bounds(self, dtype=np.float64) -> NDArray:
        """Per-axis displacement bound ``maxshift - REGISTER_HALF``."""
        return shift_bounds(self.maxshift).astype(dtype)

    def __repr__(self) -> str:
        return (
            f"MismatchSurrogate(gridsize={self.gridsize}, maxshift={self.maxshift}, "
            f"order={self.order.name})"
        )
