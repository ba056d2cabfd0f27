"""
Solver backends.

Two narrow interfaces decouple the optimizers from the numerical packages:
a linear solver for the symmetric positive-definite initial-guess system and
a bound-constrained nonlinear solver for the refinement stage. The concrete
implementations wrap ``scipy.sparse.linalg.cg`` and ``scipy.optimize.minimize``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import BFGS, Bounds, minimize
from scipy.sparse.linalg import cg
from tqdm import tqdm

from ..core.errors import ConfigurationError
from ..core.parameters import OptimizerParameters, SolverMethod
from ..core.status import TerminationStatus

logger = logging.getLogger(__name__)

Objective = Callable[[NDArray[np.float64]], Tuple[float, NDArray[np.float64]]]


@dataclass
class SolverResult:
    """
    Outcome of a bound-constrained solve.

    Attributes:
        x: Final iterate
        fun: Objective value at ``x``
        status: Termination status
        nit: Number of iterations
        message: Backend message
    """

    x: NDArray[np.float64]
    fun: float
    status: TerminationStatus
    nit: int
    message: str = ""


# =============================================================================
# Linear solvers
# =============================================================================

class LinearSolver(ABC):
    """Solver for ``A x = b`` with a symmetric positive-definite operator."""

    @abstractmethod
    def solve(self, operator, b: NDArray[np.float64]) -> Tuple[NDArray[np.float64], bool]:
        """
        Args:
            operator: Operator providing ``dimension()`` and ``apply(v)``
            b: Right-hand side of length ``operator.dimension()``

        Returns:
            Tuple of (solution, converged)
        """


class ConjugateGradientSolver(LinearSolver):
    """
    Matrix-free conjugate gradients.

    Args:
        rtol: Relative residual tolerance
        maxiter: Iteration cap; defaults to the operator dimension
    """

    def __init__(self, rtol: float = 1e-8, maxiter: Optional[int] = None):
        self.rtol = rtol
        self.maxiter = maxiter

    def solve(self, operator, b):
        b = np.asarray(b, dtype=np.float64).reshape(-1)
        n = operator.dimension()
        if b.shape[0] != n:
            raise ConfigurationError(f"right-hand side of length {b.shape[0]} does not match dimension {n}")
        if not np.any(b):
            return np.zeros(n), True

        maxiter = self.maxiter if self.maxiter is not None else n
        x, info = cg(operator, b, rtol=self.rtol, atol=0.0, maxiter=maxiter)
        converged = info == 0
        logger.debug(f"CG finished: info={info}, dimension={n}")
        return x, converged


# =============================================================================
# Bound-constrained nonlinear solvers
# =============================================================================

class BoundedSolver(ABC):
    """Minimizer of a smooth function inside a box."""

    @abstractmethod
    def minimize(
        self,
        fun: Objective,
        x0: NDArray[np.float64],
        lower: NDArray[np.float64],
        upper: NDArray[np.float64],
    ) -> SolverResult:
        """
        Args:
            fun: Callable returning ``(value, gradient)``
            x0: Starting point
            lower: Lower bounds, same length as ``x0``
            upper: Upper bounds, same length as ``x0``

        Returns:
            SolverResult with the last iterate
        """


class LBFGSBSolver(BoundedSolver):
    """
    Limited-memory BFGS with box constraints.

    Args:
        tol: Projected-gradient tolerance
        ftol: Relative objective decrease tolerance
        max_iter: Iteration cap
        x_tol: Stop (successfully) once an iteration moves no coordinate by
            more than this; ``None`` disables the test
        progress: Show a tqdm progress bar
    """

    def __init__(
        self,
        tol: float = 1e-6,
        ftol: float = 1e-12,
        max_iter: int = 3000,
        x_tol: Optional[float] = None,
        progress: bool = False,
    ):
        self.tol = tol
        self.ftol = ftol
        self.max_iter = max_iter
        self.x_tol = x_tol
        self.progress = progress

    def minimize(self, fun, x0, lower, upper):
        previous = [np.array(x0, dtype=np.float64)]
        stalled = [False]
        pbar = tqdm(total=self.max_iter, desc="L-BFGS-B", unit="it", disable=not self.progress)

        def callback(intermediate_result):
            pbar.update(1)
            x = intermediate_result.x
            if self.x_tol is not None and np.max(np.abs(x - previous[0]), initial=0.0) < self.x_tol:
                stalled[0] = True
                raise StopIteration
            previous[0] = np.array(x)

        try:
            res = minimize(
                fun,
                np.asarray(x0, dtype=np.float64),
                jac=True,
                method="L-BFGS-B",
                bounds=Bounds(lower, upper),
                callback=callback,
                options={"maxiter": self.max_iter, "gtol": self.tol, "ftol": self.ftol},
            )
        finally:
            pbar.close()

        if stalled[0]:
            status = TerminationStatus.LOCALLY_OPTIMAL
        else:
            status = TerminationStatus.from_lbfgsb(res.status)
        logger.debug(f"L-BFGS-B: {status.name} after {res.nit} iterations ({res.message})")
        return SolverResult(res.x, float(res.fun), status, int(res.nit), str(res.message))


class InteriorPointSolver(BoundedSolver):
    """
    Trust-region interior-point method with a BFGS Hessian approximation.

    Args:
        tol: Gradient tolerance
        max_iter: Iteration cap
        initial_tr_radius: Initial trust radius
        progress: Show a tqdm progress bar
    """

    def __init__(
        self,
        tol: float = 1e-6,
        max_iter: int = 3000,
        initial_tr_radius: float = 0.1,
        progress: bool = False,
    ):
        self.tol = tol
        self.max_iter = max_iter
        self.initial_tr_radius = initial_tr_radius
        self.progress = progress

    def minimize(self, fun, x0, lower, upper):
        pbar = tqdm(total=self.max_iter, desc="interior-point", unit="it", disable=not self.progress)

        def callback(intermediate_result):
            pbar.update(1)

        try:
            res = minimize(
                fun,
                np.asarray(x0, dtype=np.float64),
                jac=True,
                hess=BFGS(),
                method="trust-constr",
                bounds=Bounds(lower, upper),
                callback=callback,
                options={
                    "gtol": self.tol,
                    "xtol": self.tol,
                    "maxiter": self.max_iter,
                    "initial_tr_radius": self.initial_tr_radius,
                },
            )
        finally:
            pbar.close()

        status = TerminationStatus.from_trust_constr(res.status)
        logger.debug(
            f"trust-constr (radius {self.initial_tr_radius:g}): {status.name} after {res.nit} iterations"
        )
        return SolverResult(res.x, float(res.fun), status, int(res.nit), str(res.message))


def make_bounded_solver(params: OptimizerParameters, x_tol: Optional[float] = None) -> BoundedSolver:
    """
    Create the bound-constrained solver selected by ``params.method``.

    Args:
        params: Optimizer parameters
        x_tol: Step tolerance (L-BFGS-B only)
    """
    if params.method == SolverMethod.INTERIOR_POINT:
        return InteriorPointSolver(
            tol=params.tol,
            max_iter=params.max_iter,
            initial_tr_radius=params.trust_radius,
            progress=params.progress,
        )
    return LBFGSBSolver(
        tol=params.tol,
        ftol=params.ftol,
        max_iter=params.max_iter,
        x_tol=x_tol,
        progress=params.progress,
    )
