"""Optimization algorithms for regoptim."""

from .hessian import QuadraticHessian, TemporalHessian
from .solvers import (
    BoundedSolver,
    ConjugateGradientSolver,
    InteriorPointSolver,
    LBFGSBSolver,
    LinearSolver,
    SolverResult,
    make_bounded_solver,
)
from .initial_guess import initial_deformation, prepare_rhs
from .refine import (
    DeformationObjective,
    RefinementResult,
    SequenceObjective,
    SmoothOptimizer,
    SubgradientOptimizer,
    make_optimizer,
    optimize,
    optimize_sequence,
)

__all__ = [
    "QuadraticHessian",
    "TemporalHessian",
    "SolverResult",
    "LinearSolver",
    "ConjugateGradientSolver",
    "BoundedSolver",
    "LBFGSBSolver",
    "InteriorPointSolver",
    "make_bounded_solver",
    "initial_deformation",
    "prepare_rhs",
    "DeformationObjective",
    "SequenceObjective",
    "SmoothOptimizer",
    "SubgradientOptimizer",
    "RefinementResult",
    "make_optimizer",
    "optimize",
    "optimize_sequence",
]
