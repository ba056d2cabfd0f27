"""
regoptim - deformation optimization for image registration.

Computes smooth grid deformations from per-aperture mismatch data: an initial
guess from quadratic fits solved with matrix-free conjugate gradients, then a
bound-constrained refinement against the interpolated mismatch, optionally
across a time series with temporal coupling.
"""

from .core.errors import ConfigurationError, NonConvergenceWarning, RegoptimError
from .core.status import TerminationStatus
from .core.parameters import OptimizerParameters, SolverMethod
from .core.deformation import GridDeformation, compose
from .core.penalty import AffinePenalty, TemporalPenalty
from .core.mismatch import InterpolationOrder, MismatchSurrogate
from .algorithms.hessian import QuadraticHessian, TemporalHessian
from .algorithms.initial_guess import initial_deformation
from .algorithms.refine import RefinementResult, optimize, optimize_sequence
from .main import OptimizationResult, fixed_lambda, fixed_lambda_sequence

__version__ = "0.1.0"

__all__ = [
    "RegoptimError",
    "ConfigurationError",
    "NonConvergenceWarning",
    "TerminationStatus",
    "OptimizerParameters",
    "SolverMethod",
    "GridDeformation",
    "compose",
    "AffinePenalty",
    "TemporalPenalty",
    "InterpolationOrder",
    "MismatchSurrogate",
    "QuadraticHessian",
    "TemporalHessian",
    "initial_deformation",
    "RefinementResult",
    "optimize",
    "optimize_sequence",
    "OptimizationResult",
    "fixed_lambda",
    "fixed_lambda_sequence",
]
