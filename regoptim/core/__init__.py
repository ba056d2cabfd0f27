"""Core data structures for regoptim."""

from .errors import ConfigurationError, NonConvergenceWarning, RegoptimError
from .status import TerminationStatus
from .parameters import OptimizerParameters, SolverMethod
from .deformation import Composition, GridDeformation, compose
from .penalty import AffinePenalty, TemporalPenalty
from .mismatch import InterpolationOrder, MismatchSurrogate

__all__ = [
    "RegoptimError",
    "ConfigurationError",
    "NonConvergenceWarning",
    "TerminationStatus",
    "OptimizerParameters",
    "SolverMethod",
    "GridDeformation",
    "Composition",
    "compose",
    "AffinePenalty",
    "TemporalPenalty",
    "InterpolationOrder",
    "MismatchSurrogate",
]
