"""
Optimizer parameters configuration.

Stores the solver settings shared by the initial-guess solver and the
refinement optimizers. The regularization weight itself lives on the
penalty (``AffinePenalty.weight``).
"""

from dataclasses import dataclass
from enum import Enum

import numpy as np

from .errors import ConfigurationError
from ..utils.validation import is_int_bounded, is_real_bounded


class SolverMethod(str, Enum):
    """Bound-constrained NLP backends for the smooth regime."""

    LBFGSB = "lbfgsb"
    INTERIOR_POINT = "interior-point"


@dataclass
class OptimizerParameters:
    """
    Deformation optimizer parameters.

    Attributes:
        step_size: Subgradient step for the largest-moving coordinate, in
            pixels (non-smooth regime)
        tol: First-order stationarity tolerance (smooth regime)
        ftol: Relative objective decrease tolerance (L-BFGS-B only)
        max_iter: Iteration cap of the NLP solver
        x_tol: Step tolerance of the sequence solver
        max_subgradient_iter: Safety cap of the subgradient loop
        cg_rtol: Relative residual tolerance of the conjugate-gradient solve
        method: NLP backend for the smooth regime
        trust_radius: First trust radius tried when a refinement fails to
            improve the penalty (see ``fixed_lambda``)
        progress: Show tqdm progress bars during NLP solves
    """

    step_size: float = 1.0
    tol: float = 1e-6
    ftol: float = 1e-12
    max_iter: int = 3000
    x_tol: float = 1e-4
    max_subgradient_iter: int = 10000
    cg_rtol: float = 1e-8
    method: SolverMethod = SolverMethod.LBFGSB
    trust_radius: float = 0.1
    progress: bool = False

    def validate(self) -> bool:
        """
        Validate parameters are within acceptable ranges.

        Returns:
            True if parameters are valid, raises ConfigurationError otherwise
        """
        checks = [
            ("step_size", is_real_bounded(self.step_size, 0, np.inf, include_lower=False)),
            ("tol", is_real_bounded(self.tol, 0, 1, include_lower=False)),
            ("ftol", is_real_bounded(self.ftol, 0, 1)),
            ("max_iter", is_int_bounded(self.max_iter, 1, np.inf)),
            ("x_tol", is_real_bounded(self.x_tol, 0, np.inf)),
            ("max_subgradient_iter", is_int_bounded(self.max_subgradient_iter, 1, np.inf)),
            ("cg_rtol", is_real_bounded(self.cg_rtol, 0, 1, include_lower=False)),
            ("trust_radius", is_real_bounded(self.trust_radius, 0, np.inf, include_lower=False)),
        ]
        for name, (valid, _, msg) in checks:
            if not valid:
                raise ConfigurationError(f"Invalid {name}: {msg}")

        if not isinstance(self.method, SolverMethod):
            raise ConfigurationError(f"Invalid method: {self.method!r}")

        return True

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "step_size": self.step_size,
            "tol": self.tol,
            "ftol": self.ftol,
            "max_iter": self.max_iter,
            "x_tol": self.x_tol,
            "max_subgradient_iter": self.max_subgradient_iter,
            "cg_rtol": self.cg_rtol,
            "method": self.method.value,
            "trust_radius": self.trust_radius,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "OptimizerParameters":
        """Create from dictionary."""
        return cls(
            step_size=d.get("step_size", 1.0),
            tol=d.get("tol", 1e-6),
            ftol=d.get("ftol", 1e-12),
            max_iter=d.get("max_iter", 3000),
            x_tol=d.get("x_tol", 1e-4),
            max_subgradient_iter=d.get("max_subgradient_iter", 10000),
            cg_rtol=d.get("cg_rtol", 1e-8),
            method=SolverMethod(d.get("method", "lbfgsb")),
            trust_radius=d.get("trust_radius", 0.1),
            progress=d.get("progress", False),
        )
