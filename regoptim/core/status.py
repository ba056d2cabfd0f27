"""
Termination status enumeration for solver results.

Shared by the linear and nonlinear solver backends.
"""

from enum import IntEnum


class TerminationStatus(IntEnum):
    """
    Enumeration for solver termination results.

    Only ``LOCALLY_OPTIMAL`` means the stopping criterion was met. The other
    two are reported as warnings by the optimizers; the last iterate is
    returned in every case.

    Examples:
        >>> result = solver.minimize(objective, x0, lower, upper)
        >>> if result.status == TerminationStatus.LOCALLY_OPTIMAL:
        ...     print("Converged")
        >>> elif result.status == TerminationStatus.ITERATION_LIMIT:
        ...     print("Ran out of iterations")
    """

    LOCALLY_OPTIMAL = 1
    ITERATION_LIMIT = 0
    NOT_OPTIMAL = -1

    @property
    def is_optimal(self) -> bool:
        """True if the solver met its stopping criterion."""
        return self is TerminationStatus.LOCALLY_OPTIMAL

    @classmethod
    def from_lbfgsb(cls, status: int) -> "TerminationStatus":
        """Map a scipy L-BFGS-B ``OptimizeResult.status`` code."""
        if status == 0:
            return cls.LOCALLY_OPTIMAL
        if status == 1:
            return cls.ITERATION_LIMIT
        return cls.NOT_OPTIMAL

    @classmethod
    def from_trust_constr(cls, status: int) -> "TerminationStatus":
        """Map a scipy trust-constr ``OptimizeResult.status`` code."""
        if status in (1, 2):
            return cls.LOCALLY_OPTIMAL
        if status == 0:
            return cls.ITERATION_LIMIT
        return cls.NOT_OPTIMAL
