"""
Exception and warning types.

Every error raised by regoptim subclasses ``RegoptimError`` as well as the
matching built-in exception, so callers can catch either.
"""


class RegoptimError(Exception):
    """Base exception for all regoptim errors."""


class ConfigurationError(RegoptimError, ValueError):
    """Inconsistent shapes or invalid parameters.

    Raised before any numeric work: displacement grid vs. quadratic-fit
    arrays, ``c_i`` vs. ``Q_i`` sizes, operator input length, parameter
    ranges.
    """


class NonConvergenceWarning(UserWarning):
    """A solver stopped without meeting its stopping criterion.

    The last iterate is still returned; callers decide whether to retry with
    different parameters.
    """
