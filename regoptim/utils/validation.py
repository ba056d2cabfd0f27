"""
Validation utilities.

Bounded-value checks used by the parameter dataclass, and shape checks for
quadratic-fit data.
"""

from typing import Optional, Sequence, Tuple, Union

import numpy as np

from ..core.errors import ConfigurationError


def is_real_bounded(
    value: Union[float, int, str],
    lower: float,
    upper: float,
    include_lower: bool = True,
    include_upper: bool = True,
) -> Tuple[bool, Optional[float], str]:
    """
    Check if value is a real number within bounds.

    Args:
        value: Value to check (strings are parsed)
        lower: Lower bound
        upper: Upper bound (may be ``np.inf``)
        include_lower: Include lower bound (>=) vs (>)
        include_upper: Include upper bound (<=) vs (<)

    Returns:
        Tuple of (is_valid, parsed_value, error_message)
    """
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return False, None, f"'{value}' is not a valid number"

    if not np.isfinite(value):
        return False, None, f"Value must be finite, got {value}"

    if include_lower:
        if value < lower:
            return False, None, f"Value {value} < {lower} (minimum)"
    else:
        if value <= lower:
            return False, None, f"Value {value} <= {lower} (must be greater)"

    if include_upper:
        if value > upper:
            return False, None, f"Value {value} > {upper} (maximum)"
    else:
        if value >= upper:
            return False, None, f"Value {value} >= {upper} (must be less)"

    return True, float(value), ""


def is_int_bounded(
    value: Union[int, float, str],
    lower: int,
    upper: Union[int, float],
    include_lower: bool = True,
    include_upper: bool = True,
) -> Tuple[bool, Optional[int], str]:
    """
    Check if value is an integer within bounds.

    Args:
        value: Value to check
        lower: Lower bound
        upper: Upper bound
        include_lower: Include lower bound
        include_upper: Include upper bound

    Returns:
        Tuple of (is_valid, parsed_value, error_message)
    """
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return False, None, f"'{value}' is not a valid integer"

    if isinstance(value, float):
        if not value.is_integer():
            return False, None, f"Value {value} is not an integer"
        value = int(value)

    if include_lower:
        if value < lower:
            return False, None, f"Value {value} < {lower} (minimum)"
    else:
        if value <= lower:
            return False, None, f"Value {value} <= {lower} (must be greater)"

    if include_upper:
        if value > upper:
            return False, None, f"Value {value} > {upper} (maximum)"
    else:
        if value >= upper:
            return False, None, f"Value {value} >= {upper} (must be less)"

    return True, int(value), ""


def check_fit_shapes(
    cs: np.ndarray,
    Qs: np.ndarray,
    gridsize: Optional[Sequence[int]] = None,
) -> Tuple[int, Tuple[int, ...]]:
    """
    Check that quadratic-fit arrays agree with each other and with a grid.

    ``cs`` holds one displacement per node with shape ``(..., N)`` and ``Qs``
    one curvature matrix per node with shape ``(..., N, N)``; the leading
    shapes must match. When ``gridsize`` is given, the trailing spatial part
    of the leading shape must equal it (an extra leading time axis is
    allowed).

    Args:
        cs: Local minimizing displacements
        Qs: Local curvature matrices
        gridsize: Expected spatial grid shape

    Returns:
        Tuple of (N, leading_shape)

    Raises:
        ConfigurationError: On any mismatch
    """
    if cs.ndim < 2 or Qs.ndim < 3:
        raise ConfigurationError(
            f"cs must have shape (..., N) and Qs (..., N, N), got {cs.shape} and {Qs.shape}"
        )
    N = cs.shape[-1]
    if Qs.shape[-1] != Qs.shape[-2]:
        raise ConfigurationError(f"Qs matrices must be square, got {Qs.shape[-2:]}")
    if Qs.shape[-1] != N:
        raise ConfigurationError(
            f"size {Qs.shape[-2:]} of Qs matrices is inconsistent with cs vectors of size {N}"
        )
    if cs.shape[:-1] != Qs.shape[:-2]:
        raise ConfigurationError(
            f"cs grid {cs.shape[:-1]} does not match Qs grid {Qs.shape[:-2]}"
        )
    leading = tuple(cs.shape[:-1])
    if gridsize is not None:
        gridsize = tuple(gridsize)
        if len(gridsize) != N:
            raise ConfigurationError(
                f"Dimensionality {len(gridsize)} of the grid does not match {N}"
            )
        if leading[len(leading) - len(gridsize):] != gridsize or len(leading) - len(gridsize) > 1:
            raise ConfigurationError(
                f"Fit arrays with grid {leading} are incommensurate with grid {gridsize}"
            )
    return N, leading
