"""Utility functions for regoptim."""

from .validation import check_fit_shapes, is_int_bounded, is_real_bounded
from .arrays import REGISTER_HALF, as_field, as_vector, box_bounds, node_grid, uclamp
from .logging import log_step

__all__ = [
    "is_real_bounded",
    "is_int_bounded",
    "check_fit_shapes",
    "REGISTER_HALF",
    "as_vector",
    "as_field",
    "node_grid",
    "box_bounds",
    "uclamp",
    "log_step",
]
