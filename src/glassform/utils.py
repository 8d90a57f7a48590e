from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt

ABSOLUTE_ZERO_CELSIUS = -273.15


def kelvin_to_celsius(kelvin: float) -> float:
    """Convert Kelvin to Celsius."""
    return kelvin + ABSOLUTE_ZERO_CELSIUS


def max_abs_change(new: npt.NDArray[np.float64], old: npt.NDArray[np.float64]) -> float:
    """Infinity norm of ``new - old``; 0.0 for empty arrays."""
    if new.size == 0:
        return 0.0
    return float(np.max(np.abs(new - old)))


def relative_change(new: npt.NDArray[np.float64], old: npt.NDArray[np.float64]) -> float:
    """
    Infinity-norm change of ``new`` relative to its own magnitude.

    A field that is identically zero before and after counts as unchanged.
    """
    scale = float(np.max(np.abs(new))) if new.size else 0.0
    change = max_abs_change(new, old)
    if scale == 0.0:
        return change
    return change / scale
