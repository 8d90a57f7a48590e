from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt


def gauss_points_weights_edge(n_points: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Generate Gauss points and weights for a 1D Gaussian integration on the interval [-1, +1].

    Args:
        n_points: Number of integration points.

    Raises:
        ValueError: If `n_points` is not 1, 2, 3 or 4.

    Returns:
        A tuple containing the Gauss points and weights.
    """
    if n_points == 1:
        return np.array([0.0]), np.array([2.0])
    elif n_points == 2:
        return np.array([-1/np.sqrt(3), 1/np.sqrt(3)]), np.array([1.0, 1.0])
    elif n_points == 3:
        return np.array([-np.sqrt(3/5), 0.0, np.sqrt(3/5)]), np.array([5/9, 8/9, 5/9])
    elif n_points == 4:
        return np.polynomial.legendre.leggauss(4)
    else:
        raise ValueError(f"Unsupported number of Gauss points: {n_points}. "
                         f"'n_points' must be 1, 2, 3 or 4.")


def _permutations(a: float, b: float) -> list[list[float]]:
    """The three barycentric points with one coordinate ``a`` and two ``b``."""
    return [[a, b, b], [b, a, b], [b, b, a]]


def gauss_points_weights_triangle(n_points: int) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Generate Gauss points and weights for a triangular Gaussian integration.

    Triangle is assumed to be a unit triangle with vertices at (0,0), (1,0), and (0,1).
    Points are returned as barycentric triples ``[L1, L2, L3]`` so that the
    reference coordinates are ``xi = L2`` and ``eta = L3``.

    The weights are multiplied by the area of the triangle (1/2 for a unit triangle).

    Exact for polynomials of degree 1 (1 point), 2 (3 points), 4 (6 points)
    and 5 (7 points). The axisymmetric P2 mass-type integrals carry an extra
    factor ``r``, so 7 points is the default for the solvers.

    Args:
        n_points: Number of integration points.

    Raises:
        ValueError: If `n_points` is not 1, 3, 6 or 7.

    Returns:
        A tuple containing the Gauss points and weights.
    """
    if n_points == 1:
        return np.array([[1.0/3.0, 1.0/3.0, 1.0/3.0]]), 0.5 * np.array([1.0])
    elif n_points == 3:
        return np.array([
            [2.0/3.0, 1.0/6.0, 1.0/6.0],
            [1.0/6.0, 2.0/3.0, 1.0/6.0],
            [1.0/6.0, 1.0/6.0, 2.0/3.0]]
        ), 0.5 * np.array([1.0/3.0, 1.0/3.0, 1.0/3.0])
    elif n_points == 6:
        a, wa = 0.445948490915965, 0.223381589678011
        b, wb = 0.091576213509771, 0.109951743655322
        points = _permutations(1.0 - 2.0 * a, a) + _permutations(1.0 - 2.0 * b, b)
        return np.array(points), 0.5 * np.array([wa] * 3 + [wb] * 3)
    elif n_points == 7:
        a, wa = 0.059715871789770, 0.132394152788506
        b, wb = 0.797426985353087, 0.125939180544827
        points = [[1.0/3.0, 1.0/3.0, 1.0/3.0]]
        points += _permutations(a, (1.0 - a) / 2.0)
        points += _permutations(b, (1.0 - b) / 2.0)
        return np.array(points), 0.5 * np.array([0.225] + [wa] * 3 + [wb] * 3)
    else:
        raise ValueError(f"Unsupported number of Gauss points: {n_points}. "
                         f"'n_points' must be 1, 3, 6 or 7.")
