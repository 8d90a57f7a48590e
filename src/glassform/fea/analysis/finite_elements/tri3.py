from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from glassform.fea.analysis.finite_elements.finite_element import FiniteElement

if TYPE_CHECKING:
    import numpy.typing as npt

# B_N = [
#   [dN1(r,s)/dr, dN2(r,s)/dr, dN3(r,s)/dr],
#   [dN1(r,s)/ds, dN2(r,s)/ds, dN3(r,s)/ds]
# ]
B_N = np.array([
    [-1.0, 1.0, 0.0],
    [-1.0, 0.0, 1.0],
])


def shape_functions_p1(xi: float, eta: float) -> npt.NDArray[np.float64]:
    """
    Linear pressure basis at reference point ``(xi, eta)``.

    Returns:
        ``[N1, N2, N3]`` for the three vertices.
    """
    return Tri3.shape_functions(np.array([1.0 - xi - eta, xi, eta]))


class Tri3(FiniteElement):
    """
    Represents a three-node linear triangular element (Tri3).

    Used for the pressure field of the Taylor-Hood pair; its nodes are the
    vertices of the parent six-node triangle.
    """
    NODES_PER_ELEMENT = 3

    def __init__(self, index: int, coords: npt.NDArray[np.float64], n_integration_points: int = 3) -> None:
        super().__init__(index=index, coords=coords, n_integration_points=n_integration_points)

    @staticmethod
    def shape_functions(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Calculate the shape functions for the Tri3 element.

        Args:
            iso_coords: Isoparametric coordinates [1 - r - s, r, s] in the range [0, 1].

        Returns:
            Shape function values at the given coordinates ``[N1, N2, N3]``.
        """
        # For Tri3, the shape functions are the isoparametric coordinates
        return np.asarray(iso_coords, dtype=np.float64).copy()

    @staticmethod
    def shape_function_derivatives(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        return B_N.copy()
