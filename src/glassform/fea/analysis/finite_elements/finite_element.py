from __future__ import annotations

from abc import ABC, abstractmethod

from typing import TYPE_CHECKING

import numpy as np

import glassform.fea.analysis.gauss as gauss

if TYPE_CHECKING:
    import numpy.typing as npt


class FiniteElement(ABC):
    """
    Abstract base class for the triangular elements of the axisymmetric mesh.

    Coordinates are ``(r, z)``; the first coordinate is the radius. Reference
    coordinates are given as barycentric triples ``[L1, L2, L3]`` with
    ``xi = L2`` and ``eta = L3``.
    """
    NODES_PER_ELEMENT: int = 0

    def __init__(
        self,
        index: int,
        coords: npt.NDArray[np.float64],
        n_integration_points: int = 7,
    ) -> None:
        """
        Initialize the finite element.

        Args:
            index: Element index in the mesh.
            coords: ``(n_nodes, 2)`` array of node coordinates ``(r, z)``.
            n_integration_points: Number of integration points for numerical integration.
        """
        coords = np.asarray(coords, dtype=np.float64)
        if coords.shape != (self.NODES_PER_ELEMENT, 2):
            raise ValueError(
                f"{self.__class__.__name__} expects {self.NODES_PER_ELEMENT} nodes, got array of shape {coords.shape}."
            )
        self.id = index
        self.coords = coords
        self.n_integration_points = n_integration_points
        self.r = coords[:, 0]
        self.z = coords[:, 1]

    def __repr__(self) -> str:
        """String representation of the finite element."""
        return f"{self.__class__.__name__}(id={self.id})"

    @staticmethod
    @abstractmethod
    def shape_functions(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Shape function values at barycentric coordinates ``[L1, L2, L3]``."""
        pass

    @staticmethod
    @abstractmethod
    def shape_function_derivatives(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """``(2, n_nodes)`` derivatives with respect to ``(xi, eta)``."""
        pass

    def get_integration_scheme(self) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """
        Get the integration scheme for the finite element.

        Returns:
            Tuple of Gauss points and weights for numerical integration.
        """
        return gauss.gauss_points_weights_triangle(self.n_integration_points)

    def jacobian_matrix(self, iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Jacobian ``[[dr/dxi, dz/dxi], [dr/deta, dz/deta]]`` at a reference point.
        """
        return self.shape_function_derivatives(iso_coords) @ self.coords

    def jacobian_determinant(self, iso_coords: npt.NDArray[np.float64]) -> float:
        """
        Signed Jacobian determinant; positive for counter-clockwise vertex order.
        """
        return float(np.linalg.det(self.jacobian_matrix(iso_coords)))

    def b_matrix(self, iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Calculate the [B] matrix, the physical gradients of the shape functions.

        [B] = ∇[N] = [J]⁻¹ [dN/dξ]

        Returns:
            ``(2, n_nodes)`` array of ``dN/dr`` and ``dN/dz``.
        """
        return np.linalg.solve(self.jacobian_matrix(iso_coords), self.shape_function_derivatives(iso_coords))

    def radius_at(self, iso_coords: npt.NDArray[np.float64]) -> float:
        """Radius of a reference point, the axisymmetric integration weight over 2π."""
        return float(self.shape_functions(iso_coords) @ self.r)

    @property
    def area(self) -> float:
        """Area of the (straight-sided) triangle spanned by the vertices."""
        (r1, z1), (r2, z2), (r3, z3) = self.coords[:3]
        return 0.5 * (r1 * (z2 - z3) + r2 * (z3 - z1) + r3 * (z1 - z2))

    def volume(self) -> float:
        """
        Volume of the ring swept by the element around the axis, ``∫ 2πr dA``.
        """
        gauss_points, weights = self.get_integration_scheme()
        total = 0.0
        for gp_i, w_i in zip(gauss_points, weights):
            total += 2.0 * np.pi * self.radius_at(gp_i) * self.jacobian_determinant(gp_i) * w_i
        return total
