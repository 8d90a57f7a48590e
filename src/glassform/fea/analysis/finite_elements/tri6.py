from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import numba as nb

from glassform.errors import GeometryError
from glassform.fea.analysis.finite_elements.finite_element import FiniteElement
import glassform.fea.analysis.gauss as gauss

if TYPE_CHECKING:
    import numpy.typing as npt

# Local node order: vertices 0, 1, 2 counter-clockwise, then midside nodes
# 3 (edge 0-1), 4 (edge 1-2), 5 (edge 2-0). Same as gmsh element type 9.
LOCAL_EDGES = np.array([[0, 1, 3], [1, 2, 4], [2, 0, 5]], dtype=np.int64)


def _p2_values(L: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    L1, L2, L3 = L[..., 0], L[..., 1], L[..., 2]
    return np.stack([
        L1 * (2.0 * L1 - 1.0),
        L2 * (2.0 * L2 - 1.0),
        L3 * (2.0 * L3 - 1.0),
        4.0 * L1 * L2,
        4.0 * L2 * L3,
        4.0 * L3 * L1,
    ], axis=-1)


def _p2_derivatives(L: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """``(..., 2, 6)`` derivatives with respect to ``xi = L2`` and ``eta = L3``."""
    L1, L2, L3 = L[..., 0], L[..., 1], L[..., 2]
    zero = np.zeros_like(L1)
    d_xi = np.stack([
        -(4.0 * L1 - 1.0),
        4.0 * L2 - 1.0,
        zero,
        4.0 * (L1 - L2),
        4.0 * L3,
        -4.0 * L3,
    ], axis=-1)
    d_eta = np.stack([
        -(4.0 * L1 - 1.0),
        zero,
        4.0 * L3 - 1.0,
        -4.0 * L2,
        4.0 * L2,
        4.0 * (L1 - L3),
    ], axis=-1)
    return np.stack([d_xi, d_eta], axis=-2)


@nb.jit(cache=True, fastmath=True)
def _inv2(
    a11: float,
    a12: float,
    a21: float,
    a22: float
) -> tuple[tuple[float, float, float, float], float]:
    """
    Compute the inverse and determinant of a 2×2 matrix [[a11, a12], [a21, a22]].

    Only called for a positive determinant.
    """
    det = a11 * a22 - a12 * a21
    inv = (a22 / det, -a12 / det, -a21 / det, a11 / det)
    return inv, det


@nb.jit(cache=True, fastmath=True)
def _tri6_gradients_and_detJ(
    r: npt.NDArray[np.float64],
    z: npt.NDArray[np.float64],
    N: npt.NDArray[np.float64],
    dN_dxi: npt.NDArray[np.float64],
    dN_deta: npt.NDArray[np.float64],
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Physical shape-function gradients, Jacobian determinants and radii for
    all elements at all integration points.

    Args:
        r: (E, 6) radial node coordinates per element.
        z: (E, 6) axial node coordinates per element.
        N: (Q, 6) shape functions at the integration points.
        dN_dxi: (Q, 6) reference derivatives.
        dN_deta: (Q, 6) reference derivatives.

    Returns:
        dN_dr: (E, Q, 6), dN_dz: (E, Q, 6), detJ: (E, Q), radius: (E, Q).
        Gradients are left at zero where the determinant is not positive.
    """
    n_el = r.shape[0]
    n_gp = N.shape[0]
    dN_dr = np.zeros((n_el, n_gp, 6))
    dN_dz = np.zeros((n_el, n_gp, 6))
    detJ = np.empty((n_el, n_gp))
    radius = np.empty((n_el, n_gp))
    for e in range(n_el):
        for q in range(n_gp):
            j00 = 0.0
            j01 = 0.0
            j10 = 0.0
            j11 = 0.0
            rq = 0.0
            for a in range(6):
                j00 += dN_dxi[q, a] * r[e, a]
                j01 += dN_dxi[q, a] * z[e, a]
                j10 += dN_deta[q, a] * r[e, a]
                j11 += dN_deta[q, a] * z[e, a]
                rq += N[q, a] * r[e, a]
            det = j00 * j11 - j01 * j10
            detJ[e, q] = det
            radius[e, q] = rq
            if det > 0.0:
                (i00, i01, i10, i11), _ = _inv2(j00, j01, j10, j11)
                for a in range(6):
                    dN_dr[e, q, a] = i00 * dN_dxi[q, a] + i01 * dN_deta[q, a]
                    dN_dz[e, q, a] = i10 * dN_dxi[q, a] + i11 * dN_deta[q, a]
    return dN_dr, dN_dz, detJ, radius


@dataclass(frozen=True)
class ElementGeometry:
    """
    Basis data of every element at every integration point.

    ``weight`` already contains ``2π r |J| w`` so a domain integral is a plain
    sum over ``(element, point)``.
    """
    N: npt.NDArray[np.float64]  # (Q, 6)
    Np: npt.NDArray[np.float64]  # (Q, 3)
    dN_dr: npt.NDArray[np.float64]  # (E, Q, 6)
    dN_dz: npt.NDArray[np.float64]  # (E, Q, 6)
    detJ: npt.NDArray[np.float64]  # (E, Q)
    radius: npt.NDArray[np.float64]  # (E, Q)
    weight: npt.NDArray[np.float64]  # (E, Q)

    @property
    def n_points(self) -> int:
        return self.N.shape[0]


def element_geometry(
    nodes: npt.NDArray[np.float64],
    elements: npt.NDArray[np.int64],
    n_points: int = 7,
) -> ElementGeometry:
    """
    Evaluate the P2 basis on all elements and check every Jacobian.

    Called once per assembly pass so that elements inverted by mesh motion
    are caught before anything is assembled.

    Raises:
        GeometryError: For the first element with a non-positive (or non-finite)
            Jacobian determinant at any integration point.
    """
    gp, w = gauss.gauss_points_weights_triangle(n_points)
    N = _p2_values(gp)
    dN = _p2_derivatives(gp)
    r = np.ascontiguousarray(nodes[elements, 0])
    z = np.ascontiguousarray(nodes[elements, 1])
    dN_dr, dN_dz, detJ, radius = _tri6_gradients_and_detJ(
        r, z, N, np.ascontiguousarray(dN[:, 0, :]), np.ascontiguousarray(dN[:, 1, :])
    )
    bad = ~(detJ > 0.0)
    if bad.any():
        index = int(np.argmax(bad.any(axis=1)))
        raise GeometryError(
            f"Element {index} is degenerate or inverted (det J = {detJ[index].min():.3e}).",
            element_index=index,
        )
    weight = 2.0 * np.pi * radius * detJ * w[None, :]
    return ElementGeometry(N=N, Np=gp.copy(), dN_dr=dN_dr, dN_dz=dN_dz, detJ=detJ, radius=radius, weight=weight)


def shape_functions_p2(
    coords: npt.NDArray[np.float64],
    xi: float,
    eta: float,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Quadratic basis of one element at reference point ``(xi, eta)``.

    Args:
        coords: ``(6, 2)`` node coordinates of the element.

    Returns:
        ``N`` with shape (6,) and ``grad N`` with shape (2, 6) in physical ``(r, z)``.
    """
    element = Tri6(index=0, coords=coords)
    iso = np.array([1.0 - xi - eta, xi, eta])
    return element.shape_functions(iso), element.b_matrix(iso)


def jacobian_determinant(coords: npt.NDArray[np.float64], dN_dxi: npt.NDArray[np.float64]) -> float:
    """
    ``|J|`` from element coordinates and reference derivatives ``(2, n_nodes)``.
    """
    return float(np.linalg.det(np.asarray(dN_dxi) @ np.asarray(coords, dtype=np.float64)))


class Tri6(FiniteElement):
    """
    Represents a six-node quadratic triangular element (Tri6).

    Carries temperature and velocity in the Taylor-Hood pair.
    """
    NODES_PER_ELEMENT = 6

    @staticmethod
    def shape_functions(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Calculate the shape functions for the Tri6 element.

        Args:
            iso_coords: Barycentric coordinates ``[L1, L2, L3]``.

        Returns:
            ``[N0, ..., N5]``; vertices first, then the midside nodes.
        """
        return _p2_values(np.asarray(iso_coords, dtype=np.float64))

    @staticmethod
    def shape_function_derivatives(iso_coords: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        return _p2_derivatives(np.asarray(iso_coords, dtype=np.float64))
