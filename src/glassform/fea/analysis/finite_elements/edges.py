from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

import glassform.fea.analysis.gauss as gauss
from glassform.config import STEFAN_BOLTZMANN

if TYPE_CHECKING:
    import numpy.typing as npt


class Line3:
    """
    Quadratic boundary edge with local node order ``(start, end, mid)``.

    Boundary edges are oriented so the domain lies on their left; the outward
    normal is therefore the tangent rotated clockwise.
    """
    NODES_PER_ELEMENT = 3

    @staticmethod
    def shape_functions(iso_coord: npt.NDArray[np.float64] | float) -> npt.NDArray[np.float64]:
        """
        Calculate the shape functions at local coordinates in [-1, 1].

        Returns:
            ``(..., 3)`` values ``[s(s-1)/2, s(s+1)/2, 1 - s²]``.
        """
        s = np.asarray(iso_coord, dtype=np.float64)
        return np.stack([0.5 * s * (s - 1.0), 0.5 * s * (s + 1.0), 1.0 - s * s], axis=-1)

    @staticmethod
    def shape_function_derivatives(iso_coord: npt.NDArray[np.float64] | float) -> npt.NDArray[np.float64]:
        s = np.asarray(iso_coord, dtype=np.float64)
        return np.stack([s - 0.5, s + 0.5, -2.0 * s], axis=-1)


@dataclass(frozen=True)
class EdgeGeometry:
    """
    Basis data of a group of boundary edges at their Gauss points.

    ``weight`` contains ``2π r |dx/ds| w``.
    """
    N: npt.NDArray[np.float64]  # (Q, 3)
    radius: npt.NDArray[np.float64]  # (M, Q)
    normal: npt.NDArray[np.float64]  # (M, Q, 2) outward unit normal
    weight: npt.NDArray[np.float64]  # (M, Q)
    arc_weight: npt.NDArray[np.float64]  # (M, Q) ``2π |dx/ds| w`` without the radius


def edge_geometry(
    nodes: npt.NDArray[np.float64],
    edges: npt.NDArray[np.int64],
    n_points: int = 3,
) -> EdgeGeometry:
    """
    Evaluate ``Line3`` on every edge of ``edges`` (shape ``(M, 3)``).
    """
    s, w = gauss.gauss_points_weights_edge(n_points)
    N = Line3.shape_functions(s)  # (Q, 3)
    dN = Line3.shape_function_derivatives(s)  # (Q, 3)
    coords = nodes[edges]  # (M, 3, 2)
    position = np.einsum("qa,mac->mqc", N, coords)
    tangent = np.einsum("qa,mac->mqc", dN, coords)
    length = np.linalg.norm(tangent, axis=-1)
    safe = np.where(length > 0.0, length, 1.0)
    normal = np.stack([tangent[..., 1], -tangent[..., 0]], axis=-1) / safe[..., None]
    radius = position[..., 0]
    arc_weight = 2.0 * np.pi * length * w[None, :]
    return EdgeGeometry(N=N, radius=radius, normal=normal, weight=radius * arc_weight, arc_weight=arc_weight)


def robin_load_and_tangent(
    geometry: EdgeGeometry,
    temperature_at_nodes: npt.NDArray[np.float64],
    heat_transfer_coefficient: float,
    ambient_temperature: float,
    emissivity: float = 0.0,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Outflow ``h (T - T_amb) + eps sigma (T⁴ - T_amb⁴)`` and its tangent for a group of edges.

    Args:
        geometry: Edge basis data.
        temperature_at_nodes: ``(M, 3)`` nodal temperatures of each edge.
        heat_transfer_coefficient: Convective coefficient in W/(m²·K).
        ambient_temperature: Ambient (furnace) temperature in K.
        emissivity: Surface emissivity; 0 disables the radiative part.

    Returns:
        Element load vectors ``(M, 3)`` and tangent matrices ``(M, 3, 3)``.
    """
    N = geometry.N
    t_i = temperature_at_nodes @ N.T  # (M, Q)
    t_f = ambient_temperature
    sigma = STEFAN_BOLTZMANN

    flux = heat_transfer_coefficient * (t_i - t_f) + emissivity * sigma * (t_i ** 4 - t_f ** 4)
    f_e = np.einsum("mq,qa->ma", flux * geometry.weight, N)

    mat_factor = heat_transfer_coefficient + 4.0 * emissivity * sigma * t_i ** 3
    df_dx_e = np.einsum("mq,qa,qb->mab", mat_factor * geometry.weight, N, N)
    return f_e, df_dx_e


def edge_load(geometry: EdgeGeometry, flux: npt.NDArray[np.float64] | float) -> npt.NDArray[np.float64]:
    """``∫ q N dS`` for a prescribed flux, scalar or per edge point ``(M, Q)``."""
    q = np.broadcast_to(np.asarray(flux, dtype=np.float64), geometry.weight.shape)
    return np.einsum("mq,qa->ma", q * geometry.weight, geometry.N)
