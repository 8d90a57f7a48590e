from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

from glassform.config import SolverOptions
from glassform.errors import SingularSystemError
from glassform.fea.analysis.finite_elements.edges import edge_geometry
from glassform.fea.analysis.finite_elements.tri3 import Tri3
from glassform.fea.analysis.finite_elements.tri6 import LOCAL_EDGES, Tri6, element_geometry
import glassform.fea.analysis.gauss as gauss
from glassform.fea.solvers.assembly import SparseAssembler, apply_dirichlet, solve_direct
from glassform.model.bc import FlowBC, FreeSurfaceBC, TractionBC, VelocityBC
from glassform.model.state import ConvergenceRecord

if TYPE_CHECKING:
    import numpy.typing as npt
    from glassform.fea.pre.material import Glass
    from glassform.fea.pre.mesh import Mesh

logger = logging.getLogger(__name__)

# D = [D_rr, D_zz, D_thth, 2 D_rz], sigma_dev = eta * diag(2, 2, 2, 1) @ D
_CONSTITUTIVE = np.array([2.0, 2.0, 2.0, 1.0])

# reference point of parameter t in [0, 1] along local edge k of a triangle
_EDGE_PARAMETRIZATION = (
    lambda t: (t, np.zeros_like(t)),
    lambda t: (1.0 - t, t),
    lambda t: (np.zeros_like(t), 1.0 - t),
)


class FlowSolver:
    """
    Axisymmetric Taylor-Hood (P2 velocity / P1 pressure) Stokes solver.

    For a frozen temperature field it solves ``div(sigma) + rho g = 0`` and
    ``div(v) = 0`` with ``sigma = -p I + 2 eta(T) D(v)``. The viscosity is
    recomputed from temperature at every quadrature point on every call via
    ``10 ** log10_viscosity``. The momentum block is divided by the reference
    viscosity ``10 ** median(log10 eta)`` so the saddle-point matrix stays
    O(1) across the viscosity range; the pressure is rescaled on return.

    Velocity unknowns are interleaved per node (``2 n`` radial, ``2 n + 1``
    axial), pressure unknowns follow at ``2 N + pressure_index``.
    """

    def __init__(
        self,
        mesh: Mesh,
        glass: Glass,
        boundary_conditions: Sequence[FlowBC],
        options: Optional[SolverOptions] = None,
        record: Optional[ConvergenceRecord] = None,
        gravity: tuple[float, float] = (0.0, 0.0),
    ) -> None:
        """
        Args:
            mesh: Mesh whose node coordinates may move between solves.
            glass: Material model.
            boundary_conditions: Flow conditions; their tags must exist in the mesh.
            options: Solver options.
            record: Receives one ``flow`` entry per solve.
            gravity: Acceleration ``(g_r, g_z)`` in m/s²; ``g_r`` must be 0 on an axisymmetric domain.

        Raises:
            GeometryError: If a boundary tag is unknown.
        """
        self.mesh = mesh
        self.glass = glass
        self.options = options or SolverOptions()
        self.record = record if record is not None else ConvergenceRecord()
        self.boundary_conditions = list(boundary_conditions)
        self.gravity = np.asarray(gravity, dtype=np.float64)
        for bc in self.boundary_conditions:
            mesh.edges(bc.tag)

        n = mesh.n_nodes
        self._velocity_dofs = np.stack([2 * mesh.elements, 2 * mesh.elements + 1], axis=2).reshape(-1, 12)
        self._pressure_dofs = 2 * n + mesh.pressure_elements
        self._assembler = SparseAssembler(np.hstack([self._velocity_dofs, self._pressure_dofs]), self.n_equations)
        self._scatter_vv = self._assembler.scatter_for(self._velocity_dofs)
        self._scatter_vp = self._assembler.scatter_rectangular(self._velocity_dofs, self._pressure_dofs)
        self._scatter_pv = self._assembler.scatter_rectangular(self._pressure_dofs, self._velocity_dofs)
        self._pin_pressure = self._is_enclosed()
        self.reference_viscosity = float("nan")

    @property
    def n_equations(self) -> int:
        return 2 * self.mesh.n_nodes + self.mesh.n_pressure_nodes

    @property
    def free_surface_tags(self) -> list[str]:
        return [bc.tag for bc in self.boundary_conditions if isinstance(bc, FreeSurfaceBC)]

    def _is_enclosed(self) -> bool:
        """
        True when every boundary edge has its normal velocity prescribed, which
        leaves the pressure determined only up to a constant.
        """
        constrained: dict[str, set[int]] = {}
        for bc in self.boundary_conditions:
            if isinstance(bc, VelocityBC):
                components = constrained.setdefault(bc.tag, set())
                if bc.v_r is not None:
                    components.add(0)
                if bc.v_z is not None:
                    components.add(1)
            elif isinstance(bc, (TractionBC, FreeSurfaceBC)):
                return False
        for tag, edges in self.mesh.boundary_edges.items():
            components = constrained.get(tag, set())
            if components == {0, 1}:
                continue
            chord = self.mesh.nodes[edges[:, 1]] - self.mesh.nodes[edges[:, 0]]
            normal = np.abs(np.stack([chord[:, 1], -chord[:, 0]], axis=1))
            dominant = normal.max(axis=1) > 0.999 * np.linalg.norm(normal, axis=1)
            if not dominant.all():
                return False
            normal_components = set(np.argmax(normal, axis=1).tolist())
            if not normal_components <= components:
                return False
        return True

    def _dirichlet(self) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.float64]]:
        values = np.full(self.n_equations, np.nan)
        for bc in self.boundary_conditions:
            if not isinstance(bc, VelocityBC):
                continue
            nodes = np.unique(self.mesh.edges(bc.tag).ravel())
            if bc.v_r is not None:
                values[2 * nodes] = bc.v_r
            if bc.v_z is not None:
                values[2 * nodes + 1] = bc.v_z
        if self._pin_pressure:
            values[2 * self.mesh.n_nodes] = 0.0
        fixed = np.flatnonzero(~np.isnan(values))
        return fixed, values[fixed]

    def _viscosity_at(self, temperature_q: npt.NDArray[np.float64]) -> tuple[npt.NDArray[np.float64], float]:
        """Scaled viscosity ``eta / eta_ref`` and ``eta_ref``."""
        if not np.isfinite(temperature_q).all():
            raise SingularSystemError("Flow solve received a non-finite temperature field.", self.record)
        log_eta = np.asarray(self.glass.log10_viscosity(temperature_q))
        log_ref = float(np.median(log_eta))
        return 10.0 ** (log_eta - log_ref), 10.0 ** log_ref

    def solve(self, temperature: npt.NDArray[np.float64]) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """
        Velocity and pressure for the given temperature field.

        Returns:
            ``velocity`` (N, 2) in m/s and ``pressure`` (P,) in Pa on the pressure nodes.

        Raises:
            GeometryError: For an inverted element.
            SingularSystemError: For a singular or non-finite system.
        """
        mesh = self.mesh
        n = mesh.n_nodes
        geometry = element_geometry(mesh.nodes, mesh.elements, self.options.quadrature_points)
        N, Np, dN_dr, dN_dz, w = geometry.N, geometry.Np, geometry.dN_dr, geometry.dN_dz, geometry.weight
        n_el, n_gp = w.shape

        T_q = np.asarray(temperature, dtype=np.float64)[mesh.elements] @ N.T
        eta_hat, eta_ref = self._viscosity_at(T_q)
        self.reference_viscosity = eta_ref

        N_over_r = N[None, :, :] / geometry.radius[:, :, None]  # (E, Q, 6)
        B = np.zeros((n_el, n_gp, 4, 12))
        B[:, :, 0, 0::2] = dN_dr
        B[:, :, 1, 1::2] = dN_dz
        B[:, :, 2, 0::2] = N_over_r
        B[:, :, 3, 0::2] = dN_dz
        B[:, :, 3, 1::2] = dN_dr
        K_e = np.einsum("eq,eqia,i,eqib->eab", w * eta_hat, B, _CONSTITUTIVE, B)

        div = np.zeros((n_el, n_gp, 12))
        div[:, :, 0::2] = dN_dr + N_over_r
        div[:, :, 1::2] = dN_dz
        G_e = -np.einsum("eq,eqa,qb->eab", w, div, Np)  # (E, 12, 3)

        data = self._assembler.new_data()
        self._assembler.add(data, K_e, self._scatter_vv)
        self._assembler.add(data, G_e, self._scatter_vp)
        self._assembler.add(data, G_e.transpose(0, 2, 1), self._scatter_pv)

        rhs = np.zeros(self.n_equations)
        rho = np.asarray(self.glass.density(T_q))
        if np.any(self.gravity):
            f_e = np.einsum("eq,qa->ea", w * rho, N)
            for c in range(2):
                rhs[c:2 * n:2] += np.bincount(mesh.elements.ravel(), weights=(f_e * self.gravity[c]).ravel(), minlength=n)
        rhs[:2 * n] += self._boundary_loads()
        rhs[:2 * n] /= eta_ref

        fixed, values = self._dirichlet()
        A, b = apply_dirichlet(self._assembler.to_matrix(data), rhs, fixed, values)
        x = solve_direct(A, b, self.options.singular_tolerance, label="Stokes system")
        self.record.append(1, float(np.linalg.norm(A @ x - b, ord=np.inf)), stage="flow")

        velocity = x[:2 * n].reshape(n, 2)
        pressure = eta_ref * x[2 * n:]
        logger.info(f"Stokes solve: eta_ref = {eta_ref:.3e} Pa s, |v|max = {np.abs(velocity).max():.3e} m/s.")
        return velocity, pressure

    def _boundary_loads(self) -> npt.NDArray[np.float64]:
        """Traction and surface-tension loads on the velocity unknowns."""
        n = self.mesh.n_nodes
        loads = np.zeros(2 * n)
        for bc in self.boundary_conditions:
            if not (isinstance(bc, TractionBC) or (isinstance(bc, FreeSurfaceBC) and bc.surface_tension > 0.0)):
                continue
            edges = self.mesh.edges(bc.tag)
            eg = edge_geometry(self.mesh.nodes, edges)
            for c in range(2):
                if isinstance(bc, TractionBC):
                    weights = eg.weight * (bc.t_r, bc.t_z)[c]
                else:
                    # Young-Laplace jump: traction -(gamma / r) n on the 2 pi r weighted surface
                    weights = -bc.surface_tension * eg.arc_weight * eg.normal[:, :, c]
                local = np.einsum("mq,qa->ma", weights, eg.N)
                loads[c::2] += np.bincount(edges.ravel(), weights=local.ravel(), minlength=n)
        return loads

    # --- POST-PROCESSING ---

    def boundary_flux(self, tag: str, velocity: npt.NDArray[np.float64]) -> float:
        """Volumetric outflow ``∫ v . n 2πr ds`` through a boundary, m³/s."""
        edges = self.mesh.edges(tag)
        eg = edge_geometry(self.mesh.nodes, edges)
        v_q = np.einsum("qa,mac->mqc", eg.N, velocity[edges])
        return float(np.sum(eg.weight * np.einsum("mqc,mqc->mq", v_q, eg.normal)))

    def boundary_area(self, tag: str) -> float:
        """Area of the surface of revolution swept by a boundary, m²."""
        eg = edge_geometry(self.mesh.nodes, self.mesh.edges(tag))
        return float(np.sum(eg.weight))

    def mean_normal_speed(self, tag: str, velocity: npt.NDArray[np.float64]) -> float:
        """Flux divided by area: the plug speed equivalent to the flow through ``tag``."""
        return abs(self.boundary_flux(tag, velocity)) / self.boundary_area(tag)

    def axial_force(
        self,
        tag: str,
        temperature: npt.NDArray[np.float64],
        velocity: npt.NDArray[np.float64],
        pressure: npt.NDArray[np.float64],
    ) -> float:
        """
        Axial force ``∫ (sigma . n)_z 2πr ds`` transmitted through a boundary, in N.

        The stress is evaluated inside the element owning each edge; on a
        flat outlet this is ``∫ sigma_zz 2πr dr``, the fiber tension.
        """
        mesh = self.mesh
        edges = mesh.edges(tag)
        parents, local = mesh.edge_parents(tag)
        eg = edge_geometry(mesh.nodes, edges)
        s_points, _ = gauss.gauss_points_weights_edge(eg.N.shape[0])

        total = 0.0
        for m, (e, k) in enumerate(zip(parents, local)):
            element = Tri6(index=int(e), coords=mesh.nodes[mesh.elements[e]])
            nodes_e = mesh.elements[e]
            v_e = velocity[nodes_e]
            p_e = pressure[mesh.pressure_elements[e]]
            t = 0.5 * (s_points + 1.0)
            if nodes_e[LOCAL_EDGES[k, 0]] != edges[m, 0]:
                t = 1.0 - t
            xi, eta = _EDGE_PARAMETRIZATION[k](t)
            for q in range(t.size):
                iso = np.array([1.0 - xi[q] - eta[q], xi[q], eta[q]])
                N_q = element.shape_functions(iso)
                grad = element.b_matrix(iso)  # (2, 6)
                grad_v = grad @ v_e  # [[dvr/dr, dvz/dr], [dvr/dz, dvz/dz]]
                T_q = float(N_q @ temperature[nodes_e])
                eta_q = 10.0 ** float(self.glass.log10_viscosity(T_q))
                p_q = float(Tri3.shape_functions(iso) @ p_e)
                sigma_zz = -p_q + 2.0 * eta_q * grad_v[1, 1]
                sigma_rz = eta_q * (grad_v[1, 0] + grad_v[0, 1])
                n_r, n_z = eg.normal[m, q]
                total += eg.weight[m, q] * (sigma_rz * n_r + sigma_zz * n_z)
        return float(total)
