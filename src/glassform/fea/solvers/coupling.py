from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Optional, Sequence

import numpy as np
import scipy as sp
import scipy.sparse.linalg

from glassform.config import SolverOptions
from glassform.errors import CancelledError, ConvergenceError
from glassform.fea.analysis.finite_elements.tri6 import LOCAL_EDGES
from glassform.fea.solvers.flow import FlowSolver
from glassform.fea.solvers.thermal import ThermalSolver
from glassform.model.bc import FlowBC, ThermalBC
from glassform.model.state import ConvergenceRecord, FieldState
from glassform.utils import max_abs_change, relative_change

if TYPE_CHECKING:
    import numpy.typing as npt
    from glassform.fea.pre.material import Glass
    from glassform.fea.pre.mesh import Mesh

logger = logging.getLogger(__name__)


class MeshMotion:
    """
    Arbitrary Lagrangian-Eulerian update of a free surface.

    Free-surface vertices move radially, so the axial node layout of a drawn
    neck is preserved. Each update is one pseudo time step of the kinematic
    condition ``dR/dt = (v . n) / n_r``, swept along each surface chain from
    its upstream end:

    * where the flow runs along the chain, the local step is the axial
      transit time of the upstream edge, which places the vertex on the
      streamline ``dR/dz = v_r / v_z`` leaving its (already updated)
      upstream neighbour;
    * where the axial speed vanishes, the node moves by ``(v . n) / n_r``
      times ``ale_time_step`` or a Courant step of its own element.

    Every step is clipped to ``ale_courant`` times the local element size
    and scaled by ``ale_relaxation``. Corner vertices shared with another
    boundary stay put. The displacement is extended into the interior as a
    harmonic function on the vertex graph (all other boundary vertices
    fixed), and midside nodes follow the mean displacement of their two
    vertices.
    """

    def __init__(self, mesh: Mesh, free_surface_tags: Sequence[str], options: Optional[SolverOptions] = None) -> None:
        self.mesh = mesh
        self.options = options or SolverOptions()
        self.free_surface_tags = list(free_surface_tags)

        vertices = set(mesh.vertex_nodes.tolist())
        surface = set(mesh.boundary_nodes(self.free_surface_tags).tolist()) & vertices
        others = [tag for tag in mesh.tags if tag not in self.free_surface_tags]
        fixed = set(mesh.boundary_nodes(others).tolist()) & vertices
        self.moving_nodes = np.array(sorted(surface - fixed), dtype=np.int64)
        boundary = np.array(sorted(surface | fixed), dtype=np.int64)
        self._boundary = boundary
        self._interior = np.array(sorted(vertices - set(boundary.tolist())), dtype=np.int64)
        self._midsides = mesh.midside_parents()
        self._chains = self._surface_chains()

        laplacian = self._graph_laplacian()
        self._coupling = laplacian[self._interior][:, self._boundary]
        self._factor = None
        if self._interior.size:
            self._factor = sp.sparse.linalg.splu(laplacian[self._interior][:, self._interior].tocsc())

    def _graph_laplacian(self) -> sp.sparse.csr_matrix:
        """Unit-weight Laplacian of the vertex adjacency graph."""
        elements = self.mesh.elements
        rows = np.concatenate([elements[:, LOCAL_EDGES[:, 0]].ravel(), elements[:, LOCAL_EDGES[:, 1]].ravel()])
        cols = np.concatenate([elements[:, LOCAL_EDGES[:, 1]].ravel(), elements[:, LOCAL_EDGES[:, 0]].ravel()])
        n = self.mesh.n_nodes
        adjacency = sp.sparse.coo_matrix((np.ones(rows.size), (rows, cols)), shape=(n, n)).tocsr()
        adjacency.data[:] = 1.0  # shared edges appear twice
        degree = np.asarray(adjacency.sum(axis=1)).ravel()
        return (sp.sparse.diags(degree) - adjacency).tocsr()

    def _surface_chains(self) -> list[npt.NDArray[np.int64]]:
        """
        Free-surface edges ordered into chains of ``(a, midside, b)`` rows,
        each row starting where the previous one ends.
        """
        edges = [tuple(int(n) for n in edge) for tag in self.free_surface_tags for edge in self.mesh.edges(tag)]
        links: Dict[int, list[tuple[int, int, int]]] = {}
        for a, b, m in edges:
            links.setdefault(a, []).append((a, m, b))
            links.setdefault(b, []).append((b, m, a))

        chains = []
        used: set[int] = set()
        # open chains first, from a vertex with a single surface edge
        starts = [v for v, ls in links.items() if len(ls) == 1] + list(links)
        for start in starts:
            chain = []
            vertex = start
            while True:
                step = next((link for link in links[vertex] if link[1] not in used), None)
                if step is None:
                    break
                used.add(step[1])
                chain.append(step)
                vertex = step[2]
            if chain:
                chains.append(np.array(chain, dtype=np.int64))
        return chains

    def _node_sizes(self) -> npt.NDArray[np.float64]:
        """Smallest size of the elements around each node."""
        sizes = np.full(self.mesh.n_nodes, np.inf)
        element_sizes = self.mesh.element_sizes()
        for column in range(self.mesh.elements.shape[1]):
            np.minimum.at(sizes, self.mesh.elements[:, column], element_sizes)
        return sizes

    def surface_normal_speed(self, velocity: npt.NDArray[np.float64]) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """Normals (K, 2) and normal speeds ``v . n`` (K,) of the moving nodes."""
        ids, normals = self.mesh.boundary_node_normals(self.free_surface_tags)
        lookup = dict(zip(ids.tolist(), range(ids.size)))
        n = normals[[lookup[i] for i in self.moving_nodes.tolist()]].reshape(-1, 2)
        return n, np.einsum("kc,kc->k", velocity[self.moving_nodes], n)

    def time_step(self, speed: float, size: float) -> float:
        """Pseudo time step of a node without axial transport."""
        if self.options.ale_time_step is not None:
            return self.options.ale_time_step
        if speed == 0.0:
            return 0.0
        return self.options.ale_courant * size / speed

    def radial_steps(self, velocity: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Radial displacement (N,) of one update; zero away from the moving nodes.
        """
        options = self.options
        nodes = self.mesh.nodes
        radius = nodes[:, 0].copy()
        sizes = self._node_sizes()
        moving = np.zeros(self.mesh.n_nodes, dtype=bool)
        moving[self.moving_nodes] = True
        normal = np.zeros_like(nodes)
        ids, normals = self.mesh.boundary_node_normals(self.free_surface_tags)
        normal[ids] = normals
        v_r, v_z = velocity[:, 0], velocity[:, 1]
        stagnant = np.abs(v_z) <= 1e-12 * max(float(np.max(np.abs(velocity))), np.finfo(float).tiny)

        def normal_step(node: int) -> float:
            n_r = normal[node, 0]
            if abs(n_r) < 1e-6:
                return 0.0
            dt = self.time_step(float(np.hypot(v_r[node], v_z[node])), sizes[node])
            return float(velocity[node] @ normal[node]) / n_r * dt

        def move(node: int, step: float) -> None:
            limit = options.ale_courant * sizes[node]
            radius[node] += options.ale_relaxation * min(max(step, -limit), limit)

        for chain in self._chains:
            # sweep downstream
            if np.sum(velocity[chain[:, 1]] * (nodes[chain[:, 2]] - nodes[chain[:, 0]])) < 0.0:
                chain = chain[::-1][:, ::-1]
            if moving[chain[0, 0]]:
                move(chain[0, 0], normal_step(chain[0, 0]))
            for a, m, b in chain:
                if not moving[b] or b == chain[0, 0]:
                    continue
                dz = nodes[b, 1] - nodes[a, 1]
                if stagnant[[a, m, b]].any() or np.sign(v_z[b]) * dz <= 0.0:
                    move(b, normal_step(b))
                    continue
                slope = (v_r[a] / v_z[a] + 4.0 * v_r[m] / v_z[m] + v_r[b] / v_z[b]) / 6.0
                move(b, radius[a] + slope * dz - radius[b])
        return radius - nodes[:, 0]

    def update(self, velocity: npt.NDArray[np.float64]) -> float:
        """
        Move the mesh in place for one pseudo time step.

        Returns:
            The largest node displacement in m.

        Raises:
            GeometryError: If the update inverts an element.
        """
        if self.moving_nodes.size == 0:
            return 0.0

        displacement = np.zeros_like(self.mesh.nodes)
        displacement[self.moving_nodes, 0] = self.radial_steps(velocity)[self.moving_nodes]
        if self._factor is not None:
            rhs = -(self._coupling @ displacement[self._boundary])
            displacement[self._interior] = self._factor.solve(np.ascontiguousarray(rhs))
        mid, a, b = self._midsides.T
        displacement[mid] = 0.5 * (displacement[a] + displacement[b])

        self.mesh.move_nodes(displacement)
        self.mesh.check_elements()
        largest = float(np.max(np.linalg.norm(displacement, axis=1)))
        logger.debug(f"ALE update moved the free surface by up to {largest:.3e} m.")
        return largest


class CouplingOrchestrator:
    """
    Picard fixed-point iteration between the thermal and the flow solver.

    Each outer iteration consumes one ``FieldState`` and produces a new one:
    thermal solve with the previous velocity, flow solve with the new
    temperature, then the free-surface update. It converges when both
    ``||T_k+1 - T_k||_inf < outer_tolerance_temperature`` and the relative
    velocity change is below ``outer_tolerance_velocity``; the recorded
    residual is the larger of the two ratios, so converged means ``< 1``.
    """

    def __init__(
        self,
        mesh: Mesh,
        glass: Glass,
        thermal_bcs: Sequence[ThermalBC],
        flow_bcs: Sequence[FlowBC] = (),
        options: Optional[SolverOptions] = None,
        record: Optional[ConvergenceRecord] = None,
        gravity: tuple[float, float] = (0.0, 0.0),
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.mesh = mesh
        self.glass = glass
        self.options = options or SolverOptions()
        self.record = record if record is not None else ConvergenceRecord()
        self.should_stop = should_stop

        self.thermal = ThermalSolver(mesh, glass, thermal_bcs, self.options, self.record)
        self.flow = None
        self.motion = None
        if flow_bcs:
            self.flow = FlowSolver(mesh, glass, flow_bcs, self.options, self.record, gravity)
            if self.flow.free_surface_tags:
                self.motion = MeshMotion(mesh, self.flow.free_surface_tags, self.options)

    @property
    def coupled(self) -> bool:
        return self.flow is not None

    def run(self, state: FieldState) -> tuple[FieldState, int]:
        """
        Iterate from ``state`` to a converged snapshot.

        Returns:
            The converged ``FieldState`` and the number of outer iterations.

        Raises:
            CancelledError: If ``should_stop`` returns True at the start of an iteration.
            ConvergenceError: If ``outer_max_iterations`` is reached.
        """
        options = self.options
        for iteration in range(1, options.outer_max_iterations + 1):
            if self.should_stop is not None and self.should_stop():
                raise CancelledError(f"Run cancelled before outer iteration {iteration}.", self.record)

            velocity = state.velocity if self.coupled else None
            temperature, _ = self.thermal.solve_steady(state.temperature, velocity=velocity)
            if self.coupled:
                velocity, pressure = self.flow.solve(temperature)
            else:
                velocity, pressure = state.velocity, state.pressure

            d_temperature = max_abs_change(temperature, state.temperature)
            d_velocity = relative_change(velocity, state.velocity)
            residual = max(d_temperature / options.outer_tolerance_temperature,
                           d_velocity / options.outer_tolerance_velocity)
            state = state.evolve(self.glass, temperature=temperature, velocity=velocity, pressure=pressure)
            self.record.append(iteration, residual)
            logger.info(f"Outer iteration {iteration}: dT = {d_temperature:.3e} K, dv/|v| = {d_velocity:.3e}.")

            # a coupled first iteration only establishes the first velocity field
            if not self.coupled or (iteration > 1 and residual < 1.0):
                return state, iteration
            if self.motion is not None:
                self.motion.update(velocity)

        raise ConvergenceError(
            f"Coupling did not converge in {options.outer_max_iterations} outer iterations.", self.record
        )
