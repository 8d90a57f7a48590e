from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Callable, Optional, Sequence

import numpy as np

from glassform.config import SolverOptions
from glassform.errors import CancelledError, ConvergenceError
from glassform.fea.analysis.finite_elements.edges import edge_geometry, edge_load, robin_load_and_tangent
from glassform.fea.analysis.finite_elements.tri6 import element_geometry
from glassform.fea.solvers.assembly import SparseAssembler, apply_dirichlet, solve_direct
from glassform.model.bc import DirichletBC, NeumannBC, RobinBC, ThermalBC
from glassform.model.state import ConvergenceRecord

if TYPE_CHECKING:
    import numpy.typing as npt
    from glassform.fea.pre.material import Glass
    from glassform.fea.pre.mesh import Mesh

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransientHistory:
    """Accepted time levels of a transient solve, including t = 0."""
    times: npt.NDArray[np.float64]  # (S,)
    temperatures: npt.NDArray[np.float64]  # (S, N)
    time_steps: npt.NDArray[np.float64]  # (S - 1,)

    @property
    def final(self) -> npt.NDArray[np.float64]:
        return self.temperatures[-1]


def streamline_diffusion_factor(peclet: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Optimal upwind factor ``coth(Pe) - 1/Pe``; its series ``Pe/3`` for small ``Pe``.
    """
    small = peclet < 1e-3
    safe = np.where(small, 1.0, peclet)
    return np.where(small, peclet / 3.0, 1.0 / np.tanh(safe) - 1.0 / safe)


class ThermalSolver:
    """
    Newton solver for axisymmetric conduction with Rosseland-enhanced conductivity.

    Solves ``rho c (dT/dt + v . grad T) = div(k_eff(T) grad T)`` with Dirichlet,
    Neumann and Robin (convective and radiative) boundaries. The steady form
    drops the time derivative; the transient form uses backward Euler with an
    adaptive time step.
    """

    def __init__(
        self,
        mesh: Mesh,
        glass: Glass,
        boundary_conditions: Sequence[ThermalBC],
        options: Optional[SolverOptions] = None,
        record: Optional[ConvergenceRecord] = None,
    ) -> None:
        """
        Args:
            mesh: Mesh whose node coordinates may move between solves.
            glass: Material model.
            boundary_conditions: Thermal conditions; their tags must exist in the mesh.
            options: Tolerances and step control.
            record: Receives one ``thermal`` entry per Newton iteration.

        Raises:
            GeometryError: If a boundary tag is unknown.
        """
        self.mesh = mesh
        self.glass = glass
        self.options = options or SolverOptions()
        self.record = record if record is not None else ConvergenceRecord()
        self.boundary_conditions = list(boundary_conditions)
        for bc in self.boundary_conditions:
            mesh.edges(bc.tag)

        self._assembler = SparseAssembler(mesh.elements, mesh.n_nodes)
        self._edge_scatter = {
            bc.tag: self._assembler.scatter_for(mesh.edges(bc.tag))
            for bc in self.boundary_conditions if isinstance(bc, RobinBC)
        }

    @property
    def n_equations(self) -> int:
        return self.mesh.n_nodes

    def _dirichlet(self, time: float) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.float64]]:
        values = np.full(self.mesh.n_nodes, np.nan)
        for bc in self.boundary_conditions:
            if isinstance(bc, DirichletBC):
                values[self.mesh.edges(bc.tag).ravel()] = bc.temperature_at(time)
        fixed = np.flatnonzero(~np.isnan(values))
        return fixed, values[fixed]

    def _assemble(
        self,
        T: npt.NDArray[np.float64],
        T_old: Optional[npt.NDArray[np.float64]],
        dt: Optional[float],
        velocity: Optional[npt.NDArray[np.float64]],
        time: float,
    ) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
        """
        Residual and Jacobian data at the current iterate.

        Returns:
            ``(residual, jacobian_data)``; the data array belongs to the assembler's pattern.
        """
        mesh = self.mesh
        geometry = element_geometry(mesh.nodes, mesh.elements, self.options.quadrature_points)
        N, dN_dr, dN_dz, w = geometry.N, geometry.dN_dr, geometry.dN_dz, geometry.weight

        T_e = T[mesh.elements]  # (E, 6)
        T_q = T_e @ N.T  # (E, Q)
        dT_dr = np.einsum("eqa,ea->eq", dN_dr, T_e)
        dT_dz = np.einsum("eqa,ea->eq", dN_dz, T_e)

        k = np.asarray(self.glass.effective_conductivity(T_q))
        dk = np.asarray(self.glass.d_effective_conductivity_dT(T_q))
        rho_c = np.asarray(self.glass.volumetric_heat_capacity(T_q))

        # conduction: k grad N_a . grad N_b, plus the dk/dT linearization
        grad_grad = (np.einsum("eqa,eqb->eqab", dN_dr, dN_dr) + np.einsum("eqa,eqb->eqab", dN_dz, dN_dz))
        K_e = np.einsum("eq,eqab->eab", w * k, grad_grad)
        gradT_gradN = dT_dr[:, :, None] * dN_dr + dT_dz[:, :, None] * dN_dz  # (E, Q, 6)
        J_e = K_e + np.einsum("eq,eqa,qb->eab", w * dk, gradT_gradN, N)
        R_e = np.einsum("eab,eb->ea", K_e, T_e)

        if velocity is not None and np.any(velocity):
            v_e = velocity[mesh.elements]  # (E, 6, 2)
            v_r = np.einsum("qa,ea->eq", N, v_e[:, :, 0])
            v_z = np.einsum("qa,ea->eq", N, v_e[:, :, 1])
            v_gradN = v_r[:, :, None] * dN_dr + v_z[:, :, None] * dN_dz  # (E, Q, 6)
            A_e = np.einsum("eq,qa,eqb->eab", w * rho_c, N, v_gradN)
            if self.options.streamline_diffusion:
                speed = np.hypot(v_r, v_z)
                h = mesh.element_sizes()[:, None]
                peclet = rho_c * speed * h / (2.0 * k)
                k_sd = rho_c * speed * h / 2.0 * streamline_diffusion_factor(peclet)
                speed_sq = np.where(speed > 0.0, speed ** 2, 1.0)
                A_e = A_e + np.einsum("eq,eqa,eqb->eab", w * k_sd / speed_sq, v_gradN, v_gradN)
            R_e = R_e + np.einsum("eab,eb->ea", A_e, T_e)
            J_e = J_e + A_e

        if dt is not None:
            M_e = np.einsum("eq,qa,qb->eab", w * rho_c, N, N)
            R_e = R_e + np.einsum("eab,eb->ea", M_e, T_e - T_old[mesh.elements]) / dt
            J_e = J_e + M_e / dt

        residual = self._assembler.assemble_vector(R_e)
        data = self._assembler.new_data()
        self._assembler.add(data, J_e)

        for bc in self.boundary_conditions:
            if isinstance(bc, DirichletBC):
                continue
            edges = mesh.edges(bc.tag)
            eg = edge_geometry(mesh.nodes, edges)
            if isinstance(bc, NeumannBC):
                residual -= self._assembler.assemble_vector(edge_load(eg, bc.flux), edges)
            elif isinstance(bc, RobinBC):
                f_e, df_e = robin_load_and_tangent(
                    eg, T[edges], bc.heat_transfer_coefficient, bc.ambient_at(time), bc.emissivity,
                )
                residual += self._assembler.assemble_vector(f_e, edges)
                self._assembler.add(data, df_e, self._edge_scatter[bc.tag])
        return residual, data

    def _newton(
        self,
        T_start: npt.NDArray[np.float64],
        T_old: Optional[npt.NDArray[np.float64]],
        dt: Optional[float],
        velocity: Optional[npt.NDArray[np.float64]],
        time: float,
    ) -> tuple[npt.NDArray[np.float64], int]:
        """
        Newton iteration until ``||dT||_inf < thermal_tolerance``.

        Returns:
            The converged temperature and the number of corrections needed
            before the confirming (small) one, at least 1.

        Raises:
            ConvergenceError: When the iteration cap is reached.
        """
        options = self.options
        fixed, values = self._dirichlet(time)
        T = np.array(T_start, dtype=np.float64)

        for iteration in range(1, options.thermal_max_iterations + 1):
            residual, data = self._assemble(T, T_old, dt, velocity, time)
            J, rhs = apply_dirichlet(self._assembler.to_matrix(data), -residual, fixed, values - T[fixed])
            delta = solve_direct(J, rhs, options.singular_tolerance, label="thermal Jacobian")
            T = T + delta

            correction = float(np.max(np.abs(delta)))
            self.record.append(iteration, correction, stage="thermal")
            if correction < options.thermal_tolerance:
                return T, max(iteration - 1, 1)

        raise ConvergenceError(
            f"Thermal Newton iteration did not converge in {options.thermal_max_iterations} iterations "
            f"(last correction {correction:.3e} K).",
            self.record,
        )

    def solve_steady(
        self,
        initial_temperature: npt.NDArray[np.float64],
        velocity: Optional[npt.NDArray[np.float64]] = None,
        time: float = 0.0,
    ) -> tuple[npt.NDArray[np.float64], int]:
        """
        Steady temperature for a frozen velocity field.

        Returns:
            Temperature (N,) and the Newton iteration count.
        """
        T, iterations = self._newton(initial_temperature, None, None, velocity, time)
        logger.info(f"Steady thermal solve converged in {iterations} Newton iteration(s); "
                    f"T in [{T.min():.1f}, {T.max():.1f}] K.")
        return T, iterations

    def solve_transient(
        self,
        initial_temperature: npt.NDArray[np.float64],
        duration: float,
        velocity: Optional[npt.NDArray[np.float64]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> TransientHistory:
        """
        Backward-Euler integration with adaptive time step.

        The step is halved when Newton fails within its cap and grows by
        ``time_step_growth`` after ``time_step_growth_after`` consecutive steps
        that converged in a single iteration, never beyond ``max_time_step``.

        Raises:
            ConvergenceError: If the step falls below ``min_time_step``.
            CancelledError: If ``should_stop`` returns True between steps.
        """
        options = self.options
        T = np.array(initial_temperature, dtype=np.float64)
        times = [0.0]
        temperatures = [T.copy()]
        steps = []

        t = 0.0
        dt = min(options.time_step, options.max_time_step)
        quick_steps = 0
        end_tolerance = 1e-12 * max(duration, 1.0)
        while t < duration - end_tolerance:
            if should_stop is not None and should_stop():
                raise CancelledError(f"Transient solve cancelled at t = {t:.3f} s.", self.record)

            step = min(dt, duration - t)
            try:
                T_new, iterations = self._newton(T, T, step, velocity, t + step)
            except ConvergenceError:
                dt = step / 2.0
                quick_steps = 0
                logger.debug(f"Newton failed at t = {t:.4g} s, halving time step to {dt:.3e} s.")
                if dt < options.min_time_step:
                    raise ConvergenceError(
                        f"Time step fell below {options.min_time_step:.1e} s at t = {t:.4g} s.", self.record
                    ) from None
                continue

            t += step
            steps.append(step)
            self.record.append(len(steps), float(np.max(np.abs(T_new - T))), stage="time_step")
            T = T_new
            times.append(t)
            temperatures.append(T.copy())

            quick_steps = quick_steps + 1 if iterations == 1 else 0
            if quick_steps >= options.time_step_growth_after:
                dt = min(dt * options.time_step_growth, options.max_time_step)
                quick_steps = 0

        logger.info(f"Transient thermal solve reached t = {t:.4g} s in {len(steps)} steps.")
        return TransientHistory(
            times=np.array(times),
            temperatures=np.array(temperatures),
            time_steps=np.array(steps),
        )
