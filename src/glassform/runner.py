"""
Run Entry Point
===============
``run(problem)`` is the single synchronous call of the solver core. Both
execution placements (see ``glassform.execution``) go through it.

Why is this file needed?
------------------------
1. Orchestration: It builds the mesh, fills in process default boundary
   conditions, drives the coupled (steady) or transient thermal solve, and
   integrates structural relaxation along the cooling path.
2. Errors as values: Any ``SolverError`` ends the run and is returned, with
   the convergence record accumulated so far, instead of being raised.

Functions:
    run: Solve one problem definition.
    default_thermal_bcs / default_flow_bcs: Process defaults.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from glassform.config import GRAVITY
from glassform.errors import ConfigurationError, SolverError
from glassform.fea.pre.material import Glass
from glassform.fea.pre.mesh import Mesh, generate_structured, refine, temperature_gradient_indicator
from glassform.fea.pre.schedules import LinearCoolingSchedule
from glassform.fea.solvers.coupling import CouplingOrchestrator
from glassform.fea.solvers.relaxation import StructuralRelaxation, cooling_path
from glassform.fea.solvers.thermal import ThermalSolver
from glassform.model.bc import DirichletBC, FlowBC, FreeSurfaceBC, RobinBC, ThermalBC, VelocityBC
from glassform.model.problem import Problem, ProcessType, SimulationType
from glassform.model.state import ConvergenceRecord, FieldState, ProgressSink, Result, SummaryMetrics

logger = logging.getLogger(__name__)


def default_thermal_bcs(problem: Problem, mesh: Mesh) -> List[ThermalBC]:
    """
    Thermal conditions used when the problem lists none.

    Fiber draw: the preform enters at its initial temperature and the surface
    exchanges heat with the furnace. Otherwise every boundary except the
    axis exchanges heat with the ambient; in transient runs the ambient
    follows the cooling schedule, by default a linear ramp at ``cooling_rate``.
    """
    p = problem.process_parameters
    if problem.process_type == ProcessType.FIBER_DRAW:
        return [
            DirichletBC(tag="inlet", temperature=p.initial_temperature),
            RobinBC(tag="surface", heat_transfer_coefficient=p.heat_transfer_coefficient,
                    ambient_temperature=p.ambient_temperature, emissivity=p.emissivity),
        ]
    schedule = None
    if problem.simulation_type == SimulationType.TRANSIENT:
        schedule = p.cooling_schedule or LinearCoolingSchedule(p.ambient_temperature, p.cooling_rate, p.room_temperature)
    return [
        RobinBC(tag=tag, heat_transfer_coefficient=p.heat_transfer_coefficient,
                ambient_temperature=p.ambient_temperature, emissivity=p.emissivity, schedule=schedule)
        for tag in mesh.tags if tag != "axis"
    ]


def default_flow_bcs(problem: Problem) -> List[FlowBC]:
    """
    Flow conditions of a fiber draw: plug feed at the inlet, plug draw at the
    outlet, symmetry on the axis and a free surface in between.

    Raises:
        ConfigurationError: For forming problems, which have no defaults.
    """
    p = problem.process_parameters
    if problem.process_type != ProcessType.FIBER_DRAW:
        raise ConfigurationError(f"Process '{problem.process_type}' needs explicit flow boundary conditions.")
    return [
        VelocityBC.symmetry_axis("axis"),
        VelocityBC(tag="inlet", v_r=0.0, v_z=p.feed_speed),
        VelocityBC(tag="outlet", v_r=0.0, v_z=p.draw_speed),
        FreeSurfaceBC(tag="surface", surface_tension=p.surface_tension),
    ]


def dof_count(problem: Problem, mesh: Mesh) -> int:
    """Temperature unknowns, plus velocity and pressure unknowns when the flow is solved."""
    count = mesh.n_nodes
    if problem.solves_flow:
        count += 2 * mesh.n_nodes + mesh.n_pressure_nodes
    return count


def _gravity(problem: Problem) -> tuple[float, float]:
    if not problem.process_parameters.gravity:
        return 0.0, 0.0
    # fiber draw axes point downstream, i.e. downwards
    if problem.process_type == ProcessType.FIBER_DRAW:
        return 0.0, GRAVITY
    return 0.0, -GRAVITY


def _refine_mesh(mesh: Mesh, glass: Glass, thermal_bcs: List[ThermalBC], problem: Problem) -> Mesh:
    options = problem.solver_options
    for n in range(options.refinement_passes):
        solver = ThermalSolver(mesh, glass, thermal_bcs, options)
        start = np.full(mesh.n_nodes, problem.process_parameters.initial_temperature)
        temperature, _ = solver.solve_steady(start)
        indicator = temperature_gradient_indicator(mesh, temperature)
        if indicator.max() <= 0.0:
            break
        mesh = refine(mesh, indicator, options.refinement_fraction * indicator.max())
        logger.info(f"Refinement pass {n + 1}: {mesh}")
    return mesh


def _solve(
    problem: Problem,
    mesh: Mesh,
    record: ConvergenceRecord,
    should_stop: Optional[Callable[[], bool]],
) -> Result:
    params = problem.process_parameters
    options = problem.solver_options
    glass = Glass(problem.material)
    mesh.check_elements()

    thermal_bcs = list(params.thermal_bcs) or default_thermal_bcs(problem, mesh)
    flow_bcs: List[FlowBC] = []
    if problem.solves_flow:
        flow_bcs = list(params.flow_bcs) or default_flow_bcs(problem)
    if options.refinement_passes:
        mesh = _refine_mesh(mesh, glass, thermal_bcs, problem)

    initial = FieldState.create(
        glass, np.full(mesh.n_nodes, params.initial_temperature), n_pressure_nodes=mesh.n_pressure_nodes,
    )
    relaxation = StructuralRelaxation(glass, options, params.room_temperature)
    metrics: Dict[str, Any] = {}

    if problem.simulation_type == SimulationType.TRANSIENT:
        solver = ThermalSolver(mesh, glass, thermal_bcs, options, record)
        history = solver.solve_transient(initial.temperature, params.duration, should_stop=should_stop)
        relaxed = relaxation.run(history.times, history.temperatures)
        fields = initial.evolve(glass, temperature=history.final, fictive_temperature=relaxed.fictive_temperature)
        metrics["outer_iterations"] = int(history.time_steps.size)
    else:
        orchestrator = CouplingOrchestrator(
            mesh, glass, thermal_bcs, flow_bcs, options, record, _gravity(problem), should_stop,
        )
        state, iterations = orchestrator.run(initial)
        schedule = params.cooling_schedule or LinearCoolingSchedule(
            float(state.temperature.max()), params.cooling_rate, params.room_temperature,
        )
        times, temperatures = cooling_path(state.temperature, schedule, options.cooling_steps)
        relaxed = relaxation.run(times, temperatures)
        fields = state.evolve(glass, fictive_temperature=relaxed.fictive_temperature)
        metrics["outer_iterations"] = iterations

        if problem.process_type == ProcessType.FIBER_DRAW and orchestrator.flow is not None:
            flow = orchestrator.flow
            metrics["feed_speed"] = flow.mean_normal_speed("inlet", fields.velocity)
            metrics["draw_speed"] = flow.mean_normal_speed("outlet", fields.velocity)
            metrics["fiber_tension"] = flow.axial_force("outlet", fields.temperature, fields.velocity, fields.pressure)

    summary = SummaryMetrics(
        max_temperature=float(fields.temperature.max()),
        max_von_mises_stress=float(relaxed.von_mises_stress.max()),
        dof_count=dof_count(problem, mesh),
        **metrics,
    )
    return Result(
        mesh=mesh,
        fields=fields,
        residual_stress=relaxed.residual_stress,
        von_mises_stress=relaxed.von_mises_stress,
        metrics=summary,
        convergence=record,
    )


def run(
    problem: Problem | Dict[str, Any],
    progress: Optional[ProgressSink] = None,
    cancel_event: Optional[threading.Event] = None,
    mesh: Optional[Mesh] = None,
) -> Result | SolverError:
    """
    Solve one problem.

    Args:
        problem: A ``Problem`` or its dict form.
        progress: Receives each outer-iteration (or time-step) entry as it is recorded.
        cancel_event: Checked once per outer iteration or time step.
        mesh: Pre-built mesh of the problem's geometry; copied, never modified.

    Returns:
        The ``Result``, or the ``SolverError`` that ended the run, carrying the
        convergence record accumulated so far.
    """
    record = ConvergenceRecord(sink=progress)
    should_stop = cancel_event.is_set if cancel_event is not None else None
    try:
        if not isinstance(problem, Problem):
            problem = Problem.from_dict(problem)
        mesh = generate_structured(problem.geometry) if mesh is None else mesh.copy()
        logger.info(f"Running {problem.simulation_type} {problem.process_type} problem "
                    f"with {problem.material.name} on {mesh}.")
        result = _solve(problem, mesh, record, should_stop)
    except SolverError as e:
        logger.warning(f"Run ended with {e.__class__.__name__}: {e.message}")
        return e.with_record(record)
    logger.info(f"Run finished: max T = {result.metrics.max_temperature:.1f} K, "
                f"max von Mises = {result.metrics.max_von_mises_stress / 1e6:.3f} MPa.")
    return result
