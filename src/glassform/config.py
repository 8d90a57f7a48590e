"""
Solver Configuration & Physical Constants
=========================================
This module is the central registry for tunable solver settings and the
physical constants shared by the solvers.

Why is this file needed?
------------------------
1. Tunables: Tolerances, iteration caps and step-control factors are
   configurable defaults rather than constants hidden in solver loops.
   Every run carries one ``SolverOptions`` instance.
2. Constants: Stefan-Boltzmann, gravity and room temperature used to live
   next to the code that needed them; one definition avoids drift.

Exports:
    STEFAN_BOLTZMANN (float): W m^(-2) K^(-4)
    GRAVITY (float): m s^(-2)
    ROOM_TEMPERATURE (float): K, reference temperature of the stress-free state
    SolverOptions: dataclass of numerical settings.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict, fields
from typing import Any, Dict, Optional

from glassform.errors import ConfigurationError

STEFAN_BOLTZMANN = 5.670374419e-8  # W m^(-2) K^(-4)
GRAVITY = 9.81  # m s^(-2)
ROOM_TEMPERATURE = 293.15  # K


@dataclass
class SolverOptions:
    """
    Numerical settings of one run.

    Attributes:
        thermal_tolerance: Newton stop criterion ``||dT||_inf`` in K.
        thermal_max_iterations: Newton iteration cap per solve (or per time step).
        outer_tolerance_temperature: Picard stop criterion on temperature in K.
        outer_tolerance_velocity: Picard stop criterion on the relative velocity change.
        outer_max_iterations: Picard iteration cap.
        time_step: Initial transient time step in s.
        max_time_step: Upper bound of the adaptive time step in s.
        min_time_step: Time step below which the transient solve gives up, in s.
        time_step_growth: Growth factor of the adaptive time step.
        time_step_growth_after: Consecutive single-iteration steps required before growing.
        relaxation_substep_ratio: Sub-step whenever ``dt > tau / ratio``.
        relaxation_max_substeps: Cap on sub-steps per cooling interval.
        ale_time_step: Pseudo time step of free-surface nodes without axial transport; ``None`` picks one from ``ale_courant``.
        ale_courant: Fraction of its own element size a surface node may move per update.
        ale_relaxation: Under-relaxation factor of the free-surface update, in (0, 1].
        streamline_diffusion: Stabilize thermal advection.
        quadrature_points: Triangle rule used for the domain integrals (3, 6 or 7).
        cooling_steps: Samples of the cooling schedule used by the relaxation integrator.
        refinement_passes: Gradient-driven refinement passes after a thermal solve.
        refinement_fraction: Elements whose indicator exceeds this fraction of the maximum are refined.
        singular_tolerance: Relative residual of a direct solve above which the system counts as singular.
    """
    thermal_tolerance: float = 1e-3
    thermal_max_iterations: int = 30
    outer_tolerance_temperature: float = 1e-2
    outer_tolerance_velocity: float = 1e-4
    outer_max_iterations: int = 20
    time_step: float = 1.0
    max_time_step: float = 60.0
    min_time_step: float = 1e-6
    time_step_growth: float = 1.5
    time_step_growth_after: int = 3
    relaxation_substep_ratio: float = 5.0
    relaxation_max_substeps: int = 10_000
    ale_time_step: Optional[float] = None
    ale_courant: float = 0.5
    ale_relaxation: float = 0.8
    streamline_diffusion: bool = True
    quadrature_points: int = 7
    cooling_steps: int = 200
    refinement_passes: int = 0
    refinement_fraction: float = 0.5
    singular_tolerance: float = 1e-6

    def __post_init__(self) -> None:
        if self.thermal_tolerance <= 0 or self.outer_tolerance_temperature <= 0 or self.outer_tolerance_velocity <= 0:
            raise ConfigurationError("Tolerances must be positive.")
        if self.thermal_max_iterations < 1 or self.outer_max_iterations < 1:
            raise ConfigurationError("Iteration caps must be at least 1.")
        if not 0 < self.min_time_step <= self.time_step <= self.max_time_step:
            raise ConfigurationError(
                f"Time steps must satisfy 0 < min ({self.min_time_step}) <= initial ({self.time_step}) "
                f"<= max ({self.max_time_step})."
            )
        if self.time_step_growth < 1.0:
            raise ConfigurationError("time_step_growth must be >= 1.")
        if self.relaxation_substep_ratio <= 0 or self.relaxation_max_substeps < 1:
            raise ConfigurationError("Relaxation sub-stepping settings must be positive.")
        if self.quadrature_points not in (3, 6, 7):
            raise ConfigurationError(f"quadrature_points must be 3, 6 or 7, got {self.quadrature_points}.")
        if self.ale_time_step is not None and self.ale_time_step <= 0:
            raise ConfigurationError("ale_time_step must be positive.")
        if self.ale_courant <= 0 or not 0 < self.ale_relaxation <= 1:
            raise ConfigurationError("ale_courant must be positive and ale_relaxation in (0, 1].")
        if self.cooling_steps < 1:
            raise ConfigurationError("cooling_steps must be at least 1.")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> SolverOptions:
        """Build options from a plain mapping, rejecting unknown keys."""
        if not data:
            return SolverOptions()
        known = {f.name for f in fields(SolverOptions)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown solver options: {', '.join(unknown)}")
        return SolverOptions(**data)
