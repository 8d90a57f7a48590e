"""
Problem Definition (Data Model)
===============================
This module defines the input of one solver run.

Why is this file needed?
------------------------
1. Contract: ``glassform.runner.run`` accepts either a ``Problem`` or its
   plain-dict form ``{geometry, material, process_parameters,
   simulation_type, solver_options}``. The dict form is what job queues
   and parameter sweeps hand over.
2. Validation: Everything a run needs is checked here, before a mesh is
   generated, so configuration mistakes surface as ``ConfigurationError``.

Classes:
    RectangleParams, CylinderParams, NeckDownParams: Canonical geometry parameters.
    GeometrySpec: Geometry kind plus parameters (or a gmsh file).
    ProcessParameters: Process kind, operating point and boundary conditions.
    Problem: The complete run definition.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import StrEnum
from typing import Any, Dict, List, Optional, Union
import logging

from glassform.config import SolverOptions, ROOM_TEMPERATURE
from glassform.errors import ConfigurationError
from glassform.fea.pre.schedules import CoolingSchedule, schedule_from_dict
from glassform.model.bc import ThermalBC, FlowBC
from glassform.model.materials import MaterialParameters

logger = logging.getLogger(__name__)


class ProcessType(StrEnum):
    FIBER_DRAW = "fiber_draw"
    ANNEALING = "annealing"
    FORMING = "forming"


class SimulationType(StrEnum):
    STEADY = "steady"
    TRANSIENT = "transient"


class GeometryKind(StrEnum):
    RECTANGLE = "rectangle"
    CYLINDER = "cylinder"
    NECK_DOWN = "neck_down"
    FILE = "file"


@dataclass
class RectangleParams:
    """Axisymmetric block ``r_min <= r <= r_min + width``, ``0 <= z <= height``."""
    width: float = 0.01
    height: float = 0.01
    r_min: float = 0.0
    n_radial: int = 4
    n_axial: int = 4


@dataclass
class CylinderParams:
    """Hollow (or solid, ``inner_radius = 0``) cylinder of the given height."""
    inner_radius: float = 0.0
    outer_radius: float = 0.05
    height: float = 0.01
    n_radial: int = 8
    n_axial: int = 2


@dataclass
class NeckDownParams:
    """
    Preform-to-fiber neck-down region. The free surface follows the
    slender-draw profile ``R(z) = R0 (R1 / R0)^(z / L)``.
    """
    preform_radius: float = 0.005
    fiber_radius: float = 62.5e-6
    length: float = 0.05
    n_radial: int = 4
    n_axial: int = 16


@dataclass
class FileParams:
    """Second-order gmsh mesh with physical names as boundary tags."""
    path: str = ""


GeometryParams = Union[RectangleParams, CylinderParams, NeckDownParams, FileParams]

_PARAMS_BY_KIND = {
    GeometryKind.RECTANGLE: RectangleParams,
    GeometryKind.CYLINDER: CylinderParams,
    GeometryKind.NECK_DOWN: NeckDownParams,
    GeometryKind.FILE: FileParams,
}


@dataclass
class GeometrySpec:
    kind: GeometryKind
    parameters: GeometryParams

    def __post_init__(self) -> None:
        expected = _PARAMS_BY_KIND[self.kind]
        if not isinstance(self.parameters, expected):
            raise ConfigurationError(
                f"Geometry '{self.kind}' expects {expected.__name__}, got {type(self.parameters).__name__}."
            )
        p = self.parameters
        if isinstance(p, FileParams):
            if not p.path:
                raise ConfigurationError("File geometry needs a path.")
            return
        if p.n_radial < 1 or p.n_axial < 1:
            raise ConfigurationError("Structured meshes need at least one element per direction.")
        if isinstance(p, RectangleParams) and (p.width <= 0 or p.height <= 0 or p.r_min < 0):
            raise ConfigurationError("Rectangle needs positive width/height and r_min >= 0.")
        if isinstance(p, CylinderParams) and not (0 <= p.inner_radius < p.outer_radius and p.height > 0):
            raise ConfigurationError("Cylinder needs 0 <= inner_radius < outer_radius and positive height.")
        if isinstance(p, NeckDownParams) and not (0 < p.fiber_radius <= p.preform_radius and p.length > 0):
            raise ConfigurationError("Neck-down needs 0 < fiber_radius <= preform_radius and positive length.")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "parameters": asdict(self.parameters)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> GeometrySpec:
        try:
            kind = GeometryKind(data.get("kind"))
        except ValueError as e:
            raise ConfigurationError(f"Unknown geometry kind '{data.get('kind')}'.") from e
        try:
            parameters = _PARAMS_BY_KIND[kind](**data.get("parameters", {}))
        except TypeError as e:
            raise ConfigurationError(f"Invalid parameters for geometry '{kind}': {e}") from e
        return GeometrySpec(kind=kind, parameters=parameters)


@dataclass
class ProcessParameters:
    """
    Operating point of the process.

    Empty boundary-condition lists are filled with process defaults by the
    runner (see ``glassform.runner``).
    """
    process_type: ProcessType
    initial_temperature: float = 1400.0  # K
    furnace_temperature: Optional[float] = None  # K, defaults to initial_temperature
    heat_transfer_coefficient: float = 20.0  # W/(m²·K)
    emissivity: float = 0.9
    draw_speed: float = 1.0  # m/s
    preform_diameter: float = 0.01  # m
    fiber_diameter: float = 125e-6  # m
    surface_tension: float = 0.0  # N/m
    gravity: bool = True
    cooling_rate: float = 1.0  # K/s, default cooling path after a steady solve
    duration: float = 0.0  # s, transient simulations
    room_temperature: float = ROOM_TEMPERATURE
    cooling_schedule: Optional[CoolingSchedule] = None
    thermal_bcs: List[ThermalBC] = field(default_factory=list)
    flow_bcs: List[FlowBC] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.initial_temperature <= 0.0:
            raise ConfigurationError("initial_temperature must be positive (K).")
        if self.cooling_rate <= 0.0:
            raise ConfigurationError("cooling_rate must be positive.")
        if self.duration < 0.0:
            raise ConfigurationError("duration must be >= 0.")
        if self.process_type == ProcessType.FIBER_DRAW:
            if self.draw_speed <= 0.0:
                raise ConfigurationError("draw_speed must be positive for fiber drawing.")
            if not 0.0 < self.fiber_diameter <= self.preform_diameter:
                raise ConfigurationError("Fiber drawing needs 0 < fiber_diameter <= preform_diameter.")

    @property
    def ambient_temperature(self) -> float:
        if self.furnace_temperature is None:
            return self.initial_temperature
        return self.furnace_temperature

    @property
    def feed_speed(self) -> float:
        """Preform feed speed required by mass conservation: ``v_draw (d_fiber / d_preform)^2``."""
        return self.draw_speed * (self.fiber_diameter / self.preform_diameter) ** 2

    def to_dict(self) -> Dict[str, Any]:
        d = {
            key: getattr(self, key)
            for key in (
                "initial_temperature", "furnace_temperature", "heat_transfer_coefficient", "emissivity",
                "draw_speed", "preform_diameter", "fiber_diameter", "surface_tension", "gravity",
                "cooling_rate", "duration", "room_temperature",
            )
        }
        d["process_type"] = self.process_type.value
        d["cooling_schedule"] = None if self.cooling_schedule is None else self.cooling_schedule.to_dict()
        d["thermal_bcs"] = [bc.to_dict() for bc in self.thermal_bcs]
        d["flow_bcs"] = [bc.to_dict() for bc in self.flow_bcs]
        return d

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> ProcessParameters:
        data = dict(data)
        try:
            process_type = ProcessType(data.pop("process_type"))
        except (KeyError, ValueError) as e:
            raise ConfigurationError(f"Missing or unknown process_type: {e}") from e
        schedule = schedule_from_dict(data.pop("cooling_schedule", None))
        thermal_bcs = [ThermalBC.from_dict(bc) for bc in data.pop("thermal_bcs", [])]
        flow_bcs = [FlowBC.from_dict(bc) for bc in data.pop("flow_bcs", [])]
        try:
            return ProcessParameters(
                process_type=process_type,
                cooling_schedule=schedule,
                thermal_bcs=thermal_bcs,
                flow_bcs=flow_bcs,
                **data,
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid process parameters: {e}") from e


@dataclass
class Problem:
    geometry: GeometrySpec
    material: MaterialParameters
    process_parameters: ProcessParameters
    simulation_type: SimulationType = SimulationType.STEADY
    solver_options: SolverOptions = field(default_factory=SolverOptions)

    def __post_init__(self) -> None:
        self.simulation_type = SimulationType(self.simulation_type)
        if self.simulation_type == SimulationType.TRANSIENT:
            if self.process_parameters.process_type != ProcessType.ANNEALING:
                raise ConfigurationError(
                    "Transient simulations cover the thermal-only annealing process; "
                    f"'{self.process_parameters.process_type}' is solved as a steady coupled problem."
                )
            if self.process_parameters.duration <= 0.0:
                raise ConfigurationError("Transient simulations need a positive duration.")

    @property
    def process_type(self) -> ProcessType:
        return self.process_parameters.process_type

    @property
    def solves_flow(self) -> bool:
        return self.process_type in (ProcessType.FIBER_DRAW, ProcessType.FORMING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "geometry": self.geometry.to_dict(),
            "material": self.material.to_dict(),
            "process_parameters": self.process_parameters.to_dict(),
            "simulation_type": self.simulation_type.value,
            "solver_options": self.solver_options.to_dict(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Problem:
        missing = [key for key in ("geometry", "material", "process_parameters") if key not in data]
        if missing:
            raise ConfigurationError(f"Problem definition lacks: {', '.join(missing)}")
        try:
            simulation_type = SimulationType(data.get("simulation_type", SimulationType.STEADY))
        except ValueError as e:
            raise ConfigurationError(f"Unknown simulation_type '{data.get('simulation_type')}'.") from e
        material = data["material"]
        if isinstance(material, str):
            material = {"preset": material}
        return Problem(
            geometry=GeometrySpec.from_dict(data["geometry"]),
            material=MaterialParameters.from_dict(material),
            process_parameters=ProcessParameters.from_dict(data["process_parameters"]),
            simulation_type=simulation_type,
            solver_options=SolverOptions.from_dict(data.get("solver_options")),
        )
