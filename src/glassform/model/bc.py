"""
Boundary Conditions Data Model
==============================
Defines configuration structures for thermal (Dirichlet, Neumann, Robin)
and flow (prescribed velocity, traction, free surface) boundary conditions.
Each condition applies to all boundary edges carrying its ``tag``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Dict, Optional
import logging

from glassform.errors import ConfigurationError
from glassform.fea.pre.schedules import CoolingSchedule, schedule_from_dict

logger = logging.getLogger(__name__)


class ThermalBCType(StrEnum):
    DIRICHLET = "dirichlet"
    NEUMANN = "neumann"
    ROBIN = "robin"


class FlowBCType(StrEnum):
    VELOCITY = "velocity"
    TRACTION = "traction"
    FREE_SURFACE = "free_surface"


@dataclass
class ThermalBC(ABC):
    tag: str

    @property
    @abstractmethod
    def type(self) -> ThermalBCType:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {"tag": self.tag, "type": self.type.value}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> ThermalBC:
        """Factory method to deserialize into correct subclass."""
        try:
            bc_type = ThermalBCType(data.get("type"))
        except ValueError as e:
            raise ConfigurationError(f"Unknown thermal boundary condition type '{data.get('type')}'.") from e
        match bc_type:
            case ThermalBCType.DIRICHLET:
                return DirichletBC.from_dict(data)
            case ThermalBCType.NEUMANN:
                return NeumannBC(tag=data["tag"], flux=float(data["flux"]))
            case ThermalBCType.ROBIN:
                return RobinBC.from_dict(data)


@dataclass
class DirichletBC(ThermalBC):
    """Fixed temperature, constant or following a schedule."""
    temperature: float = 0.0
    schedule: Optional[CoolingSchedule] = None

    @property
    def type(self) -> ThermalBCType: return ThermalBCType.DIRICHLET

    def temperature_at(self, time: float) -> float:
        if self.schedule is not None:
            return float(self.schedule.get_temperature(time))
        return self.temperature

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["temperature"] = self.temperature
        d["schedule"] = None if self.schedule is None else self.schedule.to_dict()
        return d

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> DirichletBC:
        return DirichletBC(
            tag=data["tag"],
            temperature=float(data.get("temperature", 0.0)),
            schedule=schedule_from_dict(data.get("schedule")),
        )


@dataclass
class NeumannBC(ThermalBC):
    """Prescribed heat flux into the domain in W/m²."""
    flux: float = 0.0

    @property
    def type(self) -> ThermalBCType: return ThermalBCType.NEUMANN

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["flux"] = self.flux
        return d


@dataclass
class RobinBC(ThermalBC):
    """
    Convective and radiative exchange with an ambient:
    outflow ``h (T - T_amb) + eps sigma (T^4 - T_amb^4)``.
    """
    heat_transfer_coefficient: float = 0.0
    ambient_temperature: float = 0.0
    emissivity: float = 0.0
    schedule: Optional[CoolingSchedule] = None

    def __post_init__(self) -> None:
        if self.heat_transfer_coefficient < 0.0 or not 0.0 <= self.emissivity <= 1.0:
            raise ConfigurationError(
                f"Robin condition on '{self.tag}' needs h >= 0 and 0 <= emissivity <= 1."
            )

    @property
    def type(self) -> ThermalBCType: return ThermalBCType.ROBIN

    def ambient_at(self, time: float) -> float:
        if self.schedule is not None:
            return float(self.schedule.get_temperature(time))
        return self.ambient_temperature

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["heat_transfer_coefficient"] = self.heat_transfer_coefficient
        d["ambient_temperature"] = self.ambient_temperature
        d["emissivity"] = self.emissivity
        d["schedule"] = None if self.schedule is None else self.schedule.to_dict()
        return d

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> RobinBC:
        return RobinBC(
            tag=data["tag"],
            heat_transfer_coefficient=float(data.get("heat_transfer_coefficient", 0.0)),
            ambient_temperature=float(data.get("ambient_temperature", 0.0)),
            emissivity=float(data.get("emissivity", 0.0)),
            schedule=schedule_from_dict(data.get("schedule")),
        )


@dataclass
class FlowBC(ABC):
    tag: str

    @property
    @abstractmethod
    def type(self) -> FlowBCType:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {"tag": self.tag, "type": self.type.value}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> FlowBC:
        """Factory method to deserialize into correct subclass."""
        try:
            bc_type = FlowBCType(data.get("type"))
        except ValueError as e:
            raise ConfigurationError(f"Unknown flow boundary condition type '{data.get('type')}'.") from e
        match bc_type:
            case FlowBCType.VELOCITY:
                return VelocityBC(tag=data["tag"], v_r=data.get("v_r"), v_z=data.get("v_z"))
            case FlowBCType.TRACTION:
                return TractionBC(tag=data["tag"], t_r=float(data.get("t_r", 0.0)), t_z=float(data.get("t_z", 0.0)))
            case FlowBCType.FREE_SURFACE:
                return FreeSurfaceBC(tag=data["tag"], surface_tension=float(data.get("surface_tension", 0.0)))


@dataclass
class VelocityBC(FlowBC):
    """
    Prescribed velocity components; ``None`` leaves a component free
    (zero traction in that direction).
    """
    v_r: Optional[float] = None
    v_z: Optional[float] = None

    def __post_init__(self) -> None:
        if self.v_r is None and self.v_z is None:
            raise ConfigurationError(f"Velocity condition on '{self.tag}' prescribes no component.")

    @property
    def type(self) -> FlowBCType: return FlowBCType.VELOCITY

    @staticmethod
    def no_slip(tag: str) -> VelocityBC:
        return VelocityBC(tag=tag, v_r=0.0, v_z=0.0)

    @staticmethod
    def symmetry_axis(tag: str) -> VelocityBC:
        return VelocityBC(tag=tag, v_r=0.0)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["v_r"] = self.v_r
        d["v_z"] = self.v_z
        return d


@dataclass
class TractionBC(FlowBC):
    """Prescribed traction ``sigma . n`` in Pa; the default is stress-free."""
    t_r: float = 0.0
    t_z: float = 0.0

    @property
    def type(self) -> FlowBCType: return FlowBCType.TRACTION

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["t_r"] = self.t_r
        d["t_z"] = self.t_z
        return d


@dataclass
class FreeSurfaceBC(FlowBC):
    """
    Free surface moved by the ALE update. With ``surface_tension > 0`` the
    Young-Laplace jump loads the surface, otherwise it is stress-free.
    """
    surface_tension: float = 0.0

    @property
    def type(self) -> FlowBCType: return FlowBCType.FREE_SURFACE

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["surface_tension"] = self.surface_tension
        return d
