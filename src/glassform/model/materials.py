"""
Material Library Management
===========================
Defines the immutable parameter record of a glass composition and a small
library of presets. These records hold the PARAMETERS needed to initialize
the FEA material class ``glassform.fea.pre.material.Glass``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from glassform.errors import ConfigurationError

logger = logging.getLogger(__name__)

LN10 = math.log(10.0)


@dataclass(frozen=True, kw_only=True)
class MaterialParameters:
    """
    Constants of one glass composition.

    The VFT triple is used as ``eta = viscosity_infinity * exp(vft_a / (T - vft_t0))``,
    so ``vft_a`` is in Kelvin on the natural-log scale.
    """
    name: str
    viscosity_infinity: float  # Pa s
    vft_a: float  # K
    vft_t0: float  # K
    density: float  # kg/m³
    conductivity: float  # W/(m·K), phonon part only
    specific_heat: float  # J/(kg·K)
    thermal_expansion: float  # 1/K
    youngs_modulus: float  # Pa
    poisson_ratio: float  # -
    absorption_coefficient: float  # 1/m
    refractive_index: float  # -
    tnm_tau0: float  # s
    tnm_x: float  # -
    description: str = ""

    def __post_init__(self) -> None:
        positive = (
            "viscosity_infinity", "vft_a", "density", "conductivity", "specific_heat",
            "youngs_modulus", "absorption_coefficient", "refractive_index", "tnm_tau0",
        )
        for attr in positive:
            value = getattr(self, attr)
            if not math.isfinite(value) or value <= 0.0:
                raise ConfigurationError(f"Material '{self.name}': {attr} must be positive and finite, got {value}.")
        if not math.isfinite(self.vft_t0) or self.vft_t0 < 0.0:
            raise ConfigurationError(f"Material '{self.name}': vft_t0 must be >= 0 K, got {self.vft_t0}.")
        if not 0.0 <= self.poisson_ratio < 0.5:
            raise ConfigurationError(f"Material '{self.name}': poisson_ratio must lie in [0, 0.5).")
        if not 0.0 <= self.tnm_x <= 1.0:
            raise ConfigurationError(f"Material '{self.name}': tnm_x must lie in [0, 1].")
        if not math.isfinite(self.thermal_expansion):
            raise ConfigurationError(f"Material '{self.name}': thermal_expansion must be finite.")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> MaterialParameters:
        """Build parameters from a mapping; a ``preset`` key starts from a library entry."""
        data = dict(data)
        preset = data.pop("preset", None)
        if preset is not None:
            base = MaterialLibrary().get_material(preset)
            if base is None:
                raise ConfigurationError(f"Unknown material preset '{preset}'.")
            merged = base.to_dict()
            merged.update(data)
            data = merged
        try:
            return MaterialParameters(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid material definition: {e}") from e


def vft_from_log10(
    log10_viscosity_infinity: float,
    b: float,
    t0: float,
) -> tuple[float, float, float]:
    """
    Convert the decadic Fulcher form ``log10 eta = a + b / (T - T0)``
    into the ``(eta_inf, A, T0)`` triple used by ``MaterialParameters``.
    """
    return 10.0 ** log10_viscosity_infinity, b * LN10, t0


def _preset(name: str, description: str, log10_eta_inf: float, b: float, t0: float, **props: float) -> MaterialParameters:
    eta_inf, a, t0 = vft_from_log10(log10_eta_inf, b, t0)
    # Maxwell estimate tau0 = eta_inf / G keeps tau and eta on the same VFT curve
    shear = props["youngs_modulus"] / (2.0 * (1.0 + props["poisson_ratio"]))
    return MaterialParameters(
        name=name,
        description=description,
        viscosity_infinity=eta_inf,
        vft_a=a,
        vft_t0=t0,
        tnm_tau0=eta_inf / shear,
        **props,
    )


class MaterialLibrary:
    """
    Manages the built-in glass compositions and any user additions.
    """
    def __init__(self) -> None:
        self.materials: Dict[str, MaterialParameters] = {}
        self._init_defaults()

    def _init_defaults(self) -> None:
        soda_lime = _preset(
            "soda-lime",
            "Float / container soda-lime-silica glass",
            log10_eta_inf=-2.0, b=4360.0, t0=410.0,
            density=2500.0, conductivity=1.0, specific_heat=1200.0,
            thermal_expansion=9.0e-6, youngs_modulus=70e9, poisson_ratio=0.22,
            absorption_coefficient=300.0, refractive_index=1.5, tnm_x=0.7,
        )
        borosilicate = _preset(
            "borosilicate",
            "Low-expansion borosilicate laboratory glass",
            log10_eta_inf=-1.5, b=4000.0, t0=525.0,
            density=2230.0, conductivity=1.14, specific_heat=830.0,
            thermal_expansion=3.3e-6, youngs_modulus=64e9, poisson_ratio=0.2,
            absorption_coefficient=400.0, refractive_index=1.47, tnm_x=0.65,
        )
        fused_silica = _preset(
            "fused-silica",
            "Synthetic fused silica (optical fiber preform)",
            log10_eta_inf=-6.5, b=27300.0, t0=0.0,
            density=2200.0, conductivity=1.38, specific_heat=1000.0,
            thermal_expansion=0.55e-6, youngs_modulus=72e9, poisson_ratio=0.17,
            absorption_coefficient=100.0, refractive_index=1.46, tnm_x=0.6,
        )
        for material in (soda_lime, borosilicate, fused_silica):
            self.materials[material.name] = material

    def add_material(self, material: MaterialParameters) -> None:
        """Add or update a material in the library."""
        logger.debug(f"Registering material '{material.name}'.")
        self.materials[material.name] = material

    def get_material(self, name: str) -> Optional[MaterialParameters]:
        """Retrieve a material by name."""
        return self.materials.get(name)

    def get_names(self) -> List[str]:
        """List all material names in the library."""
        return list(self.materials.keys())
