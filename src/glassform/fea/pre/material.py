from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Union

import numpy as np

from glassform.config import STEFAN_BOLTZMANN

if TYPE_CHECKING:
    import numpy.typing as npt
    from glassform.model.materials import MaterialParameters

ArrayLike = Union[float, "npt.NDArray[np.float64]"]

VISCOSITY_CEILING = 1e20  # Pa s
LOG10_VISCOSITY_CEILING = 20.0
RELAXATION_TIME_CEILING = 1e20  # s
LOG10_RELAXATION_TIME_CEILING = 20.0
CLAMP_MARGIN = 1.0  # K above T0 below which the VFT form is not evaluated

_LN10 = math.log(10.0)


def _out(value: npt.NDArray[np.float64], like: ArrayLike) -> ArrayLike:
    """Return a float for scalar input, the array otherwise."""
    if np.ndim(like) == 0:
        return float(value)
    return value


class Material(ABC):
    """Abstract base class for materials used by the thermal and flow solvers."""

    def __init__(self, name: str) -> None:
        """
        Args:
            name: The name of the material.
        """
        self.name = name

    @abstractmethod
    def effective_conductivity(self, temperature_K: ArrayLike) -> ArrayLike:
        """Effective thermal conductivity in W/(m·K)."""
        pass

    @abstractmethod
    def d_effective_conductivity_dT(self, temperature_K: ArrayLike) -> ArrayLike:
        """Derivative of the effective conductivity in W/(m·K²)."""
        pass

    @abstractmethod
    def density(self, temperature_K: ArrayLike) -> ArrayLike:
        """Density in kg/m³."""
        pass

    @abstractmethod
    def specific_heat_capacity(self, temperature_K: ArrayLike) -> ArrayLike:
        """Specific heat capacity in J/(kg·K)."""
        pass

    def volumetric_heat_capacity(self, temperature_K: ArrayLike) -> ArrayLike:
        """Calculate the volumetric heat capacity at a given temperature in Kelvin.

        Args:
            temperature_K: Temperature in Kelvin.

        Returns:
            Volumetric heat capacity in J/(m³·K).
        """
        return self.density(temperature_K) * self.specific_heat_capacity(temperature_K)


class Glass(Material):
    """
    Temperature-dependent properties of a glass melt.

    Wraps an immutable ``MaterialParameters`` record. Every method is a pure,
    vectorized function of temperature (and fictive temperature for the
    relaxation time); nothing is cached between calls.

    Below ``T0 + 1 K`` the VFT law is not evaluated and the viscosity ceiling
    of 1e20 Pa s is returned. Above it the VFT value saturates at the same
    ceiling, so the viscosity is strictly decreasing wherever it is below
    the ceiling and never overflows.
    """

    def __init__(self, parameters: MaterialParameters) -> None:
        super().__init__(name=parameters.name)
        self.parameters = parameters

        p = parameters
        self._log10_eta_inf = math.log10(p.viscosity_infinity)
        # largest admissible A/(T - T0) before the ceiling is reached
        self._max_exponent = math.log(VISCOSITY_CEILING / p.viscosity_infinity)
        self._max_tau_exponent = math.log(RELAXATION_TIME_CEILING / p.tnm_tau0)
        self._k_rad_factor = 16.0 * STEFAN_BOLTZMANN * p.refractive_index ** 2 / (3.0 * p.absorption_coefficient)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}')"

    def _distance_to_t0(self, temperature_K: ArrayLike) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.bool_]]:
        dT = np.asarray(temperature_K, dtype=np.float64) - self.parameters.vft_t0
        clamped = dT <= CLAMP_MARGIN
        return np.where(clamped, 1.0, dT), clamped

    # --- VISCOSITY ---

    def viscosity(self, temperature_K: ArrayLike) -> ArrayLike:
        """
        VFT viscosity ``eta_inf * exp(A / (T - T0))`` in Pa s.

        Args:
            temperature_K: Temperature in Kelvin.

        Returns:
            Viscosity, clamped to ``VISCOSITY_CEILING``.
        """
        p = self.parameters
        dT, clamped = self._distance_to_t0(temperature_K)
        exponent = np.minimum(p.vft_a / dT, self._max_exponent)
        eta = np.minimum(p.viscosity_infinity * np.exp(exponent), VISCOSITY_CEILING)
        return _out(np.where(clamped, VISCOSITY_CEILING, eta), temperature_K)

    def log10_viscosity(self, temperature_K: ArrayLike) -> ArrayLike:
        """
        Decadic logarithm of the viscosity, computed without forming ``eta``.

        ``log10(eta_inf) + A / ((T - T0) ln 10)``, saturated at 20 like the
        linear form so both stay consistent at the ceiling.
        """
        p = self.parameters
        dT, clamped = self._distance_to_t0(temperature_K)
        value = np.minimum(self._log10_eta_inf + p.vft_a / (dT * _LN10), LOG10_VISCOSITY_CEILING)
        return _out(np.where(clamped, LOG10_VISCOSITY_CEILING, value), temperature_K)

    def d_viscosity_dT(self, temperature_K: ArrayLike) -> ArrayLike:
        """
        Analytic derivative ``-eta A / (T - T0)^2``; zero wherever the ceiling is active.
        """
        p = self.parameters
        dT, clamped = self._distance_to_t0(temperature_K)
        saturated = clamped | (p.vft_a / dT >= self._max_exponent)
        eta = p.viscosity_infinity * np.exp(np.minimum(p.vft_a / dT, self._max_exponent))
        return _out(np.where(saturated, 0.0, -eta * p.vft_a / dT ** 2), temperature_K)

    # --- CONDUCTIVITY ---

    def radiative_conductivity(self, temperature_K: ArrayLike) -> ArrayLike:
        """Rosseland conductivity ``16 sigma n^2 T^3 / (3 alpha)`` in W/(m·K)."""
        T = np.asarray(temperature_K, dtype=np.float64)
        return _out(self._k_rad_factor * T ** 3, temperature_K)

    def d_radiative_conductivity_dT(self, temperature_K: ArrayLike) -> ArrayLike:
        """``48 sigma n^2 T^2 / (3 alpha)``."""
        T = np.asarray(temperature_K, dtype=np.float64)
        return _out(3.0 * self._k_rad_factor * T ** 2, temperature_K)

    def effective_conductivity(self, temperature_K: ArrayLike) -> ArrayLike:
        """Phonon plus Rosseland conductivity."""
        T = np.asarray(temperature_K, dtype=np.float64)
        return _out(self.parameters.conductivity + self._k_rad_factor * T ** 3, temperature_K)

    def d_effective_conductivity_dT(self, temperature_K: ArrayLike) -> ArrayLike:
        return self.d_radiative_conductivity_dT(temperature_K)

    # --- CAPACITY ---

    def density(self, temperature_K: ArrayLike) -> ArrayLike:
        return _out(np.full(np.shape(temperature_K), self.parameters.density), temperature_K)

    def specific_heat_capacity(self, temperature_K: ArrayLike) -> ArrayLike:
        return _out(np.full(np.shape(temperature_K), self.parameters.specific_heat), temperature_K)

    # --- STRUCTURAL RELAXATION ---

    def relaxation_time(self, temperature_K: ArrayLike, fictive_temperature_K: ArrayLike) -> ArrayLike:
        """
        TNM relaxation time ``tau0 exp(x A/(T_f - T0) + (1 - x) A/(T - T0))`` in s.

        Args:
            temperature_K: Temperature in Kelvin.
            fictive_temperature_K: Fictive temperature in Kelvin.

        Returns:
            Relaxation time, clamped to ``RELAXATION_TIME_CEILING`` when either
            temperature is within 1 K of T0 or the exponent would exceed it.
        """
        p = self.parameters
        dT, clamped_t = self._distance_to_t0(temperature_K)
        dTf, clamped_f = self._distance_to_t0(fictive_temperature_K)
        exponent = p.tnm_x * p.vft_a / dTf + (1.0 - p.tnm_x) * p.vft_a / dT
        tau = np.minimum(p.tnm_tau0 * np.exp(np.minimum(exponent, self._max_tau_exponent)), RELAXATION_TIME_CEILING)
        tau = np.where(clamped_t | clamped_f, RELAXATION_TIME_CEILING, tau)
        shape_source = temperature_K if np.ndim(temperature_K) else fictive_temperature_K
        return _out(tau, shape_source)

    def log10_relaxation_time(self, temperature_K: ArrayLike, fictive_temperature_K: ArrayLike) -> ArrayLike:
        p = self.parameters
        dT, clamped_t = self._distance_to_t0(temperature_K)
        dTf, clamped_f = self._distance_to_t0(fictive_temperature_K)
        exponent = p.tnm_x * p.vft_a / dTf + (1.0 - p.tnm_x) * p.vft_a / dT
        value = np.minimum(math.log10(p.tnm_tau0) + exponent / _LN10, LOG10_RELAXATION_TIME_CEILING)
        value = np.where(clamped_t | clamped_f, LOG10_RELAXATION_TIME_CEILING, value)
        shape_source = temperature_K if np.ndim(temperature_K) else fictive_temperature_K
        return _out(value, shape_source)

    # --- THERMO-ELASTIC ---

    def stress_factor(self) -> float:
        """``E / (1 - nu) * alpha`` in Pa/K, the biaxial thermal stress per Kelvin of frozen-in mismatch."""
        p = self.parameters
        return p.youngs_modulus / (1.0 - p.poisson_ratio) * p.thermal_expansion
