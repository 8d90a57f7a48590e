from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt

from glassform.config import ROOM_TEMPERATURE
from glassform.errors import ConfigurationError
from glassform.utils import kelvin_to_celsius

if TYPE_CHECKING:
    import numpy.typing as npt


class CoolingSchedule(ABC):
    """
    Abstract base class for prescribed ambient temperature histories.

    Used as time-dependent ambient or wall temperature by the thermal
    solver and as the cooling path of the structural-relaxation integrator.
    """
    NAME: str = "Cooling Schedule"

    @abstractmethod
    def get_temperature(self, time: float | npt.NDArray[np.float64]) -> float | npt.NDArray[np.float64]:
        """
        Get the temperature at a given time.

        Args:
            time: Time in seconds.

        Returns:
            Temperature in Kelvin.
        """
        pass

    @property
    @abstractmethod
    def duration(self) -> float:
        """Time in seconds after which the temperature no longer changes."""
        pass

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    def plot(self, show: bool = True) -> plt.Figure:
        """
        Plot the schedule over its duration.
        """
        end = self.duration if self.duration > 0 else 1.0
        times = np.linspace(0.0, end, 500)
        temperatures = np.asarray(self.get_temperature(times), dtype=np.float64)

        plt.rcParams["figure.constrained_layout.use"] = True
        fig = plt.figure(figsize=(7, 5))

        plt.plot(times / 60, kelvin_to_celsius(temperatures), 'b', lw=2)

        plt.grid(visible=True, which='major', axis='both', linestyle='-', color='gray', lw=0.5)
        plt.minorticks_on()
        plt.grid(visible=True, which='minor', axis='both', linestyle=':', color='gray', lw=0.5)

        plt.title(f"{self.NAME}")
        plt.xlabel("Time (minutes)")
        plt.ylabel("Temperature (°C)")
        if show:
            plt.show()
        return fig


class ConstantTemperature(CoolingSchedule):
    """Holds one temperature forever."""
    NAME = "Constant temperature"

    def __init__(self, temperature: float) -> None:
        self.temperature = float(temperature)

    def get_temperature(self, time: float | npt.NDArray[np.float64]) -> float | npt.NDArray[np.float64]:
        if np.ndim(time) == 0:
            return self.temperature
        return np.full(np.shape(time), self.temperature)

    @property
    def duration(self) -> float:
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "constant", "temperature": self.temperature}


class LinearCoolingSchedule(CoolingSchedule):
    """
    Cools at a constant rate from ``start_temperature`` to ``end_temperature``
    and holds the end temperature afterwards.
    """
    NAME = "Linear cooling"

    def __init__(self, start_temperature: float, rate: float, end_temperature: float = ROOM_TEMPERATURE) -> None:
        """
        Args:
            start_temperature: Temperature at t = 0 in K.
            rate: Cooling rate in K/s, positive.
            end_temperature: Final temperature in K.
        """
        if rate <= 0.0:
            raise ConfigurationError(f"Cooling rate must be positive, got {rate}.")
        self.start_temperature = float(start_temperature)
        self.end_temperature = float(end_temperature)
        self.rate = float(rate)

    def get_temperature(self, time: float | npt.NDArray[np.float64]) -> float | npt.NDArray[np.float64]:
        value = np.maximum(self.start_temperature - self.rate * np.asarray(time, dtype=np.float64), self.end_temperature)
        if self.end_temperature > self.start_temperature:
            value = np.full(np.shape(time), self.start_temperature)
        if np.ndim(time) == 0:
            return float(value)
        return value

    @property
    def duration(self) -> float:
        return max(self.start_temperature - self.end_temperature, 0.0) / self.rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "linear",
            "start_temperature": self.start_temperature,
            "end_temperature": self.end_temperature,
            "rate": self.rate,
        }


class TabulatedSchedule(CoolingSchedule):
    """Piecewise-linear schedule through ``(time, temperature)`` points."""
    NAME = "Tabulated schedule"

    def __init__(self, times: Sequence[float], temperatures: Sequence[float]) -> None:
        times_arr = np.asarray(times, dtype=np.float64)
        temps_arr = np.asarray(temperatures, dtype=np.float64)
        if times_arr.ndim != 1 or times_arr.size == 0 or times_arr.shape != temps_arr.shape:
            raise ConfigurationError("Tabulated schedule needs equally long, non-empty time and temperature lists.")
        if np.any(np.diff(times_arr) <= 0.0):
            raise ConfigurationError("Tabulated schedule times must be strictly increasing.")
        self.times = times_arr
        self.temperatures = temps_arr

    def get_temperature(self, time: float | npt.NDArray[np.float64]) -> float | npt.NDArray[np.float64]:
        value = np.interp(time, self.times, self.temperatures)
        if np.ndim(time) == 0:
            return float(value)
        return value

    @property
    def duration(self) -> float:
        return float(self.times[-1])

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "tabulated", "times": self.times.tolist(), "temperatures": self.temperatures.tolist()}


def schedule_from_dict(data: Optional[Dict[str, Any]]) -> Optional[CoolingSchedule]:
    """Factory method to deserialize into the correct schedule class."""
    if data is None:
        return None
    kind = data.get("kind")
    match kind:
        case "constant":
            return ConstantTemperature(data["temperature"])
        case "linear":
            return LinearCoolingSchedule(
                start_temperature=data["start_temperature"],
                rate=data["rate"],
                end_temperature=data.get("end_temperature", ROOM_TEMPERATURE),
            )
        case "tabulated":
            return TabulatedSchedule(data["times"], data["temperatures"])
        case _:
            raise ConfigurationError(f"Unknown cooling schedule kind '{kind}'.")
