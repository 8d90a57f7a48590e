from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Optional

import numpy as np

from glassform.config import ROOM_TEMPERATURE, SolverOptions
from glassform.errors import ConfigurationError

if TYPE_CHECKING:
    import numpy.typing as npt
    from glassform.fea.pre.material import Glass
    from glassform.fea.pre.schedules import CoolingSchedule

logger = logging.getLogger(__name__)

# dt / tau above which an interval is treated as relaxed to equilibrium
EQUILIBRIUM_RATIO = 50.0


@dataclass(frozen=True)
class RelaxationResult:
    fictive_temperature: npt.NDArray[np.float64]  # (N,) in K
    residual_stress: npt.NDArray[np.float64]  # (N,) in Pa
    von_mises_stress: npt.NDArray[np.float64]  # (N,) in Pa
    substeps: int


def cooling_path(
    temperature: npt.NDArray[np.float64],
    schedule: CoolingSchedule,
    n_samples: int,
) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Node temperatures along a cooling schedule.

    Each node holds its own temperature until the schedule falls below it,
    then follows the schedule: ``T_i(t) = min(T_i, S(t))``.

    Returns:
        ``times`` (S,) and ``temperatures`` (S, N).
    """
    end = schedule.duration if schedule.duration > 0 else 1.0
    times = np.linspace(0.0, end, n_samples + 1)
    ambient = np.asarray(schedule.get_temperature(times), dtype=np.float64)
    temperatures = np.minimum(np.asarray(temperature, dtype=np.float64)[None, :], ambient[:, None])
    return times, temperatures


class StructuralRelaxation:
    """
    Tool-Narayanaswamy-Moynihan integrator for the fictive temperature.

    Integrates ``dT_f/dt = -(T_f - T) / tau(T, T_f)`` along a temperature
    history. Each interval is split into sub-steps no longer than
    ``tau / relaxation_substep_ratio`` (capped at ``relaxation_max_substeps``),
    and every sub-step applies the exact exponential decay for frozen ``tau``,
    which stays bounded when the cap is reached.
    """

    def __init__(
        self,
        glass: Glass,
        options: Optional[SolverOptions] = None,
        room_temperature: float = ROOM_TEMPERATURE,
    ) -> None:
        self.glass = glass
        self.options = options or SolverOptions()
        self.room_temperature = room_temperature

    def integrate(
        self,
        times: npt.NDArray[np.float64],
        temperatures: npt.NDArray[np.float64],
        initial_fictive_temperature: Optional[npt.NDArray[np.float64]] = None,
    ) -> tuple[npt.NDArray[np.float64], int]:
        """
        Fictive temperature at the end of the history.

        Args:
            times: (S,) increasing sample times in s.
            temperatures: (S, N) node temperatures at those times in K.
            initial_fictive_temperature: (N,) start value; equilibrium with the first sample if omitted.

        Returns:
            The fictive temperature (N,) and the total number of sub-steps taken.

        Raises:
            ConfigurationError: If the history is malformed.
        """
        times = np.asarray(times, dtype=np.float64)
        temperatures = np.atleast_2d(np.asarray(temperatures, dtype=np.float64))
        if times.ndim != 1 or temperatures.shape[0] != times.size:
            raise ConfigurationError("Temperature history must have one row per sample time.")
        if np.any(np.diff(times) < 0.0):
            raise ConfigurationError("Sample times of a temperature history must be increasing.")

        if initial_fictive_temperature is None:
            tf = temperatures[0].copy()
        else:
            tf = np.array(initial_fictive_temperature, dtype=np.float64)

        ratio = self.options.relaxation_substep_ratio
        max_substeps = self.options.relaxation_max_substeps
        total = 0
        for k in range(times.size - 1):
            dt = times[k + 1] - times[k]
            if dt <= 0.0:
                continue
            t_start, t_end = temperatures[k], temperatures[k + 1]
            tau = np.asarray(self.glass.relaxation_time(t_start, tf))
            relaxed = dt / tau > EQUILIBRIUM_RATIO
            tf = np.where(relaxed, t_end, tf)
            if relaxed.all():
                continue

            n_sub = int(np.clip(np.ceil(dt * ratio / tau[~relaxed].min()), 1, max_substeps))
            h = dt / n_sub
            active = ~relaxed
            for j in range(n_sub):
                # temperature at the sub-step midpoint of the linear interpolation
                s = (j + 0.5) / n_sub
                t_mid = (1.0 - s) * t_start[active] + s * t_end[active]
                tau_a = np.asarray(self.glass.relaxation_time(t_mid, tf[active]))
                tf[active] = t_mid + (tf[active] - t_mid) * np.exp(-h / tau_a)
            total += n_sub

        logger.debug(f"TNM integration over {times.size - 1} intervals used {total} sub-steps.")
        return tf, total

    def residual_stress(self, fictive_temperature: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """``E / (1 - nu) alpha (T_room - T_f)`` in Pa; compressive where the structure froze in hot."""
        return self.glass.stress_factor() * (self.room_temperature - np.asarray(fictive_temperature))

    @staticmethod
    def von_mises(stress: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """
        Von Mises stress of the equibiaxial state ``(sigma, sigma, 0)``, which is ``|sigma|``.
        """
        s1 = s2 = np.asarray(stress, dtype=np.float64)
        return np.sqrt(s1 ** 2 - s1 * s2 + s2 ** 2)

    def run(
        self,
        times: npt.NDArray[np.float64],
        temperatures: npt.NDArray[np.float64],
        initial_fictive_temperature: Optional[npt.NDArray[np.float64]] = None,
    ) -> RelaxationResult:
        """Integrate the history and derive the residual-stress fields."""
        tf, substeps = self.integrate(times, temperatures, initial_fictive_temperature)
        stress = self.residual_stress(tf)
        logger.info(f"Residual stress in [{stress.min() / 1e6:.3f}, {stress.max() / 1e6:.3f}] MPa; "
                    f"T_f in [{tf.min():.1f}, {tf.max():.1f}] K.")
        return RelaxationResult(
            fictive_temperature=tf,
            residual_stress=stress,
            von_mises_stress=self.von_mises(stress),
            substeps=substeps,
        )
