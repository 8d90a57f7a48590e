"""
Field State & Results (Data Model)
==================================
This module defines the data that flows through and out of a solver run.

Why is this file needed?
------------------------
1. Snapshots: The coupling loop never mutates fields. Every Picard step
   consumes one ``FieldState`` and produces a new one, which makes the
   convergence check and the cancellation point unambiguous.
2. Derived data: Viscosity is derived from temperature whenever a snapshot
   is created; it is never carried as independent state.
3. Reporting: ``ConvergenceRecord`` is the append-only progress log handed
   to progress sinks, and ``Result`` is the immutable package returned to
   the caller.

Classes:
    FieldState: Immutable per-node field snapshot.
    ConvergenceEntry / ConvergenceRecord: Iteration history.
    SummaryMetrics: Scalar results.
    Result: Everything a completed run returns.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    import numpy.typing as npt
    from glassform.fea.pre.material import Glass
    from glassform.fea.pre.mesh import Mesh

logger = logging.getLogger(__name__)


def _frozen(array: npt.ArrayLike, dtype: type = np.float64) -> npt.NDArray[Any]:
    out = np.array(array, dtype=dtype)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class FieldState:
    """
    Per-node fields of one iteration.

    Attributes:
        temperature: (N,) in K.
        velocity: (N, 2) ``(v_r, v_z)`` in m/s.
        pressure: (P,) in Pa, on the pressure (vertex) nodes only.
        fictive_temperature: (N,) in K.
        viscosity: (N,) in Pa s, derived from ``temperature``.
    """
    temperature: npt.NDArray[np.float64]
    velocity: npt.NDArray[np.float64]
    pressure: npt.NDArray[np.float64]
    fictive_temperature: npt.NDArray[np.float64]
    viscosity: npt.NDArray[np.float64]

    @staticmethod
    def create(
        glass: Glass,
        temperature: npt.ArrayLike,
        velocity: Optional[npt.ArrayLike] = None,
        pressure: Optional[npt.ArrayLike] = None,
        fictive_temperature: Optional[npt.ArrayLike] = None,
        n_pressure_nodes: int = 0,
    ) -> FieldState:
        """
        Build a snapshot, deriving the viscosity from the temperature.

        Missing velocity and pressure default to zero; a missing fictive
        temperature defaults to the temperature (equilibrium).
        """
        T = _frozen(temperature)
        n = T.shape[0]
        v = _frozen(np.zeros((n, 2)) if velocity is None else velocity)
        p = _frozen(np.zeros(n_pressure_nodes) if pressure is None else pressure)
        tf = T if fictive_temperature is None else _frozen(fictive_temperature)
        eta = _frozen(glass.viscosity(T))
        return FieldState(temperature=T, velocity=v, pressure=p, fictive_temperature=tf, viscosity=eta)

    def evolve(
        self,
        glass: Glass,
        temperature: Optional[npt.ArrayLike] = None,
        velocity: Optional[npt.ArrayLike] = None,
        pressure: Optional[npt.ArrayLike] = None,
        fictive_temperature: Optional[npt.ArrayLike] = None,
    ) -> FieldState:
        """New snapshot with some fields replaced; the viscosity is re-derived."""
        return FieldState.create(
            glass,
            temperature=self.temperature if temperature is None else temperature,
            velocity=self.velocity if velocity is None else velocity,
            pressure=self.pressure if pressure is None else pressure,
            fictive_temperature=self.fictive_temperature if fictive_temperature is None else fictive_temperature,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FieldState):
            return NotImplemented
        return all(
            np.array_equal(getattr(self, name), getattr(other, name))
            for name in ("temperature", "velocity", "pressure", "fictive_temperature", "viscosity")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature.tolist(),
            "velocity": self.velocity.tolist(),
            "pressure": self.pressure.tolist(),
            "fictive_temperature": self.fictive_temperature.tolist(),
            "viscosity": self.viscosity.tolist(),
        }


@dataclass(frozen=True)
class ConvergenceEntry:
    iteration: int
    residual_norm: float
    wall_time: float  # s since the record was started
    stage: str = "outer"


ProgressSink = Callable[[ConvergenceEntry], None]


class ConvergenceRecord:
    """
    Append-only iteration history of one run.

    Entries of the stages listed in ``sink_stages`` (outer Picard iterations
    and transient time steps by default) are forwarded to ``sink`` as they
    are appended.
    """

    def __init__(self, sink: Optional[ProgressSink] = None, sink_stages: tuple[str, ...] = ("outer", "time_step")) -> None:
        self._entries: List[ConvergenceEntry] = []
        self._sink = sink
        self._sink_stages = sink_stages
        self._start = time.perf_counter()

    def append(self, iteration: int, residual_norm: float, stage: str = "outer") -> ConvergenceEntry:
        entry = ConvergenceEntry(
            iteration=int(iteration),
            residual_norm=float(residual_norm),
            wall_time=time.perf_counter() - self._start,
            stage=stage,
        )
        self._entries.append(entry)
        logger.debug(f"[{stage}] iteration {entry.iteration}: residual {entry.residual_norm:.3e}")
        if self._sink is not None and stage in self._sink_stages:
            self._sink(entry)
        return entry

    def stage(self, stage: str) -> List[ConvergenceEntry]:
        return [entry for entry in self._entries if entry.stage == stage]

    @property
    def entries(self) -> tuple[ConvergenceEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ConvergenceEntry]:
        return iter(tuple(self._entries))

    def __getitem__(self, index: int) -> ConvergenceEntry:
        return self._entries[index]

    def to_list(self) -> List[Dict[str, Any]]:
        return [asdict(entry) for entry in self._entries]

    @staticmethod
    def from_list(items: List[Dict[str, Any]]) -> ConvergenceRecord:
        """Rebuild a stored record; entries keep their original wall times."""
        record = ConvergenceRecord()
        record._entries = [ConvergenceEntry(**item) for item in items]
        return record


@dataclass(frozen=True)
class SummaryMetrics:
    max_temperature: float
    max_von_mises_stress: float
    fiber_tension: Optional[float] = None  # N
    feed_speed: Optional[float] = None  # m/s
    draw_speed: Optional[float] = None  # m/s
    dof_count: int = 0
    outer_iterations: int = 0


@dataclass(frozen=True, eq=False)
class Result:
    """
    Outcome of a completed run. Field names are the contract with
    downstream visualization.
    """
    mesh: Mesh
    fields: FieldState
    residual_stress: npt.NDArray[np.float64]  # (N,) in Pa
    von_mises_stress: npt.NDArray[np.float64]  # (N,) in Pa
    metrics: SummaryMetrics
    convergence: ConvergenceRecord = field(default_factory=ConvergenceRecord)

    def __eq__(self, other: object) -> bool:
        """Numerical equality; wall-clock timings in ``convergence`` are ignored."""
        if not isinstance(other, Result):
            return NotImplemented
        return (
            self.mesh == other.mesh
            and self.fields == other.fields
            and np.array_equal(self.residual_stress, other.residual_stress)
            and np.array_equal(self.von_mises_stress, other.von_mises_stress)
            and self.metrics == other.metrics
            and [(e.iteration, e.residual_norm, e.stage) for e in self.convergence]
            == [(e.iteration, e.residual_norm, e.stage) for e in other.convergence]
        )

    __hash__ = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mesh": self.mesh.to_dict(),
            "fields": self.fields.to_dict(),
            "residual_stress": self.residual_stress.tolist(),
            "von_mises_stress": self.von_mises_stress.tolist(),
            "metrics": asdict(self.metrics),
            "convergence": self.convergence.to_list(),
        }
