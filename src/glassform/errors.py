"""
Solver Error Taxonomy
=====================
Every failure the core reports carries the convergence record accumulated
up to that point. ``glassform.runner.run`` returns these as values so that
parameter sweeps can keep going after one run fails.
"""
from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from glassform.model.state import ConvergenceRecord


class SolverError(Exception):
    """Base class of all errors reported by the solver core."""

    def __init__(self, message: str, record: Optional[ConvergenceRecord] = None) -> None:
        super().__init__(message)
        self.message = message
        self.record = record

    def with_record(self, record: ConvergenceRecord) -> SolverError:
        """Attach the run's record if none is set yet."""
        if self.record is None:
            self.record = record
        return self

    def __repr__(self) -> str:
        entries = 0 if self.record is None else len(self.record)
        return f"{self.__class__.__name__}({self.message!r}, entries={entries})"


class GeometryError(SolverError):
    """Degenerate or inverted element, or an unknown boundary tag. Never retried."""

    def __init__(
        self,
        message: str,
        element_index: Optional[int] = None,
        tag: Optional[str] = None,
        record: Optional[ConvergenceRecord] = None,
    ) -> None:
        super().__init__(message, record)
        self.element_index = element_index
        self.tag = tag


class ConvergenceError(SolverError):
    """A Newton or Picard iteration cap was exceeded."""


class SingularSystemError(SolverError):
    """The assembled linear system is singular or produced non-finite values."""


class CancelledError(SolverError):
    """The caller requested cancellation. A normal termination path, not a failure."""


class ConfigurationError(SolverError):
    """The problem definition is invalid (bad material values, unknown kinds, unsupported combinations)."""
