"""Coupled thermal, radiative, viscous and structural solver for axisymmetric glass forming."""
from glassform.errors import (
    CancelledError,
    ConfigurationError,
    ConvergenceError,
    GeometryError,
    SingularSystemError,
    SolverError,
)
from glassform.execution import ExecutionMode, NativeJobRunner, plan_execution, run_sandboxed, select_mode
from glassform.logging_config import setup_logging
from glassform.model.problem import Problem, ProcessType, SimulationType
from glassform.model.state import Result
from glassform.runner import run

__all__ = [
    "CancelledError",
    "ConfigurationError",
    "ConvergenceError",
    "ExecutionMode",
    "GeometryError",
    "NativeJobRunner",
    "Problem",
    "ProcessType",
    "Result",
    "SimulationType",
    "SingularSystemError",
    "SolverError",
    "plan_execution",
    "run",
    "run_sandboxed",
    "select_mode",
    "setup_logging",
]
