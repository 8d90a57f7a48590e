"""
Execution Placement (Routing & Host Adapters)
=============================================
This module decides where a problem runs and provides the two thin entry
points that run it there.

Why is this file needed?
------------------------
1. Routing: ``select_mode`` is the single pure rule deciding between the
   bounded in-client sandbox and the native job runner. Billing and plan
   enforcement depend on it, so it must give the same answer wherever it
   is evaluated.
2. Parity: Both host adapters call the very same ``glassform.runner.run``;
   only the placement differs.
3. Threads: ``NativeJobRunner`` runs each job on its own worker thread with
   its own mesh and state; jobs share nothing mutable.

Classes:
    ExecutionMode: ``sandboxed`` or ``native``.
    NativeJobRunner: Thread pool running one job per thread.
"""
from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import StrEnum
import logging
import threading
from typing import Any, Dict, Optional

from glassform.errors import ConfigurationError, SolverError
from glassform.fea.pre.mesh import Mesh, generate_structured
from glassform.model.problem import Problem, ProcessType
from glassform.model.state import ProgressSink, Result
from glassform.runner import dof_count, run

logger = logging.getLogger(__name__)

SANDBOX_MAX_DOF = 5000


class ExecutionMode(StrEnum):
    SANDBOXED = "sandboxed"
    NATIVE = "native"


def select_mode(dof_count: int, process_type: ProcessType | str, plan_tier: Optional[str] = None) -> ExecutionMode:
    """
    Route a problem to the sandbox or to the native runner.

    ``sandboxed`` when ``dof_count <= 5000`` and the process is not a fiber
    draw (free-surface mesh motion is never run in the sandbox); otherwise
    ``native``. The plan tier is accepted for the callers' bookkeeping and
    does not influence the decision.
    """
    if dof_count <= SANDBOX_MAX_DOF and ProcessType(process_type) != ProcessType.FIBER_DRAW:
        return ExecutionMode.SANDBOXED
    return ExecutionMode.NATIVE


@dataclass(frozen=True)
class ExecutionPlan:
    mode: ExecutionMode
    dof_count: int
    mesh: Mesh


def plan_execution(problem: Problem | Dict[str, Any], plan_tier: Optional[str] = None) -> ExecutionPlan:
    """
    Generate the mesh of ``problem`` and route it.

    Must run on the main thread for file geometries: gmsh installs signal
    handlers when it is initialized.
    """
    if not isinstance(problem, Problem):
        problem = Problem.from_dict(problem)
    mesh = generate_structured(problem.geometry)
    count = dof_count(problem, mesh)
    mode = select_mode(count, problem.process_type, plan_tier)
    logger.info(f"{problem.process_type} problem with {count} DOF routed to {mode} execution.")
    return ExecutionPlan(mode=mode, dof_count=count, mesh=mesh)


def run_sandboxed(
    problem: Problem | Dict[str, Any],
    progress: Optional[ProgressSink] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Result | SolverError:
    """
    In-client entry point: one synchronous run, refused for native-only problems.

    Returns:
        ``ConfigurationError`` (as a value) when the problem routes to native execution.
    """
    try:
        if not isinstance(problem, Problem):
            problem = Problem.from_dict(problem)
        plan = plan_execution(problem)
    except SolverError as e:
        return e
    if plan.mode != ExecutionMode.SANDBOXED:
        return ConfigurationError(
            f"Problem needs native execution ({plan.dof_count} DOF, process '{problem.process_type}')."
        )
    return run(problem, progress=progress, cancel_event=cancel_event, mesh=plan.mesh)


class NativeJobRunner:
    """
    Native entry point: runs jobs concurrently, one worker thread per job.

    Every job gets its own cancellation event; ``cancel(job_id)`` sets it and
    the job stops at its next outer iteration with a ``CancelledError`` value.
    """

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="glassform-job")
        self._events: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._next_id = 0

    def submit(
        self,
        problem: Problem | Dict[str, Any],
        progress: Optional[ProgressSink] = None,
    ) -> str:
        """
        Queue a job and return its id.

        The mesh is generated here, on the calling thread, before the job is handed to a worker.

        Raises:
            SolverError: If the problem definition or its geometry is invalid.
        """
        if not isinstance(problem, Problem):
            problem = Problem.from_dict(problem)
        mesh = generate_structured(problem.geometry)
        event = threading.Event()
        with self._lock:
            job_id = f"job-{self._next_id}"
            self._next_id += 1
            self._events[job_id] = event
            self._futures[job_id] = self._executor.submit(
                run, problem, progress=progress, cancel_event=event, mesh=mesh
            )
        logger.info(f"Submitted {job_id} ({problem.process_type}).")
        return job_id

    def cancel(self, job_id: str) -> None:
        self._events[job_id].set()

    def result(self, job_id: str, timeout: Optional[float] = None) -> Result | SolverError:
        """Block until the job finishes; errors come back as values."""
        return self._futures[job_id].result(timeout=timeout)

    def done(self, job_id: str) -> bool:
        return self._futures[job_id].done()

    def shutdown(self, cancel_pending: bool = False) -> None:
        if cancel_pending:
            for event in self._events.values():
                event.set()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> NativeJobRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
