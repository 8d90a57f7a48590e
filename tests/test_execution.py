"""Tests for routing and the two execution placements."""
import threading

import pytest

from glassform.errors import CancelledError, ConfigurationError
from glassform.execution import (
    SANDBOX_MAX_DOF,
    ExecutionMode,
    NativeJobRunner,
    plan_execution,
    run_sandboxed,
    select_mode,
)
from glassform.model.problem import ProcessType
from glassform.model.state import Result


class TestSelectMode:
    """The routing rule."""

    @pytest.mark.parametrize("dofs, process, expected", [
        (4000, ProcessType.ANNEALING, ExecutionMode.SANDBOXED),
        (SANDBOX_MAX_DOF, ProcessType.FORMING, ExecutionMode.SANDBOXED),
        (SANDBOX_MAX_DOF + 1, ProcessType.ANNEALING, ExecutionMode.NATIVE),
        (100, ProcessType.FIBER_DRAW, ExecutionMode.NATIVE),
    ])
    def test_rule(self, dofs, process, expected):
        assert select_mode(dofs, process) == expected

    def test_accepts_strings_and_ignores_plan_tier(self):
        assert select_mode(10, "annealing", plan_tier="free") == ExecutionMode.SANDBOXED
        assert select_mode(10, "annealing", plan_tier="enterprise") == ExecutionMode.SANDBOXED

    def test_plan_counts_coupled_unknowns(self, fiber_draw_problem):
        plan = plan_execution(fiber_draw_problem)
        assert plan.mode == ExecutionMode.NATIVE
        assert plan.dof_count == 976
        assert plan.mesh.n_nodes == 297


class TestRunSandboxed:

    def test_small_annealing_runs(self, annealing_problem):
        assert isinstance(run_sandboxed(annealing_problem), Result)

    def test_fiber_draw_is_refused(self, fiber_draw_problem):
        assert isinstance(run_sandboxed(fiber_draw_problem), ConfigurationError)

    def test_invalid_problem(self):
        assert isinstance(run_sandboxed({"geometry": {"kind": "sphere"}}), ConfigurationError)

    def test_matches_native_result(self, annealing_problem):
        with NativeJobRunner() as runner:
            job = runner.submit(annealing_problem)
            native = runner.result(job, timeout=60)
        assert run_sandboxed(annealing_problem) == native


class TestNativeJobRunner:
    """Concurrent jobs with per-job cancellation."""

    def test_job_ids_are_unique(self, annealing_problem):
        with NativeJobRunner() as runner:
            ids = [runner.submit(annealing_problem) for _ in range(3)]
            results = [runner.result(job, timeout=60) for job in ids]
        assert len(set(ids)) == 3
        assert all(isinstance(r, Result) for r in results)
        assert results[0] == results[1] == results[2]

    def test_cancel_queued_job(self, annealing_problem):
        release = threading.Event()

        def blocking_sink(entry):
            release.wait(timeout=30)

        runner = NativeJobRunner(max_workers=1)
        try:
            first = runner.submit(annealing_problem, progress=blocking_sink)
            second = runner.submit(annealing_problem)
            runner.cancel(second)
            release.set()
            assert isinstance(runner.result(first, timeout=60), Result)
            outcome = runner.result(second, timeout=60)
        finally:
            runner.shutdown()
        assert isinstance(outcome, CancelledError)
        assert runner.done(second)

    def test_shutdown_cancels_pending(self, annealing_problem):
        runner = NativeJobRunner(max_workers=1)
        jobs = [runner.submit(annealing_problem) for _ in range(2)]
        runner.shutdown(cancel_pending=True)
        assert all(runner.done(job) for job in jobs)
