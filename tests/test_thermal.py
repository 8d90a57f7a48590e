"""Tests for the steady and transient thermal solver."""
import numpy as np
import pytest

from glassform.config import SolverOptions
from glassform.errors import CancelledError, ConvergenceError, SingularSystemError
from glassform.fea.solvers.thermal import ThermalSolver, streamline_diffusion_factor
from glassform.model.bc import DirichletBC, NeumannBC, RobinBC
from glassform.model.state import ConvergenceRecord


class TestSteadyConduction:
    """Steady solves against closed-form solutions."""

    def test_radial_conduction_through_annulus(self, annulus_mesh, conductor):
        """Logarithmic profile between 10 mm at 500 K and 50 mm at 300 K."""
        bcs = [DirichletBC(tag="inner", temperature=500.0), DirichletBC(tag="outer", temperature=300.0)]
        solver = ThermalSolver(annulus_mesh, conductor, bcs)
        T, iterations = solver.solve_steady(np.full(annulus_mesh.n_nodes, 400.0))

        expected = 500.0 + (300.0 - 500.0) * np.log(3.0) / np.log(5.0)
        at_30mm = np.isclose(annulus_mesh.nodes[:, 0], 0.03)
        assert at_30mm.sum() == 3
        np.testing.assert_allclose(T[at_30mm], expected, rtol=5e-3)
        assert iterations <= 2

    def test_profile_is_exact_for_linear_field(self, rectangle_mesh, conductor):
        """Plane layer with fixed faces: T is linear in z, which P2 represents exactly."""
        bcs = [DirichletBC(tag="bottom", temperature=900.0), DirichletBC(tag="top", temperature=700.0)]
        T, _ = ThermalSolver(rectangle_mesh, conductor, bcs).solve_steady(np.full(rectangle_mesh.n_nodes, 800.0))
        z = rectangle_mesh.nodes[:, 1]
        np.testing.assert_allclose(T, 900.0 - 200.0 * z / 0.02, rtol=1e-9)

    def test_neumann_flux_sets_gradient(self, rectangle_mesh, conductor):
        bcs = [DirichletBC(tag="top", temperature=600.0), NeumannBC(tag="bottom", flux=2000.0)]
        T, _ = ThermalSolver(rectangle_mesh, conductor, bcs).solve_steady(np.full(rectangle_mesh.n_nodes, 600.0))
        z = rectangle_mesh.nodes[:, 1]
        # flux into the domain through z = 0 with k = 1: dT/dz = -2000 K/m
        np.testing.assert_allclose(T, 600.0 + 2000.0 * (0.02 - z), rtol=1e-9)

    def test_equilibrium_with_ambient(self, rectangle_mesh, soda_lime):
        bcs = [RobinBC(tag="right", heat_transfer_coefficient=20.0, ambient_temperature=1100.0, emissivity=0.9)]
        T, iterations = ThermalSolver(rectangle_mesh, soda_lime, bcs).solve_steady(np.full(rectangle_mesh.n_nodes, 1100.0))
        np.testing.assert_allclose(T, 1100.0, rtol=1e-12)
        assert iterations == 1

    def test_radiating_surface_converges(self, rectangle_mesh, soda_lime):
        bcs = [
            DirichletBC(tag="bottom", temperature=1300.0),
            RobinBC(tag="right", heat_transfer_coefficient=50.0, ambient_temperature=900.0, emissivity=0.9),
        ]
        record = ConvergenceRecord()
        solver = ThermalSolver(rectangle_mesh, soda_lime, bcs, record=record)
        T, _ = solver.solve_steady(np.full(rectangle_mesh.n_nodes, 1300.0))
        assert 900.0 < T.min() < T.max() < 1301.0
        corrections = [entry.residual_norm for entry in record.stage("thermal")]
        assert corrections[-1] < SolverOptions().thermal_tolerance

    def test_iteration_cap(self, rectangle_mesh, soda_lime):
        bcs = [RobinBC(tag="right", heat_transfer_coefficient=50.0, ambient_temperature=300.0, emissivity=0.9)]
        solver = ThermalSolver(rectangle_mesh, soda_lime, bcs, SolverOptions(thermal_max_iterations=1))
        with pytest.raises(ConvergenceError) as excinfo:
            solver.solve_steady(np.full(rectangle_mesh.n_nodes, 1200.0))
        assert len(excinfo.value.record.stage("thermal")) == 1

    def test_non_finite_temperature_is_singular(self, rectangle_mesh, soda_lime):
        bcs = [DirichletBC(tag="top", temperature=800.0)]
        solver = ThermalSolver(rectangle_mesh, soda_lime, bcs)
        with pytest.raises(SingularSystemError):
            solver.solve_steady(np.full(rectangle_mesh.n_nodes, np.nan))


class TestAdvection:
    """Frozen-velocity advection with streamline diffusion."""

    def test_one_dimensional_advection_diffusion(self, rectangle_mesh, conductor):
        """Upward flow at Peclet number 1.2 over the 20 mm layer."""
        bcs = [DirichletBC(tag="bottom", temperature=1000.0), DirichletBC(tag="top", temperature=500.0)]
        velocity = np.zeros((rectangle_mesh.n_nodes, 2))
        velocity[:, 1] = 2e-5
        solver = ThermalSolver(rectangle_mesh, conductor, bcs)
        T, _ = solver.solve_steady(np.full(rectangle_mesh.n_nodes, 750.0), velocity=velocity)

        peclet = 2500.0 * 1200.0 * 2e-5 * 0.02 / 1.0
        mid_height = np.isclose(rectangle_mesh.nodes[:, 1], 0.01)
        expected = 1000.0 - 500.0 * np.expm1(peclet / 2) / np.expm1(peclet)
        np.testing.assert_allclose(T[mid_height], expected, rtol=5e-3)

        T_still, _ = solver.solve_steady(np.full(rectangle_mesh.n_nodes, 750.0))
        assert T[mid_height].mean() > T_still[mid_height].mean() + 50.0

    def test_streamline_diffusion_factor(self):
        pe = np.array([1e-6, 1e-2, 1.0, 100.0])
        factor = streamline_diffusion_factor(pe)
        assert factor[0] == pytest.approx(pe[0] / 3)
        assert factor[1] == pytest.approx(pe[1] / 3, rel=1e-4)
        assert factor[2] == pytest.approx(1 / np.tanh(1.0) - 1.0)
        assert factor[3] == pytest.approx(0.99, rel=1e-3)


class TestTransient:
    """Backward Euler with adaptive time stepping."""

    @pytest.fixture()
    def cooling(self, rectangle_mesh, conductor):
        bcs = [RobinBC(tag="right", heat_transfer_coefficient=50.0, ambient_temperature=300.0)]
        options = SolverOptions(time_step=1.0, max_time_step=5.0)
        return ThermalSolver(rectangle_mesh, conductor, bcs, options)

    def test_reaches_duration(self, cooling, rectangle_mesh):
        history = cooling.solve_transient(np.full(rectangle_mesh.n_nodes, 800.0), duration=20.0)
        assert history.times[0] == 0.0
        assert history.times[-1] == pytest.approx(20.0)
        assert len(history.times) == len(history.time_steps) + 1
        assert history.temperatures.shape == (len(history.times), rectangle_mesh.n_nodes)
        assert history.time_steps.sum() == pytest.approx(20.0)
        assert 300.0 < history.final.mean() < 800.0

    def test_step_grows_after_quick_steps(self, cooling, rectangle_mesh):
        """Linear problem: every step converges at once, so dt grows after every third step."""
        history = cooling.solve_transient(np.full(rectangle_mesh.n_nodes, 800.0), duration=20.0)
        np.testing.assert_allclose(history.time_steps[:4], [1.0, 1.0, 1.0, 1.5])
        assert history.time_steps.max() <= 5.0 + 1e-12

    def test_records_each_step(self, cooling, rectangle_mesh):
        history = cooling.solve_transient(np.full(rectangle_mesh.n_nodes, 800.0), duration=5.0)
        steps = cooling.record.stage("time_step")
        assert len(steps) == len(history.time_steps)
        assert [entry.iteration for entry in steps] == list(range(1, len(steps) + 1))

    def test_scheduled_ambient(self, rectangle_mesh, conductor):
        from glassform.fea.pre.schedules import LinearCoolingSchedule

        schedule = LinearCoolingSchedule(800.0, 10.0, 300.0)
        bcs = [RobinBC(tag="right", heat_transfer_coefficient=50.0, schedule=schedule)]
        solver = ThermalSolver(rectangle_mesh, conductor, bcs, SolverOptions(time_step=1.0, max_time_step=2.0))
        history = solver.solve_transient(np.full(rectangle_mesh.n_nodes, 800.0), duration=10.0)
        surface = rectangle_mesh.boundary_nodes(["right"])
        assert history.final[surface].max() < 799.0

    def test_cancellation(self, cooling, rectangle_mesh):
        with pytest.raises(CancelledError):
            cooling.solve_transient(np.full(rectangle_mesh.n_nodes, 800.0), duration=20.0, should_stop=lambda: True)
