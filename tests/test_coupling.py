"""Tests for free-surface mesh motion and the Picard coupling loop."""
import numpy as np
import pytest

from glassform.config import SolverOptions
from glassform.errors import CancelledError, ConvergenceError, GeometryError
from glassform.fea.solvers.coupling import CouplingOrchestrator, MeshMotion
from glassform.model.bc import DirichletBC, RobinBC, TractionBC, VelocityBC
from glassform.model.state import FieldState


@pytest.fixture()
def motion(rectangle_mesh):
    return MeshMotion(rectangle_mesh, ["right"], SolverOptions(ale_time_step=1.0, ale_relaxation=1.0))


def radial_velocity(mesh, v_r):
    velocity = np.zeros((mesh.n_nodes, 2))
    velocity[:, 0] = v_r
    return velocity


def drawing_flow(mesh, stretch=1.0, feed=1e-4):
    """
    Extensional flow ``v_z = feed exp(a z)``, ``v_r = -a r v_z / 2``; with
    ``stretch = 1`` its streamlines are the neck-down profile.
    """
    r, z = mesh.nodes.T
    R0, L = r.max(), z.max()
    R1 = r[np.isclose(z, L)].max()
    a = stretch * 2.0 * np.log(R0 / R1) / L
    v_z = feed * np.exp(a * z)
    return np.stack([-0.5 * a * r * v_z, v_z], axis=1)


class TestMeshMotion:
    """ALE update of the outer wall of the block."""

    def test_corners_do_not_move(self, motion, rectangle_mesh):
        moving_z = np.sort(rectangle_mesh.nodes[motion.moving_nodes, 1])
        np.testing.assert_allclose(moving_z, [0.005, 0.01, 0.015])

    def test_surface_moves_along_normal(self, motion, rectangle_mesh):
        before = rectangle_mesh.nodes.copy()
        largest = motion.update(radial_velocity(rectangle_mesh, 1e-4))
        moved = rectangle_mesh.nodes - before

        assert largest == pytest.approx(1e-4)
        np.testing.assert_allclose(moved[motion.moving_nodes, 0], 1e-4)
        np.testing.assert_allclose(moved[:, 1], 0.0, atol=1e-15)

    def test_interior_follows_harmonically(self, motion, rectangle_mesh):
        before = rectangle_mesh.nodes.copy()
        motion.update(radial_velocity(rectangle_mesh, 1e-4))
        moved = rectangle_mesh.nodes[:, 0] - before[:, 0]

        fixed = rectangle_mesh.boundary_nodes(["left", "top", "bottom"])
        np.testing.assert_allclose(moved[fixed], 0.0, atol=1e-15)
        interior = np.setdiff1d(rectangle_mesh.vertex_nodes, rectangle_mesh.boundary_nodes(rectangle_mesh.tags))
        assert np.all(moved[interior] > 0.0)
        assert np.all(moved[interior] < 1e-4)

    def test_midside_nodes_stay_centred(self, motion, rectangle_mesh):
        motion.update(radial_velocity(rectangle_mesh, 1e-4))
        mid, a, b = rectangle_mesh.midside_parents().T
        np.testing.assert_allclose(
            rectangle_mesh.nodes[mid], 0.5 * (rectangle_mesh.nodes[a] + rectangle_mesh.nodes[b]), atol=1e-15
        )

    def test_step_is_limited_by_local_element_size(self, motion, rectangle_mesh):
        before = rectangle_mesh.nodes[:, 0].copy()
        motion.update(radial_velocity(rectangle_mesh, -1.0))
        moved = rectangle_mesh.nodes[motion.moving_nodes, 0] - before[motion.moving_nodes]
        np.testing.assert_allclose(moved, -0.5 * rectangle_mesh.element_sizes().min())

    def test_under_relaxation(self, rectangle_mesh):
        motion = MeshMotion(rectangle_mesh, ["right"], SolverOptions(ale_time_step=1.0, ale_relaxation=0.5))
        assert motion.update(radial_velocity(rectangle_mesh, 1e-4)) == pytest.approx(5e-5)

    def test_inverting_update_is_rejected(self, rectangle_mesh):
        motion = MeshMotion(rectangle_mesh, ["right"], SolverOptions(ale_time_step=1.0, ale_courant=10.0))
        with pytest.raises(GeometryError):
            motion.update(radial_velocity(rectangle_mesh, -1.0))

    def test_courant_time_step(self, rectangle_mesh):
        motion = MeshMotion(rectangle_mesh, ["right"], SolverOptions(ale_courant=0.1))
        assert motion.time_step(2e-3, 1e-3) == pytest.approx(0.1 * 1e-3 / 2e-3)
        assert motion.time_step(0.0, 1e-3) == 0.0


class TestNeckDownMotion:
    """Radial kinematic update of a drawn neck."""

    def test_surface_on_a_streamline_stays_put(self, neck_down_mesh):
        motion = MeshMotion(neck_down_mesh, ["surface"])
        assert motion.moving_nodes.size == 15
        assert motion.update(drawing_flow(neck_down_mesh)) < 1e-7

    def test_surface_relaxes_onto_a_wider_streamline(self, neck_down_mesh):
        motion = MeshMotion(neck_down_mesh, ["surface"])
        tip = motion.moving_nodes[np.argmax(neck_down_mesh.nodes[motion.moving_nodes, 1])]
        z_before = neck_down_mesh.nodes[:, 1].copy()
        r_before = neck_down_mesh.nodes[tip, 0]

        steps = [motion.update(drawing_flow(neck_down_mesh, stretch=0.98)) for _ in range(30)]

        np.testing.assert_allclose(neck_down_mesh.nodes[:, 1], z_before)
        assert neck_down_mesh.nodes[tip, 0] > r_before
        assert steps[-1] < 1e-2 * steps[0]

    def test_normal_speed_vanishes_on_a_streamline(self, neck_down_mesh):
        motion = MeshMotion(neck_down_mesh, ["surface"])
        velocity = drawing_flow(neck_down_mesh)
        _, speed = motion.surface_normal_speed(velocity)
        assert np.max(np.abs(speed)) < 2e-2 * np.max(np.abs(velocity))


class TestCouplingOrchestrator:
    """Outer Picard iteration."""

    @pytest.fixture()
    def pipe(self, rectangle_mesh):
        thermal = [DirichletBC(tag="bottom", temperature=1500.0), DirichletBC(tag="top", temperature=1500.0)]
        flow = [
            VelocityBC.symmetry_axis("left"),
            VelocityBC.no_slip("right"),
            VelocityBC(tag="bottom", v_r=0.0),
            VelocityBC(tag="top", v_r=0.0),
            TractionBC(tag="bottom", t_z=1000.0),
        ]
        return thermal, flow

    def initial_state(self, glass, mesh, temperature):
        return FieldState.create(glass, np.full(mesh.n_nodes, temperature), n_pressure_nodes=mesh.n_pressure_nodes)

    def test_thermal_only_needs_one_iteration(self, rectangle_mesh, soda_lime):
        bcs = [RobinBC(tag="right", heat_transfer_coefficient=20.0, ambient_temperature=900.0)]
        orchestrator = CouplingOrchestrator(rectangle_mesh, soda_lime, bcs)
        assert not orchestrator.coupled
        state, iterations = orchestrator.run(self.initial_state(soda_lime, rectangle_mesh, 1000.0))
        assert iterations == 1
        assert len(orchestrator.record.stage("outer")) == 1
        np.testing.assert_allclose(state.viscosity, soda_lime.viscosity(state.temperature))

    def test_coupled_pipe_converges_on_second_iteration(self, rectangle_mesh, soda_lime, pipe):
        thermal, flow = pipe
        orchestrator = CouplingOrchestrator(rectangle_mesh, soda_lime, thermal, flow)
        assert orchestrator.coupled
        assert orchestrator.motion is None
        state, iterations = orchestrator.run(self.initial_state(soda_lime, rectangle_mesh, 1500.0))
        assert iterations == 2
        assert state.velocity[:, 1].max() == pytest.approx(0.0125, rel=1e-6)
        residuals = [entry.residual_norm for entry in orchestrator.record.stage("outer")]
        assert residuals[-1] < 1.0

    def test_iteration_cap(self, rectangle_mesh, soda_lime, pipe):
        thermal, flow = pipe
        orchestrator = CouplingOrchestrator(
            rectangle_mesh, soda_lime, thermal, flow, SolverOptions(outer_max_iterations=1)
        )
        with pytest.raises(ConvergenceError) as excinfo:
            orchestrator.run(self.initial_state(soda_lime, rectangle_mesh, 1500.0))
        assert len(excinfo.value.record.stage("outer")) == 1

    def test_cancellation(self, rectangle_mesh, soda_lime, pipe):
        thermal, flow = pipe
        orchestrator = CouplingOrchestrator(rectangle_mesh, soda_lime, thermal, flow, should_stop=lambda: True)
        with pytest.raises(CancelledError):
            orchestrator.run(self.initial_state(soda_lime, rectangle_mesh, 1500.0))
        assert len(orchestrator.record) == 0
