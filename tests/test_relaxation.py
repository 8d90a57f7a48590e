"""Tests for the TNM fictive-temperature integrator and residual stress."""
import numpy as np
import pytest

from glassform.errors import ConfigurationError
from glassform.fea.pre.schedules import ConstantTemperature, LinearCoolingSchedule
from glassform.fea.solvers.relaxation import StructuralRelaxation, cooling_path


def cool(glass, rate, start=900.0, end=300.0, n_samples=200):
    relaxation = StructuralRelaxation(glass)
    times, temperatures = cooling_path(np.array([start]), LinearCoolingSchedule(start, rate, end), n_samples)
    return relaxation.run(times, temperatures)


class TestCoolingPath:
    """Node histories built from a schedule."""

    def test_nodes_follow_schedule_once_it_drops_below_them(self):
        schedule = LinearCoolingSchedule(900.0, 5.0, 300.0)
        times, temperatures = cooling_path(np.array([900.0, 800.0]), schedule, 120)
        assert times[0] == 0.0
        assert times[-1] == pytest.approx(120.0)
        assert temperatures.shape == (121, 2)
        np.testing.assert_allclose(temperatures[:, 0], schedule.get_temperature(times))
        np.testing.assert_allclose(temperatures[:, 1], np.minimum(800.0, schedule.get_temperature(times)))

    def test_constant_schedule(self):
        times, temperatures = cooling_path(np.array([700.0]), ConstantTemperature(650.0), 10)
        assert times[-1] == 1.0
        np.testing.assert_allclose(temperatures, 650.0)


class TestFictiveTemperature:
    """Fictive temperature tracks T while the melt is fluid and freezes on cooling."""

    def test_equilibrium_in_the_melt(self, soda_lime):
        relaxation = StructuralRelaxation(soda_lime)
        times = np.linspace(0.0, 10.0, 11)
        temperatures = np.full((11, 3), 1500.0)
        tf, _ = relaxation.integrate(times, temperatures, initial_fictive_temperature=np.full(3, 1400.0))
        np.testing.assert_allclose(tf, 1500.0)

    def test_frozen_below_t0(self, soda_lime):
        relaxation = StructuralRelaxation(soda_lime)
        times = np.linspace(0.0, 1000.0, 11)
        temperatures = np.full((11, 1), 300.0)
        tf, _ = relaxation.integrate(times, temperatures, initial_fictive_temperature=np.array([800.0]))
        assert tf[0] == pytest.approx(800.0)

    def test_fast_cooling_freezes_hotter_structure(self, soda_lime):
        fast = cool(soda_lime, rate=1000.0)
        slow = cool(soda_lime, rate=0.01)
        assert 300.0 < slow.fictive_temperature[0] < fast.fictive_temperature[0] < 900.0

    def test_substeps_are_bounded(self, soda_lime, options):
        result = cool(soda_lime, rate=1.0)
        assert 0 <= result.substeps <= 200 * options.relaxation_max_substeps

    def test_malformed_history(self, soda_lime):
        relaxation = StructuralRelaxation(soda_lime)
        with pytest.raises(ConfigurationError):
            relaxation.integrate(np.array([0.0, 2.0, 1.0]), np.full((3, 1), 800.0))
        with pytest.raises(ConfigurationError):
            relaxation.integrate(np.array([0.0, 1.0]), np.full((3, 1), 800.0))


class TestResidualStress:
    """Stress from the frozen-in fictive temperature."""

    def test_quenched_glass_is_compressive(self, soda_lime):
        fast = cool(soda_lime, rate=1000.0)
        slow = cool(soda_lime, rate=0.01)
        assert fast.residual_stress[0] < 0.0
        assert slow.residual_stress[0] < 0.0
        assert abs(fast.residual_stress[0]) > abs(slow.residual_stress[0])

    def test_stress_formula(self, soda_lime):
        relaxation = StructuralRelaxation(soda_lime, room_temperature=300.0)
        stress = relaxation.residual_stress(np.array([800.0]))
        assert stress[0] == pytest.approx(soda_lime.stress_factor() * -500.0)

    def test_von_mises_of_equibiaxial_state(self):
        stress = np.array([-3e6, 0.0, 2e6])
        np.testing.assert_allclose(StructuralRelaxation.von_mises(stress), np.abs(stress))
