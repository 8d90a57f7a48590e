"""Shared fixtures: materials, solver options, small meshes and problem definitions."""
from dataclasses import replace

import matplotlib
import pytest

from glassform.config import SolverOptions
from glassform.fea.pre.material import Glass
from glassform.fea.pre.mesh import generate_structured
from glassform.model.materials import MaterialLibrary
from glassform.model.problem import (
    CylinderParams,
    GeometryKind,
    GeometrySpec,
    NeckDownParams,
    RectangleParams,
)

matplotlib.use("Agg")


@pytest.fixture(scope="session")
def library():
    return MaterialLibrary()


@pytest.fixture()
def soda_lime(library):
    """Soda-lime glass; log10(eta) is exactly 2 at 1500 K."""
    return Glass(library.get_material("soda-lime"))


@pytest.fixture()
def fused_silica(library):
    return Glass(library.get_material("fused-silica"))


@pytest.fixture()
def conductor(library):
    """
    Soda-lime with k = 1 W/(m K) and an opaque melt, so the Rosseland term
    vanishes and conduction is linear.
    """
    params = replace(
        library.get_material("soda-lime"),
        name="conductor",
        conductivity=1.0,
        absorption_coefficient=1e12,
    )
    return Glass(params)


@pytest.fixture()
def options():
    return SolverOptions()


@pytest.fixture()
def rectangle_mesh():
    """Solid block r in [0, 10 mm], z in [0, 20 mm], 4 x 4 cells."""
    spec = GeometrySpec(
        kind=GeometryKind.RECTANGLE,
        parameters=RectangleParams(width=0.01, height=0.02, r_min=0.0, n_radial=4, n_axial=4),
    )
    return generate_structured(spec)


@pytest.fixture()
def annulus_mesh():
    """Hollow cylinder 10 mm to 50 mm, one cell high."""
    spec = GeometrySpec(
        kind=GeometryKind.CYLINDER,
        parameters=CylinderParams(inner_radius=0.01, outer_radius=0.05, height=0.01, n_radial=8, n_axial=1),
    )
    return generate_structured(spec)


@pytest.fixture()
def neck_down_mesh():
    spec = GeometrySpec(kind=GeometryKind.NECK_DOWN, parameters=NeckDownParams())
    return generate_structured(spec)


@pytest.fixture()
def annealing_problem():
    """Steady annealing of a small solid cylinder, in dict form."""
    return {
        "geometry": {
            "kind": "cylinder",
            "parameters": {"inner_radius": 0.0, "outer_radius": 0.01, "height": 0.01, "n_radial": 2, "n_axial": 2},
        },
        "material": "soda-lime",
        "process_parameters": {
            "process_type": "annealing",
            "initial_temperature": 900.0,
            "cooling_rate": 5.0,
        },
        "simulation_type": "steady",
        "solver_options": {"cooling_steps": 50},
    }


@pytest.fixture()
def transient_problem(annealing_problem):
    """Transient annealing: the ambient ramps down from 900 K at 2 K/s for 30 s."""
    problem = dict(annealing_problem)
    problem["simulation_type"] = "transient"
    problem["process_parameters"] = {
        "process_type": "annealing",
        "initial_temperature": 900.0,
        "cooling_rate": 2.0,
        "duration": 30.0,
    }
    problem["solver_options"] = {"time_step": 1.0, "max_time_step": 5.0}
    return problem


@pytest.fixture()
def fiber_draw_problem():
    """
    Isothermal fused-silica draw: 10 mm preform, 125 um fiber, 1 m/s.

    The furnace sits at the preform temperature, so the temperature stays
    uniform and only the free surface and the flow are iterated.
    """
    return {
        "geometry": {"kind": "neck_down", "parameters": {}},
        "material": "fused-silica",
        "process_parameters": {
            "process_type": "fiber_draw",
            "initial_temperature": 2200.0,
            "draw_speed": 1.0,
            "preform_diameter": 0.01,
            "fiber_diameter": 125e-6,
        },
        "simulation_type": "steady",
        "solver_options": {"cooling_steps": 50},
    }
