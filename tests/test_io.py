"""Tests for HDF5 persistence and VTU export."""
import meshio
import numpy as np
import pytest

from glassform.errors import ConfigurationError
from glassform.model.io import IOManager
from glassform.model.state import Result
from glassform.runner import run


@pytest.fixture()
def result(annealing_problem):
    outcome = run(annealing_problem)
    assert isinstance(outcome, Result)
    return outcome


class TestMeshFiles:

    def test_round_trip(self, neck_down_mesh, tmp_path):
        path = str(tmp_path / "mesh.h5")
        IOManager.save_mesh(neck_down_mesh, path)
        assert IOManager.load_mesh(path) == neck_down_mesh

    def test_not_hdf5(self, tmp_path):
        path = tmp_path / "mesh.h5"
        path.write_text("nodes: []\n")
        with pytest.raises(ConfigurationError):
            IOManager.load_mesh(str(path))


class TestResultFiles:

    def test_round_trip(self, result, tmp_path):
        path = str(tmp_path / "result.h5")
        IOManager.save_result(result, path)
        loaded = IOManager.load_result(path)
        assert loaded == result
        assert loaded.metrics == result.metrics
        assert len(loaded.convergence) == len(result.convergence)

    def test_not_hdf5(self, tmp_path):
        path = tmp_path / "result.h5"
        path.write_text("not a result")
        with pytest.raises(ConfigurationError):
            IOManager.load_result(str(path))


class TestVtuExport:

    def test_fields_are_written(self, result, tmp_path):
        path = str(tmp_path / "result.vtu")
        IOManager.export_vtu(result, path)
        written = meshio.read(path)
        assert written.points.shape == (result.mesh.n_nodes, 3)
        np.testing.assert_allclose(written.point_data["temperature"], result.fields.temperature)
        np.testing.assert_allclose(written.point_data["residual_stress"], result.residual_stress)
        assert written.cells[0].type == "triangle6"
