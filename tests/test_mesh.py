"""Tests for mesh generation, validation, refinement and gmsh import."""
import numpy as np
import pytest

from glassform.errors import ConfigurationError, GeometryError
from glassform.fea.pre.mesh import (
    Mesh,
    generate_structured,
    refine,
    temperature_gradient_indicator,
)
from glassform.model.problem import (
    CylinderParams,
    FileParams,
    GeometryKind,
    GeometrySpec,
    NeckDownParams,
    RectangleParams,
)


def edge_keys(mesh):
    """Vertex pairs of all element edges, one entry per element side."""
    keys = []
    for a, b in ((0, 1), (1, 2), (2, 0)):
        for p, q in zip(mesh.elements[:, a], mesh.elements[:, b]):
            keys.append((min(p, q), max(p, q)))
    return keys


def gmsh_or_skip():
    """Import gmsh, skipping when the package or its native library is unavailable."""
    try:
        import gmsh
    except (ImportError, OSError) as e:
        pytest.skip(f"gmsh unavailable: {e}")
    return gmsh


class TestStructuredGeneration:
    """Canonical shapes."""

    def test_rectangle_counts_and_tags(self, rectangle_mesh):
        assert rectangle_mesh.n_nodes == 9 * 9
        assert rectangle_mesh.n_elements == 2 * 4 * 4
        assert rectangle_mesh.n_pressure_nodes == 5 * 5
        assert rectangle_mesh.tags == ["bottom", "left", "right", "top"]
        assert len(rectangle_mesh.edges("right")) == 4

    def test_elements_counter_clockwise(self, rectangle_mesh):
        areas = rectangle_mesh.element_areas()
        assert np.all(areas > 0)
        assert areas.sum() == pytest.approx(0.01 * 0.02)
        rectangle_mesh.check_elements()

    def test_solid_and_hollow_cylinder_tags(self, annulus_mesh):
        assert annulus_mesh.tags == ["bottom", "inner", "outer", "top"]
        solid = generate_structured(GeometrySpec(GeometryKind.CYLINDER, CylinderParams()))
        assert "axis" in solid.tags
        assert solid.nodes[:, 0].min() == 0.0

    def test_neck_down_profile(self, neck_down_mesh):
        params = NeckDownParams()
        assert neck_down_mesh.tags == ["axis", "inlet", "outlet", "surface"]
        outlet = neck_down_mesh.boundary_nodes(["outlet"])
        inlet = neck_down_mesh.boundary_nodes(["inlet"])
        assert neck_down_mesh.nodes[outlet, 0].max() == pytest.approx(params.fiber_radius)
        assert neck_down_mesh.nodes[inlet, 0].max() == pytest.approx(params.preform_radius)
        np.testing.assert_allclose(neck_down_mesh.nodes[outlet, 1], params.length)
        neck_down_mesh.check_elements()

    def test_parameters_must_match_kind(self):
        spec = GeometrySpec(GeometryKind.NECK_DOWN, NeckDownParams())
        spec.parameters = RectangleParams()
        with pytest.raises(GeometryError):
            generate_structured(spec)

    def test_invalid_parameters(self):
        with pytest.raises(ConfigurationError):
            GeometrySpec(GeometryKind.RECTANGLE, RectangleParams(width=-1.0))
        with pytest.raises(ConfigurationError):
            GeometrySpec(GeometryKind.CYLINDER, RectangleParams())
        with pytest.raises(ConfigurationError):
            GeometrySpec.from_dict({"kind": "sphere"})

    def test_midside_parents(self, rectangle_mesh):
        rows = rectangle_mesh.midside_parents()
        assert len(rows) == len(set(edge_keys(rectangle_mesh)))
        mid, a, b = rows.T
        np.testing.assert_allclose(
            rectangle_mesh.nodes[mid], 0.5 * (rectangle_mesh.nodes[a] + rectangle_mesh.nodes[b])
        )


class TestValidation:
    """Connectivity and geometry checks."""

    def test_node_index_out_of_range(self, rectangle_mesh):
        elements = rectangle_mesh.elements.copy()
        elements[2, 4] = rectangle_mesh.n_nodes + 10
        with pytest.raises(GeometryError) as excinfo:
            Mesh(rectangle_mesh.nodes, elements, rectangle_mesh.boundary_edges)
        assert excinfo.value.element_index == 2

    def test_inverted_element(self, rectangle_mesh):
        rectangle_mesh.elements[7] = rectangle_mesh.elements[7][[0, 2, 1, 5, 4, 3]]
        with pytest.raises(GeometryError) as excinfo:
            rectangle_mesh.check_elements()
        assert excinfo.value.element_index == 7

    def test_unknown_tag(self, rectangle_mesh):
        with pytest.raises(GeometryError) as excinfo:
            rectangle_mesh.edges("outlet")
        assert excinfo.value.tag == "outlet"

    def test_empty_mesh(self):
        with pytest.raises(GeometryError):
            Mesh(np.zeros((0, 2)), np.zeros((0, 6), dtype=int), {})

    def test_edge_parents(self, rectangle_mesh):
        parents, local = rectangle_mesh.edge_parents("bottom")
        edges = rectangle_mesh.edges("bottom")
        for (start, end, _), e, k in zip(edges, parents, local):
            element = rectangle_mesh.elements[e]
            assert {start, end} == {element[k], element[(k + 1) % 3]}


class TestSerialization:
    """Copies and dict form."""

    def test_dict_round_trip(self, neck_down_mesh):
        assert Mesh.from_dict(neck_down_mesh.to_dict()) == neck_down_mesh

    def test_copy_is_independent(self, rectangle_mesh):
        clone = rectangle_mesh.copy()
        clone.move_nodes(np.full_like(clone.nodes, 1e-3))
        assert clone != rectangle_mesh

    def test_plot(self, rectangle_mesh):
        import matplotlib.pyplot as plt

        fig = rectangle_mesh.plot(show=False)
        assert fig is not None
        plt.close(fig)


class TestBoundaryNormals:
    """Node normals used by the free-surface update."""

    def test_flat_side(self, rectangle_mesh):
        ids, normals = rectangle_mesh.boundary_node_normals(["right"])
        assert len(ids) == 9
        np.testing.assert_allclose(normals, np.tile([1.0, 0.0], (9, 1)), atol=1e-12)

    def test_corner_averages_both_sides(self, rectangle_mesh):
        ids, normals = rectangle_mesh.boundary_node_normals(["right", "top"])
        corner = int(np.argmax((rectangle_mesh.nodes[ids, 0] == 0.01) & (rectangle_mesh.nodes[ids, 1] == 0.02)))
        # length-weighted: a 5 mm vertical chord and a 2.5 mm horizontal chord meet at the corner
        np.testing.assert_allclose(normals[corner], np.array([2.0, 1.0]) / np.sqrt(5.0), rtol=1e-9)


class TestRefinement:
    """Gradient-driven red-green refinement."""

    def test_nothing_flagged(self, rectangle_mesh):
        refined = refine(rectangle_mesh, np.zeros(rectangle_mesh.n_elements), 1.0)
        assert refined == rectangle_mesh
        assert refined is not rectangle_mesh

    def test_single_element_refinement_is_conforming(self, rectangle_mesh):
        indicator = np.zeros(rectangle_mesh.n_elements)
        indicator[9] = 1.0
        refined = refine(rectangle_mesh, indicator, 0.5)

        assert refined.n_elements > rectangle_mesh.n_elements
        assert np.all(refined.element_areas() > 0)
        assert refined.element_areas().sum() == pytest.approx(rectangle_mesh.element_areas().sum())
        refined.check_elements()

        counts = {}
        for key in edge_keys(refined):
            counts[key] = counts.get(key, 0) + 1
        assert max(counts.values()) == 2
        outer = {key for key, n in counts.items() if n == 1}
        tagged = {
            (min(s, t), max(s, t)) for edges in refined.boundary_edges.values() for s, t, _ in edges
        }
        assert outer == tagged

    def test_midside_nodes_stay_centred(self, rectangle_mesh):
        indicator = np.zeros(rectangle_mesh.n_elements)
        indicator[[0, 1, 30]] = 1.0
        refined = refine(rectangle_mesh, indicator, 0.5)
        mid, a, b = refined.midside_parents().T
        np.testing.assert_allclose(refined.nodes[mid], 0.5 * (refined.nodes[a] + refined.nodes[b]), atol=1e-15)

    def test_boundary_edges_split_with_their_element(self, rectangle_mesh):
        parents, _ = rectangle_mesh.edge_parents("bottom")
        indicator = np.zeros(rectangle_mesh.n_elements)
        indicator[parents[0]] = 1.0
        refined = refine(rectangle_mesh, indicator, 0.5)
        assert len(refined.edges("bottom")) == len(rectangle_mesh.edges("bottom")) + 1

    def test_wrong_indicator_shape(self, rectangle_mesh):
        with pytest.raises(ValueError):
            refine(rectangle_mesh, np.zeros(3), 0.5)

    def test_gradient_indicator(self, rectangle_mesh):
        temperature = 1000.0 - 5000.0 * rectangle_mesh.nodes[:, 1]
        indicator = temperature_gradient_indicator(rectangle_mesh, temperature)
        np.testing.assert_allclose(indicator, 5000.0 * rectangle_mesh.element_sizes())


class TestGmshImport:
    """Second-order meshes written by gmsh."""

    def test_load_block(self, tmp_path):
        gmsh = gmsh_or_skip()
        path = str(tmp_path / "block.msh")
        gmsh.initialize()
        try:
            gmsh.option.setNumber("General.Terminal", 0)
            gmsh.model.add("block")
            corners = [(0.0, 0.0), (0.01, 0.0), (0.01, 0.02), (0.0, 0.02)]
            points = [gmsh.model.geo.addPoint(r, z, 0.0, 0.004) for r, z in corners]
            lines = [gmsh.model.geo.addLine(points[i], points[(i + 1) % 4]) for i in range(4)]
            loop = gmsh.model.geo.addCurveLoop(lines)
            surface = gmsh.model.geo.addPlaneSurface([loop])
            gmsh.model.geo.synchronize()
            for line, name in zip(lines, ("bottom", "wall", "top", "axis")):
                group = gmsh.model.addPhysicalGroup(1, [line])
                gmsh.model.setPhysicalName(1, group, name)
            group = gmsh.model.addPhysicalGroup(2, [surface])
            gmsh.model.setPhysicalName(2, group, "glass")
            gmsh.model.mesh.generate(2)
            gmsh.model.mesh.setOrder(2)
            gmsh.write(path)
        finally:
            gmsh.finalize()

        mesh = Mesh.from_file(path)
        assert set(mesh.tags) == {"axis", "bottom", "top", "wall"}
        assert np.all(mesh.element_areas() > 0)
        assert mesh.element_areas().sum() == pytest.approx(0.01 * 0.02)
        mesh.check_elements()
        for tag in mesh.tags:
            mesh.edge_parents(tag)

    def test_file_geometry_spec(self):
        with pytest.raises(ConfigurationError):
            GeometrySpec(GeometryKind.FILE, FileParams(path=""))
