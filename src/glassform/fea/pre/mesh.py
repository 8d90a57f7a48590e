from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable

import numpy as np
import matplotlib.pyplot as plt

from glassform.errors import GeometryError
from glassform.fea.analysis.finite_elements.tri6 import LOCAL_EDGES, Tri6, element_geometry
from glassform.model.problem import (
    CylinderParams,
    FileParams,
    GeometryKind,
    GeometrySpec,
    NeckDownParams,
    RectangleParams,
)

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)

LINE_ELEMENT_TYPE_MAP = {
    8: 3,  # 3-node second order line (2 nodes associated with the vertices and 1 with the edge).
}

SURFACE_ELEMENT_TYPE_MAP = {
    9: 6,  # 6-node second order triangle (3 nodes associated with the vertices and 3 with the edges).
}


def _edge_key(a: int, b: int) -> tuple[int, int]:
    return (a, b) if a < b else (b, a)


class Mesh:
    """
    Axisymmetric six-node triangle mesh.

    Attributes:
        nodes: ``(N, 2)`` coordinates ``(r, z)``. Moved in place by mesh motion.
        elements: ``(E, 6)`` node indices, vertices counter-clockwise then
            midside nodes of edges 0-1, 1-2 and 2-0.
        boundary_edges: tag -> ``(M, 3)`` edges ``(start, end, mid)`` with the
            domain on their left.
    """

    def __init__(
        self,
        nodes: npt.NDArray[np.float64],
        elements: npt.NDArray[np.int64],
        boundary_edges: Dict[str, npt.NDArray[np.int64]],
    ) -> None:
        """
        Initialize the Mesh class and validate the connectivity.

        Raises:
            GeometryError: If an element or edge references a node that does not exist.
        """
        self.nodes = np.array(nodes, dtype=np.float64).reshape(-1, 2)
        self.elements = np.array(elements, dtype=np.int64).reshape(-1, 6)
        self.boundary_edges = {
            str(tag): np.array(edges, dtype=np.int64).reshape(-1, 3) for tag, edges in boundary_edges.items()
        }

        n_nodes = self.nodes.shape[0]
        if self.elements.size == 0:
            raise GeometryError("Mesh has no elements.")
        out_of_range = (self.elements < 0) | (self.elements >= n_nodes)
        if out_of_range.any():
            index = int(np.argmax(out_of_range.any(axis=1)))
            raise GeometryError(f"Element {index} references a node outside 0..{n_nodes - 1}.", element_index=index)
        for tag, edges in self.boundary_edges.items():
            if ((edges < 0) | (edges >= n_nodes)).any():
                raise GeometryError(f"Boundary '{tag}' references a node outside 0..{n_nodes - 1}.", tag=tag)
        if not np.isfinite(self.nodes).all():
            raise GeometryError("Mesh contains non-finite node coordinates.")

        self.vertex_nodes = np.unique(self.elements[:, :3])
        self.pressure_index = np.full(n_nodes, -1, dtype=np.int64)
        self.pressure_index[self.vertex_nodes] = np.arange(self.vertex_nodes.size)

    def __repr__(self) -> str:
        return (f"{self.__class__.__name__}(nodes={self.n_nodes}, elements={self.n_elements}, "
                f"boundaries={sorted(self.boundary_edges)})")

    # --- SIZES & LOOKUPS ---

    @property
    def n_nodes(self) -> int:
        return self.nodes.shape[0]

    @property
    def n_elements(self) -> int:
        return self.elements.shape[0]

    @property
    def n_pressure_nodes(self) -> int:
        return self.vertex_nodes.size

    @property
    def pressure_elements(self) -> npt.NDArray[np.int64]:
        """``(E, 3)`` pressure-node indices of each element."""
        return self.pressure_index[self.elements[:, :3]]

    @property
    def tags(self) -> list[str]:
        return sorted(self.boundary_edges)

    def edges(self, tag: str) -> npt.NDArray[np.int64]:
        """
        Boundary edges carrying ``tag``.

        Raises:
            GeometryError: If the tag is unknown.
        """
        try:
            return self.boundary_edges[tag]
        except KeyError:
            raise GeometryError(
                f"Unknown boundary tag '{tag}'. Available: {', '.join(self.tags)}", tag=tag
            ) from None

    def boundary_nodes(self, tags: Iterable[str]) -> npt.NDArray[np.int64]:
        """All nodes (vertices and midside nodes) on the given boundaries."""
        parts = [self.edges(tag).ravel() for tag in tags]
        if not parts:
            return np.empty(0, dtype=np.int64)
        return np.unique(np.concatenate(parts))

    def element(self, index: int) -> Tri6:
        return Tri6(index=index, coords=self.nodes[self.elements[index]])

    def element_areas(self) -> npt.NDArray[np.float64]:
        v = self.nodes[self.elements[:, :3]]
        return 0.5 * ((v[:, 1, 0] - v[:, 0, 0]) * (v[:, 2, 1] - v[:, 0, 1])
                      - (v[:, 2, 0] - v[:, 0, 0]) * (v[:, 1, 1] - v[:, 0, 1]))

    def element_sizes(self) -> npt.NDArray[np.float64]:
        """Element height ``2 A / longest edge``."""
        v = self.nodes[self.elements[:, :3]]
        lengths = np.linalg.norm(v[:, LOCAL_EDGES[:, 1]] - v[:, LOCAL_EDGES[:, 0]], axis=2)
        return 2.0 * np.abs(self.element_areas()) / lengths.max(axis=1)

    def check_elements(self, n_points: int = 3) -> None:
        """
        Raise ``GeometryError`` for the first element with a non-positive Jacobian.
        """
        element_geometry(self.nodes, self.elements, n_points)

    def edge_parents(self, tag: str) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]:
        """
        Owning element and local edge number of each boundary edge of ``tag``.
        """
        lookup = self._edge_lookup()
        edges = self.edges(tag)
        parents = np.empty(len(edges), dtype=np.int64)
        local = np.empty(len(edges), dtype=np.int64)
        for i, (a, b, _) in enumerate(edges):
            owners = lookup.get(_edge_key(int(a), int(b)))
            if not owners:
                raise GeometryError(f"Boundary edge ({a}, {b}) of '{tag}' belongs to no element.", tag=tag)
            parents[i], local[i] = owners[0]
        return parents, local

    def midside_parents(self) -> npt.NDArray[np.int64]:
        """``(K, 3)`` rows ``(midside node, vertex a, vertex b)``, one per unique edge."""
        rows = {}
        for k, (a, b, m) in enumerate(LOCAL_EDGES):
            for va, vb, vm in zip(self.elements[:, a], self.elements[:, b], self.elements[:, m]):
                rows[int(vm)] = (int(vm), int(va), int(vb))
        return np.array(sorted(rows.values()), dtype=np.int64).reshape(-1, 3)

    def _edge_lookup(self) -> Dict[tuple[int, int], list[tuple[int, int]]]:
        lookup: Dict[tuple[int, int], list[tuple[int, int]]] = {}
        for e, element in enumerate(self.elements):
            for k, (a, b, _) in enumerate(LOCAL_EDGES):
                lookup.setdefault(_edge_key(int(element[a]), int(element[b])), []).append((e, k))
        return lookup

    # --- MOTION ---

    def move_nodes(self, displacement: npt.NDArray[np.float64]) -> None:
        """Displace node coordinates in place; connectivity is untouched."""
        self.nodes += displacement

    def boundary_node_normals(self, tags: Iterable[str]) -> tuple[npt.NDArray[np.int64], npt.NDArray[np.float64]]:
        """
        Outward unit normals at the nodes of the given boundaries, averaged
        over the adjacent edges with length weights.
        """
        normals = np.zeros_like(self.nodes)
        touched = []
        for tag in tags:
            edges = self.edges(tag)
            chord = self.nodes[edges[:, 1]] - self.nodes[edges[:, 0]]
            # length-weighted outward normal of each chord
            edge_normal = np.stack([chord[:, 1], -chord[:, 0]], axis=1)
            for column in range(3):
                np.add.at(normals, edges[:, column], edge_normal)
            touched.append(edges.ravel())
        if not touched:
            return np.empty(0, dtype=np.int64), np.empty((0, 2))
        ids = np.unique(np.concatenate(touched))
        length = np.linalg.norm(normals[ids], axis=1)
        return ids, normals[ids] / np.where(length > 0.0, length, 1.0)[:, None]

    # --- SERIALIZATION ---

    def copy(self) -> Mesh:
        return Mesh(self.nodes.copy(), self.elements.copy(), {t: e.copy() for t, e in self.boundary_edges.items()})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": self.nodes.tolist(),
            "elements": self.elements.tolist(),
            "boundary_edges": {tag: edges.tolist() for tag, edges in self.boundary_edges.items()},
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> Mesh:
        return Mesh(
            nodes=np.array(data["nodes"], dtype=np.float64),
            elements=np.array(data["elements"], dtype=np.int64),
            boundary_edges={tag: np.array(e, dtype=np.int64) for tag, e in data["boundary_edges"].items()},
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Mesh):
            return NotImplemented
        return (
            np.array_equal(self.nodes, other.nodes)
            and np.array_equal(self.elements, other.elements)
            and self.boundary_edges.keys() == other.boundary_edges.keys()
            and all(np.array_equal(e, other.boundary_edges[t]) for t, e in self.boundary_edges.items())
        )

    __hash__ = None

    # --- IMPORT ---

    @classmethod
    def from_file(cls, filename: str) -> Mesh:
        """
        Load a second-order gmsh mesh.

        Coordinates ``(x, y)`` are read as ``(r, z)``. 6-node triangles form
        the domain; 3-node lines with a physical name become boundary edges
        tagged with that name. Clockwise elements and edges are reoriented.

        Call from the main thread: ``gmsh.initialize()`` registers signal handlers.
        """
        import gmsh  # loads the native gmsh library only when a file is read

        initialized_here = not gmsh.isInitialized()
        if initialized_here:
            gmsh.initialize()
        try:
            gmsh.option.setNumber("General.Terminal", 0)
            gmsh.open(filename)

            # 1) Read all nodes once
            node_tags, flat_coords, _ = gmsh.model.mesh.get_nodes()
            coords = np.asarray(flat_coords, dtype=np.float64).reshape(-1, 3)[:, :2]
            node_tags = np.asarray(node_tags, dtype=np.int64)
            tag_to_index = np.full(int(node_tags.max()) + 1, -1, dtype=np.int64)
            tag_to_index[node_tags] = np.arange(node_tags.size)

            triangles: list[npt.NDArray[np.int64]] = []
            lines: Dict[str, list[npt.NDArray[np.int64]]] = {}

            # 2) Loop all gmsh entities to pick up physical-group names and entities' elements
            for dim, entity_tag in gmsh.model.get_entities():
                physical_tags = gmsh.model.get_physical_groups_for_entity(dim, entity_tag)
                physical_names = [gmsh.model.get_physical_name(dim, physical_tag) for physical_tag in physical_tags]

                element_types, _, node_tags_list = gmsh.model.mesh.get_elements(dim, entity_tag)
                for element_type, flat_node_tags in zip(element_types, node_tags_list):
                    connectivity = tag_to_index[np.asarray(flat_node_tags, dtype=np.int64)]
                    if element_type in SURFACE_ELEMENT_TYPE_MAP:
                        triangles.append(connectivity.reshape(-1, SURFACE_ELEMENT_TYPE_MAP[element_type]))
                    elif element_type in LINE_ELEMENT_TYPE_MAP and physical_names:
                        name = physical_names[0]
                        lines.setdefault(name, []).append(connectivity.reshape(-1, LINE_ELEMENT_TYPE_MAP[element_type]))
        finally:
            if initialized_here:
                gmsh.finalize()

        if not triangles:
            raise GeometryError(f"'{filename}' contains no 6-node triangles; mesh with order 2.")

        elements = np.concatenate(triangles)
        used = np.unique(elements)
        if used.size != coords.shape[0]:
            # drop geometry points that carry no element node
            remap = np.full(coords.shape[0], -1, dtype=np.int64)
            remap[used] = np.arange(used.size)
            coords = coords[used]
            elements = remap[elements]
            lines = {name: [remap[block] for block in blocks] for name, blocks in lines.items()}

        elements = _orient_counter_clockwise(coords, elements)
        boundary = {name: np.concatenate(blocks) for name, blocks in lines.items()}
        mesh = cls(nodes=coords, elements=elements, boundary_edges=boundary)
        mesh._orient_boundary_edges()
        logger.info(f"Loaded mesh from {filename}: {mesh}")
        return mesh

    def _orient_boundary_edges(self) -> None:
        """Flip boundary edges so they follow their element's counter-clockwise traversal."""
        for tag in self.tags:
            parents, local = self.edge_parents(tag)
            edges = self.boundary_edges[tag]
            start = self.elements[parents, LOCAL_EDGES[local, 0]]
            flip = edges[:, 0] != start
            edges[flip, 0], edges[flip, 1] = edges[flip, 1], edges[flip, 0].copy()

    # --- PLOTTING ---

    def plot(self, show: bool = True, node_labels: bool = False) -> plt.Figure:
        """Plot the mesh with element outlines and coloured boundary tags."""
        plt.rcParams["figure.constrained_layout.use"] = True
        fig = plt.figure()

        plt.axis('equal')

        cmap = plt.get_cmap("gist_rainbow", max(len(self.boundary_edges), 1))
        tag_to_color = {tag: cmap(i % cmap.N) for i, tag in enumerate(self.tags)}

        # curved outline through the midside nodes: 0 3 1 4 2 5 0
        outline = self.elements[:, [0, 3, 1, 4, 2, 5, 0]]
        for polygon in self.nodes[outline]:
            plt.plot(polygon[:, 0], polygon[:, 1], color='black', lw=0.5)

        for tag, edges in self.boundary_edges.items():
            color = tag_to_color[tag]
            for i, edge in enumerate(edges):
                coords = self.nodes[edge[[0, 2, 1]]]
                plt.plot(coords[:, 0], coords[:, 1], color=color, lw=2, label=tag if i == 0 else "_nolegend_")

        if node_labels:
            for i, (r, z) in enumerate(self.nodes):
                plt.text(r, z, str(i), fontsize=8, color='k', ha='left', va='bottom')

        plt.grid(visible=True, which='major', axis='both', linestyle='-', color='gray', lw=0.5)
        plt.minorticks_on()
        plt.grid(visible=True, which='minor', axis='both', linestyle=':', color='gray', lw=0.5)

        plt.title(f"Mesh plotted at {datetime.now().strftime('%d.%m.%Y %H:%M:%S')}")
        plt.xlabel("r (m)")
        plt.ylabel("z (m)")
        plt.legend(loc='best')
        if show:
            plt.show()
        return fig


def _orient_counter_clockwise(nodes: npt.NDArray[np.float64], elements: npt.NDArray[np.int64]) -> npt.NDArray[np.int64]:
    """Swap vertices 1 and 2 (and midside nodes 3 and 5) of clockwise elements."""
    elements = elements.copy()
    v = nodes[elements[:, :3]]
    signed = ((v[:, 1, 0] - v[:, 0, 0]) * (v[:, 2, 1] - v[:, 0, 1])
              - (v[:, 2, 0] - v[:, 0, 0]) * (v[:, 1, 1] - v[:, 0, 1]))
    clockwise = signed < 0.0
    elements[clockwise] = elements[clockwise][:, [0, 2, 1, 5, 4, 3]]
    return elements


# --- STRUCTURED GENERATION ---

def _structured(
    n_s: int,
    n_t: int,
    mapping: Callable[[npt.NDArray[np.float64], npt.NDArray[np.float64]], tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]],
    tags: tuple[str, str, str, str],
) -> Mesh:
    """
    Quadratic triangles on a mapped ``n_s x n_t`` grid of the unit square.

    Args:
        n_s: Cells in the radial parameter ``s``.
        n_t: Cells in the axial parameter ``t``.
        mapping: ``(s, t) -> (r, z)``, orientation preserving.
        tags: Names of the ``s = 0``, ``s = 1``, ``t = 0`` and ``t = 1`` sides.
    """
    n_a, n_b = 2 * n_s + 1, 2 * n_t + 1
    s, t = np.meshgrid(np.linspace(0.0, 1.0, n_a), np.linspace(0.0, 1.0, n_b))
    r, z = mapping(s.ravel(), t.ravel())
    nodes = np.column_stack([r, z])

    def idx(a: int, b: int) -> int:
        return b * n_a + a

    elements = []
    for j in range(n_t):
        for i in range(n_s):
            a, b = 2 * i, 2 * j
            # split along the (0, 0) - (1, 1) diagonal
            elements.append([idx(a, b), idx(a + 2, b), idx(a + 2, b + 2),
                             idx(a + 1, b), idx(a + 2, b + 1), idx(a + 1, b + 1)])
            elements.append([idx(a, b), idx(a + 2, b + 2), idx(a, b + 2),
                             idx(a + 1, b + 1), idx(a + 1, b + 2), idx(a, b + 1)])

    left, right, bottom, top = tags
    boundary = {
        bottom: [[idx(2 * i, 0), idx(2 * i + 2, 0), idx(2 * i + 1, 0)] for i in range(n_s)],
        right: [[idx(n_a - 1, 2 * j), idx(n_a - 1, 2 * j + 2), idx(n_a - 1, 2 * j + 1)] for j in range(n_t)],
        top: [[idx(2 * i + 2, n_b - 1), idx(2 * i, n_b - 1), idx(2 * i + 1, n_b - 1)] for i in reversed(range(n_s))],
        left: [[idx(0, 2 * j + 2), idx(0, 2 * j), idx(0, 2 * j + 1)] for j in reversed(range(n_t))],
    }
    return Mesh(nodes=nodes, elements=np.array(elements), boundary_edges={k: np.array(v) for k, v in boundary.items()})


def generate_structured(geometry: GeometrySpec) -> Mesh:
    """
    Generate the mesh of a canonical shape.

    Boundary tags:
        rectangle: ``left``, ``right``, ``bottom``, ``top``
        cylinder: ``axis`` (solid) or ``inner`` (hollow), ``outer``, ``bottom``, ``top``
        neck_down: ``axis``, ``surface``, ``inlet`` (z = 0), ``outlet`` (z = L)
    """
    p = geometry.parameters
    match geometry.kind, p:
        case GeometryKind.RECTANGLE, RectangleParams():
            mesh = _structured(
                p.n_radial, p.n_axial,
                lambda s, t: (p.r_min + p.width * s, p.height * t),
                ("left", "right", "bottom", "top"),
            )
        case GeometryKind.CYLINDER, CylinderParams():
            inner = "axis" if p.inner_radius == 0.0 else "inner"
            mesh = _structured(
                p.n_radial, p.n_axial,
                lambda s, t: (p.inner_radius + (p.outer_radius - p.inner_radius) * s, p.height * t),
                (inner, "outer", "bottom", "top"),
            )
        case GeometryKind.NECK_DOWN, NeckDownParams():
            ratio = p.fiber_radius / p.preform_radius
            mesh = _structured(
                p.n_radial, p.n_axial,
                lambda s, t: (p.preform_radius * ratio ** t * s, p.length * t),
                ("axis", "surface", "inlet", "outlet"),
            )
        case GeometryKind.FILE, FileParams():
            mesh = Mesh.from_file(p.path)
        case _:
            raise GeometryError(f"Cannot generate geometry '{geometry.kind}' from {type(p).__name__}.")
    logger.info(f"Generated {geometry.kind} mesh: {mesh}")
    return mesh


# --- REFINEMENT ---

def temperature_gradient_indicator(mesh: Mesh, temperature: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
    """
    Per-element indicator ``h |grad T|`` evaluated at the centroid.
    """
    geometry = element_geometry(mesh.nodes, mesh.elements, n_points=1)
    T = temperature[mesh.elements]  # (E, 6)
    dT_dr = np.einsum("eqa,ea->eq", geometry.dN_dr, T)[:, 0]
    dT_dz = np.einsum("eqa,ea->eq", geometry.dN_dz, T)[:, 0]
    return mesh.element_sizes() * np.hypot(dT_dr, dT_dz)


def refine(mesh: Mesh, error_indicator: npt.NDArray[np.float64], threshold: float) -> Mesh:
    """
    Split elements whose indicator exceeds ``threshold``.

    Flagged elements are split red (four children through their midside
    nodes). Any element with two or more split edges is promoted to red until
    nothing changes; elements with exactly one split edge are bisected green.
    The result is conforming. Midside nodes of split edges become vertices,
    children inherit their parent's position in the element order.

    Args:
        mesh: Mesh to refine; it is not modified.
        error_indicator: One value per element.
        threshold: Elements with ``indicator > threshold`` are refined.

    Returns:
        A new mesh (a copy when nothing is flagged).
    """
    indicator = np.asarray(error_indicator, dtype=np.float64)
    if indicator.shape != (mesh.n_elements,):
        raise ValueError(f"Indicator needs one value per element ({mesh.n_elements}), got shape {indicator.shape}.")
    red = indicator > threshold
    if not red.any():
        return mesh.copy()

    elements = mesh.elements
    original_mid = {}
    for e in range(mesh.n_elements):
        for a, b, m in LOCAL_EDGES:
            original_mid[_edge_key(int(elements[e, a]), int(elements[e, b]))] = int(elements[e, m])

    def element_edges(e: int) -> list[tuple[int, int]]:
        return [_edge_key(int(elements[e, a]), int(elements[e, b])) for a, b, _ in LOCAL_EDGES]

    split: set[tuple[int, int]] = set()
    for e in np.flatnonzero(red):
        split.update(element_edges(e))
    changed = True
    while changed:
        changed = False
        for e in np.flatnonzero(~red):
            if sum(key in split for key in element_edges(e)) >= 2:
                red[e] = True
                split.update(element_edges(e))
                changed = True

    nodes = [tuple(xy) for xy in mesh.nodes]
    new_mid: Dict[tuple[int, int], int] = {}

    def mid(p: int, q: int) -> int:
        key = _edge_key(p, q)
        if key in original_mid and key not in split:
            return original_mid[key]
        if key not in new_mid:
            (rp, zp), (rq, zq) = nodes[p], nodes[q]
            nodes.append((0.5 * (rp + rq), 0.5 * (zp + zq)))
            new_mid[key] = len(nodes) - 1
        return new_mid[key]

    def tri(p0: int, p1: int, p2: int) -> list[int]:
        return [p0, p1, p2, mid(p0, p1), mid(p1, p2), mid(p2, p0)]

    new_elements = []
    for e in range(mesh.n_elements):
        v0, v1, v2, m01, m12, m20 = (int(n) for n in elements[e])
        if red[e]:
            new_elements += [tri(v0, m01, m20), tri(m01, v1, m12), tri(m20, m12, v2), tri(m01, m12, m20)]
            continue
        keys = element_edges(e)
        marked = [k for k in range(3) if keys[k] in split]
        if not marked:
            new_elements.append([v0, v1, v2, m01, m12, m20])
            continue
        k = marked[0]
        a, b = int(elements[e, LOCAL_EDGES[k, 0]]), int(elements[e, LOCAL_EDGES[k, 1]])
        m = int(elements[e, LOCAL_EDGES[k, 2]])
        c = int(elements[e, LOCAL_EDGES[(k + 1) % 3, 1]])
        new_elements += [tri(a, m, c), tri(m, b, c)]

    boundary = {}
    for tag, edges in mesh.boundary_edges.items():
        rows = []
        for s, t, m in (tuple(int(n) for n in edge) for edge in edges):
            if _edge_key(s, t) in split:
                rows += [[s, m, mid(s, m)], [m, t, mid(m, t)]]
            else:
                rows.append([s, t, m])
        boundary[tag] = np.array(rows, dtype=np.int64)

    refined = Mesh(np.array(nodes, dtype=np.float64), np.array(new_elements, dtype=np.int64), boundary)
    logger.info(f"Refined {int(red.sum())} of {mesh.n_elements} elements red, "
                f"{refined.n_elements - mesh.n_elements - 3 * int(red.sum())} green splits: {refined}")
    return refined
