"""
Input/Output Manager (HDF5)
Handles saving and loading meshes and run results to .h5 files, and the
export of results to VTU for external viewers.
"""
from __future__ import annotations

from dataclasses import asdict
import json
import logging
from importlib.metadata import version, PackageNotFoundError

import h5py
import meshio
import numpy as np

from glassform.errors import ConfigurationError
from glassform.fea.pre.mesh import Mesh
from glassform.model.state import ConvergenceRecord, FieldState, Result, SummaryMetrics

# Get module logger
logger = logging.getLogger(__name__)

try:
    APP_VERSION = version("glassform")
except PackageNotFoundError:
    APP_VERSION = "0.0.0-dev"

FIELD_NAMES = ("temperature", "velocity", "pressure", "fictive_temperature", "viscosity")


class IOManager:

    # --- MESH ---

    @staticmethod
    def _write_mesh(group: h5py.Group, mesh: Mesh) -> None:
        group.create_dataset("nodes", data=mesh.nodes, compression="gzip")
        group.create_dataset("elements", data=mesh.elements, compression="gzip")
        grp_bnd = group.create_group("boundary_edges")
        for tag, edges in mesh.boundary_edges.items():
            grp_bnd.create_dataset(tag, data=edges)

    @staticmethod
    def _read_mesh(group: h5py.Group) -> Mesh:
        return Mesh(
            nodes=group["nodes"][:],
            elements=group["elements"][:],
            boundary_edges={tag: dset[:] for tag, dset in group["boundary_edges"].items()},
        )

    @staticmethod
    def _check_file(filepath: str) -> None:
        if not h5py.is_hdf5(filepath):
            msg = f"File '{filepath}' is not a valid HDF5 file."
            logger.error(msg)
            raise ConfigurationError(msg)

    @staticmethod
    def save_mesh(mesh: Mesh, filepath: str) -> None:
        logger.info(f"Saving mesh to: {filepath}")
        with h5py.File(filepath, "w") as f:
            f.attrs["version"] = APP_VERSION
            IOManager._write_mesh(f.create_group("mesh"), mesh)

    @staticmethod
    def load_mesh(filepath: str) -> Mesh:
        logger.info(f"Loading mesh from: {filepath}")
        IOManager._check_file(filepath)
        with h5py.File(filepath, "r") as f:
            return IOManager._read_mesh(f["mesh"])

    # --- RESULTS ---

    @staticmethod
    def save_result(result: Result, filepath: str) -> None:
        """
        Write mesh, fields, stresses, metrics and the convergence record.

        Metrics and the record are small and go into JSON attributes; arrays
        are gzip-compressed datasets.
        """
        logger.info(f"Saving result to: {filepath}")
        with h5py.File(filepath, "w") as f:
            f.attrs["version"] = APP_VERSION
            IOManager._write_mesh(f.create_group("mesh"), result.mesh)

            grp_fields = f.create_group("fields")
            for name in FIELD_NAMES:
                grp_fields.create_dataset(name, data=getattr(result.fields, name), compression="gzip")

            grp_res = f.create_group("results")
            grp_res.create_dataset("residual_stress", data=result.residual_stress, compression="gzip")
            grp_res.create_dataset("von_mises_stress", data=result.von_mises_stress, compression="gzip")
            grp_res.attrs["metrics_json"] = json.dumps(asdict(result.metrics))
            grp_res.attrs["convergence_json"] = json.dumps(result.convergence.to_list())
        logger.debug(f"Saved result with {len(result.convergence)} convergence entries.")

    @staticmethod
    def load_result(filepath: str) -> Result:
        logger.info(f"Loading result from: {filepath}")
        IOManager._check_file(filepath)
        with h5py.File(filepath, "r") as f:
            stored = str(f.attrs.get("version", "unknown"))
            if stored != APP_VERSION:
                logger.warning(f"Result was written by version {stored}, reading with {APP_VERSION}.")
            mesh = IOManager._read_mesh(f["mesh"])
            grp_fields = f["fields"]
            fields = FieldState(**{name: grp_fields[name][:] for name in FIELD_NAMES})
            grp_res = f["results"]
            return Result(
                mesh=mesh,
                fields=fields,
                residual_stress=grp_res["residual_stress"][:],
                von_mises_stress=grp_res["von_mises_stress"][:],
                metrics=SummaryMetrics(**json.loads(grp_res.attrs["metrics_json"])),
                convergence=ConvergenceRecord.from_list(json.loads(grp_res.attrs["convergence_json"])),
            )

    # --- EXPORT ---

    @staticmethod
    def export_vtu(result: Result, filepath: str) -> None:
        """
        Write the node fields on quadratic triangles in the ``(r, z)`` plane.

        Pressure lives on the vertices; midside nodes get the mean of their
        two vertices.
        """
        mesh = result.mesh
        points = np.column_stack([mesh.nodes, np.zeros(mesh.n_nodes)])
        fields = result.fields

        pressure = np.zeros(mesh.n_nodes)
        pressure[mesh.vertex_nodes] = fields.pressure[mesh.pressure_index[mesh.vertex_nodes]]
        mid, a, b = mesh.midside_parents().T
        pressure[mid] = 0.5 * (pressure[a] + pressure[b])

        out = meshio.Mesh(
            points=points,
            cells=[("triangle6", mesh.elements)],
            point_data={
                "temperature": fields.temperature,
                "velocity": np.column_stack([fields.velocity, np.zeros(mesh.n_nodes)]),
                "pressure": pressure,
                "fictive_temperature": fields.fictive_temperature,
                "viscosity": fields.viscosity,
                "residual_stress": result.residual_stress,
                "von_mises_stress": result.von_mises_stress,
            },
        )
        meshio.write(filepath, out, file_format="vtu")
        logger.info(f"Exported result to: {filepath}")
