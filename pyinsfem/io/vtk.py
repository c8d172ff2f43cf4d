"""pyinsfem.io.vtk
VTU snapshots (meshio) and the ParaView collection file that indexes them.
"""
from __future__ import annotations

import logging
import os
from typing import List, Tuple
from xml.sax.saxutils import quoteattr

import meshio
import numpy as np

logger = logging.getLogger(__name__)


def export_vtk(filename: str, mesh, dof_handler, solution, *, cell_data=None, cells=None) -> str:
    """Write velocity/pressure at the mesh vertices plus optional cell fields.

    ``cells`` restricts the output to a subset of cells (one piece of a
    partitioned run); ``cell_data`` arrays are indexed by global cell id.
    """
    points_3d = np.pad(mesh.nodes_x_y_pos, ((0, 0), (0, 1)), constant_values=0)
    cells = np.arange(mesh.n_cells) if cells is None else np.asarray(cells)
    velocity, pressure = dof_handler.vertex_values(solution)
    vel3 = np.zeros((mesh.n_nodes, 3))
    vel3[:, :velocity.shape[1]] = velocity
    out_cells = {name: [np.asarray(arr, dtype=float)[cells]] for name, arr in (cell_data or {}).items()}
    meshio.Mesh(points_3d,
                [meshio.CellBlock('quad', mesh.corner_connectivity[cells])],
                point_data={"velocity": vel3, "pressure": pressure},
                cell_data=out_cells).write(filename)
    return filename


class OutputWriter:
    """Owns the (time, filename) list of one run and the ``.pvd`` collection."""

    def __init__(self, directory: str = ".", basename: str = "navierstokes"):
        self.directory = directory
        self.basename = basename
        self.times_and_names: List[Tuple[float, str]] = []
        os.makedirs(directory, exist_ok=True)

    @property
    def pvd_filename(self) -> str:
        return os.path.join(self.directory, f"{self.basename}.pvd")

    def write(self, index: int, time: float, mesh, dof_handler, solution, *, indicator=None,
              subdomain=None, rank: int = 0, size: int = 1) -> str:
        """Write snapshot ``index``; returns this rank's file name."""
        cell_data = {"Indicator": np.zeros(mesh.n_cells) if indicator is None else indicator}
        cells = None
        if size > 1:
            names = [f"{self.basename}-{index:06d}-{r:04d}.vtu" for r in range(size)]
            cell_data["subdomain"] = subdomain
            cells = np.flatnonzero(np.asarray(subdomain) == rank)
        else:
            names = [f"{self.basename}-{index:06d}.vtu"]
            if subdomain is not None:
                cell_data["subdomain"] = subdomain
        filename = names[rank if size > 1 else 0]
        export_vtk(os.path.join(self.directory, filename), mesh, dof_handler, solution,
                   cell_data=cell_data, cells=cells)
        if rank == 0:
            self.times_and_names.extend((float(time), name) for name in names)
            self.write_pvd()
            logger.info("Solution exported to %s (t = %g)", filename, time)
        return filename

    def write_pvd(self) -> None:
        lines = ['<?xml version="1.0"?>',
                 '<VTKFile type="Collection" version="0.1" byte_order="LittleEndian">',
                 '  <Collection>']
        parts = {}
        for t, name in self.times_and_names:
            part = parts.setdefault(t, 0)
            parts[t] += 1
            lines.append(f'    <DataSet timestep="{t:.12g}" group="" part="{part}" file={quoteattr(name)}/>')
        lines += ['  </Collection>', '</VTKFile>', '']
        with open(self.pvd_filename, "w") as fh:
            fh.write("\n".join(lines))
