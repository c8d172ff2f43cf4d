"""pyinsfem.core.dofhandler

Continuous Taylor-Hood numbering on a conforming quadrilateral mesh.

Nodes of each field are identified across cells by their (rounded) physical
coordinates, renumbered with reverse Cuthill-McKee, and laid out in two
blocks::

    [ u_x nodes | u_y nodes ]  [ p nodes ]
      block 0 (velocity)         block 1 (pressure)
"""
from __future__ import annotations

import logging
from typing import Dict, List, Tuple

import numpy as np
import scipy.sparse as sp
from scipy.sparse.csgraph import reverse_cuthill_mckee

from pyinsfem.errors import ConfigurationError
from pyinsfem.fem import transform

logger = logging.getLogger(__name__)


def _q(x: float, ndp: int = 10) -> float:
    """Quantize a coordinate for use in a dictionary key."""
    return float(round(x, ndp)) + 0.0   # + 0.0 folds -0.0 into 0.0


def _number_nodes(points: np.ndarray, renumber: bool) -> Tuple[np.ndarray, np.ndarray]:
    """Unify lattice points (nc, n, 2) into nodes; returns (cell_nodes, node_coords)."""
    nc, n, _ = points.shape
    key_to_id: Dict[Tuple[float, float], int] = {}
    coords: List[np.ndarray] = []
    cell_nodes = np.empty((nc, n), dtype=np.int64)
    for c in range(nc):
        for a in range(n):
            x, y = points[c, a]
            key = (_q(x), _q(y))
            nid = key_to_id.get(key)
            if nid is None:
                nid = len(coords)
                key_to_id[key] = nid
                coords.append(points[c, a])
            cell_nodes[c, a] = nid
    coords = np.array(coords)
    if renumber and len(coords) > 1:
        rows = np.repeat(cell_nodes, n, axis=1).ravel()
        cols = np.tile(cell_nodes, (1, n)).ravel()
        graph = sp.csr_matrix((np.ones(rows.size), (rows, cols)), shape=(len(coords),) * 2)
        perm = reverse_cuthill_mckee(graph, symmetric_mode=True)
        new_index = np.empty_like(perm)
        new_index[perm] = np.arange(perm.size)
        cell_nodes = new_index[cell_nodes]
        coords = coords[perm]
    return cell_nodes, coords


class DofHandler:
    def __init__(self, mesh, element, *, renumber: bool = True):
        self.mesh = mesh
        self.element = element
        self.renumber = renumber
        self.distribute_dofs()

    def distribute_dofs(self) -> None:
        el = self.element
        corners = self.mesh.cell_corners()
        u_pts = transform.x_mapping(corners, el.velocity_basis.lattice)
        p_pts = transform.x_mapping(corners, el.pressure_basis.lattice)
        self.velocity_nodes, self.velocity_node_coords = _number_nodes(u_pts, self.renumber)
        self.pressure_nodes, self.pressure_node_coords = _number_nodes(p_pts, self.renumber)

        dim = el.dim
        self.n_velocity_nodes = len(self.velocity_node_coords)
        self.n_pressure_nodes = len(self.pressure_node_coords)
        self.dofs_per_block = [dim * self.n_velocity_nodes, self.n_pressure_nodes]
        self.n_dofs = sum(self.dofs_per_block)

        blocks = [self.velocity_nodes + c * self.n_velocity_nodes for c in range(dim)]
        blocks.append(self.pressure_nodes + self.dofs_per_block[0])
        self.cell_dofs = np.concatenate(blocks, axis=1)
        if self.cell_dofs.shape[1] != el.dofs_per_cell:
            raise ConfigurationError("Wrong partitioning of dofs: cell dof count does not match the element.")

        self.dof_coords = np.vstack([self.velocity_node_coords] * dim + [self.pressure_node_coords])
        self.dof_component = np.concatenate(
            [np.full(self.n_velocity_nodes, c) for c in range(dim)] + [np.full(self.n_pressure_nodes, dim)])
        logger.info("distributed %d dofs (%d velocity + %d pressure) on %d cells",
                    self.n_dofs, self.dofs_per_block[0], self.dofs_per_block[1], self.mesh.n_cells)

    # ------------------------------------------------------------------
    @property
    def block_offsets(self) -> List[int]:
        return [0, self.dofs_per_block[0], self.n_dofs]

    def velocity_dofs(self, nodes, component: int) -> np.ndarray:
        return np.asarray(nodes, dtype=np.int64) + component * self.n_velocity_nodes

    def boundary_velocity_nodes(self, boundary_id: int) -> np.ndarray:
        """Velocity nodes on all mesh faces carrying ``boundary_id``."""
        basis = self.element.velocity_basis
        nodes = [self.velocity_nodes[cell, basis.face_lattice_indices(lid)]
                 for cell, lid in self.mesh.boundary_faces(boundary_id)]
        if not nodes:
            return np.empty(0, dtype=np.int64)
        return np.unique(np.concatenate(nodes))

    def vertex_velocity_nodes(self) -> np.ndarray:
        """Velocity node of every mesh vertex."""
        return self._vertex_nodes(self.velocity_nodes, self.element.velocity_basis.degree)

    def vertex_pressure_nodes(self) -> np.ndarray:
        return self._vertex_nodes(self.pressure_nodes, self.element.pressure_basis.degree)

    def _vertex_nodes(self, cell_nodes, degree):
        m = degree + 1
        # counter-clockwise corners on the (eta outer, xi inner) lattice
        lattice_corner = np.array([0, m - 1, m * m - 1, m * (m - 1)])
        out = np.full(self.mesh.n_nodes, -1, dtype=np.int64)
        out[self.mesh.corner_connectivity] = cell_nodes[:, lattice_corner]
        return out

    def vertex_values(self, solution) -> Tuple[np.ndarray, np.ndarray]:
        """Velocity (n_vertices, dim) and pressure (n_vertices,) at mesh vertices."""
        solution = np.asarray(solution)
        vn = self.vertex_velocity_nodes()
        velocity = np.column_stack([solution[self.velocity_dofs(vn, c)]
                                    for c in range(self.element.dim)])
        pressure = solution[self.dofs_per_block[0] + self.vertex_pressure_nodes()]
        return velocity, pressure

    def cell_coefficients(self, solution, cells=None) -> np.ndarray:
        dofs = self.cell_dofs if cells is None else self.cell_dofs[cells]
        return np.asarray(solution)[dofs]

    def __repr__(self):
        return (f"<DofHandler n_dofs={self.n_dofs}, blocks={self.dofs_per_block}, "
                f"cells={self.mesh.n_cells}>")
