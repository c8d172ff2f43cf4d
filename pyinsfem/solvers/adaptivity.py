"""Error estimation, fixed-fraction marking and solution transfer between meshes."""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Tuple

import numpy as np
from scipy.spatial import cKDTree

from pyinsfem.fem import transform
from pyinsfem.fem.fevalues import FaceValues

logger = logging.getLogger(__name__)


def kelly_error_estimate(dof_handler, solution, quadrature_order: int | None = None) -> np.ndarray:
    """Per-cell indicator from jumps of the normal velocity derivative.

    eta_K^2 = sum over interior faces F of K of  h_K / 24 * int_F |[grad u] n|^2
    """
    mesh, el = dof_handler.mesh, dof_handler.element
    order = quadrature_order or el.degree + 2
    h = mesh.diameters()
    eta2 = np.zeros(mesh.n_cells)
    groups = defaultdict(list)
    for e in mesh.interior_edges():
        groups[(e.lid, e.rlid)].append((e.left, e.right))
    for (lid, rlid), pairs in groups.items():
        pairs = np.array(pairs, dtype=np.int64)
        L, R = pairs[:, 0], pairs[:, 1]
        left = FaceValues(el, order, lid).reinit(mesh.cell_corners(L))
        right = FaceValues(el, order, rlid).reinit(mesh.cell_corners(R))
        grad_l = left.sample(dof_handler.cell_coefficients(solution, L)).gradients
        # the neighbour walks the shared edge in the opposite direction
        grad_r = right.sample(dof_handler.cell_coefficients(solution, R)).gradients[:, ::-1]
        jump = np.einsum('cqab,cqb->cqa', grad_l - grad_r, left.normals)
        integral = np.einsum('cqa,cqa,cq->c', jump, jump, left.JxW)
        np.add.at(eta2, L, h[L] / 24.0 * integral)
        np.add.at(eta2, R, h[R] / 24.0 * integral)
    return np.sqrt(eta2)


def refine_and_coarsen_fixed_fraction(errors, top_fraction: float, bottom_fraction: float
                                      ) -> Tuple[np.ndarray, np.ndarray]:
    """Cells to refine (largest errors summing to ``top_fraction`` of the total)
    and to coarsen (smallest errors summing to at most ``bottom_fraction``)."""
    errors = np.asarray(errors, dtype=float)
    n = errors.size
    total = errors.sum()
    empty = np.empty(0, dtype=np.int64)
    if n == 0 or total <= 0.0:
        return empty, empty
    desc = np.argsort(-errors, kind='stable')
    refine = empty
    if top_fraction > 0.0:
        n_ref = min(n, int(np.searchsorted(np.cumsum(errors[desc]), top_fraction * total)) + 1)
        refine = desc[:n_ref]
    coarsen = empty
    if bottom_fraction > 0.0:
        asc = desc[::-1]
        n_co = int(np.searchsorted(np.cumsum(errors[asc]), bottom_fraction * total, side='right'))
        coarsen = np.setdiff1d(asc[:n_co], refine)
    return np.sort(refine), np.sort(coarsen)


class SolutionTransfer:
    """Evaluate a field of an old discretization at arbitrary points."""

    def __init__(self, dof_handler, solution):
        self.dof_handler = dof_handler
        self.solution = np.array(solution, copy=True)
        mesh = dof_handler.mesh
        self._corners = mesh.cell_corners()
        self._lo = self._corners.min(axis=1)
        self._hi = self._corners.max(axis=1)
        self._tree = cKDTree(mesh.centroids())
        self._tol = 1e-10 * float(np.max(self._hi - self._lo))

    def _contains(self, cell, x):
        return np.all(x >= self._lo[cell] - self._tol) and np.all(x <= self._hi[cell] + self._tol)

    def locate(self, x) -> Tuple[int, np.ndarray]:
        """(cell, reference point) of physical point ``x``."""
        n_cells = len(self._corners)
        _, near = self._tree.query(x, k=min(8, n_cells))
        candidates = np.atleast_1d(near).tolist() + list(range(n_cells))
        for cell in candidates:
            if not self._contains(cell, x):
                continue
            ref = transform.inverse_mapping(self._corners[cell], x)
            if np.all(np.abs(ref) <= 1.0 + 1e-8):
                return cell, np.clip(ref, -1.0, 1.0)
        raise ValueError(f"Point {x} lies outside the old mesh.")

    def evaluate(self, points) -> Tuple[np.ndarray, np.ndarray]:
        """Velocity (m, dim) and pressure (m,) at physical points."""
        points = np.atleast_2d(points)
        el = self.dof_handler.element
        by_cell = defaultdict(list)
        for k, x in enumerate(points):
            cell, ref = self.locate(x)
            by_cell[cell].append((k, ref))
        velocity = np.zeros((len(points), el.dim))
        pressure = np.zeros(len(points))
        for cell, items in by_cell.items():
            idx = [k for k, _ in items]
            refs = np.array([r for _, r in items])
            coef = self.dof_handler.cell_coefficients(self.solution, [cell])[0]
            u, p = el.field_values(coef, refs)
            velocity[idx] = u
            pressure[idx] = p
        return velocity, pressure

    def interpolate(self, new_dof_handler) -> np.ndarray:
        """Nodal interpolation of the stored field onto ``new_dof_handler``."""
        dh = new_dof_handler
        out = np.zeros(dh.n_dofs)
        u, _ = self.evaluate(dh.velocity_node_coords)
        for c in range(dh.element.dim):
            out[dh.velocity_dofs(np.arange(dh.n_velocity_nodes), c)] = u[:, c]
        _, p = self.evaluate(dh.pressure_node_coords)
        out[dh.dofs_per_block[0]:] = p
        logger.debug("transferred solution: %d -> %d dofs", self.dof_handler.n_dofs, dh.n_dofs)
        return out
