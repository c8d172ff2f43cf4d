"""pyinsfem.core.constraints

Dirichlet constraints ``x_i = g_i`` and their application during assembly.

Local contributions are condensed before they are scattered: constrained
rows and columns are removed, the constrained diagonal entry is kept (so the
global matrix stays invertible and, for symmetric local matrices, symmetric),
the inhomogeneity ``-K g`` is moved to the right-hand side, and the
constrained right-hand-side entry becomes ``K_ii g_i``.  After a solve
:meth:`ConstraintSet.distribute` writes the exact values back.
"""
from __future__ import annotations

import logging
from typing import Mapping, Tuple

import numpy as np

from pyinsfem import boundary_values as bv

logger = logging.getLogger(__name__)


class ConstraintSet:
    def __init__(self, n_dofs: int, name: str = ""):
        self.n_dofs = int(n_dofs)
        self.name = name
        self.mask = np.zeros(self.n_dofs, dtype=bool)
        self.values = np.zeros(self.n_dofs)

    def add_line(self, dof: int, value: float = 0.0) -> None:
        self.add_lines(np.array([dof]), np.array([value]))

    def add_lines(self, dofs, values) -> None:
        """Constrain ``dofs``; entries already constrained keep their first value."""
        dofs = np.asarray(dofs, dtype=np.int64)
        values = np.broadcast_to(np.asarray(values, dtype=float), dofs.shape)
        new = ~self.mask[dofs]
        self.values[dofs[new]] = values[new]
        self.mask[dofs[new]] = True

    def is_constrained(self, dof: int) -> bool:
        return bool(self.mask[dof])

    @property
    def constrained_dofs(self) -> np.ndarray:
        return np.flatnonzero(self.mask)

    @property
    def n_constraints(self) -> int:
        return int(self.mask.sum())

    @property
    def is_homogeneous(self) -> bool:
        return not np.any(self.values[self.mask])

    def distribute(self, vector: np.ndarray) -> np.ndarray:
        """Set constrained entries of ``vector`` in place."""
        vector[self.mask] = self.values[self.mask]
        return vector

    def condense(self, dofs, matrix=None, rhs=None, mass=None):
        """Condense batched local contributions (nc, n, n) / (nc, n).

        Returns ``(matrix, rhs, mass)`` (copies; ``None`` stays ``None``).
        Without a matrix the inhomogeneity cannot be moved and constrained
        right-hand-side entries are simply dropped.
        """
        c = self.mask[dofs]                       # (nc, n)
        free = ~c
        if rhs is not None:
            rhs = np.array(rhs, dtype=float, copy=True)
        if matrix is not None:
            matrix = np.array(matrix, dtype=float, copy=True)
            g = np.where(c, self.values[dofs], 0.0)
            diag = _kept_diagonal(matrix)
            if rhs is not None:
                rhs -= np.einsum('cij,cj->ci', matrix, g)
                rhs = np.where(c, diag * g, rhs)
            matrix *= free[:, :, None] & free[:, None, :]
            _set_diagonal(matrix, c, diag)
        elif rhs is not None:
            rhs[c] = 0.0
        if mass is not None:
            mass = np.array(mass, dtype=float, copy=True)
            mdiag = _kept_diagonal(mass)
            mass *= free[:, :, None] & free[:, None, :]
            _set_diagonal(mass, c, mdiag)
        return matrix, rhs, mass

    def __repr__(self):
        return f"<ConstraintSet '{self.name}' {self.n_constraints}/{self.n_dofs} constrained>"


def _kept_diagonal(local):
    """Local diagonal, with zeros replaced by the mean |diagonal| of the cell."""
    diag = np.einsum('cii->ci', local).copy()
    avg = np.abs(diag).mean(axis=1, keepdims=True)
    avg[avg == 0.0] = 1.0
    return np.where(diag != 0.0, diag, avg)


def _set_diagonal(local, mask, diag):
    cells, idx = np.nonzero(mask)
    local[cells, idx, idx] = diag[cells, idx]


def make_dirichlet_constraints(dof_handler, table: Mapping[int, "bv.DirichletBC"]
                               ) -> Tuple[ConstraintSet, ConstraintSet]:
    """Build the inhomogeneous ("nonzero") and homogeneous ("zero") sets.

    Boundary ids are processed in ascending order; at a vertex shared by two
    boundaries the first one wins.
    """
    n = dof_handler.n_dofs
    nonzero = ConstraintSet(n, "nonzero")
    zero = ConstraintSet(n, "zero")
    for bid in sorted(table):
        bc = table[bid]
        nodes = dof_handler.boundary_velocity_nodes(bid)
        if nodes.size == 0:
            logger.warning("Dirichlet boundary %d has no faces on the current mesh", bid)
            continue
        coords = dof_handler.velocity_node_coords[nodes]
        for comp in bc.components:
            dofs = dof_handler.velocity_dofs(nodes, comp)
            nonzero.add_lines(dofs, bv.evaluate(bc.value, coords, comp))
            zero.add_lines(dofs, bv.evaluate(bv.Zero(), coords, comp))
    logger.debug("constraints: %r, %r", nonzero, zero)
    return nonzero, zero
