"""pyinsfem.assembly.global_matrix

Global block system: sparsity built once per mesh, per-cell scatter plans
into the CSR ``data`` array, the system and mass matrices, the right-hand
side and the mass-Schur pattern ``B diag(M_uu)^-1 B^T``.
"""
from __future__ import annotations

import logging

import numba
import numpy as np
import scipy.sparse as sp

from pyinsfem.fem.fevalues import CellValues, FaceValues

logger = logging.getLogger(__name__)


@numba.njit(cache=True)
def _scatter_add(data, positions, values):
    """data[positions[c, k]] += values[c, k] for a batch of flattened local matrices."""
    nc, nk = positions.shape
    for c in range(nc):
        for k in range(nk):
            data[positions[c, k]] += values[c, k]


@numba.njit(cache=True)
def _scatter_add_vector(vec, dofs, values):
    nc, n = dofs.shape
    for c in range(nc):
        for i in range(n):
            vec[dofs[c, i]] += values[c, i]


def sparsity_pattern(cell_dofs: np.ndarray, n_dofs: int) -> sp.csr_matrix:
    """Structural pattern (all couplings inside a cell), entries 1.0, sorted indices."""
    n = cell_dofs.shape[1]
    rows = np.repeat(cell_dofs, n, axis=1).ravel()
    cols = np.tile(cell_dofs, (1, n)).ravel()
    P = sp.csr_matrix((np.ones(rows.size), (rows, cols)), shape=(n_dofs, n_dofs))
    P.sum_duplicates()
    P.sort_indices()
    P.data[:] = 1.0
    return P


def scatter_positions(pattern: sp.csr_matrix, cell_dofs: np.ndarray) -> np.ndarray:
    """Position in ``pattern.data`` of every local (i, j) entry, shape (nc, n*n)."""
    lookup = sp.csr_matrix((np.arange(1, pattern.nnz + 1, dtype=np.float64),
                            pattern.indices, pattern.indptr), shape=pattern.shape)
    n = cell_dofs.shape[1]
    rows = np.repeat(cell_dofs, n, axis=1).ravel()
    cols = np.tile(cell_dofs, (1, n)).ravel()
    pos = np.asarray(lookup[rows, cols]).ravel().astype(np.int64) - 1
    if np.any(pos < 0):
        raise RuntimeError("Cell coupling missing from the sparsity pattern.")
    return pos.reshape(len(cell_dofs), n * n)


class BlockMatrix:
    """CSR matrix with a 2 x 2 (velocity, pressure) block view."""

    def __init__(self, matrix: sp.csr_matrix, dofs_per_block):
        self.matrix = matrix
        self.dofs_per_block = list(dofs_per_block)
        self._blocks = {}

    @property
    def shape(self):
        return self.matrix.shape

    def block(self, i: int, j: int) -> sp.csr_matrix:
        key = (i, j)
        if key not in self._blocks:
            off = [0, self.dofs_per_block[0], sum(self.dofs_per_block)]
            self._blocks[key] = self.matrix[off[i]:off[i + 1], off[j]:off[j + 1]].tocsr()
        return self._blocks[key]

    def invalidate(self):
        self._blocks.clear()

    def __matmul__(self, x):
        return self.matrix @ x


@numba.njit(cache=True)
def _masked_product(b_indptr, b_indices, b_data, bt_indptr, bt_indices, bt_data,
                    s_indptr, s_indices, s_data, work):
    """s[i, j] = sum_k b[i, k] bt[k, j] for the (i, j) already in the pattern of s.

    ``b`` is CSR, ``bt`` is CSC; ``work`` is a zeroed buffer of length n_u
    and is zero again on return.
    """
    for i in range(len(s_indptr) - 1):
        for p in range(b_indptr[i], b_indptr[i + 1]):
            work[b_indices[p]] = b_data[p]
        for q in range(s_indptr[i], s_indptr[i + 1]):
            j = s_indices[q]
            acc = 0.0
            for p in range(bt_indptr[j], bt_indptr[j + 1]):
                acc += work[bt_indices[p]] * bt_data[p]
            s_data[q] = acc
        for p in range(b_indptr[i], b_indptr[i + 1]):
            work[b_indices[p]] = 0.0


class MassSchur:
    """S = B diag(M_uu)^-1 B^T on a pattern fixed for the lifetime of one mesh.

    The symbolic product is formed once in the constructor; ``compute`` only
    fills values into that pattern.
    """

    def __init__(self, pattern: sp.csr_matrix, dofs_per_block):
        nu = dofs_per_block[0]
        B = pattern[nu:, :nu]
        Bt = pattern[:nu, nu:]
        S = (B @ Bt).tocsr()
        S.sort_indices()
        S.data[:] = 1.0
        self.pattern = S
        self._work = np.zeros(nu)

    def compute(self, B: sp.csr_matrix, inverse_diagonal: np.ndarray, Bt: sp.csr_matrix) -> sp.csr_matrix:
        B = sp.csr_matrix(B)
        scaled = np.asarray(B.data * inverse_diagonal[B.indices], dtype=np.float64)
        Bt = sp.csc_matrix(Bt)
        data = np.zeros(self.pattern.nnz)
        _masked_product(B.indptr, B.indices, scaled, Bt.indptr, Bt.indices,
                        np.asarray(Bt.data, dtype=np.float64),
                        self.pattern.indptr, self.pattern.indices, data, self._work)
        return sp.csr_matrix((data, self.pattern.indices.copy(), self.pattern.indptr.copy()),
                             shape=self.pattern.shape)


class BlockSystem:
    """Global operators for one discretization (scipy storage, one process).

    ``assemble`` follows one pattern on every call: reset, loop over the
    locally owned cells in batches, condense with the chosen constraint set,
    scatter, then ``compress``.  Subclasses replace the storage hooks
    (``_allocate``, ``_reset``, ``_add_local``, ``compress``, ``rhs_norm``)
    and inherit the cell loop.
    """

    def __init__(self, dof_handler, assembler, execution, *, quadrature_order=None, batch_size=512):
        self.dof_handler = dof_handler
        self.assembler = assembler
        self.execution = execution
        self.batch_size = int(batch_size)
        el = dof_handler.element
        self.quadrature_order = quadrature_order or el.degree + 2
        self.cell_values = CellValues(el, self.quadrature_order)
        self.face_values = [FaceValues(el, self.quadrature_order, lid) for lid in range(4)]

        self.dofs_per_block = list(dof_handler.dofs_per_block)
        self.owned_cells = np.asarray(execution.owned_cells(dof_handler.mesh), dtype=np.int64)
        self._allocate()

    def _allocate(self) -> None:
        dof_handler = self.dof_handler
        self.pattern = sparsity_pattern(dof_handler.cell_dofs, dof_handler.n_dofs)
        self.positions = scatter_positions(self.pattern, dof_handler.cell_dofs)
        self.mass_schur = MassSchur(self.pattern, self.dofs_per_block)
        self.system_matrix = self._empty_matrix()
        self.mass_matrix = self._empty_matrix()
        self.system_rhs = np.zeros(dof_handler.n_dofs)
        logger.info("block system: %d x %d, nnz=%d, mass Schur nnz=%d", self.pattern.shape[0],
                    self.pattern.shape[1], self.pattern.nnz, self.mass_schur.pattern.nnz)

    def _empty_matrix(self) -> BlockMatrix:
        P = self.pattern
        csr = sp.csr_matrix((np.zeros(P.nnz), P.indices.copy(), P.indptr.copy()), shape=P.shape)
        return BlockMatrix(csr, self.dofs_per_block)

    @property
    def n_dofs(self) -> int:
        return self.dof_handler.n_dofs

    def cell_batches(self, cells):
        for start in range(0, len(cells), self.batch_size):
            yield cells[start:start + self.batch_size]

    def assemble(self, constraints, current, previous=None, *, dt, coupling=None,
                 neumann=None, assemble_matrix=True):
        """(Re)assemble the right-hand side and optionally the matrices.

        ``current``/``previous`` are global vectors, ``coupling`` a
        :class:`~pyinsfem.coupling.CouplingDataStore` and ``neumann`` a
        ``{boundary_id: pressure}`` table.
        """
        self._reset(assemble_matrix)
        for cells, dofs, K, F, M in self._local_systems(constraints, current, previous, dt=dt,
                                                        coupling=coupling, neumann=neumann,
                                                        assemble_matrix=assemble_matrix):
            self._add_local(cells, dofs, K, F, M, assemble_matrix)
        self.compress(assemble_matrix)

    def rhs_norm(self) -> float:
        return float(np.linalg.norm(self.system_rhs))

    # storage hooks -------------------------------------------------------
    def _reset(self, assemble_matrix):
        if assemble_matrix:
            self.system_matrix.matrix.data[:] = 0.0
            self.mass_matrix.matrix.data[:] = 0.0
        self.system_rhs[:] = 0.0

    def _add_local(self, cells, dofs, K, F, M, assemble_matrix):
        n = dofs.shape[1]
        if assemble_matrix:
            pos = self.positions[cells]
            _scatter_add(self.system_matrix.matrix.data, pos, K.reshape(len(cells), n * n))
            _scatter_add(self.mass_matrix.matrix.data, pos, M.reshape(len(cells), n * n))
        _scatter_add_vector(self.system_rhs, dofs, F)

    def compress(self, assemble_matrix=True):
        if assemble_matrix:
            self.system_matrix.invalidate()
            self.mass_matrix.invalidate()

    # cell loop -----------------------------------------------------------
    def _local_systems(self, constraints, current, previous, *, dt, coupling, neumann, assemble_matrix):
        """Condensed ``(cells, dofs, K, F, M)`` batches over the locally owned cells."""
        dh, mesh = self.dof_handler, self.dof_handler.mesh
        for cells in self.cell_batches(self.owned_cells):
            fe = self.cell_values.reinit(mesh.cell_corners(cells))
            cur = fe.sample(dh.cell_coefficients(current, cells))
            prev = None if previous is None else fe.sample(dh.cell_coefficients(previous, cells))
            data = None
            if coupling is not None:
                data = (coupling.indicator[cells], coupling.acceleration[cells], coupling.stress[cells])
            local = self.assembler.assemble(fe, cur, prev, dt=dt, coupling=data,
                                            assemble_matrix=assemble_matrix)
            F = local.rhs
            if neumann:
                F = F + self._neumann_rhs(cells, neumann)
            dofs = dh.cell_dofs[cells]
            K, F, M = constraints.condense(dofs, local.matrix, F, local.mass)
            yield cells, dofs, K, F, M

    def _neumann_rhs(self, cells, neumann):
        mesh = self.dof_handler.mesh
        row = {int(c): k for k, c in enumerate(cells)}
        F = np.zeros((len(cells), self.dof_handler.element.dofs_per_cell))
        for bid, pressure in neumann.items():
            faces = [(row[c], lid) for c, lid in mesh.boundary_faces(bid) if c in row]
            for lid in range(4):
                sel = np.array([k for k, l in faces if l == lid], dtype=np.int64)
                if sel.size == 0:
                    continue
                face = self.face_values[lid].reinit(mesh.cell_corners(cells[sel]))
                F[sel] += self.assembler.neumann_rhs(face, pressure)
        return F
