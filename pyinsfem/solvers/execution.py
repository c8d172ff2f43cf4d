"""Execution policies: single process, or cells and rows partitioned over MPI ranks.

Both policies share the assembly loop, the block preconditioner algorithm and
the Newton/IMEX controller; they differ in where operators live.

* :class:`SerialExecution` keeps scipy CSR matrices and numpy vectors and
  solves with the in-package FGMRES.
* :class:`PartitionedExecution` assembles the locally owned cells into
  row-partitioned PETSc ``Mat``/``Vec`` objects, finishes with a collective
  ``assemblyBegin/End`` (the compress step) and solves with a PETSc ``fgmres``
  KSP whose preconditioner is the same block Schur ``vmult``.  Every rank
  must take part in every assembly and solve, in the same order.
"""
from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import numpy as np

from pyinsfem.assembly.global_matrix import BlockSystem
from pyinsfem.solvers.linear import fgmres
from pyinsfem.solvers.preconditioner import BlockSchurPreconditioner

logger = logging.getLogger(__name__)


def _contiguous_ranges(n: int, size: int) -> List[Tuple[int, int]]:
    bounds = np.linspace(0, n, size + 1).round().astype(int)
    return [(int(bounds[r]), int(bounds[r + 1])) for r in range(size)]


def partition_ordering(dofs_per_block: Sequence[int], size: int) -> Tuple[np.ndarray, np.ndarray]:
    """Map block-ordered dofs ``[u | p]`` to a rank-contiguous ordering.

    Rank ``r`` owns one contiguous slice of every block; in the returned
    ordering its rows are ``offsets[r]:offsets[r + 1]``, velocity slice first.
    Returns ``(perm, offsets)`` with ``perm[block_index] = partitioned_index``.
    """
    nu, npr = (int(n) for n in dofs_per_block)
    vel, pre = _contiguous_ranges(nu, size), _contiguous_ranges(npr, size)
    perm = np.empty(nu + npr, dtype=np.int64)
    offsets = np.zeros(size + 1, dtype=np.int64)
    for r in range(size):
        (va, vb), (pa, pb) = vel[r], pre[r]
        start = offsets[r]
        perm[va:vb] = start + np.arange(vb - va)
        perm[nu + pa:nu + pb] = start + (vb - va) + np.arange(pb - pa)
        offsets[r + 1] = start + (vb - va) + (pb - pa)
    return perm, offsets


class SerialExecution:
    name = "serial"
    rank = 0
    size = 1

    @property
    def is_root(self) -> bool:
        return self.rank == 0

    def cell_subdomains(self, mesh) -> np.ndarray:
        """Owning rank of every cell: contiguous slabs ordered by centroid x."""
        order = np.lexsort((mesh.centroids()[:, 1], mesh.centroids()[:, 0]))
        owner = np.empty(mesh.n_cells, dtype=int)
        for r, (a, b) in enumerate(_contiguous_ranges(mesh.n_cells, self.size)):
            owner[order[a:b]] = r
        return owner

    def owned_cells(self, mesh) -> np.ndarray:
        return np.flatnonzero(self.cell_subdomains(mesh) == self.rank)

    def owned_ranges(self, dofs_per_block: Sequence[int]) -> List[Tuple[int, int]]:
        """Row range of this rank inside each block."""
        return [_contiguous_ranges(n, self.size)[self.rank] for n in dofs_per_block]

    # ------------------------------------------------------------------
    #  Linear algebra backend
    # ------------------------------------------------------------------
    def create_system(self, dof_handler, assembler, *, quadrature_order=None):
        return BlockSystem(dof_handler, assembler, self, quadrature_order=quadrature_order)

    def create_preconditioner(self, system, **options):
        return BlockSchurPreconditioner(system.system_matrix, system.mass_matrix, system.mass_schur,
                                        **options)

    def krylov_solve(self, system, preconditioner, *, rtol: float, maxiter: int, restart: int):
        """FGMRES to ``rtol |rhs|``; the result's ``x`` is a block-ordered numpy vector."""
        rhs = system.system_rhs
        return fgmres(system.system_matrix, rhs, preconditioner.vmult,
                      tol=rtol * np.linalg.norm(rhs), maxiter=maxiter, restart=restart)


class PartitionedExecution(SerialExecution):
    name = "partitioned"

    def __init__(self, comm=None):
        from mpi4py import MPI

        self.comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        logger.info("partitioned execution on rank %d of %d", self.rank, self.size)

    def create_system(self, dof_handler, assembler, *, quadrature_order=None):
        from pyinsfem.solvers.distributed import PetscBlockSystem

        return PetscBlockSystem(dof_handler, assembler, self, quadrature_order=quadrature_order)

    def create_preconditioner(self, system, **options):
        from pyinsfem.solvers.distributed import PetscBlockSchurPreconditioner

        return PetscBlockSchurPreconditioner(system.system_matrix, system.mass_matrix,
                                             system.mass_schur, **options)

    def krylov_solve(self, system, preconditioner, *, rtol: float, maxiter: int, restart: int):
        """Collective PETSc FGMRES; ``x`` comes back gathered in block order on every rank."""
        from pyinsfem.solvers.distributed import petsc_fgmres

        result = petsc_fgmres(system.system_matrix, system.system_rhs, preconditioner,
                              rtol=rtol, maxiter=maxiter, restart=restart)
        result.x = system.layout.gather(result.x)
        return result
