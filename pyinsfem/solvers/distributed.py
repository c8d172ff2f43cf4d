r"""
distributed.py  -  Row-partitioned operators and solvers on PETSc
==================================================================
Partitioned counterpart of :class:`~pyinsfem.assembly.global_matrix.BlockSystem`,
:class:`~pyinsfem.solvers.preconditioner.BlockSchurPreconditioner` and
:func:`~pyinsfem.solvers.linear.fgmres`.

* Rows are owned in a rank-contiguous ordering: rank ``r`` owns one slice of
  the velocity block followed by one slice of the pressure block
  (:func:`~pyinsfem.solvers.execution.partition_ordering`).  Each rank stores
  only its own rows of the system matrix, mass matrix and right-hand side.
* Each rank assembles its own cells; contributions to rows owned elsewhere
  are stashed by PETSc and summed by ``assemblyBegin/End``.
* The outer solve is a PETSc ``fgmres`` KSP whose ``python`` PC is the block
  Schur ``vmult``; every inner solve is a collective KSP on index-set
  sub-matrices.
* The solution increment is gathered back into block order on every rank,
  where the replicated mesh uses it as the ghosted copy of the field.
"""
from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp
from petsc4py import PETSc

from pyinsfem.assembly.global_matrix import BlockSystem, sparsity_pattern
from pyinsfem.errors import LinearSolveError, SingularPreconditionerError
from pyinsfem.solvers.execution import partition_ordering
from pyinsfem.solvers.linear import KrylovResult
from pyinsfem.solvers.preconditioner import _INNER_NAMES, BlockSchurPreconditioner

logger = logging.getLogger(__name__)

_ADD = PETSc.InsertMode.ADD_VALUES
_INSERT = PETSc.InsertMode.INSERT_VALUES


def _count_bad(vec, comm) -> int:
    """Number of zero or non-finite entries of a distributed vector."""
    values = vec.getArray(readonly=True)
    return comm.allreduce(int(np.count_nonzero((values == 0.0) | ~np.isfinite(values))))


class PetscLayout:
    """Ownership of the block system's rows on one rank."""

    def __init__(self, dofs_per_block, comm):
        self.comm = comm
        self.dofs_per_block = [int(n) for n in dofs_per_block]
        self.n_dofs = sum(self.dofs_per_block)
        rank, size = comm.Get_rank(), comm.Get_size()
        self.perm, self.offsets = partition_ordering(self.dofs_per_block, size)
        self.start, self.stop = int(self.offsets[rank]), int(self.offsets[rank + 1])
        self.n_local = self.stop - self.start

        inverse = np.empty_like(self.perm)
        inverse[self.perm] = np.arange(self.n_dofs)
        # block-ordered dof of every local row
        self.owned_rows = inverse[self.start:self.stop]
        n_local_u = int(np.count_nonzero(self.owned_rows < self.dofs_per_block[0]))
        rows = np.arange(self.start, self.stop, dtype=PETSc.IntType)
        self.is_u = PETSc.IS().createGeneral(rows[:n_local_u], comm=comm)
        self.is_p = PETSc.IS().createGeneral(rows[n_local_u:], comm=comm)

    def indices(self, dofs) -> np.ndarray:
        return self.perm[dofs].astype(PETSc.IntType)

    def gather(self, vec) -> np.ndarray:
        """Full block-ordered copy of a distributed vector on every rank."""
        scatter, full = PETSc.Scatter.toAll(vec)
        scatter.scatter(vec, full, addv=_INSERT, mode=PETSc.ScatterMode.FORWARD)
        values = full.getArray(readonly=True)[self.perm].copy()
        scatter.destroy()
        full.destroy()
        return values


class PetscBlockSystem(BlockSystem):
    """Block system whose matrices and right-hand side are row-partitioned PETSc objects."""

    def _allocate(self) -> None:
        self.layout = PetscLayout(self.dofs_per_block, self.execution.comm)
        indptr, indices = self._local_pattern()
        self.system_matrix = self._create_matrix(indptr, indices)
        self.mass_matrix = self._create_matrix(indptr, indices)
        self.system_rhs = self.system_matrix.createVecLeft()
        self.mass_schur = PetscMassSchur(self.layout)
        logger.info("block system: rows %d..%d of %d on rank %d, local nnz=%d",
                    self.layout.start, self.layout.stop, self.layout.n_dofs,
                    self.execution.rank, indices.size)

    def _local_pattern(self):
        """CSR structure of the local rows, columns in the partitioned ordering."""
        dh, layout = self.dof_handler, self.layout
        owned = np.zeros(dh.n_dofs, dtype=bool)
        owned[layout.owned_rows] = True
        touching = np.flatnonzero(owned[dh.cell_dofs].any(axis=1))
        rows = sparsity_pattern(dh.cell_dofs[touching], dh.n_dofs)[layout.owned_rows].tocsr()
        local = sp.csr_matrix((rows.data, layout.perm[rows.indices], rows.indptr), shape=rows.shape)
        local.sort_indices()
        return local.indptr.astype(PETSc.IntType), local.indices.astype(PETSc.IntType)

    def _create_matrix(self, indptr, indices):
        n, n_local = self.layout.n_dofs, self.layout.n_local
        A = PETSc.Mat().createAIJ(size=((n_local, n), (n_local, n)), comm=self.execution.comm)
        A.setPreallocationCSR((indptr, indices))
        A.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, True)
        return A

    def _reset(self, assemble_matrix):
        if assemble_matrix:
            self.system_matrix.zeroEntries()
            self.mass_matrix.zeroEntries()
        self.system_rhs.zeroEntries()

    def _add_local(self, cells, dofs, K, F, M, assemble_matrix):
        rows = self.layout.indices(dofs)
        for k, idx in enumerate(rows):
            if assemble_matrix:
                self.system_matrix.setValues(idx, idx, np.ascontiguousarray(K[k]), addv=_ADD)
                self.mass_matrix.setValues(idx, idx, np.ascontiguousarray(M[k]), addv=_ADD)
            self.system_rhs.setValues(idx, np.ascontiguousarray(F[k]), addv=_ADD)

    def compress(self, assemble_matrix=True):
        objects = [self.system_rhs]
        if assemble_matrix:
            objects += [self.system_matrix, self.mass_matrix]
        for obj in objects:
            obj.assemblyBegin()
        for obj in objects:
            obj.assemblyEnd()

    def rhs_norm(self) -> float:
        return float(self.system_rhs.norm())


class PetscMassSchur:
    """S = B diag(M_uu)^-1 B^T; sub-matrices and the symbolic product are kept between calls."""

    def __init__(self, layout: PetscLayout):
        self.layout = layout
        self.B = self.Bt = self.S = None
        self._scaled = None

    def compute(self, system_matrix, mass_matrix):
        is_u, is_p = self.layout.is_u, self.layout.is_p
        diagonal = mass_matrix.getDiagonal()
        sub = diagonal.getSubVector(is_u)
        inverse = sub.copy()
        diagonal.restoreSubVector(is_u, sub)
        if _count_bad(inverse, self.layout.comm):
            raise SingularPreconditionerError("Velocity mass matrix has zero diagonal entries.",
                                              matrix_name="M_uu")
        inverse.reciprocal()

        if self.S is None:
            self.B = system_matrix.createSubMatrix(is_p, is_u)
            self.Bt = system_matrix.createSubMatrix(is_u, is_p)
            self._scaled = self.Bt.copy()
            self._scaled.diagonalScale(L=inverse)
            self.S = self.B.matMult(self._scaled)
        else:
            system_matrix.createSubMatrix(is_p, is_u, submat=self.B)
            system_matrix.createSubMatrix(is_u, is_p, submat=self.Bt)
            self.Bt.copy(self._scaled, structure=PETSc.Mat.Structure.SAME_NONZERO_PATTERN)
            self._scaled.diagonalScale(L=inverse)
            self.B.matMult(self._scaled, result=self.S)
        return self.S


class PetscBlockSchurPreconditioner(BlockSchurPreconditioner):
    """The block Schur preconditioner on distributed operators.

    Also a petsc4py ``python`` PC context (:meth:`apply`).  Pressure solves
    are CG with ILU (one rank) or block Jacobi/ILU; the velocity solve is
    unpreconditioned CG or a direct factorization (LU on one rank, MUMPS
    when PETSc has it, otherwise a redundant LU).
    """

    def _build(self, system_matrix, mass_matrix, mass_schur) -> None:
        self.layout = mass_schur.layout
        self.comm = self.layout.comm
        self.is_u, self.is_p = self.layout.is_u, self.layout.is_p
        self.failure = None
        self.A = system_matrix.createSubMatrix(self.is_u, self.is_u)
        self.Mp = mass_matrix.createSubMatrix(self.is_p, self.is_p)
        self.mass_schur_matrix = mass_schur.compute(system_matrix, mass_matrix)
        self.Bt = mass_schur.Bt
        self._template = system_matrix.createVecLeft()
        self._velocity = self._velocity_ksp()

    def _ksp(self, matrix, prefix, ksp_type="cg"):
        ksp = PETSc.KSP().create(comm=self.comm)
        ksp.setOperators(matrix)
        ksp.setOptionsPrefix(prefix)
        ksp.setType(ksp_type)
        ksp.setTolerances(rtol=self.inner_tolerance, atol=0.0, max_it=matrix.getSize()[0])
        return ksp

    def _velocity_ksp(self):
        if self.velocity_solver != "direct":
            ksp = self._ksp(self.A, "velocity_")
            ksp.getPC().setType("none")
            ksp.setFromOptions()
            return ksp
        ksp = self._ksp(self.A, "velocity_", "preonly")
        pc = ksp.getPC()
        if self.comm.Get_size() == 1:
            pc.setType("lu")
        elif PETSc.Sys.hasExternalPackage("mumps"):
            pc.setType("lu")
            pc.setFactorSolverType("mumps")
        else:
            pc.setType("redundant")
        ksp.setFromOptions()
        try:
            ksp.setUp()
        except PETSc.Error as exc:
            raise SingularPreconditionerError(f"A: factorization failed ({exc})", matrix_name="A") from exc
        return ksp

    # inner preconditioners -------------------------------------------------
    @staticmethod
    def _prefix(name):
        return name.lower().replace(" ", "_") + "_"

    def _make_inner(self, matrix, name):
        bad = _count_bad(matrix.getDiagonal(), self.comm)
        if bad:
            raise SingularPreconditionerError(
                f"{name}: {bad} zero/non-finite diagonal entries; incomplete factorization "
                f"would divide by zero.", matrix_name=name)
        ksp = self._ksp(matrix, self._prefix(name))
        ksp.getPC().setType("bjacobi" if self.comm.Get_size() > 1 else "ilu")
        ksp.setFromOptions()
        return ksp

    def _identity_inner(self, matrix, name):
        ksp = self._ksp(matrix, self._prefix(name))
        ksp.getPC().setType("none")
        ksp.setFromOptions()
        return ksp

    # storage hooks (PETSc) ---------------------------------------------------
    @staticmethod
    def _extract(vec, iset):
        sub = vec.getSubVector(iset)
        out = sub.copy()
        vec.restoreSubVector(iset, sub)
        return out

    def _split(self, src):
        return self._extract(src, self.is_u), self._extract(src, self.is_p)

    def _join(self, u0, u1):
        out = self._template.duplicate()
        for iset, part in ((self.is_u, u0), (self.is_p, u1)):
            sub = out.getSubVector(iset)
            part.copy(sub)
            out.restoreSubVector(iset, sub)
        return out

    def _axpby(self, a, x, b, y):
        out = x.copy()
        out.scale(a)
        out.axpy(b, y)
        return out

    def _apply_Bt(self, u1):
        out = self.Bt.createVecLeft()
        self.Bt.mult(u1, out)
        return out

    def _solve(self, key, rhs):
        ksp = {"Mp": self._Mp_prec, "S": self._S_prec, "A": self._velocity}[key]
        x = rhs.duplicate()
        ksp.solve(rhs, x)
        reason = ksp.getConvergedReason()
        its = ksp.getIterationNumber()
        if reason == PETSc.KSP.ConvergedReason.DIVERGED_PCSETUP_FAILED:
            raise SingularPreconditionerError(f"{_INNER_NAMES[key]}: preconditioner setup failed.",
                                              matrix_name=key)
        if reason < 0:
            residual = float(ksp.getResidualNorm())
            raise LinearSolveError(
                f"{_INNER_NAMES[key]} did not converge: {its} iterations, residual {residual:.3e} "
                f"(reason {reason})", iterations=its, residual=residual)
        if not (key == "A" and self.velocity_solver == "direct"):
            self.inner_iterations[key] += its
        return x

    # petsc4py PC context -------------------------------------------------------
    def apply(self, pc, x, y):
        try:
            self.vmult(x).copy(y)
        except (LinearSolveError, SingularPreconditionerError) as exc:
            # PETSc turns this into a generic error; keep the original for the caller
            self.failure = exc
            raise


def petsc_fgmres(A, b, preconditioner, *, rtol: float, maxiter: int, restart: int = 30) -> KrylovResult:
    """Collective right-preconditioned FGMRES to ``rtol |b|``; ``x`` stays distributed."""
    preconditioner.prepare()
    ksp = PETSc.KSP().create(comm=A.getComm())
    ksp.setOperators(A)
    ksp.setOptionsPrefix("ns_")
    ksp.setType("fgmres")
    ksp.setGMRESRestart(restart)
    ksp.setTolerances(rtol=0.0, atol=rtol * b.norm(), max_it=maxiter)
    pc = ksp.getPC()
    pc.setType("python")
    pc.setPythonContext(preconditioner)
    ksp.setConvergenceHistory()
    ksp.setFromOptions()

    x = A.createVecRight()
    try:
        ksp.solve(b, x)
    except PETSc.Error:
        if getattr(preconditioner, "failure", None) is not None:
            raise preconditioner.failure
        raise
    reason = ksp.getConvergedReason()
    its = ksp.getIterationNumber()
    residual = float(ksp.getResidualNorm())
    history = [float(h) for h in ksp.getConvergenceHistory()]
    ksp.destroy()
    if reason < 0:
        raise LinearSolveError(
            f"FGMRES did not converge: {its} iterations, residual {residual:.3e} (reason {reason})",
            iterations=its, residual=residual)

    restarts = history[::restart]
    if history and (len(history) - 1) % restart:
        restarts.append(history[-1])
    return KrylovResult(x, its, residual, history, restarts)
