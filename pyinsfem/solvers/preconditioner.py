r"""
preconditioner.py  -  Block Schur-complement preconditioner
============================================================
Approximates the inverse of the saddle-point operator

.. math::

    \begin{pmatrix} A & B^T \\ B & 0 \end{pmatrix}

by the block upper-triangular factor with the Schur complement replaced by

.. math::

    \tilde S^{-1} = -(\nu + \gamma\rho)\, M_p^{-1} - \frac{\rho}{\Delta t}\, (B\,\mathrm{diag}(M_u)^{-1} B^T)^{-1}.

Each application performs two inner CG solves on the pressure space, one
matrix-vector product with :math:`B^T` and one velocity solve (CG or a
direct factorization).

:meth:`BlockSchurPreconditioner.vmult` is written against a handful of
storage hooks (split, join, axpby, inner solve, :math:`B^T` product) so the
same algorithm runs on numpy vectors here and on distributed PETSc vectors
in :mod:`pyinsfem.solvers.distributed`.
"""
from __future__ import annotations

import logging
import time

import numpy as np

from pyinsfem.errors import SingularPreconditionerError
from pyinsfem.solvers.linear import (BlockJacobiPreconditioner, DirectSolver, IdentityPreconditioner,
                                     ILUPreconditioner, cg_solve)

logger = logging.getLogger(__name__)

_INNER_NAMES = {"Mp": "CG (pressure mass)", "S": "CG (mass Schur)", "A": "CG (velocity)"}


class BlockSchurPreconditioner:
    """Upper block-triangular approximate inverse of the (velocity, pressure) system.

    The inner preconditioners for ``M_p`` and ``S`` are built lazily on the
    first ``vmult`` and then reused by every later application of the same
    instance (a new instance is created whenever the matrices are
    re-assembled).  Rebuilding them per application would give the same
    result at a higher cost.
    """

    def __init__(self, system_matrix, mass_matrix, mass_schur, *, viscosity: float, rho: float,
                 gamma: float, dt: float, velocity_solver: str = "cg", inner_tolerance: float = 1e-6,
                 pressure_ranges=None, zero_diagonal: str = "raise"):
        """
        Parameters
        ----------
        system_matrix, mass_matrix : BlockMatrix
            Freshly assembled operators.
        mass_schur : MassSchur
            Pattern holder; ``S`` is computed here once per instance.
        velocity_solver : {"cg", "direct"}
            CG without preconditioning, or an LU factorization of ``A`` built
            in the constructor and reused by every ``vmult``.
        pressure_ranges : list of (start, stop), optional
            Row ranges of the pressure block.  When given, the inner pressure
            solves use block Jacobi over these ranges instead of a global ILU.
        zero_diagonal : {"raise", "identity"}
            What to do when an inner preconditioner meets a zero diagonal.
        """
        self.viscosity, self.rho, self.gamma, self.dt = viscosity, rho, gamma, dt
        self.inner_tolerance = inner_tolerance
        self.pressure_ranges = pressure_ranges
        self.zero_diagonal = zero_diagonal
        self.velocity_solver = velocity_solver
        self._Mp_prec = None
        self._S_prec = None
        self.n_vmults = 0
        self.inner_iterations = {"Mp": 0, "S": 0, "A": 0}
        tic = time.perf_counter()
        self._build(system_matrix, mass_matrix, mass_schur)
        logger.debug("Schur preconditioner built in %.3f s", time.perf_counter() - tic)

    def _build(self, system_matrix, mass_matrix, mass_schur) -> None:
        self.n_u = system_matrix.dofs_per_block[0]
        self.A = system_matrix.block(0, 0)
        self.Bt = system_matrix.block(0, 1)
        self.Mp = mass_matrix.block(1, 1)
        Mu_diag = mass_matrix.block(0, 0).diagonal()
        if np.any(Mu_diag == 0.0):
            raise SingularPreconditionerError("Velocity mass matrix has zero diagonal entries.",
                                              matrix_name="M_uu")
        self.mass_schur_matrix = mass_schur.compute(system_matrix.block(1, 0), 1.0 / Mu_diag, self.Bt)
        self._direct = DirectSolver(self.A, "A") if self.velocity_solver == "direct" else None

    # ------------------------------------------------------------------
    #  Inner preconditioners
    # ------------------------------------------------------------------
    def _inner_preconditioner(self, matrix, name):
        try:
            return self._make_inner(matrix, name)
        except SingularPreconditionerError:
            if self.zero_diagonal == "raise":
                raise
            logger.warning("%s: singular inner preconditioner, continuing without preconditioning", name)
            return self._identity_inner(matrix, name)

    def _make_inner(self, matrix, name):
        if self.pressure_ranges is not None:
            return BlockJacobiPreconditioner(matrix, self.pressure_ranges, name)
        return ILUPreconditioner(matrix, name)

    def _identity_inner(self, matrix, name):
        return IdentityPreconditioner()

    def prepare(self) -> None:
        """Build the inner pressure preconditioners if that has not happened yet."""
        if self._Mp_prec is None:
            self._Mp_prec = self._inner_preconditioner(self.Mp, "pressure mass")
            self._S_prec = self._inner_preconditioner(self.mass_schur_matrix, "mass Schur")

    # ------------------------------------------------------------------
    #  Storage hooks (numpy)
    # ------------------------------------------------------------------
    def _split(self, src):
        src = np.asarray(src, dtype=float)
        return src[:self.n_u], src[self.n_u:]

    def _join(self, u0, u1):
        return np.concatenate([u0, u1])

    def _axpby(self, a, x, b, y):
        return a * x + b * y

    def _apply_Bt(self, u1):
        return self.Bt @ u1

    def _solve(self, key, rhs):
        if key == "A" and self._direct is not None:
            return self._direct.solve(rhs)
        matrix, prec = {"Mp": (self.Mp, self._Mp_prec),
                        "S": (self.mass_schur_matrix, self._S_prec),
                        "A": (self.A, IdentityPreconditioner())}[key]
        x, its, _ = cg_solve(matrix, rhs, prec, rtol=self.inner_tolerance, name=_INNER_NAMES[key])
        self.inner_iterations[key] += its
        return x

    # ------------------------------------------------------------------
    def vmult(self, src):
        v0, v1 = self._split(src)
        self.prepare()

        # pressure block: u1 = -(nu + gamma rho) Mp^-1 v1 - rho/dt S^-1 v1
        t = self._solve("Mp", v1)
        u1 = self._solve("S", v1)
        u1 = self._axpby(-self.rho / self.dt, u1, -(self.viscosity + self.gamma * self.rho), t)

        # velocity block
        w = self._axpby(1.0, v0, -1.0, self._apply_Bt(u1))
        u0 = self._solve("A", w)

        self.n_vmults += 1
        return self._join(u0, u1)

    __call__ = vmult
