r"""
linear.py  -  Krylov and factorization building blocks
=======================================================
Thin wrappers around :mod:`scipy.sparse.linalg` that report
``(iterations, residual)`` and raise instead of returning silently when a
tolerance is not met, plus a flexible GMRES (scipy has none) whose
preconditioner may change from one application to the next.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Sequence, Tuple

import numpy as np
import scipy.linalg as sla
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from pyinsfem.errors import LinearSolveError, SingularPreconditionerError

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------------
#  Inner preconditioners
# ----------------------------------------------------------------------------

def check_diagonal(matrix, name: str) -> None:
    """Raise :class:`SingularPreconditionerError` on zero or non-finite diagonal entries."""
    d = matrix.diagonal()
    bad = np.flatnonzero((d == 0.0) | ~np.isfinite(d))
    if bad.size:
        raise SingularPreconditionerError(
            f"{name}: {bad.size} zero/non-finite diagonal entr{'y' if bad.size == 1 else 'ies'} "
            f"(first rows {bad[:5].tolist()}); incomplete factorization would divide by zero.",
            matrix_name=name, rows=bad)


class IdentityPreconditioner:
    def solve(self, x):
        return np.array(x, copy=True)


class ILUPreconditioner:
    """Incomplete LU of a sparse matrix (``scipy.sparse.linalg.spilu``)."""

    def __init__(self, matrix, name: str = "matrix", drop_tol: float = 1e-5, fill_factor: float = 10.0):
        check_diagonal(matrix, name)
        try:
            self._ilu = spla.spilu(sp.csc_matrix(matrix), drop_tol=drop_tol, fill_factor=fill_factor)
        except RuntimeError as exc:
            raise SingularPreconditionerError(f"{name}: {exc}", matrix_name=name) from exc

    def solve(self, x):
        return self._ilu.solve(np.asarray(x, dtype=float))


class BlockJacobiPreconditioner:
    """One ILU per owned row range; couplings between ranges are ignored."""

    def __init__(self, matrix, ranges: Sequence[Tuple[int, int]], name: str = "matrix"):
        check_diagonal(matrix, name)
        matrix = sp.csr_matrix(matrix)
        self.ranges = [(int(a), int(b)) for a, b in ranges if b > a]
        self._blocks = [ILUPreconditioner(matrix[a:b, a:b], f"{name}[{a}:{b}]") for a, b in self.ranges]

    def solve(self, x):
        x = np.asarray(x, dtype=float)
        out = np.zeros_like(x)
        for (a, b), ilu in zip(self.ranges, self._blocks):
            out[a:b] = ilu.solve(x[a:b])
        return out


class DirectSolver:
    """Sparse LU factorization, computed once and reused for every solve."""

    def __init__(self, matrix, name: str = "matrix"):
        self.name = name
        try:
            self._lu = spla.splu(sp.csc_matrix(matrix))
        except RuntimeError as exc:
            raise SingularPreconditionerError(f"{name}: {exc}", matrix_name=name) from exc

    def solve(self, b):
        x = self._lu.solve(np.asarray(b, dtype=float))
        if not np.all(np.isfinite(x)):
            raise SingularPreconditionerError(f"{self.name}: direct solve produced non-finite values.",
                                              matrix_name=self.name)
        return x


# ----------------------------------------------------------------------------
#  Conjugate gradient
# ----------------------------------------------------------------------------

def cg_solve(A, b, preconditioner=None, *, rtol: float = 1e-6, maxiter: int | None = None,
             name: str = "CG") -> Tuple[np.ndarray, int, float]:
    """Solve ``A x = b``; returns ``(x, iterations, residual)``.

    Stops when ``|b - A x| <= rtol |b|``; a zero right-hand side returns the
    zero vector immediately.
    """
    b = np.asarray(b, dtype=float)
    bnorm = np.linalg.norm(b)
    if bnorm == 0.0:
        return np.zeros_like(b), 0, 0.0
    maxiter = maxiter or b.size
    M = None
    if preconditioner is not None:
        M = spla.LinearOperator(A.shape, matvec=preconditioner.solve, dtype=float)
    its = [0]

    def _count(_):
        its[0] += 1

    x, info = spla.cg(A, b, rtol=rtol, atol=0.0, maxiter=maxiter, M=M, callback=_count)
    residual = float(np.linalg.norm(b - A @ x))
    if info != 0 or not np.isfinite(residual):
        raise LinearSolveError(
            f"{name} did not converge: {its[0]} iterations, residual {residual:.3e} "
            f"> {rtol:.1e} x {bnorm:.3e} (info={info})", iterations=its[0], residual=residual)
    return x, its[0], residual


# ----------------------------------------------------------------------------
#  Flexible GMRES
# ----------------------------------------------------------------------------

@dataclass
class KrylovResult:
    x: np.ndarray
    iterations: int
    residual: float
    history: List[float] = field(default_factory=list)            # estimate per iteration
    restart_residuals: List[float] = field(default_factory=list)  # true residual per cycle


def fgmres(A, b, preconditioner: Callable[[np.ndarray], np.ndarray], *, tol: float,
           maxiter: int, restart: int = 30, x0=None) -> KrylovResult:
    """Right-preconditioned flexible GMRES (Saad 1993) with restarts.

    ``tol`` is an absolute tolerance on ``|b - A x|``.  Raises
    :class:`LinearSolveError` if it is not met after ``maxiter`` iterations.
    """
    b = np.asarray(b, dtype=float)
    n = b.size
    x = np.zeros(n) if x0 is None else np.array(x0, dtype=float)
    r = b - A @ x
    beta = float(np.linalg.norm(r))
    result = KrylovResult(x, 0, beta, [beta], [beta])
    if beta <= tol:
        return result
    m = max(1, min(restart, n))

    while result.iterations < maxiter:
        V = np.zeros((n, m + 1))
        Z = np.zeros((n, m))
        H = np.zeros((m + 1, m))
        cs = np.zeros(m)
        sn = np.zeros(m)
        g = np.zeros(m + 1)
        g[0] = beta
        V[:, 0] = r / beta
        k = 0
        for j in range(m):
            Z[:, j] = preconditioner(V[:, j])
            w = A @ Z[:, j]
            # modified Gram-Schmidt
            for i in range(j + 1):
                H[i, j] = np.dot(w, V[:, i])
                w -= H[i, j] * V[:, i]
            H[j + 1, j] = np.linalg.norm(w)
            breakdown = H[j + 1, j] <= 1e-14 * abs(H[j, j]) or H[j + 1, j] == 0.0
            if not breakdown:
                V[:, j + 1] = w / H[j + 1, j]
            for i in range(j):
                hij = cs[i] * H[i, j] + sn[i] * H[i + 1, j]
                H[i + 1, j] = -sn[i] * H[i, j] + cs[i] * H[i + 1, j]
                H[i, j] = hij
            denom = np.hypot(H[j, j], H[j + 1, j])
            if denom == 0.0 or not np.isfinite(denom):
                raise LinearSolveError(
                    f"FGMRES broke down at iteration {result.iterations + 1} "
                    f"(non-finite or zero Hessenberg column).",
                    iterations=result.iterations, residual=beta)
            cs[j], sn[j] = H[j, j] / denom, H[j + 1, j] / denom
            H[j, j], H[j + 1, j] = denom, 0.0
            g[j + 1] = -sn[j] * g[j]
            g[j] = cs[j] * g[j]
            k = j + 1
            result.iterations += 1
            result.history.append(abs(g[j + 1]))
            if abs(g[j + 1]) <= tol or breakdown or result.iterations >= maxiter:
                break
        y = sla.solve_triangular(H[:k, :k], g[:k])
        x = x + Z[:, :k] @ y
        r = b - A @ x
        beta = float(np.linalg.norm(r))
        result.restart_residuals.append(beta)
        logger.debug("FGMRES cycle done: %d iterations, |r| = %.3e", result.iterations, beta)
        if beta <= tol or not np.isfinite(beta):
            break
        if breakdown and beta > tol:
            # stagnation: the Krylov space is exhausted without reaching tol
            break

    result.x, result.residual = x, beta
    if not beta <= tol:
        raise LinearSolveError(
            f"FGMRES did not converge: {result.iterations} iterations, residual {beta:.3e} > {tol:.3e}",
            iterations=result.iterations, residual=beta)
    return result
