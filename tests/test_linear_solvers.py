import numpy as np
import pytest
import scipy.sparse as sp

from pyinsfem.errors import LinearSolveError, SingularPreconditionerError
from pyinsfem.solvers.linear import (BlockJacobiPreconditioner, DirectSolver, IdentityPreconditioner,
                                     ILUPreconditioner, cg_solve, check_diagonal, fgmres)


def laplace_1d(n):
    return sp.diags([-np.ones(n - 1), 4.0 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1], format='csr')


def convection_diffusion(n, peclet=0.8):
    return sp.diags([-(1 + peclet) * np.ones(n - 1), 2.5 * np.ones(n), -(1 - peclet) * np.ones(n - 1)],
                    [-1, 0, 1], format='csr')


def test_cg_solve():
    A = laplace_1d(50)
    b = np.linspace(0.0, 1.0, 50)
    x, its, res = cg_solve(A, b, ILUPreconditioner(A), rtol=1e-10)
    assert res <= 1e-10 * np.linalg.norm(b)
    assert its >= 1
    np.testing.assert_allclose(A @ x, b, atol=1e-8)


def test_cg_zero_rhs_and_failure():
    A = laplace_1d(50)
    x, its, res = cg_solve(A, np.zeros(50))
    assert its == 0 and res == 0.0 and not x.any()
    with pytest.raises(LinearSolveError) as info:
        cg_solve(A, np.ones(50), rtol=1e-14, maxiter=1)
    assert info.value.iterations == 1


def test_fgmres_nonsymmetric():
    A = convection_diffusion(80)
    b = np.sin(np.arange(80.0))
    tol = 1e-10 * np.linalg.norm(b)
    plain = fgmres(A, b, IdentityPreconditioner().solve, tol=tol, maxiter=400, restart=20)
    ilu = fgmres(A, b, ILUPreconditioner(A).solve, tol=tol, maxiter=400, restart=20)
    for result in (plain, ilu):
        assert np.linalg.norm(b - A @ result.x) <= tol
        assert result.restart_residuals[0] == pytest.approx(np.linalg.norm(b))
    assert ilu.iterations < plain.iterations
    assert len(plain.history) == plain.iterations + 1


def test_fgmres_zero_rhs_and_failure():
    A = convection_diffusion(40)
    result = fgmres(A, np.zeros(40), IdentityPreconditioner().solve, tol=0.0, maxiter=40)
    assert result.iterations == 0 and not result.x.any()
    with pytest.raises(LinearSolveError):
        fgmres(A, np.ones(40), IdentityPreconditioner().solve, tol=1e-14, maxiter=2, restart=2)


def test_fgmres_restart_residuals_do_not_grow():
    A = laplace_1d(60)
    b = np.cos(np.arange(60.0))
    tol = 1e-10 * np.linalg.norm(b)
    result = fgmres(A, b, IdentityPreconditioner().solve, tol=tol, maxiter=200, restart=3)
    cycles = result.restart_residuals
    assert cycles[0] == pytest.approx(np.linalg.norm(b))
    assert len(cycles) > 2
    assert all(later <= earlier * (1 + 1e-12) for earlier, later in zip(cycles, cycles[1:]))
    assert cycles[-1] <= tol


def test_zero_diagonal_detection():
    A = laplace_1d(10).tolil()
    A[3, 3] = 0.0
    A = A.tocsr()
    with pytest.raises(SingularPreconditionerError) as info:
        check_diagonal(A, "test")
    assert info.value.rows.tolist() == [3]
    with pytest.raises(SingularPreconditionerError):
        ILUPreconditioner(A, "test")


def test_block_jacobi_on_block_diagonal_matrix():
    A = sp.block_diag([laplace_1d(6), 2.0 * laplace_1d(4)], format='csr')
    prec = BlockJacobiPreconditioner(A, [(0, 6), (6, 10)])
    b = np.arange(1.0, 11.0)
    np.testing.assert_allclose(prec.solve(b), np.linalg.solve(A.toarray(), b), atol=1e-10)


def test_direct_solver():
    A = convection_diffusion(30)
    b = np.ones(30)
    np.testing.assert_allclose(A @ DirectSolver(A).solve(b), b, atol=1e-10)
