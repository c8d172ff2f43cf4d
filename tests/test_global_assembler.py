import numpy as np
import pytest
import scipy.sparse as sp

from pyinsfem.assembly.global_matrix import BlockSystem, _scatter_add, scatter_positions, sparsity_pattern
from pyinsfem.assembly.local_assembler import ElementAssembler
from pyinsfem.core.constraints import ConstraintSet
from pyinsfem.core.dofhandler import DofHandler
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.parameters import Parameters
from pyinsfem.solvers.execution import SerialExecution
from pyinsfem.utils.adaptive_mesh import CellTree


def make_system(params=None, nx=2, ny=2, batch_size=512):
    params = params or Parameters()
    dh = DofHandler(CellTree(1.0, 1.0, nx, ny).to_mesh(), TaylorHoodElement(1))
    system = BlockSystem(dh, ElementAssembler(dh.element, params), SerialExecution(),
                         batch_size=batch_size)
    return dh, system


def test_scatter_positions_match_coo_assembly():
    dh = DofHandler(CellTree(1.0, 1.0, 2, 1).to_mesh(), TaylorHoodElement(1))
    P = sparsity_pattern(dh.cell_dofs, dh.n_dofs)
    pos = scatter_positions(P, dh.cell_dofs)
    data = np.zeros(P.nnz)
    n = dh.cell_dofs.shape[1]
    _scatter_add(data, pos, np.ones((len(pos), n * n)))
    rows = np.repeat(dh.cell_dofs, n, axis=1).ravel()
    cols = np.tile(dh.cell_dofs, (1, n)).ravel()
    ref = sp.csr_matrix((np.ones(rows.size), (rows, cols)), shape=P.shape)
    got = sp.csr_matrix((data, P.indices, P.indptr), shape=P.shape)
    np.testing.assert_allclose(got.toarray(), ref.toarray())


def test_mass_matrix_blocks():
    dh, system = make_system()
    system.assemble(ConstraintSet(dh.n_dofs), np.zeros(dh.n_dofs), dt=0.01)
    M = system.mass_matrix
    assert abs(M.matrix - M.matrix.T).max() < 1e-14
    assert M.block(0, 0).sum() == pytest.approx(2.0)
    assert M.block(1, 1).sum() == pytest.approx(1.0)
    assert abs(M.block(0, 1)).sum() == 0.0
    assert abs(M.block(1, 0)).sum() == 0.0
    K = system.system_matrix.matrix
    assert abs(K - K.T).max() < 1e-12
    np.testing.assert_allclose(system.system_rhs, 0.0)


def test_batching_does_not_change_result():
    rng = np.random.default_rng(3)
    dh, a = make_system(nx=3, ny=2)
    _, b = make_system(nx=3, ny=2, batch_size=2)
    u = rng.normal(size=dh.n_dofs)
    for s in (a, b):
        s.assemble(ConstraintSet(dh.n_dofs), u, dt=0.01)
    np.testing.assert_allclose(a.system_matrix.matrix.toarray(), b.system_matrix.matrix.toarray(), atol=1e-12)
    np.testing.assert_allclose(a.system_rhs, b.system_rhs, atol=1e-12)


def test_mass_schur_pattern_and_values():
    dh, system = make_system()
    nu = dh.dofs_per_block[0]
    P = system.pattern
    product = (P[nu:, :nu] @ P[:nu, nu:]).tocsr()
    S_pat = system.mass_schur.pattern
    np.testing.assert_array_equal(S_pat.indptr, product.indptr)
    np.testing.assert_array_equal(np.sort(S_pat.indices), np.sort(product.indices))

    system.assemble(ConstraintSet(dh.n_dofs), np.zeros(dh.n_dofs), dt=0.01)
    A = system.system_matrix
    inv_diag = 1.0 / system.mass_matrix.block(0, 0).diagonal()
    S = system.mass_schur.compute(A.block(1, 0), inv_diag, A.block(0, 1))
    dense = A.block(1, 0).toarray() @ np.diag(inv_diag) @ A.block(0, 1).toarray()
    np.testing.assert_allclose(S.toarray(), dense, atol=1e-14)
    np.testing.assert_allclose(S.toarray(), S.toarray().T, atol=1e-14)


def test_mass_schur_reuses_its_pattern():
    dh, system = make_system()
    system.assemble(ConstraintSet(dh.n_dofs), np.zeros(dh.n_dofs), dt=0.01)
    A = system.system_matrix
    pattern = system.mass_schur.pattern
    indptr, indices = pattern.indptr.copy(), pattern.indices.copy()
    base = 1.0 / system.mass_matrix.block(0, 0).diagonal()
    for inv_diag in (base, 3.0 * base, np.linspace(1.0, 2.0, base.size)):
        S = system.mass_schur.compute(A.block(1, 0), inv_diag, A.block(0, 1))
        dense = A.block(1, 0).toarray() @ np.diag(inv_diag) @ A.block(0, 1).toarray()
        np.testing.assert_allclose(S.toarray(), dense, atol=1e-13)
        np.testing.assert_array_equal(S.indptr, indptr)
        np.testing.assert_array_equal(S.indices, indices)
    assert system.mass_schur.pattern is pattern
    assert not system.mass_schur._work.any()


def test_rhs_only_assembly_keeps_matrices():
    dh, system = make_system()
    u = np.random.default_rng(0).normal(size=dh.n_dofs)
    system.assemble(ConstraintSet(dh.n_dofs), u, dt=0.01)
    K = system.system_matrix.matrix.data.copy()
    F = system.system_rhs.copy()
    system.assemble(ConstraintSet(dh.n_dofs), u, dt=0.01, assemble_matrix=False)
    np.testing.assert_array_equal(system.system_matrix.matrix.data, K)
    np.testing.assert_allclose(system.system_rhs, F, atol=1e-12)


def test_neumann_load():
    dh, system = make_system()
    system.assemble(ConstraintSet(dh.n_dofs), np.zeros(dh.n_dofs), dt=0.01, neumann={1: 1.0})
    nu = dh.n_velocity_nodes
    assert system.system_rhs[:nu].sum() == pytest.approx(-1.0)
    np.testing.assert_allclose(system.system_rhs[nu:], 0.0, atol=1e-14)


def test_constrained_rows():
    dh, system = make_system()
    cs = ConstraintSet(dh.n_dofs)
    dofs = dh.velocity_dofs(dh.boundary_velocity_nodes(0), 0)
    cs.add_lines(dofs, 1.0)
    system.assemble(cs, np.zeros(dh.n_dofs), dt=0.01)
    K = system.system_matrix.matrix.toarray()
    k = dofs[0]
    assert np.count_nonzero(K[k]) == 1 and K[k, k] > 0
    assert np.count_nonzero(K[:, k]) == 1
    assert system.system_rhs[k] == pytest.approx(K[k, k])
