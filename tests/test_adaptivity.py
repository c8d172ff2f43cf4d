import numpy as np
import pytest

from pyinsfem.core.dofhandler import DofHandler
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.solvers.adaptivity import (SolutionTransfer, kelly_error_estimate,
                                         refine_and_coarsen_fixed_fraction)
from pyinsfem.utils.adaptive_mesh import CellTree


def interpolate(dh, ux, uy, p):
    x, y = dh.dof_coords[:, 0], dh.dof_coords[:, 1]
    comp = dh.dof_component
    return np.where(comp == 0, ux(x, y), np.where(comp == 1, uy(x, y), p(x, y)))


def test_kelly_vanishes_for_smooth_quadratic():
    dh = DofHandler(CellTree(1.0, 1.0, 3, 3).to_mesh(), TaylorHoodElement(1))
    sol = interpolate(dh, lambda x, y: x * y, lambda x, y: x ** 2 - y, lambda x, y: x)
    np.testing.assert_allclose(kelly_error_estimate(dh, sol), 0.0, atol=1e-10)


def test_kelly_detects_kink():
    dh = DofHandler(CellTree(1.0, 0.25, 4, 1).to_mesh(), TaylorHoodElement(1))
    sol = interpolate(dh, lambda x, y: np.abs(x - 0.5), lambda x, y: 0 * x, lambda x, y: 0 * x)
    eta = kelly_error_estimate(dh, sol)
    order = np.argsort(dh.mesh.centroids()[:, 0])
    eta = eta[order]
    assert eta[1] > 0 and eta[2] > 0
    np.testing.assert_allclose(eta[[0, 3]], 0.0, atol=1e-12)
    assert eta[1] == pytest.approx(eta[2])


def test_fixed_fraction_marking():
    refine, coarsen = refine_and_coarsen_fixed_fraction([1.0, 4.0, 2.0, 3.0], 0.6, 0.2)
    np.testing.assert_array_equal(refine, [1, 3])
    np.testing.assert_array_equal(coarsen, [0])
    refine, coarsen = refine_and_coarsen_fixed_fraction(np.zeros(4), 0.6, 0.2)
    assert refine.size == 0 and coarsen.size == 0
    refine, coarsen = refine_and_coarsen_fixed_fraction([1.0, 1.0], 1.0, 0.0)
    assert refine.size == 2 and coarsen.size == 0


def test_transfer_is_exact_for_nested_meshes():
    tree = CellTree(1.0, 1.0, 2, 2)
    dh_old = DofHandler(tree.to_mesh(), TaylorHoodElement(1))
    fields = (lambda x, y: x ** 2 + y, lambda x, y: x * y, lambda x, y: 1.0 - x + 2 * y)
    transfer = SolutionTransfer(dh_old, interpolate(dh_old, *fields))
    tree.execute_coarsening_and_refinement(refine=[0, 3])
    dh_new = DofHandler(tree.to_mesh(), TaylorHoodElement(1))
    np.testing.assert_allclose(transfer.interpolate(dh_new), interpolate(dh_new, *fields), atol=1e-12)


def test_locate_outside_raises():
    dh = DofHandler(CellTree(1.0, 1.0, 2, 2).to_mesh(), TaylorHoodElement(1))
    transfer = SolutionTransfer(dh, np.zeros(dh.n_dofs))
    cell, ref = transfer.locate(np.array([0.75, 0.25]))
    np.testing.assert_allclose(ref, [0.0, 0.0], atol=1e-12)
    with pytest.raises(ValueError):
        transfer.locate(np.array([1.5, 0.5]))
