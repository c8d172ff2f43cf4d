import numpy as np
import pytest

from pyinsfem.assembly.local_assembler import (ElementAssembler, IMEXLinearization,
                                               NewtonLinearization, make_linearization)
from pyinsfem.errors import ConfigurationError
from pyinsfem.fem.fevalues import CellValues, FaceValues
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.parameters import Parameters

UNIT = np.array([[[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]])
SKEW = np.array([[[0.0, 0.0], [1.0, 0.1], [1.3, 1.2], [-0.1, 0.9]]])


@pytest.fixture
def element():
    return TaylorHoodElement(1)


def test_mass_blocks(element):
    asm = ElementAssembler(element, Parameters())
    fe = CellValues(element, 3).reinit(UNIT)
    M = asm.local_mass(fe)[0]
    np.testing.assert_allclose(M, M.T, atol=1e-14)
    ux, uy, p = element.velocity_slice(0), element.velocity_slice(1), element.pressure_slice
    assert M[ux, ux].sum() == pytest.approx(1.0)
    assert M[p, p].sum() == pytest.approx(1.0)
    assert np.abs(M[ux, uy]).max() == 0.0
    assert np.abs(M[ux, p]).max() == 0.0


def test_imex_matrix_symmetric_and_rhs_of_zero(element):
    fe = CellValues(element, 3).reinit(SKEW)
    zero = fe.sample(np.zeros((1, element.dofs_per_cell)))
    lin = IMEXLinearization()
    K = lin.matrix(fe, zero, 1e-3, 1.0, 0.1, 0.01)[0]
    np.testing.assert_allclose(K, K.T, atol=1e-12)
    np.testing.assert_allclose(lin.rhs(fe, zero, None, 1e-3, 1.0, 0.1, 0.01), 0.0)
    # Newton adds only convection terms, which vanish at u = 0
    np.testing.assert_allclose(NewtonLinearization().matrix(fe, zero, 1e-3, 1.0, 0.1, 0.01)[0], K, atol=1e-12)


def test_newton_matrix_is_jacobian_of_residual(element):
    nu, rho, gamma, dt = 0.1, 1.3, 0.5, 0.1
    fe = CellValues(element, 4).reinit(SKEW)
    rng = np.random.default_rng(0)
    n = element.dofs_per_cell
    c, d = rng.normal(size=(1, n)), rng.normal(size=(1, n))
    prev = fe.sample(rng.normal(size=(1, n)))
    lin = NewtonLinearization()

    def residual(coef):
        return -lin.rhs(fe, fe.sample(coef), prev, nu, rho, gamma, dt)

    eps = 1e-4
    fd = (residual(c + eps * d) - residual(c - eps * d)) / (2 * eps)
    K = lin.matrix(fe, fe.sample(c), nu, rho, gamma, dt)
    np.testing.assert_allclose(fd[0], K[0] @ d[0], rtol=1e-6, atol=1e-7)


def test_newton_rhs_reduces_to_imex_when_steady(element):
    fe = CellValues(element, 3).reinit(SKEW)
    cur = fe.sample(np.random.default_rng(1).normal(size=(1, element.dofs_per_cell)))
    args = (1e-3, 1.0, 0.1, 0.01)
    np.testing.assert_allclose(NewtonLinearization().rhs(fe, cur, cur, *args),
                               IMEXLinearization().rhs(fe, cur, None, *args), atol=1e-12)
    with pytest.raises(ValueError):
        NewtonLinearization().rhs(fe, cur, None, *args)


def test_coupling_rhs(element):
    asm = ElementAssembler(element, Parameters(fluid_rho=2.0))
    fe = CellValues(element, 3).reinit(UNIT)
    nq = fe.n_q_points
    acc = np.zeros((1, nq, 2))
    acc[..., 0] = 1.0
    stress = np.zeros((1, nq, 2, 2))
    off = asm.coupling_rhs(fe, np.zeros((1, nq)), acc, stress)
    np.testing.assert_allclose(off, 0.0)
    F = asm.coupling_rhs(fe, np.ones((1, nq)), acc, stress)[0]
    assert F[element.velocity_slice(0)].sum() == pytest.approx(2.0)
    np.testing.assert_allclose(F[element.velocity_slice(1)], 0.0, atol=1e-14)
    # a constant stress has no net load on a closed cell
    stress[..., 0, 0] = 3.0
    F = asm.coupling_rhs(fe, np.ones((1, nq)), np.zeros((1, nq, 2)), stress)[0]
    assert F[element.velocity_slice(0)].sum() == pytest.approx(0.0, abs=1e-12)


def test_neumann_rhs(element):
    asm = ElementAssembler(element, Parameters())
    face = FaceValues(element, 3, 1).reinit(UNIT)
    F = asm.neumann_rhs(face, 2.0)[0]
    assert F[element.velocity_slice(0)].sum() == pytest.approx(-2.0)
    np.testing.assert_allclose(F[element.velocity_slice(1)], 0.0, atol=1e-14)


def test_wrong_partitioning(element):
    with pytest.raises(ConfigurationError, match="Wrong partitioning"):
        ElementAssembler(element, Parameters(), dofs_per_cell=element.dofs_per_cell + 1)
    with pytest.raises(ConfigurationError):
        make_linearization("picard")
