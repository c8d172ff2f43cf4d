import numpy as np
import pytest

from pyinsfem.fem.reference import QuadQn, get_reference


@pytest.mark.parametrize("n", [1, 2, 3])
def test_kronecker_property(n):
    ref = QuadQn(n)
    N = ref.shape(ref.lattice)
    np.testing.assert_allclose(N, np.eye(ref.n_basis), atol=1e-12)


@pytest.mark.parametrize("n", [1, 2])
def test_partition_of_unity(n):
    ref = get_reference(n)
    pts = np.array([[0.3, -0.7], [-0.1, 0.9], [0.0, 0.0]])
    np.testing.assert_allclose(ref.shape(pts).sum(axis=1), 1.0, atol=1e-12)
    np.testing.assert_allclose(ref.grad(pts).sum(axis=1), 0.0, atol=1e-12)


def test_gradient_reproduces_linear_function():
    ref = get_reference(2)
    pts = np.array([[0.25, 0.5], [-0.6, 0.1]])
    x_nodes = ref.lattice[:, 0]
    g = np.einsum('a,pad->pd', x_nodes, ref.grad(pts))
    np.testing.assert_allclose(g, [[1.0, 0.0], [1.0, 0.0]], atol=1e-12)


def test_face_lattice_indices():
    ref = get_reference(2)
    for lid, (axis, value) in enumerate([(1, -1.0), (0, 1.0), (1, 1.0), (0, -1.0)]):
        idx = ref.face_lattice_indices(lid)
        assert len(idx) == 3
        np.testing.assert_allclose(ref.lattice[idx, axis], value)


def test_reference_is_cached():
    assert get_reference(2) is get_reference(2)
