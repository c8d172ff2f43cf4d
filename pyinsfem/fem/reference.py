"""pyinsfem.fem.reference
Tensor-product Lagrange bases Q_n on [-1, 1]^2 built with sympy.
"""
from functools import lru_cache

import numpy as np
import sympy as sp


@lru_cache(maxsize=None)
def _lagrange_basis_1d(n: int):
    """1-D Lagrange basis on n+1 equispaced nodes and its first derivative."""
    x = sp.symbols('x')
    nodes = np.linspace(-1.0, 1.0, n + 1)
    L, dL = [], []
    for i, xi in enumerate(nodes):
        num = 1
        den = 1.0
        for j, xj in enumerate(nodes):
            if i == j:
                continue
            num *= (x - xj)
            den *= (xi - xj)
        Li = sp.expand(num / den)
        L.append(sp.lambdify(x, Li, 'numpy'))
        dL.append(sp.lambdify(x, sp.diff(Li, x), 'numpy'))
    return nodes, L, dL


def _eval_1d(funcs, z):
    z = np.asarray(z, dtype=float)
    # lambdified constants return scalars; broadcast them to the input shape
    return np.stack([np.broadcast_to(np.asarray(f(z), dtype=float), z.shape) for f in funcs], axis=-1)


class QuadQn:
    """Q_n basis. Stacking order is (eta outer, xi inner): index = j*(n+1) + i."""

    def __init__(self, n: int):
        self.degree = n
        self.nodes_1d, self._L, self._dL = _lagrange_basis_1d(n)
        self.n_basis = (n + 1) ** 2

    @property
    def lattice(self) -> np.ndarray:
        return np.array([[xi, eta] for eta in self.nodes_1d for xi in self.nodes_1d])

    def shape(self, points) -> np.ndarray:
        """Values at reference points, shape (n_points, n_basis)."""
        points = np.atleast_2d(points)
        lx = _eval_1d(self._L, points[:, 0])
        ly = _eval_1d(self._L, points[:, 1])
        return np.einsum('pj,pi->pji', ly, lx).reshape(len(points), -1)

    def grad(self, points) -> np.ndarray:
        """Reference gradients, shape (n_points, n_basis, 2)."""
        points = np.atleast_2d(points)
        lx = _eval_1d(self._L, points[:, 0])
        ly = _eval_1d(self._L, points[:, 1])
        dx = _eval_1d(self._dL, points[:, 0])
        dy = _eval_1d(self._dL, points[:, 1])
        g = np.empty((len(points), self.n_basis, 2))
        g[:, :, 0] = np.einsum('pj,pi->pji', ly, dx).reshape(len(points), -1)
        g[:, :, 1] = np.einsum('pj,pi->pji', dy, lx).reshape(len(points), -1)
        return g

    def face_lattice_indices(self, edge_index: int) -> np.ndarray:
        """Basis functions whose nodes lie on a local edge (0 bottom, 1 right, 2 top, 3 left)."""
        m = self.degree + 1
        idx = np.arange(m * m).reshape(m, m)  # [j, i]
        if edge_index == 0:
            return idx[0, :]
        if edge_index == 1:
            return idx[:, -1]
        if edge_index == 2:
            return idx[-1, :]
        if edge_index == 3:
            return idx[:, 0]
        raise IndexError(edge_index)


@lru_cache(maxsize=None)
def get_reference(poly_order: int) -> QuadQn:
    return QuadQn(poly_order)
