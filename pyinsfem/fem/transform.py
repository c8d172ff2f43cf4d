"""pyinsfem.fem.transform
Bilinear reference -> physical mapping of quadrilateral cells.

Cells are given by their four corners in counter-clockwise order
(bl, br, tr, tl); batched routines take arrays of shape (n_cells, 4, 2).
"""
import numpy as np

from pyinsfem.fem.reference import get_reference

# counter-clockwise corners -> Q1 lattice order (eta outer, xi inner)
_CCW_TO_LATTICE = np.array([0, 1, 3, 2])


def _lattice_corners(corners):
    corners = np.asarray(corners, dtype=float)
    return corners[..., _CCW_TO_LATTICE, :]


def x_mapping(corners, ref_points):
    """Physical points, shape (n_cells, n_points, 2)."""
    N = get_reference(1).shape(ref_points)                     # (p, 4)
    return np.einsum('pa,cai->cpi', N, _lattice_corners(corners))


def jacobian(corners, ref_points):
    """J[c, p, i, j] = d x_i / d xi_j."""
    dN = get_reference(1).grad(ref_points)                     # (p, 4, 2)
    return np.einsum('paj,cai->cpij', dN, _lattice_corners(corners))


def inverse_mapping(corners, x, tol=1e-12, maxiter=50):
    """Reference coordinates of the physical point ``x`` in a single cell."""
    corners = np.asarray(corners, dtype=float)[None]
    x = np.asarray(x, dtype=float)
    xi = np.zeros(2)
    for it in range(maxiter):
        X = x_mapping(corners, xi[None])[0, 0]
        J = jacobian(corners, xi[None])[0, 0]
        try:
            delta = np.linalg.solve(J, x - X)
        except np.linalg.LinAlgError:
            raise ValueError(f"Jacobian singular at iteration {it}, x={x}")
        xi += delta
        if np.linalg.norm(delta) < tol:
            break
    else:
        raise ValueError(f"Inverse mapping did not converge after {maxiter} iterations, x={x}, "
                         f"residual={np.linalg.norm(x - X)}")
    return xi
