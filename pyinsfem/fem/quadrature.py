"""pyinsfem.fem.quadrature
Gauss-Legendre rules on the reference square [-1, 1]^2 and its edges.
"""
from functools import lru_cache

import numpy as np
from numpy.polynomial.legendre import leggauss


def gauss_legendre(order: int):
    if order < 1:
        raise ValueError(order)
    return leggauss(order)  # (points, weights)


@lru_cache(maxsize=None)
def quad_rule(order: int):
    """Tensor rule with ``order`` points per direction (eta outer, xi inner)."""
    xi, wi = gauss_legendre(order)
    pts = np.array([[x, y] for y in xi for x in xi])
    wts = np.array([wx * wy for wy in wi for wx in wi])
    pts.setflags(write=False)
    wts.setflags(write=False)
    return pts, wts


# local edge numbering follows the counter-clockwise corner order
# (bl, br, tr, tl): 0 bottom, 1 right, 2 top, 3 left
REFERENCE_NORMALS = np.array([[0.0, -1.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0]])
REFERENCE_TANGENTS = np.array([[1.0, 0.0], [0.0, 1.0], [-1.0, 0.0], [0.0, -1.0]])


def edge(edge_index: int, order: int = 2):
    """Points on local edge ``edge_index`` (counter-clockwise) and 1-D weights."""
    t, wi = gauss_legendre(order)
    if edge_index == 0:   # bottom
        pts = np.column_stack([t, -np.ones_like(t)])
    elif edge_index == 1: # right
        pts = np.column_stack([np.ones_like(t), t])
    elif edge_index == 2: # top
        pts = np.column_stack([t[::-1], np.ones_like(t)])
    elif edge_index == 3: # left
        pts = np.column_stack([-np.ones_like(t), t[::-1]])
    else:
        raise IndexError(edge_index)
    return pts, wi


def volume(order: int = 2):
    return quad_rule(order)
