"""pyinsfem.fem.fevalues
Batched shape-function values on many cells at once.

All arrays carry the cell batch as their leading axis::

    JxW          (nc, nq)
    grad_phi_u   (nc, nq, n, dim, dim)   grad_phi_u[..., a, b] = d phi_a / d x_b
    div_phi_u    (nc, nq, n)

while the reference-constant values ``phi_u`` (nq, n, dim) and ``phi_p``
(nq, n) are shared by every cell.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from pyinsfem.fem import quadrature, transform


@dataclass(slots=True)
class FieldSample:
    """Velocity/pressure of a finite element field at quadrature points."""
    values: np.ndarray       # (nc, nq, dim)
    gradients: np.ndarray    # (nc, nq, dim, dim)
    divergence: np.ndarray   # (nc, nq)
    pressure: np.ndarray     # (nc, nq)


def _physical_gradients(element, ref_points, J):
    detJ = np.linalg.det(J)
    if np.any(detJ <= 0.0):
        raise ValueError("Non-positive Jacobian determinant: cell corners must be counter-clockwise.")
    invJ = np.linalg.inv(J)
    ref_grad = element.velocity_basis.grad(ref_points)              # (q, n_u, 2)
    base = np.einsum('qbj,cqji->cqbi', ref_grad, invJ)               # (c, q, n_u, 2)
    return detJ, element.expand_velocity_gradients(base)


class _ValuesBase:
    def sample(self, coefficients) -> FieldSample:
        """Evaluate the field whose cell coefficients are ``coefficients`` (nc, n)."""
        coef = np.asarray(coefficients, dtype=float)
        values = np.einsum('cn,qna->cqa', coef, self.phi_u)
        grads = np.einsum('cn,cqnab->cqab', coef, self.grad_phi_u)
        div = np.einsum('cn,cqn->cq', coef, self.div_phi_u)
        pressure = coef @ self.phi_p.T
        return FieldSample(values, grads, div, pressure)


class CellValues(_ValuesBase):
    def __init__(self, element, quadrature_order: int):
        self.element = element
        self.points, self.weights = quadrature.volume(quadrature_order)
        self.n_q_points = len(self.weights)
        self.phi_u, self.phi_p = element.shape_values(self.points)

    def reinit(self, corners):
        corners = np.asarray(corners, dtype=float)
        J = transform.jacobian(corners, self.points)
        detJ, self.grad_phi_u = _physical_gradients(self.element, self.points, J)
        self.JxW = detJ * self.weights[None, :]
        self.div_phi_u = np.einsum('cqnaa->cqn', self.grad_phi_u)
        self.quadrature_points = transform.x_mapping(corners, self.points)
        return self


class FaceValues(_ValuesBase):
    """Values on local edge ``edge_index`` of a batch of cells."""

    def __init__(self, element, quadrature_order: int, edge_index: int):
        self.element = element
        self.edge_index = edge_index
        self.points, self.weights = quadrature.edge(edge_index, quadrature_order)
        self.n_q_points = len(self.weights)
        self.phi_u, self.phi_p = element.shape_values(self.points)

    def reinit(self, corners):
        corners = np.asarray(corners, dtype=float)
        J = transform.jacobian(corners, self.points)
        _, self.grad_phi_u = _physical_gradients(self.element, self.points, J)
        self.div_phi_u = np.einsum('cqnaa->cqn', self.grad_phi_u)
        t = J @ quadrature.REFERENCE_TANGENTS[self.edge_index]           # (c, q, 2)
        length = np.linalg.norm(t, axis=-1)
        self.JxW = length * self.weights[None, :]
        self.normals = np.stack([t[..., 1], -t[..., 0]], axis=-1) / length[..., None]
        self.quadrature_points = transform.x_mapping(corners, self.points)
        return self
