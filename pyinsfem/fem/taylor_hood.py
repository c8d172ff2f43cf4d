"""pyinsfem.fem.taylor_hood
Q(k+1)^2 / Q(k) Taylor-Hood element on quadrilaterals.

Local degrees of freedom are ordered component by component::

    [ u_x on the Q(k+1) lattice | u_y on the Q(k+1) lattice | p on the Q(k) lattice ]
"""
from __future__ import annotations

import numpy as np

from pyinsfem.errors import ConfigurationError
from pyinsfem.fem.reference import get_reference


class TaylorHoodElement:
    dim = 2

    def __init__(self, degree: int):
        if degree < 1:
            raise ConfigurationError("Taylor-Hood pressure degree must be >= 1.")
        self.degree = degree
        self.velocity_basis = get_reference(degree + 1)
        self.pressure_basis = get_reference(degree)
        self.n_u = self.velocity_basis.n_basis          # per component
        self.n_p = self.pressure_basis.n_basis
        self.dofs_per_cell = self.dim * self.n_u + self.n_p

        # 0..dim-1 velocity components, dim = pressure
        self.component = np.concatenate([np.full(self.n_u, c) for c in range(self.dim)]
                                        + [np.full(self.n_p, self.dim)])
        self.base_index = np.concatenate([np.arange(self.n_u)] * self.dim + [np.arange(self.n_p)])

    def velocity_slice(self, component: int) -> slice:
        return slice(component * self.n_u, (component + 1) * self.n_u)

    @property
    def pressure_slice(self) -> slice:
        return slice(self.dim * self.n_u, self.dofs_per_cell)

    # ------------------------------------------------------------------
    def shape_values(self, ref_points):
        """phi_u (p, n, dim) and phi_p (p, n) at reference points."""
        Nu = self.velocity_basis.shape(ref_points)
        Np = self.pressure_basis.shape(ref_points)
        n_pts = Nu.shape[0]
        phi_u = np.zeros((n_pts, self.dofs_per_cell, self.dim))
        for c in range(self.dim):
            phi_u[:, self.velocity_slice(c), c] = Nu
        phi_p = np.zeros((n_pts, self.dofs_per_cell))
        phi_p[:, self.pressure_slice] = Np
        return phi_u, phi_p

    def expand_velocity_gradients(self, base_grads):
        """Scatter per-component basis gradients (..., n_u, 2) into (..., n, dim, 2)."""
        lead = base_grads.shape[:-2]
        out = np.zeros(lead + (self.dofs_per_cell, self.dim, 2))
        for c in range(self.dim):
            out[..., self.velocity_slice(c), c, :] = base_grads
        return out

    def field_values(self, coefficients, ref_points):
        """Velocity (p, dim) and pressure (p,) of one cell's coefficient vector."""
        phi_u, phi_p = self.shape_values(ref_points)
        coefficients = np.asarray(coefficients, dtype=float)
        return phi_u.transpose(0, 2, 1) @ coefficients, phi_p @ coefficients

    def __repr__(self):
        return f"TaylorHoodElement(Q{self.degree + 1}^{self.dim}-Q{self.degree}, dofs/cell={self.dofs_per_cell})"
