"""pyinsfem.assembly.local_assembler
Cell contributions of the linearised incompressible Navier-Stokes operator.

Two linearizations share the implicit Stokes-like part

    ν (∇φ_j : ∇φ_i) - div φ_i ψ_j - ψ_i div φ_j + γρ div φ_j div φ_i + ρ/Δt φ_j·φ_i

* :class:`IMEXLinearization` treats convection explicitly; the right-hand
  side is minus the operator applied to the current solution.
* :class:`NewtonLinearization` adds ρ (∇u φ_j)·φ_i + ρ (∇φ_j u)·φ_i and uses
  the full residual at the evaluation point, with the time derivative taken
  against the previously accepted solution.

Everything is evaluated on a batch of cells at once, see
:mod:`pyinsfem.fem.fevalues` for the array layout.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from pyinsfem.errors import ConfigurationError


@dataclass(slots=True)
class LocalSystem:
    matrix: np.ndarray | None     # (nc, n, n)
    mass: np.ndarray | None       # (nc, n, n)
    rhs: np.ndarray               # (nc, n)


class IMEXLinearization:
    name = "imex"
    uses_evaluation_point = False

    def matrix(self, fe, current, nu, rho, gamma, dt):
        G, D, JxW = fe.grad_phi_u, fe.div_phi_u, fe.JxW
        K = nu * np.einsum('cqiab,cqjab,cq->cij', G, G, JxW, optimize=True)
        K += gamma * rho * np.einsum('cqi,cqj,cq->cij', D, D, JxW, optimize=True)
        P = np.einsum('cqi,qj,cq->cij', D, fe.phi_p, JxW, optimize=True)
        K -= P + P.transpose(0, 2, 1)
        K += rho / dt * np.einsum('qia,qja,cq->cij', fe.phi_u, fe.phi_u, JxW, optimize=True)
        return K

    def rhs(self, fe, current, previous, nu, rho, gamma, dt):
        G, D, JxW = fe.grad_phi_u, fe.div_phi_u, fe.JxW
        convection = np.einsum('cqab,cqb->cqa', current.gradients, current.values)
        F = nu * np.einsum('cqab,cqiab,cq->ci', current.gradients, G, JxW, optimize=True)
        F -= np.einsum('cq,qi,cq->ci', current.divergence, fe.phi_p, JxW, optimize=True)
        F -= np.einsum('cq,cqi,cq->ci', current.pressure, D, JxW, optimize=True)
        F += gamma * rho * np.einsum('cq,cqi,cq->ci', current.divergence, D, JxW, optimize=True)
        F += rho * np.einsum('cqa,qia,cq->ci', convection, fe.phi_u, JxW, optimize=True)
        return -F


class NewtonLinearization(IMEXLinearization):
    name = "newton"
    uses_evaluation_point = True

    def matrix(self, fe, current, nu, rho, gamma, dt):
        K = super().matrix(fe, current, nu, rho, gamma, dt)
        phi, JxW = fe.phi_u, fe.JxW
        K += rho * np.einsum('cqab,qjb,qia,cq->cij', current.gradients, phi, phi, JxW, optimize=True)
        K += rho * np.einsum('cqjab,cqb,qia,cq->cij', fe.grad_phi_u, current.values, phi, JxW,
                             optimize=True)
        return K

    def rhs(self, fe, current, previous, nu, rho, gamma, dt):
        if previous is None:
            raise ValueError("Newton right-hand side needs the previous time step's solution.")
        F = super().rhs(fe, current, previous, nu, rho, gamma, dt)
        dudt = (current.values - previous.values) / dt
        F -= rho * np.einsum('cqa,qia,cq->ci', dudt, fe.phi_u, fe.JxW, optimize=True)
        return F


LINEARIZATIONS = {cls.name: cls for cls in (IMEXLinearization, NewtonLinearization)}


def make_linearization(name: str):
    try:
        return LINEARIZATIONS[name]()
    except KeyError:
        raise ConfigurationError(f"Unknown linearization '{name}'.") from None


class ElementAssembler:
    """Local matrix, mass matrix and right-hand side for batches of cells."""

    def __init__(self, element, parameters, linearization=None, *, dofs_per_cell=None):
        self.element = element
        self.parameters = parameters
        self.linearization = (linearization if linearization is not None
                              else make_linearization(parameters.linearization))
        n = element.dim * element.n_u + element.n_p
        if n != element.dofs_per_cell or (dofs_per_cell is not None and dofs_per_cell != n):
            raise ConfigurationError(
                f"Wrong partitioning of dofs: {element.dim} x {element.n_u} velocity + "
                f"{element.n_p} pressure dofs != {dofs_per_cell or element.dofs_per_cell} dofs per cell.")
        self.dofs_per_cell = n

    def local_mass(self, fe):
        JxW = fe.JxW
        M = np.einsum('qia,qja,cq->cij', fe.phi_u, fe.phi_u, JxW, optimize=True)
        M += np.einsum('qi,qj,cq->cij', fe.phi_p, fe.phi_p, JxW, optimize=True)
        return M

    def assemble(self, fe, current, previous=None, *, dt, coupling=None,
                 assemble_matrix=True) -> LocalSystem:
        """Contributions of the cells ``fe`` was last re-initialised on.

        ``coupling`` is an optional ``(indicator, acceleration, stress)`` triple
        with leading shape (nc, nq).
        """
        p = self.parameters
        nu, rho, gamma = p.viscosity, p.fluid_rho, p.grad_div
        lin = self.linearization
        K = M = None
        if assemble_matrix:
            K = lin.matrix(fe, current, nu, rho, gamma, dt)
            M = self.local_mass(fe)
        F = lin.rhs(fe, current, previous, nu, rho, gamma, dt)
        if coupling is not None:
            F += self.coupling_rhs(fe, *coupling)
        return LocalSystem(K, M, F)

    def coupling_rhs(self, fe, indicator, acceleration, stress):
        """stress : ∇φ_i + ρ a·φ_i at quadrature points whose indicator is 1."""
        active = (np.asarray(indicator) == 1).astype(float)
        if not active.any():
            return np.zeros(fe.JxW.shape[:1] + (self.dofs_per_cell,))
        w = fe.JxW * active
        F = np.einsum('cqab,cqiab,cq->ci', stress, fe.grad_phi_u, w, optimize=True)
        F += self.parameters.fluid_rho * np.einsum('cqa,qia,cq->ci', acceleration, fe.phi_u, w,
                                                   optimize=True)
        return F

    def neumann_rhs(self, face, pressure: float):
        """-p (φ_i · n) over boundary faces."""
        return -pressure * np.einsum('qia,cqa,cq->ci', face.phi_u, face.normals, face.JxW,
                                     optimize=True)
