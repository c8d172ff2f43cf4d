"""pyinsfem.parameters

Run configuration of the incompressible Navier-Stokes solver.

Boundary tables use plain Python containers so that they can be read from
any configuration source::

    dirichlet_bcs = {0: (3, [0.2, 0.0]),    # inlet: x and y prescribed
                     2: (3, [0.0, 0.0]),    # walls
                     3: (3, [0.0, 0.0])}
    neumann_bcs   = {1: 0.0}                # outlet pressure
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Mapping, Tuple

from pyinsfem.errors import ConfigurationError


_LINEARIZATIONS = ("imex", "newton")
_VELOCITY_SOLVERS = ("auto", "cg", "direct")
_ZERO_DIAGONAL_POLICIES = ("raise", "identity")


@dataclass
class Parameters:
    """Physical constants, solver tolerances and time/adaptation cadence."""

    # physics
    viscosity: float = 1e-3             # kinematic viscosity ν
    fluid_rho: float = 1.0              # density ρ
    grad_div: float = 0.1               # grad-div stabilisation factor γ
    fluid_degree: int = 1               # pressure degree, velocity uses degree + 1
    dimension: int = 2

    # nonlinear / linear solver
    linearization: str = "imex"         # "imex" | "newton"
    fluid_tolerance: float = 1e-8       # relative Newton residual threshold
    fluid_max_iterations: int = 8       # Newton iteration ceiling
    krylov_tolerance: float = 1e-8      # FGMRES: |r| <= tol * |rhs|
    krylov_restart: int = 30            # FGMRES basis size
    inner_tolerance: float = 1e-6       # nested CG solves in the preconditioner
    velocity_solver: str = "auto"       # "auto" | "cg" | "direct"
    schur_zero_diagonal: str = "raise"  # "raise" | "identity"

    # time
    end_time: float = 1.0
    time_step: float = 0.01
    output_interval: float = 0.01
    refinement_interval: float = math.inf

    # mesh adaptation
    global_refinement: int = 0
    min_refinement_level: int = 1
    max_refinement_level: int = 3
    refine_fraction: float = 0.6
    coarsen_fraction: float = 0.4
    reapply_constraints_after_transfer: bool = True

    # boundary conditions
    fluid_dirichlet_bcs: Dict[int, Tuple[int, List[float]]] = field(default_factory=dict)
    fluid_neumann_bcs: Dict[int, float] = field(default_factory=dict)
    use_hard_coded_values: bool = False
    inflow_velocity: float = 0.2        # average velocity of the parabolic profile
    inflow_height: float = 0.41         # channel height seen by the profile
    inflow_x: float = 0.0               # x coordinate of the inlet line

    def __post_init__(self):
        if self.dimension != 2:
            raise ConfigurationError(
                f"Only two-dimensional meshes are supported (got dimension={self.dimension}).")
        for name in ("viscosity", "fluid_rho", "time_step", "output_interval",
                     "refinement_interval", "fluid_tolerance", "krylov_tolerance",
                     "inner_tolerance"):
            if not getattr(self, name) > 0.0:
                raise ConfigurationError(f"'{name}' must be positive (got {getattr(self, name)!r}).")
        if self.grad_div < 0.0:
            raise ConfigurationError("'grad_div' must be non-negative.")
        if self.fluid_degree < 1:
            raise ConfigurationError("'fluid_degree' must be at least 1.")
        if self.fluid_max_iterations < 1 or self.krylov_restart < 1:
            raise ConfigurationError("Iteration counts must be positive.")
        if self.end_time < 0.0:
            raise ConfigurationError("'end_time' must be non-negative.")
        if not 0 <= self.min_refinement_level <= self.max_refinement_level:
            raise ConfigurationError("Refinement window must satisfy 0 <= min <= max.")
        if not (0.0 <= self.refine_fraction <= 1.0 and 0.0 <= self.coarsen_fraction <= 1.0
                and self.refine_fraction + self.coarsen_fraction <= 1.0):
            raise ConfigurationError("Refine/coarsen fractions must lie in [0, 1] and sum to <= 1.")
        self.linearization = self.linearization.lower()
        if self.linearization not in _LINEARIZATIONS:
            raise ConfigurationError(
                f"Unknown linearization '{self.linearization}', expected one of {_LINEARIZATIONS}.")
        if self.velocity_solver not in _VELOCITY_SOLVERS:
            raise ConfigurationError(
                f"Unknown velocity solver '{self.velocity_solver}', expected one of {_VELOCITY_SOLVERS}.")
        if self.schur_zero_diagonal not in _ZERO_DIAGONAL_POLICIES:
            raise ConfigurationError(
                f"Unknown zero-diagonal policy '{self.schur_zero_diagonal}'.")

        # normalise the tables: integer keys, list-valued values
        self.fluid_dirichlet_bcs = {
            int(bid): (int(entry[0]), [float(v) for v in entry[1]])
            for bid, entry in self.fluid_dirichlet_bcs.items()
        }
        self.fluid_neumann_bcs = {int(bid): float(v) for bid, v in self.fluid_neumann_bcs.items()}

    # ------------------------------------------------------------------
    @property
    def velocity_degree(self) -> int:
        return self.fluid_degree + 1

    @property
    def uses_newton(self) -> bool:
        return self.linearization == "newton"

    def resolved_velocity_solver(self) -> str:
        """'auto' means CG for the symmetric IMEX block, a direct solve for Newton."""
        if self.velocity_solver != "auto":
            return self.velocity_solver
        return "direct" if self.uses_newton else "cg"

    @classmethod
    def from_mapping(cls, data: Mapping) -> "Parameters":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown parameter(s): {', '.join(unknown)}")
        return cls(**dict(data))

    def to_dict(self) -> dict:
        return asdict(self)
