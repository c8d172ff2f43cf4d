r"""
navier_stokes.py  -  Time-step and Newton controller
=====================================================
Drives repeated assemble/solve cycles of the incompressible Navier-Stokes
equations on an adaptive quadrilateral mesh:

* **IMEX**: one linear solve per time step; the matrices are re-assembled on
  the first two steps (and after every re-initialisation), afterwards only
  the right-hand side is rebuilt and the preconditioner is reused.
* **Newton**: an inner loop that re-assembles at the evaluation point until
  the relative residual drops below ``fluid_tolerance`` (or the absolute one
  below 1e-14); exceeding ``fluid_max_iterations`` raises
  :class:`~pyinsfem.errors.NewtonConvergenceError`.

Dirichlet data is applied through the "nonzero" constraint set on the very
first solve only; every later increment uses the homogeneous set.
"""
from __future__ import annotations

import logging
from typing import List, Tuple

import numpy as np

from pyinsfem.assembly.local_assembler import ElementAssembler, make_linearization
from pyinsfem.boundary_values import ParabolicProfile, dirichlet_table
from pyinsfem.core.constraints import make_dirichlet_constraints
from pyinsfem.core.dofhandler import DofHandler
from pyinsfem.coupling import CouplingDataStore
from pyinsfem.errors import NewtonConvergenceError
from pyinsfem.fem.fevalues import CellValues
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.solvers.adaptivity import (SolutionTransfer, kelly_error_estimate,
                                         refine_and_coarsen_fixed_fraction)
from pyinsfem.solvers.execution import SerialExecution
from pyinsfem.solvers.time_control import Time
from pyinsfem.utils.timer import SectionTimer

logger = logging.getLogger(__name__)


class NavierStokesSolver:
    """Incompressible flow on the mesh produced by a :class:`~pyinsfem.utils.adaptive_mesh.CellTree`.

    Typical use::

        tree = CellTree(2.2, 0.41, 22, 4)
        solver = NavierStokesSolver(tree, Parameters(...), writer=OutputWriter("out"))
        solver.run()

    Structural coupling code writes into :attr:`coupling` between time steps
    (see :meth:`cell_quadrature_points`) and calls :meth:`run_one_step`.
    """

    def __init__(self, tree, parameters, *, execution=None, writer=None):
        self.tree = tree
        self.parameters = parameters
        self.execution = execution if execution is not None else SerialExecution()
        self.writer = writer
        self.element = TaylorHoodElement(parameters.fluid_degree)
        self.quadrature_order = parameters.fluid_degree + 2
        self.linearization = make_linearization(parameters.linearization)
        self.time = Time(parameters.end_time, parameters.time_step,
                         parameters.output_interval, parameters.refinement_interval)
        self.coupling = CouplingDataStore(dim=self.element.dim)
        self.timer = SectionTimer()

        profile = None
        if parameters.use_hard_coded_values:
            profile = ParabolicProfile(parameters.inflow_velocity, parameters.inflow_height,
                                       parameters.inflow_x)
        self.dirichlet = dirichlet_table(parameters.fluid_dirichlet_bcs, dim=self.element.dim,
                                         profile=profile)

        self.mesh = None
        self.dof_handler = None
        self.system = None
        self.preconditioner = None
        self.present_solution = None
        self.evaluation_point = None
        self.solution_increment = None
        self.newton_history: List[float] = []
        self.last_krylov = None
        self._matrix_current = False

    # ------------------------------------------------------------------
    #  Setup
    # ------------------------------------------------------------------
    def setup_dofs(self) -> None:
        with self.timer.section("Setup dofs"):
            self.mesh = self.tree.to_mesh()
            self.dof_handler = DofHandler(self.mesh, self.element)
            self.subdomains = self.execution.cell_subdomains(self.mesh)
            self.owned_partitioning = self.execution.owned_ranges(self.dof_handler.dofs_per_block)
        nu, np_ = self.dof_handler.dofs_per_block
        logger.info("   Number of active fluid cells: %d", self.mesh.n_cells)
        logger.info("   Number of degrees of freedom: %d (%d+%d)", nu + np_, nu, np_)

    def make_constraints(self) -> None:
        self.nonzero_constraints, self.zero_constraints = make_dirichlet_constraints(
            self.dof_handler, self.dirichlet)

    def setup_cell_property(self) -> None:
        self.coupling.reset(self.mesh.n_cells, self.quadrature_order ** 2)

    def initialize_system(self) -> None:
        """Patterns, matrices and vectors for the current dof layout; resets coupling data."""
        self.preconditioner = None
        self._matrix_current = False
        with self.timer.section("Initialize system"):
            self.assembler = ElementAssembler(self.element, self.parameters, self.linearization,
                                              dofs_per_cell=self.dof_handler.cell_dofs.shape[1])
            self.system = self.execution.create_system(self.dof_handler, self.assembler,
                                                       quadrature_order=self.quadrature_order)
        n = self.dof_handler.n_dofs
        self.present_solution = np.zeros(n)
        self.evaluation_point = np.zeros(n)
        self.solution_increment = np.zeros(n)
        self.setup_cell_property()

    def setup(self) -> None:
        self.setup_dofs()
        self.make_constraints()
        self.initialize_system()

    # ------------------------------------------------------------------
    #  Assemble / solve
    # ------------------------------------------------------------------
    def assemble(self, use_nonzero_constraints: bool, assemble_system: bool = True) -> None:
        constraints = self.nonzero_constraints if use_nonzero_constraints else self.zero_constraints
        if self.linearization.uses_evaluation_point:
            current, previous = self.evaluation_point, self.present_solution
        else:
            current, previous = self.present_solution, None
        section = "Assemble system" if assemble_system else "Assemble rhs"
        with self.timer.section(section):
            self.system.assemble(constraints, current, previous, dt=self.time.delta_t,
                                 coupling=self.coupling, neumann=self.parameters.fluid_neumann_bcs,
                                 assemble_matrix=assemble_system)
        if assemble_system:
            self._matrix_current = True

    def solve(self, use_nonzero_constraints: bool, assemble_system: bool = True) -> Tuple[int, float]:
        """FGMRES on the assembled system; returns (iterations, residual)."""
        p = self.parameters
        if assemble_system or self.preconditioner is None:
            with self.timer.section("Block preconditioner"):
                self.preconditioner = self.execution.create_preconditioner(
                    self.system, viscosity=p.viscosity, rho=p.fluid_rho, gamma=p.grad_div,
                    dt=self.time.delta_t, velocity_solver=p.resolved_velocity_solver(),
                    inner_tolerance=p.inner_tolerance, zero_diagonal=p.schur_zero_diagonal)
        with self.timer.section("Solve linear system"):
            result = self.execution.krylov_solve(self.system, self.preconditioner,
                                                 rtol=p.krylov_tolerance,
                                                 maxiter=self.dof_handler.n_dofs,
                                                 restart=p.krylov_restart)
        constraints = self.nonzero_constraints if use_nonzero_constraints else self.zero_constraints
        self.solution_increment = constraints.distribute(result.x)
        self.last_krylov = result
        return result.iterations, result.residual

    # ------------------------------------------------------------------
    #  Time stepping
    # ------------------------------------------------------------------
    def run_one_step(self, apply_nonzero_constraints: bool | None = None) -> None:
        if self.time.timestep == 0:
            self.output_results()
        self.time.increment()
        logger.info("%s", "*" * 72)
        logger.info("Time step = %d, at t = %.6e", self.time.timestep, self.time.current)
        if apply_nonzero_constraints is None:
            apply_nonzero_constraints = self.time.timestep == 1
        if self.linearization.uses_evaluation_point:
            self._newton_step(apply_nonzero_constraints)
        else:
            self._imex_step(apply_nonzero_constraints)
        if self.time.time_to_output():
            self.output_results()
        if self.time.time_to_refine():
            self.refine_mesh(self.parameters.min_refinement_level, self.parameters.max_refinement_level)

    def _imex_step(self, apply_nonzero_constraints: bool) -> None:
        self.solution_increment = np.zeros(self.dof_handler.n_dofs)
        assemble_system = self.time.timestep < 3 or not self._matrix_current
        self.assemble(apply_nonzero_constraints, assemble_system)
        its, res = self.solve(apply_nonzero_constraints, assemble_system)
        self.present_solution = self.present_solution + self.solution_increment
        logger.info(" GMRES_ITR = %3d   GMRES_RES = %.6e", its, res)

    def _newton_step(self, apply_nonzero_constraints: bool) -> None:
        p = self.parameters
        current_residual = initial_residual = relative_residual = 1.0
        outer_iteration = 0
        history: List[float] = []
        self.evaluation_point = self.present_solution.copy()
        while relative_residual > p.fluid_tolerance and current_residual > 1e-14:
            if outer_iteration >= p.fluid_max_iterations:
                raise NewtonConvergenceError(
                    f"Too many Newton iterations at step {self.time.timestep}: "
                    f"{outer_iteration} iterations, relative residual {relative_residual:.3e}",
                    history=history)
            first = apply_nonzero_constraints and outer_iteration == 0
            self.solution_increment = np.zeros(self.dof_handler.n_dofs)
            self.assemble(first)
            its, res = self.solve(first)
            current_residual = self.system.rhs_norm()

            self.evaluation_point = self.evaluation_point + self.solution_increment
            self.nonzero_constraints.distribute(self.evaluation_point)

            if outer_iteration == 0:
                initial_residual = current_residual
            relative_residual = current_residual / initial_residual if initial_residual > 0 else 0.0
            history.append(current_residual)
            logger.info(" ITR = %2d ABS_RES = %.6e REL_RES = %.6e GMRES_ITR = %3d GMRES_RES = %.6e",
                        outer_iteration, current_residual, relative_residual, its, res)
            outer_iteration += 1
        self.newton_history = history
        self.present_solution = self.evaluation_point.copy()

    def run(self) -> np.ndarray:
        self.tree.refine_global(self.parameters.global_refinement)
        self.setup()
        while not self.time.finished():
            self.run_one_step()
        logger.info("timing summary\n%s", self.timer.summary())
        return self.present_solution

    # ------------------------------------------------------------------
    #  Mesh adaptation
    # ------------------------------------------------------------------
    def refine_mesh(self, min_grid_level: int, max_grid_level: int) -> None:
        with self.timer.section("Refine mesh"):
            errors = kelly_error_estimate(self.dof_handler, self.present_solution, self.quadrature_order)
            refine, coarsen = refine_and_coarsen_fixed_fraction(
                errors, self.parameters.refine_fraction, self.parameters.coarsen_fraction)
            levels = self.mesh.levels
            refine = refine[levels[refine] < max_grid_level]
            coarsen = coarsen[levels[coarsen] > min_grid_level]
            self.execute_refinement(refine, coarsen)

    def execute_refinement(self, refine=(), coarsen=()) -> None:
        """Change the mesh, rebuild the discretization and interpolate the solution."""
        transfer = SolutionTransfer(self.dof_handler, self.present_solution)
        self.tree.execute_coarsening_and_refinement(refine, coarsen)
        self.setup()
        self.present_solution = transfer.interpolate(self.dof_handler)
        if self.parameters.reapply_constraints_after_transfer:
            self.nonzero_constraints.distribute(self.present_solution)

    # ------------------------------------------------------------------
    #  Output and coupling access
    # ------------------------------------------------------------------
    def output_results(self) -> None:
        if self.writer is None:
            return
        with self.timer.section("Output results"):
            self.writer.write(self.time.timestep, self.time.current, self.mesh, self.dof_handler,
                              self.present_solution,
                              indicator=self.coupling.touched().astype(float),
                              subdomain=self.subdomains.astype(float),
                              rank=self.execution.rank, size=self.execution.size)

    def get_current_solution(self) -> np.ndarray:
        return self.present_solution

    def cell_quadrature_points(self) -> np.ndarray:
        """Physical quadrature points (n_cells, nq, 2) in coupling-store order."""
        values = CellValues(self.element, self.quadrature_order)
        return values.reinit(self.mesh.cell_corners()).quadrature_points
