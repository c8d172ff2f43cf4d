#!/usr/bin/env python
# coding: utf-8
"""
Unsteady channel flow with a parabolic inlet (2.2 x 0.41, Uavg = 0.2).

    python examples/channel_flow.py --steps 20 --output-dir out
    mpirun -n 2 python examples/channel_flow.py --mpi
"""
import argparse
import logging
import os

import numba
import numpy as np

from pyinsfem.io.vtk import OutputWriter
from pyinsfem.parameters import Parameters
from pyinsfem.solvers.execution import PartitionedExecution, SerialExecution
from pyinsfem.solvers.navier_stokes import NavierStokesSolver
from pyinsfem.utils.adaptive_mesh import CellTree

parser = argparse.ArgumentParser(description="Taylor-Hood channel flow")
parser.add_argument("--newton", action="store_true", help="Newton linearization instead of IMEX")
parser.add_argument("--steps", type=int, default=10, help="number of time steps")
parser.add_argument("--dt", type=float, default=0.01)
parser.add_argument("--output-dir", default="channel_output")
parser.add_argument("--refine-interval", type=float, default=float("inf"),
                    help="time between mesh adaptations")
parser.add_argument("--fsi-box", type=float, nargs=4, metavar=("X0", "X1", "Y0", "Y1"),
                    help="mark cells inside this box as solid and push them downwards")
parser.add_argument("--mpi", action="store_true", help="partition cells over MPI ranks")
parser.add_argument("--plot", action="store_true", help="show the final speed field")
args = parser.parse_args()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
numba.set_num_threads(os.cpu_count() or 1)

# boundary ids: 0 inlet, 1 outlet, 2 bottom wall, 3 top wall
params = Parameters(
    viscosity=1e-3,
    fluid_rho=1.0,
    linearization="newton" if args.newton else "imex",
    time_step=args.dt,
    end_time=args.steps * args.dt,
    output_interval=args.dt,
    refinement_interval=args.refine_interval,
    min_refinement_level=0,
    max_refinement_level=2,
    fluid_dirichlet_bcs={0: (3, [0.0, 0.0]), 2: (3, [0.0, 0.0]), 3: (3, [0.0, 0.0])},
    fluid_neumann_bcs={1: 0.0},
    use_hard_coded_values=True,
    inflow_velocity=0.2,
    inflow_height=0.41,
)

execution = PartitionedExecution() if args.mpi else SerialExecution()
solver = NavierStokesSolver(CellTree(2.2, 0.41, 22, 4), params, execution=execution,
                            writer=OutputWriter(args.output_dir))
solver.setup()

if args.fsi_box:
    x0, x1, y0, y1 = args.fsi_box
    qp = solver.cell_quadrature_points()
    nq = qp.shape[1]
    for cell, pts in enumerate(qp):
        inside = ((pts[:, 0] >= x0) & (pts[:, 0] <= x1) & (pts[:, 1] >= y0) & (pts[:, 1] <= y1))
        if inside.any():
            acceleration = np.zeros((nq, 2))
            acceleration[:, 1] = -1.0
            solver.coupling.set_data(cell, inside.astype(int), acceleration, np.zeros((nq, 2, 2)))

while not solver.time.finished():
    solver.run_one_step()

u = solver.get_current_solution()
n_u = solver.dof_handler.dofs_per_block[0]
print(f"max |u| = {np.abs(u[:n_u]).max():.4e}, pressure range = "
      f"[{u[n_u:].min():.4e}, {u[n_u:].max():.4e}]")
print(solver.timer.summary())

if args.plot:
    from pyinsfem.io.visualization import plot_field
    plot_field(solver.dof_handler, u, "speed", show=True)
