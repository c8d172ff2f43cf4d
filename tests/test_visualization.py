import matplotlib.pyplot as plt
import numpy as np
import pytest

from pyinsfem.core.dofhandler import DofHandler
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.io.visualization import plot_field, plot_mesh, quad_triangulation
from pyinsfem.utils.adaptive_mesh import CellTree


@pytest.fixture
def dof_handler():
    tree = CellTree(2.0, 1.0, 2, 1)
    tree.execute_coarsening_and_refinement(refine=[0])
    return DofHandler(tree.to_mesh(), TaylorHoodElement(1))


def test_plot_mesh(dof_handler):
    mesh = dof_handler.mesh
    ax = plot_mesh(mesh, cell_values=mesh.levels)
    assert len(ax.collections) == 2
    with pytest.raises(ValueError):
        plot_mesh(mesh, cell_values=np.zeros(mesh.n_cells + 1))
    plt.close('all')


def test_plot_field(dof_handler):
    sol = np.ones(dof_handler.n_dofs)
    tri = quad_triangulation(dof_handler.mesh)
    assert len(tri.triangles) == 2 * dof_handler.mesh.n_cells
    for field in ("speed", "ux", "pressure"):
        plot_field(dof_handler, sol + dof_handler.dof_coords[:, 0], field)
    with pytest.raises(ValueError):
        plot_field(dof_handler, sol, "vorticity")
    plt.close('all')
