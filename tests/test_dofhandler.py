import numpy as np
import pytest

from pyinsfem.core.dofhandler import DofHandler
from pyinsfem.fem import transform
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.utils.adaptive_mesh import CellTree


@pytest.fixture
def dof_handler():
    mesh = CellTree(1.0, 1.0, 2, 2).to_mesh()
    return DofHandler(mesh, TaylorHoodElement(1))


def test_counts(dof_handler):
    dh = dof_handler
    assert dh.n_velocity_nodes == 25
    assert dh.n_pressure_nodes == 9
    assert dh.dofs_per_block == [50, 9]
    assert dh.n_dofs == 59
    assert dh.cell_dofs.shape == (4, 22)
    assert dh.block_offsets == [0, 50, 59]


def test_block_layout(dof_handler):
    dh = dof_handler
    el = dh.element
    assert np.all(dh.cell_dofs[:, el.velocity_slice(0)] < 25)
    assert np.all((dh.cell_dofs[:, el.velocity_slice(1)] >= 25) & (dh.cell_dofs[:, el.velocity_slice(1)] < 50))
    assert np.all(dh.cell_dofs[:, el.pressure_slice] >= 50)
    np.testing.assert_array_equal(dh.dof_component[:25], 0)
    np.testing.assert_array_equal(dh.dof_component[50:], 2)


def test_node_coordinates_match_cells(dof_handler):
    dh = dof_handler
    pts = transform.x_mapping(dh.mesh.cell_corners(), dh.element.velocity_basis.lattice)
    np.testing.assert_allclose(dh.velocity_node_coords[dh.velocity_nodes], pts, atol=1e-12)


def test_boundary_nodes(dof_handler):
    nodes = dof_handler.boundary_velocity_nodes(0)
    assert len(nodes) == 5
    np.testing.assert_allclose(dof_handler.velocity_node_coords[nodes, 0], 0.0)
    assert dof_handler.boundary_velocity_nodes(7).size == 0


def test_vertex_values_of_linear_field(dof_handler):
    dh = dof_handler
    x, y = dh.dof_coords[:, 0], dh.dof_coords[:, 1]
    sol = np.where(dh.dof_component == 0, x, np.where(dh.dof_component == 1, y, x + y))
    velocity, pressure = dh.vertex_values(sol)
    xy = dh.mesh.nodes_x_y_pos
    np.testing.assert_allclose(velocity, xy, atol=1e-12)
    np.testing.assert_allclose(pressure, xy.sum(axis=1), atol=1e-12)
    assert dh.cell_coefficients(sol, [1, 2]).shape == (2, 22)


def test_renumbering_keeps_counts():
    mesh = CellTree(1.0, 1.0, 3, 2).to_mesh()
    a = DofHandler(mesh, TaylorHoodElement(1), renumber=False)
    b = DofHandler(mesh, TaylorHoodElement(1))
    assert a.n_dofs == b.n_dofs
    np.testing.assert_allclose(np.sort(a.velocity_node_coords, axis=0), np.sort(b.velocity_node_coords, axis=0))
