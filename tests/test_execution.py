import numpy as np
import pytest
import scipy.sparse as sp

from pyinsfem.assembly.global_matrix import BlockSystem
from pyinsfem.assembly.local_assembler import ElementAssembler
from pyinsfem.boundary_values import dirichlet_table
from pyinsfem.core.constraints import make_dirichlet_constraints
from pyinsfem.core.dofhandler import DofHandler
from pyinsfem.errors import SingularPreconditionerError
from pyinsfem.fem.taylor_hood import TaylorHoodElement
from pyinsfem.parameters import Parameters
from pyinsfem.solvers.execution import SerialExecution, _contiguous_ranges, partition_ordering
from pyinsfem.solvers.navier_stokes import NavierStokesSolver
from pyinsfem.utils.adaptive_mesh import CellTree

PARAMS = Parameters(viscosity=1e-2, fluid_rho=1.0, grad_div=0.1, time_step=0.01)
PRECONDITIONER_OPTIONS = dict(viscosity=PARAMS.viscosity, rho=PARAMS.fluid_rho, gamma=PARAMS.grad_div,
                              dt=PARAMS.time_step, velocity_solver="direct", inner_tolerance=1e-12)


def test_contiguous_ranges_cover_everything():
    ranges = _contiguous_ranges(10, 3)
    assert ranges[0][0] == 0 and ranges[-1][1] == 10
    assert all(a[1] == b[0] for a, b in zip(ranges, ranges[1:]))


@pytest.mark.parametrize("size", [1, 2, 3, 5])
def test_partition_ordering_is_rank_contiguous(size):
    nu, npr = 22, 7
    perm, offsets = partition_ordering([nu, npr], size)
    np.testing.assert_array_equal(np.sort(perm), np.arange(nu + npr))
    assert offsets[0] == 0 and offsets[-1] == nu + npr
    vel, pre = _contiguous_ranges(nu, size), _contiguous_ranges(npr, size)
    for r in range(size):
        u_rows = perm[vel[r][0]:vel[r][1]]
        p_rows = perm[nu + pre[r][0]:nu + pre[r][1]]
        # velocity slice first, then pressure, inside [offsets[r], offsets[r + 1])
        np.testing.assert_array_equal(np.concatenate([u_rows, p_rows]),
                                      np.arange(offsets[r], offsets[r + 1]))


def test_single_rank_ordering_is_the_identity():
    perm, offsets = partition_ordering([12, 4], 1)
    np.testing.assert_array_equal(perm, np.arange(16))
    np.testing.assert_array_equal(offsets, [0, 16])


def test_serial_execution():
    ex = SerialExecution()
    mesh = CellTree(1.0, 1.0, 3, 2).to_mesh()
    assert ex.is_root
    np.testing.assert_array_equal(ex.cell_subdomains(mesh), 0)
    np.testing.assert_array_equal(ex.owned_cells(mesh), np.arange(6))
    assert ex.owned_ranges([10, 4]) == [(0, 10), (0, 4)]


def assembled(execution):
    dh = DofHandler(CellTree(2.0, 1.0, 4, 2).to_mesh(), TaylorHoodElement(1))
    table = dirichlet_table({0: (3, [1.0, 0.0]), 2: (3, [0.0, 0.0]), 3: (3, [0.0, 0.0])})
    nonzero, _ = make_dirichlet_constraints(dh, table)
    system = execution.create_system(dh, ElementAssembler(dh.element, PARAMS))
    system.assemble(nonzero, np.zeros(dh.n_dofs), dt=PARAMS.time_step)
    return system


def test_serial_execution_creates_scipy_system():
    system = assembled(SerialExecution())
    assert type(system) is BlockSystem
    assert sp.issparse(system.system_matrix.matrix)
    assert system.rhs_norm() == pytest.approx(np.linalg.norm(system.system_rhs))


@pytest.fixture
def partitioned():
    pytest.importorskip("mpi4py")
    pytest.importorskip("petsc4py")
    from pyinsfem.solvers.execution import PartitionedExecution

    return PartitionedExecution()


def to_scipy(mat):
    indptr, indices, data = mat.getValuesCSR()
    return sp.csr_matrix((data, indices, indptr), shape=(mat.getLocalSize()[0], mat.getSize()[1]))


def test_partitioned_system_owns_a_row_slice(partitioned):
    system = assembled(partitioned)
    layout = system.layout
    assert system.system_matrix.getOwnershipRange() == (layout.start, layout.stop)
    assert system.system_rhs.getOwnershipRange() == (layout.start, layout.stop)
    assert partitioned.comm.allreduce(layout.n_local) == system.n_dofs
    # every owned row is either a velocity or a pressure row, velocity first
    nu = system.dofs_per_block[0]
    is_velocity = layout.owned_rows < nu
    assert not np.any(np.diff(is_velocity.astype(int)) > 0)
    full = layout.gather(system.system_rhs)
    assert full.shape == (system.n_dofs,)


def test_partitioned_assembly_matches_serial(partitioned):
    if partitioned.size != 1:
        pytest.skip("comparison with the serial matrices needs a single rank")
    serial = assembled(SerialExecution())
    system = assembled(partitioned)
    np.testing.assert_allclose(to_scipy(system.system_matrix).toarray(),
                               serial.system_matrix.matrix.toarray(), atol=1e-12)
    np.testing.assert_allclose(to_scipy(system.mass_matrix).toarray(),
                               serial.mass_matrix.matrix.toarray(), atol=1e-12)
    np.testing.assert_allclose(system.system_rhs.getArray(), serial.system_rhs, atol=1e-12)
    assert system.rhs_norm() == pytest.approx(serial.rhs_norm())

    S = to_scipy(system.mass_schur.compute(system.system_matrix, system.mass_matrix))
    nu = serial.dofs_per_block[0]
    diag = serial.mass_matrix.matrix.diagonal()[:nu]
    reference = serial.mass_schur.compute(serial.system_matrix.block(1, 0), 1.0 / diag,
                                          serial.system_matrix.block(0, 1))
    np.testing.assert_allclose(S.toarray(), reference.toarray(), atol=1e-10)


def test_partitioned_preconditioner_matches_serial(partitioned):
    if partitioned.size != 1:
        pytest.skip("comparison with the serial preconditioner needs a single rank")
    from pyinsfem.solvers.distributed import PetscBlockSchurPreconditioner

    serial = assembled(SerialExecution())
    system = assembled(partitioned)
    reference = SerialExecution().create_preconditioner(serial, **PRECONDITIONER_OPTIONS)
    prec = partitioned.create_preconditioner(system, **PRECONDITIONER_OPTIONS)
    assert isinstance(prec, PetscBlockSchurPreconditioner)

    v = np.sin(np.arange(serial.n_dofs, dtype=float))
    x = system.system_rhs.duplicate()
    x.setArray(v)
    np.testing.assert_allclose(prec.vmult(x).getArray(), reference.vmult(v), rtol=1e-7, atol=1e-9)
    assert prec.n_vmults == 1


def test_partitioned_zero_pressure_mass_diagonal_raises(partitioned):
    system = assembled(partitioned)
    row = int(system.layout.perm[system.dofs_per_block[0]])
    system.mass_matrix.setValue(row, row, 0.0, addv=False)
    system.mass_matrix.assemble()
    prec = partitioned.create_preconditioner(system, **PRECONDITIONER_OPTIONS)
    with pytest.raises(SingularPreconditionerError):
        prec.prepare()


def test_partitioned_run_matches_serial(partitioned):
    if partitioned.size != 1:
        pytest.skip("comparison with the serial run needs a single rank")
    params = Parameters(end_time=0.02, time_step=0.01, fluid_dirichlet_bcs={0: (3, [0.1, 0.0])},
                        fluid_neumann_bcs={1: 0.0})
    serial = NavierStokesSolver(CellTree(1.0, 0.5, 4, 2), params)
    parallel = NavierStokesSolver(CellTree(1.0, 0.5, 4, 2), params, execution=partitioned)
    np.testing.assert_allclose(parallel.run(), serial.run(), atol=1e-6)
    assert parallel.last_krylov.restart_residuals[-1] == pytest.approx(parallel.last_krylov.residual)
