import math

import pytest

from pyinsfem.errors import ConfigurationError
from pyinsfem.parameters import Parameters


def test_defaults():
    p = Parameters()
    assert p.velocity_degree == 2
    assert not p.uses_newton
    assert p.resolved_velocity_solver() == "cg"
    assert math.isinf(p.refinement_interval)


def test_newton_resolves_direct_velocity_solver():
    p = Parameters(linearization="Newton")
    assert p.linearization == "newton"
    assert p.resolved_velocity_solver() == "direct"
    assert Parameters(linearization="newton", velocity_solver="cg").resolved_velocity_solver() == "cg"


def test_table_normalisation_and_round_trip():
    p = Parameters.from_mapping({"fluid_dirichlet_bcs": {"0": (3, (1, 0))}, "fluid_neumann_bcs": {1: 0}})
    assert p.fluid_dirichlet_bcs == {0: (3, [1.0, 0.0])}
    assert p.fluid_neumann_bcs == {1: 0.0}
    assert Parameters.from_mapping(p.to_dict()) == p


@pytest.mark.parametrize("kwargs", [
    {"dimension": 3},
    {"viscosity": 0.0},
    {"time_step": -1.0},
    {"linearization": "picard"},
    {"velocity_solver": "amg"},
    {"schur_zero_diagonal": "ignore"},
    {"min_refinement_level": 3, "max_refinement_level": 1},
    {"refine_fraction": 0.8, "coarsen_fraction": 0.4},
    {"fluid_degree": 0},
])
def test_invalid(kwargs):
    with pytest.raises(ConfigurationError):
        Parameters(**kwargs)


def test_unknown_key():
    with pytest.raises(ConfigurationError, match="bogus"):
        Parameters.from_mapping({"bogus": 1})
