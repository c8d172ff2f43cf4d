import pytest

from pyinsfem.errors import ConfigurationError
from pyinsfem.solvers.time_control import Time


def test_increment_and_finish():
    t = Time(0.03, 0.01, 0.01)
    assert t.timestep == 0 and not t.finished()
    for _ in range(3):
        t.increment()
        assert t.time_to_output()
    assert t.timestep == 3
    assert t.current == pytest.approx(0.03)
    assert t.finished()


def test_output_and_refinement_cadence():
    t = Time(1.0, 0.1, 0.2, refinement_interval=0.3)
    outputs, refines = [], []
    for _ in range(6):
        t.increment()
        outputs.append(t.time_to_output())
        refines.append(t.time_to_refine())
    assert outputs == [False, True, False, True, False, True]
    assert refines == [False, False, True, False, False, True]


def test_queries_do_not_advance():
    t = Time(1.0, 0.1, 0.1)
    t.time_to_output()
    t.finished()
    assert t.current == 0.0


def test_bad_step():
    with pytest.raises(ConfigurationError):
        Time(1.0, 0.0, 0.1)
