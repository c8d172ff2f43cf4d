"""pyinsfem.boundary_values

Dirichlet data for the velocity.  A boundary value is one of three plain
records and :func:`evaluate` is the only place that interprets them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Sequence, Tuple

import numpy as np

from pyinsfem.errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class Constant:
    """One value per velocity component (components outside the mask are ignored)."""
    values: Tuple[float, ...]


@dataclass(frozen=True, slots=True)
class Zero:
    pass


@dataclass(frozen=True, slots=True)
class ParabolicProfile:
    """Poiseuille inflow ``4 Umax y (H - y) / H^2`` in x on the line ``x = inlet_x``."""
    u_avg: float = 0.2
    height: float = 0.41
    inlet_x: float = 0.0
    tolerance: float = 1e-10

    @property
    def u_max(self) -> float:
        return 1.5 * self.u_avg


BoundaryValue = Constant | Zero | ParabolicProfile


def evaluate(value: BoundaryValue, points: np.ndarray, component: int) -> np.ndarray:
    """Evaluate *value* for velocity *component* at ``points`` (shape (n, dim))."""
    points = np.atleast_2d(np.asarray(points, dtype=float))
    n = points.shape[0]
    if isinstance(value, Zero):
        return np.zeros(n)
    if isinstance(value, Constant):
        return np.full(n, float(value.values[component]))
    if isinstance(value, ParabolicProfile):
        out = np.zeros(n)
        if component != 0:
            return out
        y = points[:, 1]
        on_inlet = np.abs(points[:, 0] - value.inlet_x) < value.tolerance
        H = value.height
        out[on_inlet] = 4.0 * value.u_max * y[on_inlet] * (H - y[on_inlet]) / H**2
        return out
    raise ConfigurationError(f"Unsupported boundary value {value!r}")


# flag bits: 1 -> x, 2 -> y, 4 -> z
def component_mask(flag: int, dim: int = 2) -> Tuple[int, ...]:
    """Velocity components selected by an integer flag in 1..7."""
    if not isinstance(flag, (int, np.integer)) or not 1 <= flag <= 7:
        raise ConfigurationError(f"Unrecognized component flag {flag!r}: expected an integer in 1..7.")
    comps = tuple(c for c in range(3) if flag & (1 << c))
    if any(c >= dim for c in comps):
        raise ConfigurationError(
            f"Component flag {flag} selects the z component, which a {dim}-D problem does not have.")
    return comps


@dataclass(frozen=True, slots=True)
class DirichletBC:
    components: Tuple[int, ...]
    value: BoundaryValue


def dirichlet_table(raw: Mapping[int, Tuple[int, Sequence[float]]], *, dim: int = 2,
                    profile: ParabolicProfile | None = None) -> Dict[int, DirichletBC]:
    """Turn ``{boundary_id: (flag, values)}`` into typed boundary conditions.

    ``values`` lists one entry per selected component in x, y, z order.  When
    *profile* is given every condition evaluates the parabolic profile instead
    (which vanishes away from the inlet line).
    """
    table = {}
    for bid in sorted(raw):
        flag, values = raw[bid]
        comps = component_mask(flag, dim)
        if profile is not None:
            table[int(bid)] = DirichletBC(comps, profile)
            continue
        values = list(values)
        if len(values) != len(comps):
            raise ConfigurationError(
                f"Boundary {bid}: flag {flag} selects {len(comps)} component(s) "
                f"but {len(values)} value(s) were given.")
        full = [0.0] * dim
        for c, v in zip(comps, values):
            full[c] = float(v)
        value = Zero() if not any(full) else Constant(tuple(full))
        table[int(bid)] = DirichletBC(comps, value)
    return table
