"""Simulation clock with output and refinement cadence."""

from __future__ import annotations

import math

from pyinsfem.errors import ConfigurationError

_EPS = 1e-12


class Time:
    """Fixed-step clock.

    ``increment()`` is the only mutating operation; it advances the time by
    ``delta_t`` and decides whether the new step is an output and/or a
    refinement step.
    """

    def __init__(self, end: float, delta_t: float, output_interval: float,
                 refinement_interval: float = math.inf):
        if delta_t <= 0.0:
            raise ConfigurationError("Time step must be positive.")
        self._end = float(end)
        self._delta_t = float(delta_t)
        self._output_interval = float(output_interval)
        self._refinement_interval = float(refinement_interval)
        self._current = 0.0
        self._timestep = 0
        self._next_output = self._output_interval
        self._next_refinement = self._refinement_interval
        self._output_due = False
        self._refine_due = False

    @property
    def current(self) -> float:
        return self._current

    @property
    def end(self) -> float:
        return self._end

    @property
    def delta_t(self) -> float:
        return self._delta_t

    @property
    def timestep(self) -> int:
        return self._timestep

    def finished(self) -> bool:
        return self._end - self._current <= _EPS

    def time_to_output(self) -> bool:
        return self._output_due

    def time_to_refine(self) -> bool:
        return self._refine_due

    def increment(self) -> None:
        self._current += self._delta_t
        self._timestep += 1
        self._output_due = self._current >= self._next_output - _EPS
        if self._output_due:
            while self._next_output <= self._current + _EPS:
                self._next_output += self._output_interval
        self._refine_due = self._current >= self._next_refinement - _EPS
        if self._refine_due:
            while self._next_refinement <= self._current + _EPS:
                self._next_refinement += self._refinement_interval

    def __repr__(self):
        return (f"Time(current={self._current:.6g}, step={self._timestep}, "
                f"dt={self._delta_t:.3g}, end={self._end:.6g})")
