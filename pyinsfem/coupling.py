"""pyinsfem.coupling

Per-cell, per-quadrature-point data written by an external structural solver
and read by the fluid assembly.  Cells are addressed by their integer index in
the current mesh; the store is re-created whenever the discretization is
re-initialised, so indices from an older mesh must not be reused.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from pyinsfem.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CellProperty:
    """Views into the store for one cell."""
    indicator: np.ndarray       # (nq,)          0 / 1
    acceleration: np.ndarray    # (nq, dim)
    stress: np.ndarray          # (nq, dim, dim)


class CouplingDataStore:
    def __init__(self, n_cells: int = 0, n_q_points: int = 0, dim: int = 2):
        self.dim = dim
        self.epoch = -1
        self.reset(n_cells, n_q_points)

    def reset(self, n_cells: int, n_q_points: int) -> None:
        """Zero everything and start a new discretization epoch."""
        self.n_cells = int(n_cells)
        self.n_q_points = int(n_q_points)
        self.indicator = np.zeros((self.n_cells, self.n_q_points), dtype=np.int8)
        self.acceleration = np.zeros((self.n_cells, self.n_q_points, self.dim))
        self.stress = np.zeros((self.n_cells, self.n_q_points, self.dim, self.dim))
        self.epoch += 1
        logger.debug("coupling store reset: %d cells x %d q-points (epoch %d)",
                     self.n_cells, self.n_q_points, self.epoch)

    def _check_cell(self, cell_id: int) -> int:
        cell_id = int(cell_id)
        if not 0 <= cell_id < self.n_cells:
            raise ConfigurationError(
                f"Cell {cell_id} is not part of the current discretization ({self.n_cells} cells).")
        return cell_id

    def get_data(self, cell_id: int) -> CellProperty:
        c = self._check_cell(cell_id)
        return CellProperty(self.indicator[c], self.acceleration[c], self.stress[c])

    def set_data(self, cell_id: int, indicator, acceleration, stress) -> None:
        c = self._check_cell(cell_id)
        nq, d = self.n_q_points, self.dim
        indicator = np.asarray(indicator)
        acceleration = np.asarray(acceleration, dtype=float)
        stress = np.asarray(stress, dtype=float)
        if indicator.shape != (nq,) or acceleration.shape != (nq, d) or stress.shape != (nq, d, d):
            raise ConfigurationError(
                f"Wrong number of cell property entries for cell {c}: expected "
                f"{nq} quadrature points, got indicator{indicator.shape}, "
                f"acceleration{acceleration.shape}, stress{stress.shape}.")
        if not np.all((indicator == 0) | (indicator == 1)):
            raise ConfigurationError("Coupling indicator must be 0 or 1.")
        self.indicator[c] = indicator
        self.acceleration[c] = acceleration
        self.stress[c] = stress

    def touched(self) -> np.ndarray:
        """Boolean per cell: does any quadrature point carry coupling data?"""
        return self.indicator.any(axis=1)
