"""
Adaptive quadrilateral mesh on a rectangle without hanging nodes.

Cells live in a forest of refinement trees rooted at an ``nx x ny`` grid.
Refinement happens in two layers:

1.  *Logical* refinement splits a leaf symmetrically (1-to-4) and raises its
    level by one.  Coarsening removes the four children of a parent when all
    of them are flagged.
2.  A *closure* pass then splits any cell that is larger than its neighbour
    across a shared side (horizontally if it is taller, vertically if it is
    wider) until all adjacent sides match.  Closure cells keep the level of
    their logical leaf and are discarded and rebuilt on every adaptation.

Coordinates are stored as integers in units of ``1 / 2**_DEPTH`` of a root
cell so that neighbour tests are exact.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

import numpy as np

from pyinsfem.core.mesh import Mesh
from pyinsfem.core.topology import Node

logger = logging.getLogger(__name__)

_DEPTH = 24

LEFT, RIGHT, BOTTOM, TOP = 0, 1, 2, 3


@dataclass
class TreeCell:
    id: int
    ix: int
    iy: int
    wx: int
    wy: int
    level: int
    parent_id: int | None = None
    children_ids: List[int] = field(default_factory=list)
    closure: bool = False

    @property
    def x1(self) -> int:
        return self.ix + self.wx

    @property
    def y1(self) -> int:
        return self.iy + self.wy


class CellTree:
    """Refinement forest over ``[x0, x0 + lx] x [y0, y0 + ly]``."""

    def __init__(self, lx: float, ly: float, nx: int, ny: int, *, x0: float = 0.0, y0: float = 0.0):
        if nx < 1 or ny < 1:
            raise ValueError("The root grid needs at least one cell in each direction.")
        self.lx, self.ly, self.nx, self.ny = float(lx), float(ly), int(nx), int(ny)
        self.x0, self.y0 = float(x0), float(y0)
        self._unit = 1 << _DEPTH
        self._hx = self.lx / (nx * self._unit)
        self._hy = self.ly / (ny * self._unit)
        self.cells: Dict[int, TreeCell] = {}
        self.active_cells: Set[int] = set()
        self._next_cell_id = 0
        self.active_order: List[int] = []
        for j in range(ny):
            for i in range(nx):
                self._add_cell(i * self._unit, j * self._unit, self._unit, self._unit, 0)
        self._sort_active()

    # ------------------------------------------------------------------
    def _add_cell(self, ix, iy, wx, wy, level, parent_id=None, closure=False) -> TreeCell:
        cell = TreeCell(self._next_cell_id, ix, iy, wx, wy, level, parent_id, closure=closure)
        self._next_cell_id += 1
        self.cells[cell.id] = cell
        self.active_cells.add(cell.id)
        if parent_id is not None:
            self.cells[parent_id].children_ids.append(cell.id)
        return cell

    def subdivide_cell(self, parent_id: int, split_type: str, *, closure: bool = False) -> List[TreeCell]:
        """Split an active cell 'symm' (1-to-4), 'horz' (stacked pair) or 'vert' (side by side)."""
        if parent_id not in self.active_cells:
            return []
        if split_type not in ('symm', 'horz', 'vert'):
            raise ValueError(f"Unknown split type '{split_type}'.")
        p = self.cells[parent_id]
        split_x = split_type in ('symm', 'vert')
        split_y = split_type in ('symm', 'horz')
        if (split_x and p.wx % 2) or (split_y and p.wy % 2):
            raise ValueError(f"Cell {parent_id} cannot be split further (maximum depth {_DEPTH}).")
        hx = p.wx // 2 if split_x else p.wx
        hy = p.wy // 2 if split_y else p.wy
        level = p.level if closure else p.level + 1
        offsets = [(0, 0), (hx, 0), (hx, hy), (0, hy)] if split_type == 'symm' else \
                  [(0, 0), (0, hy)] if split_type == 'horz' else [(0, 0), (hx, 0)]
        self.active_cells.remove(parent_id)
        return [self._add_cell(p.ix + ox, p.iy + oy, hx, hy, level, parent_id, closure)
                for ox, oy in offsets]

    def _remove_children(self, cell_id: int) -> None:
        cell = self.cells[cell_id]
        for cid in cell.children_ids:
            self._remove_children(cid)
            self.active_cells.discard(cid)
            del self.cells[cid]
        cell.children_ids = []
        self.active_cells.add(cell_id)

    def logical_leaf(self, cell_id: int) -> int:
        cell = self.cells[cell_id]
        while cell.closure:
            cell = self.cells[cell.parent_id]
        return cell.id

    def logical_leaves(self) -> List[int]:
        return sorted({self.logical_leaf(c) for c in self.active_cells})

    def _clear_closure(self) -> None:
        for leaf in self.logical_leaves():
            if self.cells[leaf].children_ids:
                self._remove_children(leaf)

    # ------------------------------------------------------------------
    def find_neighbors(self, side_maps, cell: TreeCell, side: int) -> List[TreeCell]:
        """Active cells touching ``side`` of ``cell`` (positive-length overlap)."""
        if side == RIGHT:
            cands, lo, hi, attr = side_maps[LEFT].get(cell.x1, ()), cell.iy, cell.y1, 'y'
        elif side == LEFT:
            cands, lo, hi, attr = side_maps[RIGHT].get(cell.ix, ()), cell.iy, cell.y1, 'y'
        elif side == TOP:
            cands, lo, hi, attr = side_maps[BOTTOM].get(cell.y1, ()), cell.ix, cell.x1, 'x'
        else:
            cands, lo, hi, attr = side_maps[TOP].get(cell.iy, ()), cell.ix, cell.x1, 'x'
        if attr == 'y':
            return [o for o in cands if max(lo, o.iy) < min(hi, o.y1)]
        return [o for o in cands if max(lo, o.ix) < min(hi, o.x1)]

    def _side_maps(self):
        maps = [defaultdict(list) for _ in range(4)]
        for cid in self.active_cells:
            c = self.cells[cid]
            maps[LEFT][c.ix].append(c)
            maps[RIGHT][c.x1].append(c)
            maps[BOTTOM][c.iy].append(c)
            maps[TOP][c.y1].append(c)
        return maps

    def _close(self) -> int:
        """Split cells larger than a neighbour until all shared sides match."""
        n_splits = 0
        while True:
            maps = self._side_maps()
            cells_to_split: Dict[int, str] = {}
            for cid in self.active_cells:
                cell = self.cells[cid]
                # taller than a left/right neighbour -> horizontal split
                for nb in self.find_neighbors(maps, cell, RIGHT) + self.find_neighbors(maps, cell, LEFT):
                    if cell.wy > nb.wy:
                        cells_to_split[cid] = 'symm' if cells_to_split.get(cid) == 'vert' else 'horz'
                        break
                # wider than a top/bottom neighbour -> vertical split
                for nb in self.find_neighbors(maps, cell, TOP) + self.find_neighbors(maps, cell, BOTTOM):
                    if cell.wx > nb.wx:
                        cells_to_split[cid] = 'symm' if cells_to_split.get(cid) == 'horz' else 'vert'
                        break
            if not cells_to_split:
                return n_splits
            for cid, split_type in cells_to_split.items():
                self.subdivide_cell(cid, split_type, closure=True)
            n_splits += len(cells_to_split)

    def _sort_active(self) -> None:
        self.active_order = sorted(self.active_cells,
                                   key=lambda cid: (self.cells[cid].iy, self.cells[cid].ix))

    # ------------------------------------------------------------------
    def refine_global(self, times: int = 1) -> None:
        for _ in range(int(times)):
            self.execute_coarsening_and_refinement(refine=range(len(self.active_order)))

    def execute_coarsening_and_refinement(self, refine: Iterable[int] = (),
                                          coarsen: Iterable[int] = ()) -> None:
        """Apply refine/coarsen flags given as indices of the current mesh cells.

        A logical leaf is refined when any of its pieces is flagged for
        refinement, and can only be coarsened when all of its pieces are
        flagged.  A parent is coarsened only if all of its children are leaves
        eligible for coarsening.
        """
        order = self.active_order
        refine_leaves = {self.logical_leaf(order[i]) for i in refine}
        pieces: Dict[int, List[int]] = defaultdict(list)
        for i, cid in enumerate(order):
            pieces[self.logical_leaf(cid)].append(i)
        coarsen = set(coarsen)
        coarsen_leaves = {leaf for leaf, idx in pieces.items()
                          if leaf not in refine_leaves and all(i in coarsen for i in idx)}

        self._clear_closure()

        parents = {self.cells[leaf].parent_id for leaf in coarsen_leaves
                   if self.cells[leaf].parent_id is not None}
        n_coarsened = 0
        for pid in sorted(parents):
            children = self.cells[pid].children_ids
            if all(c in coarsen_leaves and not self.cells[c].children_ids for c in children):
                self._remove_children(pid)
                n_coarsened += 1
        n_refined = 0
        for leaf in sorted(refine_leaves):
            if leaf in self.cells and leaf in self.active_cells:
                self.subdivide_cell(leaf, 'symm')
                n_refined += 1
        n_closure = self._close()
        self._sort_active()
        logger.info("mesh adaptation: %d refined, %d coarsened, %d closure splits -> %d cells",
                    n_refined, n_coarsened, n_closure, len(self.active_cells))

    # ------------------------------------------------------------------
    @property
    def n_active_cells(self) -> int:
        return len(self.active_cells)

    def to_mesh(self) -> Mesh:
        """Conforming :class:`Mesh` of the active cells, boundary ids x-=0, x+=1, y-=2, y+=3."""
        nodes: List[Node] = []
        loc_to_id: Dict[Tuple[int, int], int] = {}

        def get_node_id(ix: int, iy: int) -> int:
            nid = loc_to_id.get((ix, iy))
            if nid is None:
                nid = len(nodes)
                nodes.append(Node(nid, self.x0 + ix * self._hx, self.y0 + iy * self._hy))
                loc_to_id[(ix, iy)] = nid
            return nid

        corners, levels, logical = [], [], []
        for cid in self.active_order:
            c = self.cells[cid]
            corners.append([get_node_id(c.ix, c.iy), get_node_id(c.x1, c.iy),
                            get_node_id(c.x1, c.y1), get_node_id(c.ix, c.y1)])
            levels.append(c.level)
            logical.append(self.logical_leaf(cid))

        mesh = Mesh(nodes, np.array(corners, dtype=np.int64), levels=levels, logical_ids=logical)
        tol = 1e-10 * max(self.lx, self.ly)
        xa, xb, ya, yb = self.x0, self.x0 + self.lx, self.y0, self.y0 + self.ly
        mesh.tag_boundary_edges({
            0: lambda x, y: abs(x - xa) < tol,
            1: lambda x, y: abs(x - xb) < tol,
            2: lambda x, y: abs(y - ya) < tol,
            3: lambda x, y: abs(y - yb) < tol,
        })
        return mesh
