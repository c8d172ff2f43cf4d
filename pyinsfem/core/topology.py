import numpy as np
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


class Node:
    def __init__(self, id, x, y):
        self.id = id
        self.x = x
        self.y = y

    def __repr__(self):
        return f"Node {self.id}({self.x:.4g}, {self.y:.4g})"

    def __iter__(self):
        yield self.x
        yield self.y


@dataclass(slots=True)
class Edge:
    gid: int
    nodes: Tuple[int, int]      # endpoints, counter-clockwise w.r.t. the left cell
    left: int                   # cell on the left side (always present)
    right: Optional[int]        # neighbour cell, None on the boundary
    normal: np.ndarray          # unit normal pointing out of the left cell
    lid: int                    # local edge index within the left cell
    rlid: Optional[int] = None  # local edge index within the right cell
    boundary_id: Optional[int] = None
    length: float = 0.0

    @property
    def is_boundary(self) -> bool:
        return self.right is None


@dataclass(slots=True)
class Cell:
    id: int
    corner_nodes: Tuple[int, int, int, int]   # bl, br, tr, tl
    level: int = 0
    logical_id: int = -1                      # leaf of the refinement tree this cell belongs to
    edges: Tuple[int, ...] = field(default_factory=tuple)
    neighbors: Dict[int, Optional[int]] = field(default_factory=dict)
    centroid: Tuple[float, float] = (0.0, 0.0)
