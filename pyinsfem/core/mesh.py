from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from pyinsfem.core.topology import Cell, Edge, Node


class Mesh:
    """
    Conforming quadrilateral mesh.

    Builds cells, shared edges (with left/right cells and outward normals of
    the left cell) and cell neighbours from vertex coordinates and
    counter-clockwise corner connectivity.  Boundary edges carry an integer
    ``boundary_id`` (``None`` until tagged).
    """
    # local-corner pairs that form each edge, counter-clockwise
    _EDGE_TABLE = ((0, 1), (1, 2), (2, 3), (3, 0))

    def __init__(self,
                 nodes: Sequence[Node],
                 corner_connectivity: np.ndarray,
                 *,
                 levels: Optional[Sequence[int]] = None,
                 logical_ids: Optional[Sequence[int]] = None):
        self.nodes_list: List[Node] = list(nodes)
        self.nodes_x_y_pos = np.array([[n.x, n.y] for n in self.nodes_list], dtype=float)
        self.corner_connectivity = np.asarray(corner_connectivity, dtype=np.int64).reshape(-1, 4)
        self.n_cells = len(self.corner_connectivity)
        self.spatial_dim = 2
        self.levels = np.zeros(self.n_cells, dtype=int) if levels is None else np.asarray(levels, dtype=int)
        self.logical_ids = (np.arange(self.n_cells) if logical_ids is None
                            else np.asarray(logical_ids, dtype=int))
        self.cells_list: List[Cell] = []
        self.edges_list: List[Edge] = []
        self._edge_dict: Dict[Tuple[int, int], Edge] = {}
        self._build_topology()

    def _build_topology(self):
        xy = self.nodes_x_y_pos
        for cid, corners in enumerate(self.corner_connectivity):
            c = xy[corners].mean(axis=0)
            self.cells_list.append(Cell(id=cid, corner_nodes=tuple(int(n) for n in corners),
                                        level=int(self.levels[cid]),
                                        logical_id=int(self.logical_ids[cid]),
                                        centroid=(float(c[0]), float(c[1]))))

        incidences: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}
        for cid, corners in enumerate(self.corner_connectivity):
            for lid, (a, b) in enumerate(self._EDGE_TABLE):
                key = tuple(sorted((int(corners[a]), int(corners[b]))))
                incidences.setdefault(key, []).append((cid, lid))

        for gid, (key, shared) in enumerate(incidences.items()):
            if len(shared) > 2:
                raise ValueError(f"Edge {key} is shared by more than two cells.")
            left, lid = shared[0]
            right, rlid = shared[1] if len(shared) == 2 else (None, None)
            a, b = self._EDGE_TABLE[lid]
            vA, vB = int(self.corner_connectivity[left][a]), int(self.corner_connectivity[left][b])
            d = xy[vB] - xy[vA]
            length = float(np.hypot(*d))
            normal = np.array([d[1], -d[0]]) / length
            edge = Edge(gid=gid, nodes=(vA, vB), left=left, right=right, normal=normal,
                        lid=lid, rlid=rlid, length=length)
            self.edges_list.append(edge)
            self._edge_dict[key] = edge

        for cell in self.cells_list:
            gids = []
            for lid, (a, b) in enumerate(self._EDGE_TABLE):
                edge = self._edge_dict[tuple(sorted((cell.corner_nodes[a], cell.corner_nodes[b])))]
                gids.append(edge.gid)
                cell.neighbors[lid] = edge.right if edge.left == cell.id else edge.left
            cell.edges = tuple(gids)

    # --- Public API ---
    @property
    def n_nodes(self) -> int:
        return len(self.nodes_list)

    def edge(self, edge_id: int) -> Edge:
        if not 0 <= edge_id < len(self.edges_list):
            raise IndexError(f"Edge ID {edge_id} out of range.")
        return self.edges_list[edge_id]

    def cell_corners(self, cell_ids=None) -> np.ndarray:
        """Corner coordinates, shape (n_cells, 4, 2)."""
        conn = self.corner_connectivity if cell_ids is None else self.corner_connectivity[cell_ids]
        return self.nodes_x_y_pos[conn]

    def boundary_edges(self) -> List[Edge]:
        return [e for e in self.edges_list if e.right is None]

    def interior_edges(self) -> List[Edge]:
        return [e for e in self.edges_list if e.right is not None]

    def tag_boundary_edges(self, tag_functions: Dict[int, Callable[[float, float], bool]]):
        """Assign boundary ids from locator functions evaluated at edge midpoints."""
        for edge in self.boundary_edges():
            midpoint = self.nodes_x_y_pos[list(edge.nodes)].mean(axis=0)
            for bid, func in tag_functions.items():
                if func(midpoint[0], midpoint[1]):
                    edge.boundary_id = int(bid)
                    break

    def boundary_faces(self, boundary_id: int) -> List[Tuple[int, int]]:
        """(cell, local edge) pairs of the boundary edges carrying ``boundary_id``."""
        return [(e.left, e.lid) for e in self.edges_list
                if e.right is None and e.boundary_id == boundary_id]

    def boundary_ids(self) -> List[int]:
        return sorted({e.boundary_id for e in self.edges_list
                       if e.right is None and e.boundary_id is not None})

    def centroids(self) -> np.ndarray:
        return np.array([c.centroid for c in self.cells_list])

    def areas(self) -> np.ndarray:
        xy = self.cell_corners()
        x, y = xy[..., 0], xy[..., 1]
        return 0.5 * np.abs(np.sum(x * np.roll(y, -1, axis=1) - y * np.roll(x, -1, axis=1), axis=1))

    def diameters(self) -> np.ndarray:
        xy = self.cell_corners()
        return np.maximum(np.linalg.norm(xy[:, 2] - xy[:, 0], axis=1),
                          np.linalg.norm(xy[:, 3] - xy[:, 1], axis=1))

    def __repr__(self):
        return (f"<Mesh n_nodes={self.n_nodes}, n_cells={self.n_cells}, "
                f"n_edges={len(self.edges_list)}>")
