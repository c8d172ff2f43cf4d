"""pyinsfem.io.visualization"""
import numpy as np
import matplotlib.pyplot as plt
import matplotlib.tri as mtri
from matplotlib.collections import LineCollection, PolyCollection


_FIELDS = ("speed", "ux", "uy", "pressure")


def plot_mesh(mesh, *, cell_values=None, plot_edges=True, boundary_color="dimgray",
              cmap="viridis", show=False, ax=None):
    """
    Plot the cells of a quadrilateral mesh.

    Args:
        mesh (Mesh): mesh to draw.
        cell_values (np.ndarray, optional): one value per cell (error
            indicator, refinement level, subdomain ...) used to colour the cells.
        plot_edges (bool, optional): draw cell edges, boundary edges highlighted.
        show (bool, optional): call ``plt.show()`` at the end.
        ax (matplotlib.axes.Axes, optional): existing axes to draw on.
    Returns:
        matplotlib.axes.Axes
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 4))

    polys = mesh.nodes_x_y_pos[mesh.corner_connectivity]
    if cell_values is not None:
        cell_values = np.asarray(cell_values, dtype=float)
        if cell_values.shape != (mesh.n_cells,):
            raise ValueError("cell_values must hold one entry per cell.")
        coll = PolyCollection(polys, array=cell_values, cmap=cmap, edgecolors="none", zorder=1)
        ax.add_collection(coll)
        plt.colorbar(coll, ax=ax)
    else:
        ax.add_collection(PolyCollection(polys, facecolors=(0.9, 0.9, 0.9, 0.5),
                                         edgecolors="none", zorder=1))

    if plot_edges:
        segments = [mesh.nodes_x_y_pos[list(e.nodes)] for e in mesh.edges_list]
        colors = [boundary_color if e.is_boundary else "black" for e in mesh.edges_list]
        ax.add_collection(LineCollection(segments, colors=colors, linewidths=0.6, zorder=2))

    _finalize(ax, mesh.nodes_x_y_pos, "Mesh")
    if show:
        plt.show()
    return ax


def quad_triangulation(mesh):
    """Two triangles per quadrilateral on the mesh vertices."""
    q = mesh.corner_connectivity
    tris = np.vstack([q[:, [0, 1, 2]], q[:, [0, 2, 3]]])
    return mtri.Triangulation(mesh.nodes_x_y_pos[:, 0], mesh.nodes_x_y_pos[:, 1], tris)


def plot_field(dof_handler, solution, field="speed", *, levels=20, cmap="viridis",
               show=False, ax=None):
    """Filled contour of a vertex-sampled solution field ('speed', 'ux', 'uy' or 'pressure')."""
    if field not in _FIELDS:
        raise ValueError(f"Unknown field '{field}', expected one of {_FIELDS}.")
    mesh = dof_handler.mesh
    velocity, pressure = dof_handler.vertex_values(solution)
    values = {"speed": lambda: np.linalg.norm(velocity, axis=1),
              "ux": lambda: velocity[:, 0],
              "uy": lambda: velocity[:, 1],
              "pressure": lambda: pressure}[field]()

    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 4))
    contour = ax.tricontourf(quad_triangulation(mesh), values, levels=levels, cmap=cmap)
    plt.colorbar(contour, ax=ax, label=field)
    _finalize(ax, mesh.nodes_x_y_pos, field)
    if show:
        plt.show()
    return ax


def _finalize(ax, xy, title):
    ax.set_aspect("equal", "box")
    xmin, ymin = xy.min(axis=0)
    xmax, ymax = xy.max(axis=0)
    xpad = (xmax - xmin) * 0.05 or 0.1
    ypad = (ymax - ymin) * 0.05 or 0.1
    ax.set_xlim(xmin - xpad, xmax + xpad)
    ax.set_ylim(ymin - ypad, ymax + ypad)
    ax.set_title(title)
    ax.set_xlabel("x")
    ax.set_ylabel("y")
