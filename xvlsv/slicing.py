"""
Plane cuts and line samples through the AMR spatial mesh.
"""
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union
import logging

import numpy as np

from .config import get_config
from .exceptions import OutOfBoundsError
from .mesh import MeshIndex

logger = logging.getLogger(__name__)

_AXES = {'x': 0, 'y': 1, 'z': 2}


def axis_index(axis: Union[str, int]) -> int:
    """Normalise an axis given as 'x'/'y'/'z' or 0/1/2."""
    if isinstance(axis, str):
        if axis.lower() not in _AXES:
            raise ValueError(f"Unknown axis '{axis}', expected one of x, y, z")
        return _AXES[axis.lower()]
    if axis not in (0, 1, 2):
        raise ValueError(f"Unknown axis {axis}, expected 0, 1 or 2")
    return int(axis)


@dataclass
class SliceSelection:
    """
    Cells intersecting an axis-aligned plane.

    Attributes
    ----------
    cell_ids : np.ndarray
        Selected cell ids in finest-level raster order
    index_list : np.ndarray
        Position of each selected cell in the on-disk storage order
    normal_axis : int
        Axis normal to the plane
    plane_axes : tuple of int
        The two in-plane axes (a, b); a runs fastest in the raster
    max_level : int
        Refinement level of the raster
    levels : np.ndarray
        Refinement level of each selected cell
    raster_lo : np.ndarray
        Lower corner of each cell on the finest raster, shape (n, 2) as (a, b)
    raster_span : np.ndarray
        Extent of each cell on the finest raster, shape (n, 2)
    raster_origin : tuple of int
        Finest-level (a, b) index of raster element [0, 0]
    raster_shape : tuple of int
        (nb, na) shape of the refined raster
    location : float
        Plane coordinate along the normal axis
    """
    cell_ids: np.ndarray
    index_list: np.ndarray
    normal_axis: int
    plane_axes: Tuple[int, int]
    max_level: int
    levels: np.ndarray
    raster_lo: np.ndarray
    raster_span: np.ndarray
    raster_origin: Tuple[int, int]
    raster_shape: Tuple[int, int]
    location: float

    def __len__(self):
        return len(self.cell_ids)

    def raster_coordinates(self, mesh: MeshIndex) -> Tuple[np.ndarray, np.ndarray]:
        """Cell-centre coordinates along the a and b axes of the refined raster."""
        size = mesh.cell_size(self.max_level)
        a, b = self.plane_axes
        nb, na = self.raster_shape
        coord_a = mesh.coord_min[a] + (self.raster_origin[0] + np.arange(na) + 0.5) * size[a]
        coord_b = mesh.coord_min[b] + (self.raster_origin[1] + np.arange(nb) + 0.5) * size[b]
        return coord_a, coord_b


def slice_cells(mesh: MeshIndex, normal: Union[str, int], location: float,
                bounds: Optional[Sequence[Tuple[float, float]]] = None,
                max_level: Optional[int] = None) -> SliceSelection:
    """
    Select the stored cells cut by the plane ``normal = location``.

    Parameters
    ----------
    mesh : MeshIndex
        Spatial mesh with its stored cell ids
    normal : str or int
        Axis normal to the plane
    location : float
        Plane coordinate; a value on a cell face selects the cell on the
        positive side, the upper domain face selects the last cell
    bounds : sequence of two (min, max) pairs, optional
        Ranges on the two in-plane axes (in axis order). The raster covers
        the finest-level positions whose centres fall within them, and every
        cell overlapping that window is selected
    max_level : int, optional
        Level of the raster; defaults to the finest level in the selection

    Returns
    -------
    SliceSelection
    """
    normal = axis_index(normal)
    plane_axes = tuple(ax for ax in range(3) if ax != normal)
    lo_n, hi_n = mesh.coord_min[normal], mesh.coord_max[normal]
    if not lo_n <= location <= hi_n:
        raise OutOfBoundsError(
            f"Slice location {location} outside [{lo_n}, {hi_n}] along axis {normal}"
        )
    if bounds is None:
        bounds = [(-np.inf, np.inf), (-np.inf, np.inf)]

    levels, indices = mesh.decode_many(mesh.cell_ids)

    # Plane index for every cell at its own level
    factors = np.where(mesh.refined_axes[None, :], 2 ** levels[:, None], 1)
    n_normal = mesh.base_cells[normal] * factors[:, normal]
    depth = np.floor((location - lo_n) / mesh.base_cell_size[normal] * factors[:, normal]).astype(np.int64)
    depth = np.minimum(depth, n_normal - 1)
    selected = indices[:, normal] == depth

    # Cells reaching into the bounded region set the raster level
    cell_size = mesh.base_cell_size / factors
    cell_lo = mesh.coord_min + indices * cell_size
    touching = selected.copy()
    for (vmin, vmax), ax in zip(bounds, plane_axes):
        touching &= (cell_lo[:, ax] < vmax) & (cell_lo[:, ax] + cell_size[:, ax] > vmin)

    if max_level is None:
        max_level = int(levels[touching].max()) if touching.any() else 0
    elif touching.any() and max_level < levels[touching].max():
        raise ValueError(f"Raster level {max_level} coarser than selected level {levels[touching].max()}")

    # Raster window: finest-level positions whose centres lie inside the bounds
    size = mesh.cell_size(max_level)
    dims = mesh.level_dims(max_level)
    origin = np.zeros(2, dtype=np.int64)
    extent = np.zeros(2, dtype=np.int64)
    for i, ((vmin, vmax), ax) in enumerate(zip(bounds, plane_axes)):
        first = np.ceil((vmin - mesh.coord_min[ax]) / size[ax] - 0.5) if np.isfinite(vmin) else 0
        last = np.floor((vmax - mesh.coord_min[ax]) / size[ax] - 0.5) if np.isfinite(vmax) else dims[ax] - 1
        first, last = max(int(first), 0), min(int(last), int(dims[ax]) - 1)
        origin[i] = first
        extent[i] = max(last - first + 1, 0)

    # Scale every cell onto the finest raster and keep those covering the window
    fine = mesh.refinement_factors(max_level)[None, :] // factors
    raster_lo = (indices * fine)[:, list(plane_axes)]
    raster_span = fine[:, list(plane_axes)]
    window_hi = origin + extent
    selected &= np.all((raster_lo < window_hi) & (raster_lo + raster_span > origin), axis=1)
    if not extent.all():
        selected[:] = False
        extent[:] = 0

    positions = np.flatnonzero(selected)
    levels = levels[positions]
    raster_lo = raster_lo[positions]
    raster_span = raster_span[positions]

    order = np.lexsort((raster_lo[:, 0], raster_lo[:, 1]))
    positions, levels = positions[order], levels[order]
    raster_lo, raster_span = raster_lo[order], raster_span[order]

    logger.debug("Slice axis %d at %g: %d cells, raster level %d",
                 normal, location, positions.size, max_level)
    return SliceSelection(
        cell_ids=mesh.cell_ids[positions],
        index_list=positions,
        normal_axis=normal,
        plane_axes=plane_axes,
        max_level=int(max_level),
        levels=levels,
        raster_lo=raster_lo,
        raster_span=raster_span,
        raster_origin=(int(origin[0]), int(origin[1])),
        raster_shape=(int(extent[1]), int(extent[0])),
        location=float(location),
    )


def refine(values: np.ndarray, selection: SliceSelection) -> np.ndarray:
    """
    Broadcast cell values onto a uniform raster at the selection's finest level.

    Parameters
    ----------
    values : np.ndarray
        One value (or vector) per selected cell, aligned with
        ``selection.cell_ids``
    selection : SliceSelection

    Returns
    -------
    np.ndarray
        Shape (nb, na) or (nb, na, vector_size)
    """
    values = np.asarray(values)
    if len(values) != len(selection):
        raise ValueError(f"Got {len(values)} values for {len(selection)} selected cells")

    nb, na = selection.raster_shape
    raster = np.full((nb, na) + values.shape[1:], np.nan, dtype=np.result_type(values.dtype, np.float64))
    covered = np.zeros((nb, na), dtype=bool)

    lo = selection.raster_lo - np.array(selection.raster_origin)
    for level in np.unique(selection.levels):
        in_level = selection.levels == level
        span_a, span_b = selection.raster_span[in_level][0]
        a0, b0 = lo[in_level, 0], lo[in_level, 1]
        level_values = values[in_level]
        # Cells at the window edge may extend past it
        for db in range(span_b):
            for da in range(span_a):
                b, a = b0 + db, a0 + da
                inside = (b >= 0) & (b < nb) & (a >= 0) & (a < na)
                raster[b[inside], a[inside]] = level_values[inside]
                covered[b[inside], a[inside]] = True

    n_missing = int(covered.size - covered.sum())
    if n_missing:
        logger.warning("Refined slice leaves %d of %d raster positions uncovered (NaN)",
                       n_missing, covered.size)
    return raster


def cells_in_line(mesh: MeshIndex, point1, point2) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Cells crossed by the segment from ``point1`` to ``point2``.

    The segment is clipped to the domain first; a segment missing the domain
    gives empty results.

    Returns
    -------
    cell_ids : np.ndarray
        Crossed cells, consecutive duplicates removed
    distances : np.ndarray
        Distance from ``point1`` of the point where each cell was entered
    coords : np.ndarray
        Those entry points, shape (n, 3)
    """
    point1 = np.asarray(point1, dtype=float)
    point2 = np.asarray(point2, dtype=float)
    empty = (np.empty(0, dtype=np.uint64), np.empty(0), np.empty((0, 3)))

    delta = point2 - point1
    length = float(np.linalg.norm(delta))
    if length == 0.0:
        if not mesh.contains_point(point1):
            return empty
        return (np.array([mesh.locate(point1)], dtype=np.uint64), np.zeros(1), point1[None, :].copy())

    clipped = _clip_segment(point1, delta, mesh.coord_min, mesh.coord_max)
    if clipped is None:
        return empty
    t_start, t_end = clipped
    start = np.clip(point1 + t_start * delta, mesh.coord_min, mesh.coord_max)
    end = point1 + t_end * delta
    unit = delta / length
    factor = get_config().line_step_factor

    cell_ids = [mesh.locate(start)]
    distances = [float(np.linalg.norm(start - point1))]
    coords = [start]

    p = start
    moving = unit != 0.0
    nudge = 1e-6 * float(np.min(mesh.cell_size(mesh.max_level)))
    max_steps = 4 * int(np.sum(mesh.level_dims(mesh.max_level))) + 16
    for _ in range(max_steps):
        lo, hi = mesh.bounds(cell_ids[-1])
        # Distance along the line to the exit face on every moving axis
        exit_face = np.where(unit > 0, hi, lo)
        coef = (exit_face[moving] - p[moving]) / unit[moving]
        step = max(float(coef.min()), 0.0)

        p_new = p + (step * factor + nudge) * unit
        if np.dot(end - p_new, unit) < 0 or not mesh.contains_point(p_new):
            break
        cell_id = mesh.locate(p_new)
        if cell_id != cell_ids[-1]:
            cell_ids.append(cell_id)
            distances.append(float(np.linalg.norm(p_new - point1)))
            coords.append(p_new)
        p = p_new

    return np.array(cell_ids, dtype=np.uint64), np.array(distances), np.array(coords)


def _clip_segment(origin, delta, box_min, box_max):
    """Liang-Barsky clip of origin + t * delta, t in [0, 1], to a box."""
    t0, t1 = 0.0, 1.0
    for axis in range(3):
        if delta[axis] == 0.0:
            if origin[axis] < box_min[axis] or origin[axis] > box_max[axis]:
                return None
            continue
        ta = (box_min[axis] - origin[axis]) / delta[axis]
        tb = (box_max[axis] - origin[axis]) / delta[axis]
        t0 = max(t0, min(ta, tb))
        t1 = min(t1, max(ta, tb))
        if t0 > t1:
            return None
    return t0, t1
