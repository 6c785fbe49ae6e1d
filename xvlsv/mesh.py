"""
Cell id arithmetic for the adaptively refined (DCCRG) spatial mesh.
Centralizes level/index/coordinate conversions and spatial lookups.
"""
from collections import deque
from typing import Callable, Iterable, Optional, Sequence, Tuple
import itertools
import logging

import numpy as np

from .config import get_config
from .exceptions import CellRangeError, NotFoundError, OutOfBoundsError

logger = logging.getLogger(__name__)

# Hard cap on refinement depth; keeps level offsets well inside uint64
MAX_LEVELS = 16


class MeshIndex:
    """
    Encodes and decodes cell ids of the AMR spatial mesh.

    Cell ids are 1-based. Level 0 holds ids 1..N0, level 1 continues at
    N0 + 1, and so on. Within a level, ids are row-major with x fastest.
    Each refinement halves the cell size along every refined axis.
    """

    def __init__(self, base_cells: Sequence[int], coord_min: Sequence[float],
                 coord_max: Sequence[float], cell_ids: Optional[np.ndarray] = None,
                 refined_axes: Optional[Sequence[bool]] = None):
        """
        Parameters
        ----------
        base_cells : sequence of int
            Number of level 0 cells along x, y, z
        coord_min, coord_max : sequence of float
            Domain bounding box
        cell_ids : np.ndarray, optional
            Cell ids stored in the file, in storage order
        refined_axes : sequence of bool, optional
            Which axes are refined; by default every axis with more than one
            base cell, or all axes when ``refine_trivial_axes`` is configured
        """
        self.base_cells = np.array(base_cells, dtype=np.int64)
        self.coord_min = np.array(coord_min, dtype=float)
        self.coord_max = np.array(coord_max, dtype=float)
        if self.base_cells.shape != (3,) or np.any(self.base_cells < 1):
            raise ValueError(f"Invalid base cell counts: {base_cells}")
        if np.any(self.coord_max <= self.coord_min):
            raise ValueError(f"Invalid bounding box: {coord_min} .. {coord_max}")

        if refined_axes is None:
            if get_config().refine_trivial_axes:
                refined_axes = [True, True, True]
            else:
                refined_axes = self.base_cells > 1
        self.refined_axes = np.array(refined_axes, dtype=bool)

        self.base_cell_size = (self.coord_max - self.coord_min) / self.base_cells

        # Cumulative level boundaries: level L holds ids in (offsets[L], offsets[L+1]]
        offsets = [0]
        for level in range(MAX_LEVELS + 1):
            count = 1
            for n in self._dims(level):
                count *= int(n)
            if offsets[-1] + count >= 2 ** 63:
                break
            offsets.append(offsets[-1] + count)
        self._level_offsets = np.array(offsets, dtype=np.uint64)

        if cell_ids is None:
            cell_ids = np.empty(0, dtype=np.uint64)
        self.cell_ids = np.asarray(cell_ids, dtype=np.uint64)
        self.sorted_ids = np.sort(self.cell_ids)

        if self.sorted_ids.size and self.sorted_ids[0] < 1:
            raise CellRangeError("Cell id 0 is not a valid DCCRG id")
        if self.sorted_ids.size:
            self.max_level = self._unchecked_level(int(self.sorted_ids[-1]))
        else:
            self.max_level = 0
        logger.debug("MeshIndex: base %s, refined %s, max level %d, %d stored cells",
                     self.base_cells.tolist(), self.refined_axes.tolist(),
                     self.max_level, self.cell_ids.size)

    def _dims(self, level: int) -> np.ndarray:
        return self.base_cells * np.where(self.refined_axes, 2 ** level, 1)

    def _unchecked_level(self, cell_id: int) -> int:
        level = int(np.searchsorted(self._level_offsets[1:], np.uint64(cell_id), side='left'))
        if level >= len(self._level_offsets) - 1:
            raise CellRangeError(f"Cell id {cell_id} beyond the addressable refinement levels")
        return level

    # -- per-level geometry -------------------------------------------------

    def level_dims(self, level: int) -> np.ndarray:
        """
        Grid dimensions [nx, ny, nz] of a refinement level.
        """
        return self._dims(level)

    def refinement_factors(self, level: int) -> np.ndarray:
        """Refinement factor of each axis at a level relative to level 0."""
        return np.where(self.refined_axes, 2 ** level, 1)

    def cells_at_level(self, level: int) -> int:
        return int(np.prod(self._dims(level)))

    def level_offset(self, level: int) -> int:
        """Number of ids used by all levels coarser than ``level``."""
        return int(self._level_offsets[level])

    def cell_size(self, level: int) -> np.ndarray:
        """Physical cell size [dx, dy, dz] at a level."""
        return self.base_cell_size / self.refinement_factors(level)

    @property
    def total_cells(self) -> int:
        """Number of ids addressable up to the maximum refinement level."""
        return int(self._level_offsets[self.max_level + 1])

    def max_refinement_level(self) -> int:
        """Highest refinement level among the stored cells."""
        return self.max_level

    # -- id <-> index ------------------------------------------------------

    def decode(self, cell_id: int) -> Tuple[int, int, int, int]:
        """
        Decode a cell id into (level, i, j, k).

        Raises
        ------
        CellRangeError
            If the id is below 1 or beyond the total cell count
        """
        cell_id = int(cell_id)
        if cell_id < 1 or cell_id > self.total_cells:
            raise CellRangeError(
                f"Cell id {cell_id} outside [1, {self.total_cells}] "
                f"(max refinement level {self.max_level})"
            )

        level = 0
        remainder = cell_id
        while remainder > self.cells_at_level(level):
            remainder -= self.cells_at_level(level)
            level += 1

        nx, ny, _ = self._dims(level)
        local = remainder - 1
        i = local % nx
        j = (local // nx) % ny
        k = local // (nx * ny)
        return level, int(i), int(j), int(k)

    def decode_many(self, cell_ids) -> Tuple[np.ndarray, np.ndarray]:
        """
        Vectorised decode.

        Returns
        -------
        levels : np.ndarray of int
        indices : np.ndarray of shape (n, 3)
        """
        ids = np.atleast_1d(np.asarray(cell_ids, dtype=np.uint64))
        if ids.size and (ids.min() < 1 or ids.max() > self.total_cells):
            raise CellRangeError(
                f"Cell ids outside [1, {self.total_cells}]: "
                f"{ids[(ids < 1) | (ids > self.total_cells)][:10].tolist()}"
            )

        levels = np.searchsorted(self._level_offsets[1:], ids, side='left')
        local = (ids - self._level_offsets[levels] - 1).astype(np.int64)
        factors = np.where(self.refined_axes[None, :], 2 ** levels[:, None], 1)
        dims = self.base_cells[None, :] * factors
        indices = np.empty((ids.size, 3), dtype=np.int64)
        indices[:, 0] = local % dims[:, 0]
        indices[:, 1] = (local // dims[:, 0]) % dims[:, 1]
        indices[:, 2] = local // (dims[:, 0] * dims[:, 1])
        return levels.astype(np.int64), indices

    def encode(self, level: int, i: int, j: int, k: int) -> int:
        """
        Encode (level, i, j, k) into a cell id.

        Raises
        ------
        CellRangeError
            If the level or any index lies outside the level's grid
        """
        if level < 0 or level > self.max_level:
            raise CellRangeError(f"Level {level} outside [0, {self.max_level}]")
        nx, ny, nz = (int(n) for n in self._dims(level))
        if not (0 <= i < nx and 0 <= j < ny and 0 <= k < nz):
            raise CellRangeError(
                f"Index ({i}, {j}, {k}) outside level {level} grid ({nx}, {ny}, {nz})"
            )
        return self.level_offset(level) + 1 + int(i) + int(j) * nx + int(k) * nx * ny

    def level_of(self, cell_id: int) -> int:
        """AMR level of a cell id."""
        return self.decode(cell_id)[0]

    # -- id <-> physical space ------------------------------------------------

    def coordinates(self, cell_id: int) -> np.ndarray:
        """Cell-centre coordinates [x, y, z] of a cell."""
        level, i, j, k = self.decode(cell_id)
        return self.coord_min + (np.array([i, j, k]) + 0.5) * self.cell_size(level)

    def coordinates_many(self, cell_ids) -> np.ndarray:
        """Cell-centre coordinates of many cells, shape (n, 3)."""
        levels, indices = self.decode_many(cell_ids)
        factors = np.where(self.refined_axes[None, :], 2.0 ** levels[:, None], 1.0)
        return self.coord_min + (indices + 0.5) * self.base_cell_size / factors

    def bounds(self, cell_id: int) -> Tuple[np.ndarray, np.ndarray]:
        """Lower and upper corners of a cell."""
        level, i, j, k = self.decode(cell_id)
        size = self.cell_size(level)
        lo = self.coord_min + np.array([i, j, k]) * size
        return lo, lo + size

    def contains_point(self, point) -> bool:
        point = np.asarray(point, dtype=float)
        return bool(np.all(point >= self.coord_min) and np.all(point <= self.coord_max))

    def is_stored(self, cell_id: int) -> bool:
        """Whether a cell id is present in the file."""
        pos = np.searchsorted(self.sorted_ids, np.uint64(cell_id))
        return bool(pos < self.sorted_ids.size and self.sorted_ids[pos] == cell_id)

    def _level0_index(self, point: np.ndarray) -> np.ndarray:
        idx = np.floor((point - self.coord_min) / self.base_cell_size).astype(np.int64)
        # Points on the upper domain face belong to the last cell
        return np.minimum(idx, self.base_cells - 1)

    def locate(self, point) -> int:
        """
        Find the stored cell containing a point.

        Descends from level 0; at each level a refined (not stored) cell is
        replaced by the child octant containing the point.

        Raises
        ------
        OutOfBoundsError
            If the point lies outside the domain
        NotFoundError
            If no stored cell contains the point (the stored cells leave a
            hole in the domain)
        """
        point = np.asarray(point, dtype=float)
        if point.shape != (3,):
            raise ValueError(f"Expected a 3D point, got shape {point.shape}")
        if not self.contains_point(point):
            raise OutOfBoundsError(
                f"Point {point.tolist()} outside domain "
                f"{self.coord_min.tolist()} .. {self.coord_max.tolist()}"
            )

        level = 0
        idx = self._level0_index(point)
        cell_id = self.encode(0, *idx)
        while level < self.max_level and not self.is_stored(cell_id):
            size = self.cell_size(level)
            centre = self.coord_min + (idx + 0.5) * size
            upper = (point >= centre).astype(np.int64)
            idx = np.where(self.refined_axes, idx * 2 + upper, idx)
            level += 1
            cell_id = self.encode(level, *idx)
        if self.sorted_ids.size and not self.is_stored(cell_id):
            raise NotFoundError(
                f"No stored cell contains point {point.tolist()} "
                f"(descent ended at unstored cell {cell_id})"
            )
        return cell_id

    # -- neighbourhood queries -------------------------------------------------

    def _neighbor_sample_points(self, cell_id: int) -> Iterable[np.ndarray]:
        lo, hi = self.bounds(cell_id)
        level = self.level_of(cell_id)
        finest = self.cell_size(self.max_level)
        eps = 0.25 * finest
        n_sub = np.maximum((self.cell_size(level) / finest).round().astype(int), 1)

        for direction in itertools.product((-1, 0, 1), repeat=3):
            if direction == (0, 0, 0):
                continue
            axes_positions = []
            for axis, d in enumerate(direction):
                if d < 0:
                    axes_positions.append([lo[axis] - eps[axis]])
                elif d > 0:
                    axes_positions.append([hi[axis] + eps[axis]])
                else:
                    # Sample every finest-level slot so finer neighbours are reached
                    axes_positions.append(lo[axis] + (np.arange(n_sub[axis]) + 0.5) * finest[axis])
            for p in itertools.product(*axes_positions):
                point = np.array(p)
                if self.contains_point(point):
                    yield point

    def neighbors(self, cell_id: int) -> set:
        """Stored cells sharing a face, edge or corner with a cell."""
        found = {self.locate(point) for point in self._neighbor_sample_points(cell_id)}
        found.discard(cell_id)
        return found

    def neighbor_with_stored_sample(self, cell_id: int, predicate: Callable[[int], bool],
                                    max_radius: Optional[int] = None) -> int:
        """
        Breadth-first search outward from a cell for one satisfying ``predicate``.

        Parameters
        ----------
        cell_id : int
            Starting cell (tested first)
        predicate : callable
            Called with a cell id, returns True for a match
        max_radius : int, optional
            Number of neighbour rings to search, defaults to the configured
            ``neighbor_search_radius``

        Raises
        ------
        NotFoundError
            If no cell within ``max_radius`` rings matches
        """
        if max_radius is None:
            max_radius = get_config().neighbor_search_radius

        cell_id = int(cell_id)
        self.decode(cell_id)
        visited = {cell_id}
        queue = deque([(cell_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if predicate(current):
                return current
            if depth == max_radius:
                continue
            for neighbor in sorted(self.neighbors(current)):
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append((neighbor, depth + 1))

        raise NotFoundError(
            f"No cell matching the predicate within {max_radius} rings of cell {cell_id}"
        )

    def nearest(self, cell_id: int, candidates) -> int:
        """Candidate cell whose centre is closest to the centre of ``cell_id``."""
        candidates = np.atleast_1d(np.asarray(candidates, dtype=np.uint64))
        if candidates.size == 0:
            raise NotFoundError("No candidate cells to search")
        origin = self.coordinates(cell_id)
        d2 = np.sum((self.coordinates_many(candidates) - origin) ** 2, axis=1)
        return int(candidates[np.argmin(d2)])
