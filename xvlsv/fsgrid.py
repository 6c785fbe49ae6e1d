"""
Reconstruction of field-solver grid (fsgrid) variables.
Each writing process stores its own sub-box; the boxes are reassembled into
one global array that does not depend on the number of writers.
"""
from typing import Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

from .exceptions import FormatError

logger = logging.getLogger(__name__)

FSGRID_MESH = 'fsgrid'


def calc_local_start(global_cells: int, ntasks: int, my_n: int) -> int:
    """First global index owned by task ``my_n`` along one axis."""
    n_per_task = global_cells // ntasks
    remainder = global_cells % ntasks
    if my_n < remainder:
        return my_n * (n_per_task + 1)
    return my_n * n_per_task + remainder


def calc_local_size(global_cells: int, ntasks: int, my_n: int) -> int:
    """Number of cells owned by task ``my_n`` along one axis."""
    n_per_task = global_cells // ntasks
    remainder = global_cells % ntasks
    return n_per_task + 1 if my_n < remainder else n_per_task


def compute_domain_decomposition(global_size: Sequence[int], nprocs: int) -> Tuple[int, int, int]:
    """
    Split ``nprocs`` writers over a 3D box the way the field solver does,
    minimising local volume first and communication surface second.

    Parameters
    ----------
    global_size : sequence of int
        Global cell counts [nx, ny, nz]
    nprocs : int
        Number of writing processes

    Returns
    -------
    tuple of int
        Number of processes along x, y, z
    """
    nx, ny, nz = (int(n) for n in global_size)
    decomposition = (1, 1, 1)
    min_value = None
    for i in range(1, min(nprocs, nx) + 1):
        i_box = max(nx / i, 1.0)
        for j in range(1, min(nprocs, ny) + 1):
            if i * j > nprocs:
                break
            j_box = max(ny / j, 1.0)
            for k in range(1, min(nprocs, nz) + 1):
                if i * j * k > nprocs:
                    break
                k_box = max(nz / k, 1.0)
                value = 10 * i_box * j_box * k_box + (
                    (j_box * k_box if i > 1 else 0)
                    + (i_box * k_box if j > 1 else 0)
                    + (i_box * j_box if k > 1 else 0)
                )
                if i * j * k == nprocs and (min_value is None or value < min_value):
                    min_value = value
                    decomposition = (i, j, k)

    if min_value is None:
        raise FormatError(f"Cannot decompose box {list(global_size)} over {nprocs} writers")
    return decomposition


class FsGridLayout:
    """
    Writer sub-box layout of the fsgrid mesh.

    The layout is tabulated in ``metadata``, one row per writer in the order
    their data appear in each variable block.
    """

    def __init__(self, global_size: Sequence[int], n_writers: int,
                 decomposition: Optional[Sequence[int]] = None,
                 domain_sizes: Optional[np.ndarray] = None):
        """
        Parameters
        ----------
        global_size : sequence of int
            Global cell counts [nx, ny, nz]
        n_writers : int
            Number of writing processes
        decomposition : sequence of int, optional
            Processes along x, y, z; computed when not recorded in the file
        domain_sizes : np.ndarray, optional
            Per-writer cell counts recorded in the file, checked against the
            decomposition
        """
        self.global_size = tuple(int(n) for n in global_size)
        self.n_writers = int(n_writers)
        if self.n_writers < 1:
            raise FormatError(f"Invalid number of fsgrid writers: {n_writers}")

        if decomposition is None:
            decomposition = compute_domain_decomposition(self.global_size, self.n_writers)
        self.decomposition = tuple(int(d) for d in decomposition)
        if int(np.prod(self.decomposition)) != self.n_writers:
            raise FormatError(
                f"Decomposition {self.decomposition} does not match {self.n_writers} writers"
            )

        self.metadata = self._build_metadata()
        if domain_sizes is not None:
            self._check_domain_sizes(np.asarray(domain_sizes))
        self._check_coverage()

    @classmethod
    def from_boxes(cls, global_size: Sequence[int], lo: np.ndarray, size: np.ndarray) -> "FsGridLayout":
        """Build a layout from explicit writer boxes (rows of lo and size)."""
        layout = cls.__new__(cls)
        layout.global_size = tuple(int(n) for n in global_size)
        layout.n_writers = len(lo)
        layout.decomposition = None
        layout.metadata = _boxes_to_dataframe(np.asarray(lo), np.asarray(size))
        layout._check_coverage()
        return layout

    def _build_metadata(self) -> pd.DataFrame:
        dx, dy, dz = self.decomposition
        lo = np.zeros((self.n_writers, 3), dtype=np.int64)
        size = np.zeros((self.n_writers, 3), dtype=np.int64)
        for rank in range(self.n_writers):
            # Writer ranks are ordered with z fastest
            task = (rank // (dz * dy), (rank // dz) % dy, rank % dz)
            for axis in range(3):
                lo[rank, axis] = calc_local_start(self.global_size[axis], self.decomposition[axis], task[axis])
                size[rank, axis] = calc_local_size(self.global_size[axis], self.decomposition[axis], task[axis])
        return _boxes_to_dataframe(lo, size)

    def _check_domain_sizes(self, domain_sizes: np.ndarray):
        counts = domain_sizes.reshape(len(domain_sizes), -1)[:, 0]
        if len(counts) != self.n_writers:
            raise FormatError(
                f"MESH_DOMAIN_SIZES lists {len(counts)} writers, expected {self.n_writers}"
            )
        expected = self.metadata['ncells'].to_numpy()
        if not np.array_equal(counts.astype(np.int64), expected):
            raise FormatError(
                f"fsgrid writer sizes {counts.tolist()} disagree with "
                f"decomposition {self.decomposition}: {expected.tolist()}"
            )

    def _check_coverage(self):
        """Writer boxes must tile the global box exactly."""
        lo = self.metadata[['lo_i', 'lo_j', 'lo_k']].to_numpy()
        hi = self.metadata[['hi_i', 'hi_j', 'hi_k']].to_numpy()
        if np.any(lo < 0) or np.any(hi > np.array(self.global_size)) or np.any(hi < lo):
            raise FormatError(f"fsgrid writer box outside global box {self.global_size}")

        overlap = np.all(
            np.maximum(lo[:, None, :], lo[None, :, :]) < np.minimum(hi[:, None, :], hi[None, :, :]),
            axis=2,
        )
        np.fill_diagonal(overlap, False)
        if np.any(overlap):
            a, b = np.argwhere(overlap)[0]
            raise FormatError(f"fsgrid writer boxes {a} and {b} overlap")

        total = int(self.metadata['ncells'].sum())
        if total != int(np.prod(self.global_size)):
            raise FormatError(
                f"fsgrid writer boxes cover {total} cells, global box has "
                f"{int(np.prod(self.global_size))} (gap in layout)"
            )

    @property
    def total_cells(self) -> int:
        return int(self.metadata['ncells'].sum())

    def read_global(self, reader, block) -> np.ndarray:
        """Read an fsgrid variable block and assemble the global array."""
        if block.array_size != self.total_cells:
            raise FormatError(
                f"fsgrid variable '{block.name}' has {block.array_size} cells, "
                f"writer layout expects {self.total_cells}"
            )
        logger.debug("Assembling '%s' from %d writers", block.name, self.n_writers)
        return self.assemble(reader.read(block))

    def assemble(self, data: np.ndarray) -> np.ndarray:
        """
        Place per-writer data into the global array.

        Parameters
        ----------
        data : np.ndarray
            Block data in storage order, shape (n,) or (n, vector_size)

        Returns
        -------
        np.ndarray
            Shape (nx, ny, nz) or (nx, ny, nz, vector_size); flattening in
            Fortran order runs x fastest, then y, then z
        """
        if len(data) != self.total_cells:
            raise FormatError(
                f"fsgrid block holds {len(data)} cells, writer layout expects {self.total_cells}"
            )
        vector_shape = data.shape[1:]
        full_data = np.empty(self.global_size + vector_shape, dtype=data.dtype)

        for _, row in self.metadata.iterrows():
            di, dj, dk = row['di'], row['dj'], row['dk']
            start = row['element_offset']
            chunk = data[start:start + row['ncells']]
            # Storage is x fastest within each writer box
            chunk = chunk.reshape((dk, dj, di) + vector_shape)
            chunk = np.moveaxis(chunk, (0, 1, 2), (2, 1, 0))
            full_data[row['lo_i']:row['hi_i'], row['lo_j']:row['hi_j'], row['lo_k']:row['hi_k']] = chunk

        return full_data


def _boxes_to_dataframe(lo: np.ndarray, size: np.ndarray) -> pd.DataFrame:
    df_cols = ['lo_i', 'lo_j', 'lo_k', 'hi_i', 'hi_j', 'hi_k']
    df_meta = pd.DataFrame(columns=df_cols)

    df_meta['lo_i'] = lo[:, 0]
    df_meta['lo_j'] = lo[:, 1]
    df_meta['lo_k'] = lo[:, 2]
    df_meta['hi_i'] = lo[:, 0] + size[:, 0]
    df_meta['hi_j'] = lo[:, 1] + size[:, 1]
    df_meta['hi_k'] = lo[:, 2] + size[:, 2]

    df_meta['di'] = df_meta['hi_i'] - df_meta['lo_i']
    df_meta['dj'] = df_meta['hi_j'] - df_meta['lo_j']
    df_meta['dk'] = df_meta['hi_k'] - df_meta['lo_k']
    df_meta['ncells'] = df_meta['di'] * df_meta['dj'] * df_meta['dk']
    df_meta['element_offset'] = np.concatenate([[0], np.cumsum(df_meta['ncells'].to_numpy())[:-1]])
    df_meta.index.name = 'writer'
    return df_meta.astype(np.int64)
