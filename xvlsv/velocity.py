"""
Velocity-space (phase-space density) samples of one particle population.
Velocity distributions are only stored for a subset of spatial cells.
"""
from typing import Tuple
import logging

import numpy as np

from .block_reader import BlockReader
from .exceptions import FormatError, NotFoundError, UnknownVariableError
from .footer import FooterIndex

logger = logging.getLogger(__name__)


class VelocityMesh:
    """
    Block-structured velocity mesh of a population.

    Velocity blocks hold ``block_size`` (typically 4x4x4) velocity cells.
    A velocity cell id is ``block_id * cells_per_block + local index``,
    x fastest inside a block.
    """

    def __init__(self, footer: FooterIndex, reader: BlockReader, population: str):
        self.footer = footer
        self.reader = reader
        self.population = population

        bbox = footer.find('MESH_BBOX', mesh=population)
        blockids = footer.find('BLOCKIDS', population)
        if bbox is None or blockids is None:
            raise UnknownVariableError(f"Population '{population}' has no velocity-space data")

        bbox = reader.read(bbox).reshape(-1)
        if bbox.size != 6:
            raise FormatError(f"MESH_BBOX of '{population}' has {bbox.size} values, expected 6")
        self.n_blocks = bbox[:3].astype(np.int64)
        self.block_size = bbox[3:].astype(np.int64)
        self.cells_per_block = int(np.prod(self.block_size))

        vmin, vmax = [], []
        for axis in 'XYZ':
            crds = footer.find(f'MESH_NODE_CRDS_{axis}', mesh=population)
            if crds is None:
                raise FormatError(f"MESH_NODE_CRDS_{axis} missing for population '{population}'")
            nodes = reader.read(crds).reshape(-1)
            vmin.append(nodes.min())
            vmax.append(nodes.max())
        self.vmin = np.array(vmin, dtype=float)
        self.vmax = np.array(vmax, dtype=float)
        self.dv = (self.vmax - self.vmin) / (self.n_blocks * self.block_size)

        self._cells_with_blocks = None
        self._blocks_per_cell = None

    def _load_cell_table(self):
        if self._cells_with_blocks is not None:
            return
        cwb = self.footer.find('CELLSWITHBLOCKS', self.population)
        bpc = self.footer.find('BLOCKSPERCELL', self.population)
        if cwb is None or bpc is None:
            raise FormatError(f"CELLSWITHBLOCKS/BLOCKSPERCELL missing for '{self.population}'")
        cells = self.reader.read(cwb).reshape(-1).astype(np.uint64)
        counts = self.reader.read(bpc).reshape(-1).astype(np.int64)
        if cells.size != counts.size:
            raise FormatError(
                f"'{self.population}': {cells.size} cells with blocks but {counts.size} block counts"
            )
        self._cells_with_blocks = cells
        self._blocks_per_cell = counts
        self._block_offsets = np.concatenate([[0], np.cumsum(counts)[:-1]]).astype(np.int64)

    def cells_with_vdf(self) -> np.ndarray:
        """Spatial cell ids that carry a velocity distribution."""
        self._load_cell_table()
        return self._cells_with_blocks.copy()

    def has_vdf(self, cell_id: int) -> bool:
        self._load_cell_table()
        return bool(np.any(self._cells_with_blocks == np.uint64(cell_id)))

    def read_vcells(self, cell_id: int, variable: str = 'avgs') -> Tuple[np.ndarray, np.ndarray]:
        """
        Velocity cells of one spatial cell.

        Parameters
        ----------
        cell_id : int
            Spatial cell id
        variable : str, default 'avgs'
            Name of the BLOCKVARIABLE holding the distribution

        Returns
        -------
        vcell_ids : np.ndarray
            Velocity cell ids
        values : np.ndarray
            Phase-space density of each velocity cell
        """
        self._load_cell_table()
        matches = np.flatnonzero(self._cells_with_blocks == np.uint64(cell_id))
        if matches.size == 0:
            raise NotFoundError(
                f"Cell {cell_id} has no velocity distribution for '{self.population}'"
            )
        index = matches[0]
        offset = self._block_offsets[index]
        n_blocks = self._blocks_per_cell[index]
        block_range = np.arange(offset, offset + n_blocks)

        block_ids = self.reader.read(self.footer.find('BLOCKIDS', self.population), block_range)
        block_var = self.footer.find('BLOCKVARIABLE', variable, self.population)
        if block_var is None:
            raise UnknownVariableError(f"No block variable '{variable}' for '{self.population}'")
        if block_var.vector_size != self.cells_per_block:
            raise FormatError(
                f"Block variable '{variable}' has {block_var.vector_size} values per block, "
                f"expected {self.cells_per_block}"
            )
        values = self.reader.read(block_var, block_range)

        local = np.arange(self.cells_per_block, dtype=np.int64)
        vcell_ids = (block_ids.reshape(-1, 1).astype(np.int64) * self.cells_per_block + local).reshape(-1)
        logger.debug("Read %d velocity blocks of cell %d (%s)", n_blocks, cell_id, self.population)
        return vcell_ids, values.reshape(-1)

    def vcell_coordinates(self, vcell_ids) -> np.ndarray:
        """Velocity coordinates of velocity cell centres, shape (n, 3)."""
        vcell_ids = np.atleast_1d(np.asarray(vcell_ids, dtype=np.int64))
        block = vcell_ids // self.cells_per_block
        local = vcell_ids % self.cells_per_block

        bx, by, _ = self.n_blocks
        sx, sy, _ = self.block_size
        block_index = np.stack([block % bx, (block // bx) % by, block // (bx * by)], axis=-1)
        cell_index = np.stack([local % sx, (local // sx) % sy, local // (sx * sy)], axis=-1)
        return self.vmin + (block_index * self.block_size + cell_index + 0.5) * self.dv
