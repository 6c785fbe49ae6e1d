"""
VLSV file handle and query API.
Opening a file parses the footer once; mesh metadata is built on first use.
"""
from __future__ import annotations
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging
import os

import numpy as np
import xarray as xr

from .block_reader import BlockReader
from .config import get_config, get_dimension_names
from .derived import DerivedRegistry, Resolver
from .exceptions import (
    FormatError,
    UnknownVariableError,
    validate_cell_ids,
    validate_vlsv_path,
)
from .footer import FooterIndex, VariableInfo
from .fsgrid import FSGRID_MESH, FsGridLayout
from .mesh import MeshIndex
from .slicing import SliceSelection, axis_index, cells_in_line, refine, slice_cells
from .velocity import VelocityMesh

logger = logging.getLogger(__name__)

SPATIAL_MESH = 'SpatialGrid'


class VlsvFile:
    """
    An open VLSV file.

    Owns the file descriptor, the parsed footer and the cached spatial mesh.
    Use as a context manager, or call ``close()`` explicitly; some platforms
    refuse to delete a file that is still open.

    Examples
    --------
    >>> with VlsvFile("bulk.0000004.vlsv") as f:
    ...     rho = f.read_variable("proton/vg_rho")
    ...     cell = f.cell_at([2.0e7, 0.0, 0.0])
    """

    def __init__(self, path: Union[str, Path], registry: Optional[DerivedRegistry] = None):
        """
        Parameters
        ----------
        path : str or Path
            Path to the VLSV file
        registry : DerivedRegistry, optional
            Derived quantity rules; defaults to the predefined quantities
        """
        self.path = validate_vlsv_path(path)
        self._file = open(self.path, 'rb')
        try:
            self.file_size = os.fstat(self._file.fileno()).st_size
            self.footer = FooterIndex.from_file(self._file, self.file_size)
        except BaseException:
            self._file.close()
            raise

        self.reader = BlockReader(self._file.fileno(), self.footer.endian, self.file_size)
        self.resolver = Resolver(self, registry)
        self._mesh: Optional[MeshIndex] = None
        self._sort_order: Optional[np.ndarray] = None
        self._fsgrid_layout: Optional[FsGridLayout] = None
        self._velocity: Dict[str, VelocityMesh] = {}
        logger.debug("Opened %s (%d bytes, %d blocks)",
                     self.path, self.file_size, len(self.footer.blocks()))

    # -- resource handling -------------------------------------------------

    def __enter__(self) -> "VlsvFile":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self):
        state = 'closed' if self.closed else 'open'
        return f"<VlsvFile {self.path.name} ({state})>"

    @property
    def closed(self) -> bool:
        return self._file.closed

    def close(self) -> None:
        """Close the file descriptor. Safe to call more than once."""
        if not self._file.closed:
            self._file.close()
            logger.debug("Closed %s", self.path)

    def _check_open(self):
        if self._file.closed:
            raise ValueError(f"I/O operation on closed VLSV file: {self.path}")

    # -- footer queries ----------------------------------------------------

    def variable_names(self) -> List[str]:
        """Names of all stored variables."""
        return self.footer.variable_names()

    def parameter_names(self) -> List[str]:
        return self.footer.parameter_names()

    def has_variable(self, name: str) -> bool:
        """Whether ``name`` is stored in the file (derived quantities excluded)."""
        return self.footer.has('VARIABLE', name)

    def has_parameter(self, name: str) -> bool:
        return self.footer.has('PARAMETER', name)

    @property
    def populations(self) -> List[str]:
        return self.footer.populations()

    def read_parameter(self, name: str):
        """
        Read a scalar parameter.

        Raises
        ------
        UnknownVariableError
            If the parameter is not stored
        """
        self._check_open()
        block = self.footer.find('PARAMETER', name)
        if block is None:
            raise UnknownVariableError(f"Parameter '{name}' not found in {self.path.name}")
        return self.reader.read_scalar(block)

    @property
    def time(self) -> Optional[float]:
        """Simulation time, when recorded."""
        for name in ('time', 't'):
            if self.has_parameter(name):
                return float(self.read_parameter(name))
        return None

    def read_variable_info(self, name: str) -> VariableInfo:
        """Unit and description metadata of a stored variable."""
        if not self.has_variable(name):
            raise UnknownVariableError(f"Variable '{name}' not found in {self.path.name}")
        return self.footer.variable_info(name)

    # -- spatial mesh ------------------------------------------------------

    def _read_mesh_block(self, tag: str, mesh: str) -> np.ndarray:
        block = self.footer.find(tag, mesh=mesh)
        if block is None:
            raise FormatError(f"{tag} missing for mesh '{mesh}' in {self.path.name}")
        return self.reader.read(block).reshape(-1)

    @property
    def mesh(self) -> MeshIndex:
        """The AMR spatial mesh, built on first access."""
        if self._mesh is None:
            self._check_open()
            bbox = self._read_mesh_block('MESH_BBOX', SPATIAL_MESH)
            coord_min, coord_max = [], []
            for axis in 'XYZ':
                nodes = self._read_mesh_block(f'MESH_NODE_CRDS_{axis}', SPATIAL_MESH)
                coord_min.append(nodes.min())
                coord_max.append(nodes.max())

            cellid_block = self.footer.find('VARIABLE', 'CellID', SPATIAL_MESH)
            if cellid_block is None:
                cellid_block = self.footer.find('MESH', SPATIAL_MESH)
            if cellid_block is None:
                raise FormatError(f"No cell ids for mesh '{SPATIAL_MESH}' in {self.path.name}")
            cell_ids = self.reader.read(cellid_block).reshape(-1).astype(np.uint64)

            self._mesh = MeshIndex(bbox[:3].astype(np.int64), coord_min, coord_max, cell_ids)
            self._sort_order = np.argsort(cell_ids, kind='stable')
        return self._mesh

    @property
    def cell_ids(self) -> np.ndarray:
        """Stored cell ids in on-disk order."""
        return self.mesh.cell_ids

    def cell_at(self, location: Sequence[float]) -> int:
        """Id of the stored cell containing a spatial location."""
        return self.mesh.locate(location)

    def cell_coordinates(self, cell_id: int) -> np.ndarray:
        """Centre coordinates of a cell."""
        return self.mesh.coordinates(cell_id)

    def refinement_level(self, cell_id: int) -> int:
        """AMR level of a cell."""
        return self.mesh.level_of(cell_id)

    def max_refinement_level(self) -> int:
        return self.mesh.max_refinement_level()

    # -- field solver grid -------------------------------------------------

    @property
    def fsgrid_layout(self) -> FsGridLayout:
        """Writer decomposition of the field solver grid."""
        if self._fsgrid_layout is None:
            self._check_open()
            bbox = self._read_mesh_block('MESH_BBOX', FSGRID_MESH)
            if not self.has_parameter('numWritingRanks'):
                raise FormatError(f"Parameter numWritingRanks missing in {self.path.name}")
            n_writers = int(self.read_parameter('numWritingRanks'))

            decomposition = None
            if self.footer.has('MESH_DECOMPOSITION', mesh=FSGRID_MESH):
                decomposition = self._read_mesh_block('MESH_DECOMPOSITION', FSGRID_MESH)[:3]
            domain_sizes = None
            sizes_block = self.footer.find('MESH_DOMAIN_SIZES', mesh=FSGRID_MESH)
            if sizes_block is not None:
                domain_sizes = self.reader.read(sizes_block)

            self._fsgrid_layout = FsGridLayout(bbox[:3], n_writers, decomposition, domain_sizes)
        return self._fsgrid_layout

    # -- variables ---------------------------------------------------------

    def read_variable(self, name: str, cells=None, sort: Optional[bool] = None) -> np.ndarray:
        """
        Read a stored variable.

        Parameters
        ----------
        name : str
            Variable name, population-qualified where applicable
        cells : int or array-like of int, optional
            Spatial cell ids to read (SpatialGrid variables only); values are
            returned in the order requested
        sort : bool, optional
            Sort SpatialGrid variables by cell id; defaults to the configured
            ``sort_cells``. ``sort=False`` returns on-disk order.

        Returns
        -------
        np.ndarray
            SpatialGrid: (ncells,) or (ncells, vector_size).
            fsgrid: (nx, ny, nz) or (nx, ny, nz, vector_size).
        """
        self._check_open()
        block = self.footer.find('VARIABLE', name)
        if block is None:
            raise UnknownVariableError(f"Variable '{name}' not found in {self.path.name}")

        if block.mesh == FSGRID_MESH:
            if cells is not None:
                raise ValueError(f"Cell selection does not apply to fsgrid variable '{name}'")
            return self.fsgrid_layout.read_global(self.reader, block)

        if block.mesh != SPATIAL_MESH:
            if cells is not None:
                raise ValueError(
                    f"Cell selection does not apply to variable '{name}' on mesh '{block.mesh}'"
                )
            return self.reader.read(block)

        mesh = self.mesh
        if block.array_size != mesh.cell_ids.size:
            raise FormatError(
                f"Variable '{name}' has {block.array_size} elements for "
                f"{mesh.cell_ids.size} cells"
            )

        if cells is not None:
            single = np.ndim(cells) == 0
            positions = validate_cell_ids(cells, mesh.cell_ids, self._sort_order)
            data = self.reader.read(block, positions)
            return data[0] if single else data

        data = self.reader.read(block)
        if sort is None:
            sort = get_config().sort_cells
        if sort:
            data = data[self._sort_order]
        return data

    def resolve_derived(self, name: str, cells=None) -> np.ndarray:
        """
        Stored variable or derived quantity. Stored data always takes
        precedence over computing from a rule.
        """
        self._check_open()
        return self.resolver.resolve(name, cells)

    read = resolve_derived

    # -- slices and lines --------------------------------------------------

    def slice_selection(self, normal: Union[str, int], location: float,
                        bounds: Optional[Sequence[Tuple[float, float]]] = None,
                        max_level: Optional[int] = None) -> SliceSelection:
        """Cells cut by an axis-aligned plane; see ``slicing.slice_cells``."""
        return slice_cells(self.mesh, normal, location, bounds, max_level)

    def refine(self, values: np.ndarray, selection: SliceSelection) -> np.ndarray:
        """Uniform finest-level raster of per-cell slice values."""
        return refine(values, selection)

    def cut(self, name: str, normal: Union[str, int] = 'z', location: Optional[float] = None,
            bounds: Optional[Sequence[Tuple[float, float]]] = None) -> xr.DataArray:
        """
        Refined 2D cut of a stored or derived quantity as a labelled array.

        Parameters
        ----------
        name : str
            Stored variable or derived quantity on the spatial mesh
        normal : str or int, default 'z'
            Axis normal to the cut plane
        location : float, optional
            Plane coordinate, defaults to the domain centre
        bounds : sequence of (min, max), optional
            In-plane ranges

        Returns
        -------
        xarray.DataArray
            Dimensions (b, a) with cell-centre coordinates
        """
        mesh = self.mesh
        normal = axis_index(normal)
        if location is None:
            location = 0.5 * (mesh.coord_min[normal] + mesh.coord_max[normal])

        selection = self.slice_selection(normal, location, bounds)
        values = self.resolve_derived(name, cells=selection.cell_ids)
        raster = refine(values, selection)
        coord_a, coord_b = selection.raster_coordinates(mesh)

        dim_names = get_dimension_names()
        axis_names = [dim_names[ax] for ax in 'xyz']
        a, b = selection.plane_axes
        dims = [axis_names[b], axis_names[a]]
        if raster.ndim == 3:
            dims.append('component')
        return xr.DataArray(
            raster,
            dims=dims,
            coords={axis_names[a]: coord_a, axis_names[b]: coord_b},
            name=name,
            attrs={
                'long_name': name,
                'normal': axis_names[normal],
                'location': float(location),
                'level': int(selection.max_level),
                'source_file': str(self.path),
            },
        )

    def cells_in_line(self, point1, point2) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Cell ids, distances from ``point1`` and entry coordinates along a segment."""
        return cells_in_line(self.mesh, point1, point2)

    # -- velocity space ----------------------------------------------------

    def velocity_mesh(self, population: Optional[str] = None) -> VelocityMesh:
        population = population or get_config().default_population
        if population not in self._velocity:
            self._check_open()
            self._velocity[population] = VelocityMesh(self.footer, self.reader, population)
        return self._velocity[population]

    def cells_with_vdf(self, population: Optional[str] = None) -> np.ndarray:
        """Spatial cells carrying a velocity distribution."""
        return self.velocity_mesh(population).cells_with_vdf()

    def read_vcells(self, cell_id: int, population: Optional[str] = None):
        """Velocity cell ids and phase-space densities of a spatial cell."""
        self._check_open()
        return self.velocity_mesh(population).read_vcells(cell_id)

    def vcell_coordinates(self, vcell_ids, population: Optional[str] = None) -> np.ndarray:
        """Velocity coordinates of velocity cells."""
        return self.velocity_mesh(population).vcell_coordinates(vcell_ids)

    def nearest_cell_with_vdf(self, cell_id: int, population: Optional[str] = None) -> int:
        """Cell with a velocity distribution whose centre is closest to ``cell_id``."""
        return self.mesh.nearest(cell_id, self.cells_with_vdf(population))

    def neighbor_cell_with_vdf(self, cell_id: int, population: Optional[str] = None,
                               max_radius: Optional[int] = None) -> int:
        """
        Closest cell with a velocity distribution found by a bounded
        breadth-first search over neighbouring cells.
        """
        with_vdf = set(int(c) for c in self.cells_with_vdf(population))
        return self.mesh.neighbor_with_stored_sample(
            cell_id, lambda c: c in with_vdf, max_radius
        )


def open_vlsv(path: Union[str, Path], **kwargs) -> VlsvFile:
    """Open a VLSV file. Equivalent to ``VlsvFile(path)``."""
    return VlsvFile(path, **kwargs)
