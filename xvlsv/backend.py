"""
VLSV backend for xarray with lazy dask loading.
SpatialGrid variables live on a 'cell' dimension labelled by CellID;
fsgrid variables live on the uniform (x, y, z) field solver grid.
"""
from __future__ import annotations
from pathlib import Path
from typing import Any, Iterable
import logging
import os

import numpy as np
import dask.array as da
import xarray as xr
from dask import delayed
from xarray.backends.common import (
    AbstractDataStore,
    BackendEntrypoint,
    ReadBuffer,
)
from xarray.core.variable import Variable

from .block_reader import block_dtype
from .config import get_dimension_names
from .fsgrid import FSGRID_MESH
from .reader import SPATIAL_MESH, VlsvFile

logger = logging.getLogger(__name__)


def _load_variable(path: Path, name: str) -> np.ndarray:
    # Each task opens its own handle so graphs can run on any worker
    with VlsvFile(path) as f:
        return f.read_variable(name, sort=True)


def _lazy_variable(path: Path, name: str, shape: tuple, dtype: np.dtype) -> da.Array:
    """Dask array that reads one variable when computed."""
    return da.from_delayed(delayed(_load_variable)(path, name), shape=shape, dtype=dtype)


class VlsvStore(AbstractDataStore):
    """
    Data store for a single VLSV file.

    Only metadata is read here; variable data is deferred to dask.
    """

    def __init__(self, path: Path, dimension_names: dict = None):
        self.path = Path(path)
        self.dim_names = get_dimension_names(dimension_names)

        with VlsvFile(self.path) as f:
            self.footer = f.footer
            self.time = f.time
            self.populations = f.populations
            self.parameters = {}
            for name in f.parameter_names():
                self.parameters[name] = f.read_parameter(name)

            self.has_spatial = f.footer.has('MESH', SPATIAL_MESH)
            if self.has_spatial:
                mesh = f.mesh
                self.cell_ids = np.sort(mesh.cell_ids)
                self.cell_centres = mesh.coordinates_many(self.cell_ids)
                self.cell_levels = mesh.decode_many(self.cell_ids)[0]
                self.coord_min = mesh.coord_min
                self.coord_max = mesh.coord_max
                self.max_level = mesh.max_level

            self.has_fsgrid = f.footer.has('MESH_BBOX', mesh=FSGRID_MESH)
            if self.has_fsgrid:
                layout = f.fsgrid_layout
                self.fsgrid_size = tuple(int(n) for n in layout.global_size)
                self.fsgrid_writers = layout.n_writers
                self.fsgrid_min, self.fsgrid_max = self._fsgrid_extent(f)
                if not self.has_spatial:
                    self.coord_min, self.coord_max = self.fsgrid_min, self.fsgrid_max

    def _fsgrid_extent(self, f: VlsvFile):
        lo, hi = [], []
        for axis in 'XYZ':
            nodes = f._read_mesh_block(f'MESH_NODE_CRDS_{axis}', FSGRID_MESH)
            lo.append(nodes.min())
            hi.append(nodes.max())
        return np.array(lo, dtype=float), np.array(hi, dtype=float)

    def _component_dims(self, name: str, vector_size: int) -> tuple:
        return (f'{name}_component',) if vector_size > 1 else ()

    def get_variables(self):
        """Return coordinates and lazily loaded data variables."""
        variables = {}
        endian = self.footer.endian

        if self.has_spatial:
            variables['CellID'] = Variable(
                dims=('cell',),
                data=self.cell_ids,
                attrs={'long_name': 'DCCRG cell id'},
            )
            variables['refinement_level'] = Variable(
                dims=('cell',),
                data=self.cell_levels,
                attrs={'long_name': 'AMR refinement level'},
            )
            for axis, column in zip('xyz', self.cell_centres.T):
                variables[f'cell_{self.dim_names[axis]}'] = Variable(
                    dims=('cell',),
                    data=column,
                    attrs={'long_name': f'cell centre {axis} coordinate', 'units': 'm'},
                )

        if self.has_fsgrid:
            for axis, n, lo, hi in zip('xyz', self.fsgrid_size, self.fsgrid_min, self.fsgrid_max):
                dx = (hi - lo) / n
                variables[self.dim_names[axis]] = Variable(
                    dims=(self.dim_names[axis],),
                    data=lo + (np.arange(n) + 0.5) * dx,
                    attrs={
                        'long_name': f'{axis.upper()} coordinate',
                        'units': 'm',
                        'spacing': float(dx),
                    },
                )

        for block in self.footer.blocks('VARIABLE'):
            name = block.name
            if name == 'CellID':
                continue
            dtype = block_dtype(block, endian).newbyteorder('=')
            component = self._component_dims(name, block.vector_size)
            attrs = {'long_name': name, 'mesh': block.mesh}
            info = self.footer.variable_info(name)
            if info.unit:
                attrs['units'] = info.unit

            if block.mesh == SPATIAL_MESH and self.has_spatial:
                shape = (block.array_size,) + ((block.vector_size,) if component else ())
                dims = ('cell',) + component
            elif block.mesh == FSGRID_MESH and self.has_fsgrid:
                shape = self.fsgrid_size + ((block.vector_size,) if component else ())
                dims = tuple(self.dim_names[ax] for ax in 'xyz') + component
            else:
                logger.debug("Skipping variable '%s' on mesh '%s'", name, block.mesh)
                continue

            variables[name] = Variable(
                dims=dims,
                data=_lazy_variable(self.path, name, shape, dtype),
                attrs=attrs,
            )

        return variables

    def get_attrs(self):
        """Return global attributes."""
        attrs = {
            'title': f'VLSV file: {self.path.name}',
            'source_file': str(self.path),
            'populations': list(self.populations),
        }
        if self.time is not None:
            attrs['time'] = float(self.time)
        if self.has_spatial:
            attrs['max_refinement_level'] = int(self.max_level)
        if self.has_spatial or self.has_fsgrid:
            attrs['domain_left_edge'] = np.asarray(self.coord_min, dtype=float).tolist()
            attrs['domain_right_edge'] = np.asarray(self.coord_max, dtype=float).tolist()
        if self.has_fsgrid:
            attrs['fsgrid_writers'] = int(self.fsgrid_writers)
        for name, value in self.parameters.items():
            if np.isscalar(value):
                attrs[f'parameter_{name}'] = value
        return attrs


class VlsvEntrypoint(BackendEntrypoint):
    """
    xarray backend entrypoint for Vlasiator VLSV files.
    """

    def open_dataset(
        self,
        filename_or_obj: str | os.PathLike[Any] | ReadBuffer | AbstractDataStore,
        *,
        drop_variables: str | Iterable[str] | None = None,
        dimension_names: dict = None,
        **kwargs
    ):
        """
        Open a VLSV file as a dataset.

        Parameters
        ----------
        filename_or_obj : str or Path
            Path to the .vlsv file
        drop_variables : str or iterable of str, optional
            Variable names to exclude from the dataset
        dimension_names : dict, optional
            Custom dimension names, e.g., {'x': 'X_GSE'}
        **kwargs
            Additional arguments (ignored for compatibility)

        Returns
        -------
        xarray.Dataset
            Dataset with lazy dask arrays
        """
        store = VlsvStore(Path(filename_or_obj), dimension_names)
        variables = store.get_variables()
        attributes = store.get_attrs()

        if drop_variables:
            if isinstance(drop_variables, str):
                drop_variables = [drop_variables]
            for var in drop_variables:
                variables.pop(var, None)

        coord_names = {'CellID', 'refinement_level'}
        coord_names.update(f'cell_{n}' for n in store.dim_names.values())
        coord_names.update(store.dim_names.values())

        coords = {}
        data_vars = {}
        for name, var in variables.items():
            if name in coord_names:
                coords[name] = var
            else:
                data_vars[name] = var

        return xr.Dataset(
            data_vars=data_vars,
            coords=coords,
            attrs=attributes
        )

    def guess_can_open(self, filename_or_obj: str | os.PathLike[Any] | ReadBuffer | AbstractDataStore) -> bool:
        """Check if this looks like a VLSV file."""
        try:
            path = Path(filename_or_obj)
        except TypeError:
            return False
        return path.suffix == '.vlsv'

    open_dataset_parameters = ["filename_or_obj", "drop_variables", "dimension_names"]

    description = "Vlasiator VLSV backend with lazy dask loading"
    url = "https://github.com/your-repo/xvlsv"
