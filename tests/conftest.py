"""
Synthetic VLSV files for the test suite.

VlsvWriter lays out a file the way Vlasiator does: an endianness marker,
the footer offset, the binary blocks and a trailing XML footer.
"""
from pathlib import Path
import struct
import xml.etree.ElementTree as ET

import numpy as np
import pytest

from xvlsv.fsgrid import calc_local_size, calc_local_start, compute_domain_decomposition

_DATATYPES = {'i': 'int', 'u': 'uint', 'f': 'float'}

# 4x4x1 base grid on [0, 4] x [0, 4] x [0, 1]; cell 6 (i=1, j=1) is refined
AMR_BASE = (4, 4, 1)
AMR_MIN = (0.0, 0.0, 0.0)
AMR_MAX = (4.0, 4.0, 1.0)
AMR_REFINED_PARENT = 6
AMR_CHILDREN = [35, 36, 43, 44]
AMR_CELL_IDS = [c for c in range(1, 17) if c != AMR_REFINED_PARENT] + AMR_CHILDREN

FSGRID_SIZE = (6, 4, 2)


class VlsvWriter:
    """Accumulates blocks and writes them as a VLSV file."""

    def __init__(self, endian='<'):
        self.endian = endian
        self.blocks = []

    def add(self, tag, data, name=None, mesh=None, **attrs):
        data = np.asarray(data)
        if data.ndim == 0:
            data = data.reshape(1)
        self.blocks.append((tag, data, name, mesh, attrs))
        return self

    def add_parameter(self, name, value, dtype=np.float64):
        return self.add('PARAMETER', np.array([value], dtype=dtype), name=name)

    def write(self, path, footer_offset=None, offset_overrides=None):
        """
        Write the file.

        Parameters
        ----------
        footer_offset : int, optional
            Force the recorded footer offset
        offset_overrides : dict, optional
            Force the recorded byte offset of blocks by name
        """
        offset_overrides = offset_overrides or {}
        payload = bytearray()
        root = ET.Element('VLSV')
        for tag, data, name, mesh, attrs in self.blocks:
            offset = 16 + len(payload)
            vector_size = 1 if data.ndim == 1 else int(np.prod(data.shape[1:]))
            payload += data.astype(data.dtype.newbyteorder(self.endian)).tobytes()

            attrib = {
                'arraysize': str(data.shape[0]),
                'vectorsize': str(vector_size),
                'datasize': str(data.dtype.itemsize),
                'datatype': _DATATYPES[data.dtype.kind],
            }
            if name is not None:
                attrib['name'] = name
            if mesh is not None:
                attrib['mesh'] = mesh
            attrib.update({k: str(v) for k, v in attrs.items()})
            elem = ET.SubElement(root, tag, attrib)
            elem.text = str(offset_overrides.get(name, offset))

        if footer_offset is None:
            footer_offset = 16 + len(payload)
        marker = 0 if self.endian == '<' else 1
        header = bytes([marker]) + bytes(7) + struct.pack(self.endian + 'Q', footer_offset)

        path = Path(path)
        with open(path, 'wb') as f:
            f.write(header)
            f.write(bytes(payload))
            f.write(ET.tostring(root))
        return path


def add_spatial_mesh(writer, base_cells, coord_min, coord_max, cell_ids):
    cell_ids = np.asarray(cell_ids, dtype=np.uint64)
    writer.add('MESH', cell_ids, name='SpatialGrid', type='amr_ucd')
    writer.add('VARIABLE', cell_ids, name='CellID', mesh='SpatialGrid')
    bbox = np.array(list(base_cells) + [1, 1, 1], dtype=np.int64)
    writer.add('MESH_BBOX', bbox, mesh='SpatialGrid')
    for axis, n, lo, hi in zip('XYZ', base_cells, coord_min, coord_max):
        writer.add(f'MESH_NODE_CRDS_{axis}', np.linspace(lo, hi, n + 1), mesh='SpatialGrid')
    return writer


def amr_cell_ids(shuffle=True):
    ids = np.array(AMR_CELL_IDS, dtype=np.uint64)
    if shuffle:
        ids = np.random.default_rng(7).permutation(ids)
    return ids


def plasma_fields(cell_ids):
    """Per-cell plasma variables as functions of the cell id."""
    ids = np.asarray(cell_ids, dtype=np.float64)
    n = ids.size
    rho = 1.0e6 * ids
    b = np.stack([np.full(n, 1.0e-9), 2.0e-9 * np.ones(n), 5.0e-9 + 1.0e-10 * ids], axis=1)
    v = np.stack([-4.0e5 * np.ones(n), 1.0e4 * ids, np.zeros(n)], axis=1)
    e = np.stack([np.zeros(n), 1.0e-3 * np.ones(n), 2.0e-3 * np.ones(n)], axis=1)
    p_diag = np.stack([1.0e-10 * ids, 2.0e-10 * ids, 3.0e-10 * ids], axis=1)
    p_off = np.stack([1.0e-12 * np.ones(n), 2.0e-12 * np.ones(n), 3.0e-12 * np.ones(n)], axis=1)
    return {
        'proton/vg_rho': rho,
        'vg_b_vol': b,
        'proton/vg_v': v,
        'vg_e_vol': e,
        'proton/vg_ptensor_diagonal': p_diag,
        'proton/vg_ptensor_offdiagonal': p_off,
    }


def fsgrid_field(size=FSGRID_SIZE, vector_size=3):
    """Global fsgrid array whose value encodes the (i, j, k, component) index."""
    i, j, k = np.meshgrid(*(np.arange(n) for n in size), indexing='ij')
    base = (100 * i + 10 * j + k).astype(np.float64)
    if vector_size == 1:
        return base
    return np.stack([base + 1000 * c for c in range(vector_size)], axis=-1)


def fsgrid_chunks(field, n_writers, decomposition=None):
    """Concatenate the writer sub-boxes of a global array in storage order."""
    size = field.shape[:3]
    if decomposition is None:
        decomposition = compute_domain_decomposition(size, n_writers)
    dx, dy, dz = decomposition
    chunks, counts = [], []
    for rank in range(n_writers):
        task = (rank // (dz * dy), (rank // dz) % dy, rank % dz)
        lo = [calc_local_start(size[a], decomposition[a], task[a]) for a in range(3)]
        sz = [calc_local_size(size[a], decomposition[a], task[a]) for a in range(3)]
        sub = field[lo[0]:lo[0] + sz[0], lo[1]:lo[1] + sz[1], lo[2]:lo[2] + sz[2]]
        # x fastest within the box
        sub = np.moveaxis(sub, (0, 1, 2), (2, 1, 0))
        chunks.append(sub.reshape((-1,) + field.shape[3:]))
        counts.append(int(np.prod(sz)))
    return np.concatenate(chunks), decomposition, counts


def add_fsgrid(writer, n_writers, size=FSGRID_SIZE, coord_min=AMR_MIN, coord_max=(6.0, 4.0, 2.0),
               record_decomposition=True, domain_sizes=None):
    field = fsgrid_field(size)
    data, decomposition, counts = fsgrid_chunks(field, n_writers)
    writer.add_parameter('numWritingRanks', n_writers, dtype=np.int32)
    writer.add('MESH', np.arange(np.prod(size), dtype=np.uint64), name='fsgrid', type='multi_ucd')
    writer.add('MESH_BBOX', np.array(list(size) + [1, 1, 1], dtype=np.int64), mesh='fsgrid')
    for axis, n, lo, hi in zip('XYZ', size, coord_min, coord_max):
        writer.add(f'MESH_NODE_CRDS_{axis}', np.linspace(lo, hi, n + 1), mesh='fsgrid')
    if record_decomposition:
        writer.add('MESH_DECOMPOSITION', np.array(decomposition, dtype=np.uint32), mesh='fsgrid')
    if domain_sizes is None:
        domain_sizes = counts
    writer.add('MESH_DOMAIN_SIZES',
               np.stack([domain_sizes, np.zeros(n_writers, dtype=np.int64)], axis=1).astype(np.int64),
               mesh='fsgrid')
    writer.add('VARIABLE', data, name='fg_b', mesh='fsgrid', unit='T')
    return field


def add_velocity_space(writer, population='proton', cells=(1, 11, 36)):
    """
    2x2x2 velocity blocks of 4x4x4 cells on [-4, 4]^3; cell c holds c blocks.
    """
    writer.add('MESH_BBOX', np.array([2, 2, 2, 4, 4, 4], dtype=np.uint64), mesh=population)
    for axis in 'XYZ':
        writer.add(f'MESH_NODE_CRDS_{axis}', np.linspace(-4.0, 4.0, 9), mesh=population)

    cells = np.asarray(cells, dtype=np.uint64)
    blocks_per_cell = np.array([min(int(c), 8) for c in cells], dtype=np.uint32)
    block_ids = np.concatenate([np.arange(n, dtype=np.uint32)[::-1] for n in blocks_per_cell])
    avgs = np.concatenate([
        np.full((n, 64), float(c)) + np.arange(64) * 1e-3 for c, n in zip(cells, blocks_per_cell)
    ]).astype(np.float32)

    writer.add('CELLSWITHBLOCKS', cells, name=population, mesh='SpatialGrid')
    writer.add('BLOCKSPERCELL', blocks_per_cell, name=population, mesh='SpatialGrid')
    writer.add('BLOCKIDS', block_ids, name=population, mesh=population)
    writer.add('BLOCKVARIABLE', avgs, name='avgs', mesh=population)
    return cells, blocks_per_cell


def build_amr_file(path, n_writers=2, extra_variables=None, endian='<', shuffle=True):
    """Full test file: AMR mesh, plasma variables, fsgrid and velocity space."""
    writer = VlsvWriter(endian)
    writer.add_parameter('time', 12.5)
    cell_ids = amr_cell_ids(shuffle)
    add_spatial_mesh(writer, AMR_BASE, AMR_MIN, AMR_MAX, cell_ids)

    for name, values in plasma_fields(cell_ids).items():
        writer.add('VARIABLE', values, name=name, mesh='SpatialGrid', unit='SI',
                   unitLaTeX=r'$\mathrm{SI}$', variableLaTeX=name, unitConversion='1.0')
    for name, values in (extra_variables or {}).items():
        writer.add('VARIABLE', values(cell_ids), name=name, mesh='SpatialGrid')

    add_fsgrid(writer, n_writers)
    add_velocity_space(writer)
    return writer.write(path)


@pytest.fixture
def vlsv_writer():
    return VlsvWriter


@pytest.fixture
def amr_file(tmp_path):
    """Path to the standard synthetic file (4x4x1 base grid, one refined cell)."""
    return build_amr_file(tmp_path / 'bulk.0000001.vlsv')


@pytest.fixture
def vlsv(amr_file):
    """Open handle on the standard synthetic file."""
    from xvlsv import open_vlsv
    with open_vlsv(amr_file) as f:
        yield f
