"""
Tests for typed block reads.
"""
import os
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from xvlsv.block_reader import BlockReader, block_dtype
from xvlsv.exceptions import CellRangeError, DataTypeError, TruncatedReadError
from xvlsv.footer import BlockDescriptor, FooterIndex


def _open(path):
    f = open(path, 'rb')
    size = os.fstat(f.fileno()).st_size
    footer = FooterIndex.from_file(f, size)
    return f, footer, BlockReader(f.fileno(), footer.endian, size)


@pytest.fixture
def typed_file(tmp_path, vlsv_writer):
    writer = vlsv_writer()
    writer.add('VARIABLE', np.arange(10, dtype=np.int16), name='i16')
    writer.add('VARIABLE', np.arange(10, dtype=np.uint32), name='u32')
    writer.add('VARIABLE', np.arange(30, dtype=np.float32).reshape(10, 3), name='vec')
    writer.add('VARIABLE', np.linspace(0.0, 1.0, 10), name='f64')
    writer.add_parameter('dt', 0.25)
    return writer.write(tmp_path / 'typed.vlsv')


class TestBlockReader:
    """Whole-block and subset reads."""

    def test_read_types(self, typed_file):
        f, footer, reader = _open(typed_file)
        with f:
            i16 = reader.read(footer.find('VARIABLE', 'i16'))
            u32 = reader.read(footer.find('VARIABLE', 'u32'))
            f64 = reader.read(footer.find('VARIABLE', 'f64'))
        assert i16.dtype == np.int16
        assert u32.dtype == np.uint32
        np.testing.assert_array_equal(i16, np.arange(10))
        np.testing.assert_array_equal(u32, np.arange(10))
        np.testing.assert_allclose(f64, np.linspace(0.0, 1.0, 10))

    def test_vector_shape(self, typed_file):
        f, footer, reader = _open(typed_file)
        with f:
            vec = reader.read(footer.find('VARIABLE', 'vec'))
        assert vec.shape == (10, 3)
        np.testing.assert_array_equal(vec[4], [12, 13, 14])

    def test_subset_keeps_requested_order(self, typed_file):
        f, footer, reader = _open(typed_file)
        with f:
            block = footer.find('VARIABLE', 'vec')
            subset = reader.read(block, [7, 2, 3, 2])
        np.testing.assert_array_equal(subset[:, 0], [21, 6, 9, 6])
        assert subset.shape == (4, 3)

    def test_subset_out_of_range(self, typed_file):
        f, footer, reader = _open(typed_file)
        with f:
            with pytest.raises(CellRangeError):
                reader.read(footer.find('VARIABLE', 'i16'), [3, 10])

    def test_read_scalar(self, typed_file):
        f, footer, reader = _open(typed_file)
        with f:
            assert reader.read_scalar(footer.find('PARAMETER', 'dt')) == 0.25

    def test_big_endian_payload(self, tmp_path, vlsv_writer):
        writer = vlsv_writer('>')
        writer.add('VARIABLE', np.array([1.5, -2.0, 1.0e10]), name='x')
        path = writer.write(tmp_path / 'big.vlsv')
        f, footer, reader = _open(path)
        with f:
            data = reader.read(footer.find('VARIABLE', 'x'))
        assert data.dtype.isnative
        np.testing.assert_array_equal(data, [1.5, -2.0, 1.0e10])

    def test_concurrent_reads_match_serial(self, typed_file):
        f, footer, reader = _open(typed_file)
        names = ['i16', 'u32', 'vec', 'f64'] * 8
        subsets = [None, [7, 2, 3, 2], [9], list(range(10))] * 8
        with f:
            blocks = [footer.find('VARIABLE', name) for name in names]
            serial = [reader.read(b, s) for b, s in zip(blocks, subsets)]
            with ThreadPoolExecutor(max_workers=8) as pool:
                threaded = list(pool.map(reader.read, blocks, subsets))
        for expected, got in zip(serial, threaded):
            assert got.dtype == expected.dtype
            np.testing.assert_array_equal(got, expected)

    def test_truncated_read(self, typed_file):
        f, footer, _ = _open(typed_file)
        with f:
            # Pretend the file is larger than it is so the short read happens on disk
            reader = BlockReader(f.fileno(), '<', 10 ** 9)
            block = footer.find('VARIABLE', 'f64')
            beyond = BlockDescriptor('VARIABLE', 'f64', None, 10 ** 8, 10, 1, 8, 'float')
            with pytest.raises(TruncatedReadError):
                reader.read(beyond)
            np.testing.assert_allclose(reader.read(block)[-1], 1.0)


def test_unknown_datatype():
    block = BlockDescriptor('VARIABLE', 'odd', None, 16, 1, 1, 2, 'float')
    with pytest.raises(DataTypeError):
        block_dtype(block)
    with pytest.raises(TypeError):
        block_dtype(BlockDescriptor('VARIABLE', 'odd', None, 16, 1, 1, 8, 'complex'))
