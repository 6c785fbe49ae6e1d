"""
Typed random-access reads of VLSV binary blocks.
"""
from typing import Optional, Sequence
import logging
import os
import threading

import numpy as np

from .exceptions import CellRangeError, DataTypeError, TruncatedReadError
from .footer import BlockDescriptor

logger = logging.getLogger(__name__)

_DTYPE_CODES = {
    ('int', 1): 'i1', ('int', 2): 'i2', ('int', 4): 'i4', ('int', 8): 'i8',
    ('uint', 1): 'u1', ('uint', 2): 'u2', ('uint', 4): 'u4', ('uint', 8): 'u8',
    ('float', 4): 'f4', ('float', 8): 'f8',
}


def block_dtype(block: BlockDescriptor, endian: str = '<') -> np.dtype:
    """
    numpy dtype of one component of a block.

    Raises
    ------
    DataTypeError
        If the datatype tag or element size is not recognized
    """
    code = _DTYPE_CODES.get((block.datatype, block.data_size))
    if code is None:
        raise DataTypeError(
            f"{block.tag} '{block.name}': unsupported datatype "
            f"'{block.datatype}' with element size {block.data_size}"
        )
    return np.dtype(endian + code)


class BlockReader:
    """
    Reads blocks from an open VLSV file by byte offset.

    Reads are positioned (``os.pread``) and never move a shared file cursor,
    so several threads may read through one reader concurrently.
    """

    def __init__(self, fd: int, endian: str, file_size: int):
        """
        Parameters
        ----------
        fd : int
            OS-level file descriptor opened for reading
        endian : str
            '<' or '>' byte order of the payload
        file_size : int
            Size of the file in bytes
        """
        self.fd = fd
        self.endian = endian
        self.file_size = file_size
        self._lock = threading.Lock()

    def _pread(self, nbytes: int, offset: int) -> bytes:
        if hasattr(os, 'pread'):
            data = os.pread(self.fd, nbytes, offset)
        else:
            with self._lock:
                os.lseek(self.fd, offset, os.SEEK_SET)
                data = os.read(self.fd, nbytes)
        if len(data) != nbytes:
            raise TruncatedReadError(
                f"Short read at bytes [{offset}, {offset + nbytes}): "
                f"got {len(data)} of {nbytes} bytes (file size {self.file_size})"
            )
        return data

    def read(self, block: BlockDescriptor, indices: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Read a block, or a subset of its elements.

        Parameters
        ----------
        block : BlockDescriptor
            Block to read
        indices : sequence of int, optional
            Element indices to read, in the order they should be returned

        Returns
        -------
        np.ndarray
            Shape (n,) for scalar blocks, (n, vector_size) otherwise, in
            native byte order
        """
        dtype = block_dtype(block, self.endian)

        if indices is None:
            raw = self._pread(block.nbytes, block.offset)
            data = np.frombuffer(raw, dtype=dtype, count=block.array_size * block.vector_size)
        else:
            data = self._read_subset(block, dtype, indices)

        data = data.astype(dtype.newbyteorder('='), copy=True)
        if block.vector_size > 1:
            data = data.reshape(-1, block.vector_size)
        return data

    def _read_subset(self, block: BlockDescriptor, dtype: np.dtype, indices) -> np.ndarray:
        """Read selected elements, coalescing contiguous runs into single reads."""
        indices = np.atleast_1d(np.asarray(indices, dtype=np.int64))
        if indices.size == 0:
            return np.empty(0, dtype=dtype)

        if indices.min() < 0 or indices.max() >= block.array_size:
            raise CellRangeError(
                f"Element index out of range [0, {block.array_size}) for "
                f"{block.tag} '{block.name}'"
            )

        unique, inverse = np.unique(indices, return_inverse=True)
        # Split sorted unique indices wherever they stop being consecutive
        breaks = np.flatnonzero(np.diff(unique) != 1) + 1
        runs = np.split(unique, breaks)

        width = block.element_nbytes
        chunks = []
        for run in runs:
            start = int(run[0])
            raw = self._pread(len(run) * width, block.offset + start * width)
            chunks.append(np.frombuffer(raw, dtype=dtype))

        logger.debug("Read %d elements of '%s' in %d runs", unique.size, block.name, len(runs))
        values = np.concatenate(chunks).reshape(unique.size, block.vector_size)
        return values[inverse.reshape(-1)].reshape(-1)

    def read_scalar(self, block: BlockDescriptor):
        """Read the first element of a block as a Python scalar."""
        return self.read(block, [0]).reshape(-1)[0].item()
