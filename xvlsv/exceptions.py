"""
Custom exceptions for xvlsv package.
Provides clear error messages for common issues.
"""
from pathlib import Path

import numpy as np


class VlsvError(Exception):
    """Base exception for xvlsv package."""
    pass

class FormatError(VlsvError, ValueError):
    """Raised when the VLSV footer or on-disk layout is malformed or inconsistent."""
    pass

class TruncatedReadError(VlsvError, OSError):
    """Raised when fewer bytes than requested could be read from the file."""
    pass

class DataTypeError(VlsvError, TypeError):
    """Raised when a block declares an unknown datatype or element size."""
    pass

class CellRangeError(VlsvError, IndexError):
    """Raised when a cell id or element index lies outside the valid range."""
    pass

class OutOfBoundsError(VlsvError, ValueError):
    """Raised when a spatial coordinate lies outside the simulation domain."""
    pass

class UnknownVariableError(VlsvError, KeyError):
    """Raised when a name is neither stored in the file nor a derived quantity."""

    def __str__(self):
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ''

class DependencyCycleError(VlsvError):
    """Raised when derived quantity resolution re-enters a name on the stack."""

    def __init__(self, path):
        self.path = list(path)
        super().__init__("Derived quantity dependency cycle: " + " -> ".join(self.path))

class NotFoundError(VlsvError, LookupError):
    """Raised when a bounded search finished without a match."""
    pass

def validate_vlsv_path(path):
    """
    Validate that a path points to an existing VLSV file.

    Parameters
    ----------
    path : str or Path
        Path to validate

    Returns
    -------
    Path
        The validated path

    Raises
    ------
    FileNotFoundError
        If the path does not exist
    IsADirectoryError
        If the path is a directory
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"VLSV file not found: {path}")

    if path.is_dir():
        raise IsADirectoryError(f"VLSV path must be a file, got a directory: {path}")
    return path

def validate_cell_ids(cell_ids, stored_ids, order=None):
    """
    Map cell ids to their positions in the stored (on-disk) cell id array.

    Parameters
    ----------
    cell_ids : array-like of int
        Requested cell ids
    stored_ids : np.ndarray
        Cell ids in on-disk order
    order : np.ndarray, optional
        Precomputed argsort of stored_ids

    Returns
    -------
    np.ndarray
        Storage positions for each requested id, in request order

    Raises
    ------
    CellRangeError
        If any requested id is not stored in the file
    """
    cell_ids = np.atleast_1d(np.asarray(cell_ids, dtype=np.uint64))
    if len(stored_ids) == 0:
        raise CellRangeError(f"Cell ids not stored in file: {cell_ids[:10].tolist()}")

    if order is None:
        order = np.argsort(stored_ids, kind='stable')
    sorted_ids = np.asarray(stored_ids, dtype=np.uint64)[order]
    pos = np.searchsorted(sorted_ids, cell_ids)
    pos_clipped = np.minimum(pos, len(sorted_ids) - 1)
    missing = (pos >= len(sorted_ids)) | (sorted_ids[pos_clipped] != cell_ids)
    if np.any(missing):
        raise CellRangeError(f"Cell ids not stored in file: {cell_ids[missing][:10].tolist()}")
    return order[pos_clipped]
