# This file makes xvlsv a Python package and enables backend discovery by xarray.

from .backend import VlsvEntrypoint
from .reader import VlsvFile, open_vlsv
from .derived import DerivedRegistry, DerivedRule, default_registry, register
from .mesh import MeshIndex
from .fsgrid import FsGridLayout
from .slicing import SliceSelection
from .config import get_config, set_config, reset_config, setup_logging
from . import exceptions

__version__ = "0.1.0"

__all__ = [
    # File access
    'VlsvFile',
    'open_vlsv',
    'VlsvEntrypoint',

    # Spatial indexing
    'MeshIndex',
    'FsGridLayout',
    'SliceSelection',

    # Derived quantities
    'DerivedRegistry',
    'DerivedRule',
    'default_registry',
    'register',

    # Configuration
    'get_config',
    'set_config',
    'reset_config',
    'setup_logging',
    'exceptions',
]
