"""
Configuration utilities for xvlsv package.
Centralizes configuration options and provides default values.
"""
from dataclasses import dataclass
from typing import Optional, Dict
import logging
import sys

@dataclass
class XvlsvConfig:
    """
    Configuration for xvlsv package behavior.

    Attributes
    ----------
    default_population : str
        Population used when a velocity-space query names none
    sort_cells : bool
        Return DCCRG variables sorted by cell id by default
    neighbor_search_radius : int
        Number of neighbour rings searched before giving up
    refine_trivial_axes : bool
        Refine axes with a single base cell as well (plain DCCRG layout)
    line_step_factor : float
        Overshoot applied when stepping across a cell face along a line
    dimension_names : dict
        Spatial dimension names used by the xarray backend
    adiabatic_index : float
        Polytropic index used for the sound speed
    """
    default_population: str = 'proton'
    sort_cells: bool = True
    neighbor_search_radius: int = 8
    refine_trivial_axes: bool = False
    line_step_factor: float = 1.00001
    dimension_names: Dict[str, str] = None
    adiabatic_index: float = 5.0 / 3.0

    def __post_init__(self):
        if self.dimension_names is None:
            self.dimension_names = {
                'x': 'x',
                'y': 'y',
                'z': 'z'
            }

# Global configuration instance
_config = XvlsvConfig()

def get_config() -> XvlsvConfig:
    """Get the current configuration."""
    return _config

def set_config(**kwargs) -> None:
    """
    Update configuration values.

    Parameters
    ----------
    **kwargs
        Configuration parameters to update
    """
    global _config
    for key, value in kwargs.items():
        if hasattr(_config, key):
            setattr(_config, key, value)
        else:
            raise ValueError(f"Unknown configuration parameter: {key}")

def reset_config() -> None:
    """Reset configuration to defaults."""
    global _config
    _config = XvlsvConfig()

def get_dimension_names(custom_names: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Get dimension names, with custom names taking precedence.

    Parameters
    ----------
    custom_names : dict, optional
        Custom dimension names to override defaults

    Returns
    -------
    dict
        Final dimension names to use
    """
    names = _config.dimension_names.copy()
    if custom_names:
        names.update(custom_names)
    return names

def setup_logging(verbose: bool = False) -> None:
    """
    Configure the 'xvlsv' logger for interactive use and scripts.

    Parameters
    ----------
    verbose : bool, default False
        If True, set DEBUG level, otherwise INFO.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger("xvlsv")
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    ))
    logger.addHandler(handler)
