"""
Derived quantities computed from variables stored in a VLSV file.

A quantity stored in the file is always read directly; only names missing
from the file are computed from a rule. Predefined rule names start with a
capital letter. Population-specific quantities are requested with the
population prefix ("proton/Vpar"); the prefix is tried on every dependency
before falling back to the bare name.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple
import logging

import numpy as np

from .config import get_config
from .exceptions import DependencyCycleError, UnknownVariableError
from .footer import split_population
from .rotation import full_tensor, parallel_perpendicular, rotate_tensor_to_vector

logger = logging.getLogger(__name__)

# Physical constants (SI)
QE = 1.602176634e-19        # elementary charge [C]
MP = 1.67262192369e-27      # proton mass [kg]
KB = 1.380649e-23           # Boltzmann constant [J/K]
MU0 = 1.25663706212e-6      # vacuum permeability [H/m]
EPSILON0 = 8.8541878128e-12 # vacuum permittivity [F/m]
C = 299792458.0             # speed of light [m/s]


@dataclass(frozen=True)
class DerivedRule:
    """
    Computation rule of one derived quantity.

    Attributes
    ----------
    name : str
        Name of the derived quantity
    inputs : tuple of str
        Names of the required variables, stored or derived, in argument order
    func : callable
        Pure function of the resolved inputs
    description : str
        Human-readable meaning
    units : str
        SI unit of the result
    """
    name: str
    inputs: Tuple[str, ...]
    func: Callable[..., np.ndarray]
    description: str = ''
    units: str = ''


class DerivedRegistry:
    """Table of derived quantity rules keyed by name."""

    def __init__(self, rules: Sequence[DerivedRule] = ()):
        self._rules: Dict[str, DerivedRule] = {}
        for rule in rules:
            self.add(rule)

    def add(self, rule: DerivedRule) -> DerivedRule:
        if '/' in rule.name:
            raise ValueError(f"Rule names must not carry a population prefix: {rule.name}")
        self._rules[rule.name] = rule
        return rule

    def register(self, name: str, inputs: Sequence[str], description: str = '', units: str = ''):
        """
        Decorator registering a function as the rule for ``name``.

        Examples
        --------
        >>> registry = DerivedRegistry()
        >>> @registry.register("Bmag", ["vg_b_vol"])
        ... def bmag(b):
        ...     return np.linalg.norm(b, axis=-1)
        """
        def decorator(func):
            self.add(DerivedRule(name, tuple(inputs), func, description, units))
            return func
        return decorator

    def get(self, name: str) -> Optional[DerivedRule]:
        return self._rules.get(name)

    def names(self) -> List[str]:
        return sorted(self._rules)

    def copy(self) -> "DerivedRegistry":
        return DerivedRegistry(self._rules.values())

    def __contains__(self, name) -> bool:
        return name in self._rules

    def __iter__(self) -> Iterator[DerivedRule]:
        return iter(self._rules.values())

    def __len__(self):
        return len(self._rules)

    def check_cycles(self) -> None:
        """
        Raise DependencyCycleError if the rule graph contains a cycle.
        Inputs that are not rules are treated as stored leaves.
        """
        done = set()

        def visit(name, path):
            if name in path:
                raise DependencyCycleError(path[path.index(name):] + [name])
            if name in done or name not in self._rules:
                return
            for dep in self._rules[name].inputs:
                visit(dep, path + [name])
            done.add(name)

        for name in self._rules:
            visit(name, [])


class Resolver:
    """
    Resolves stored or derived quantities against a data source.

    The source needs ``has_variable(name)`` and
    ``read_variable(name, cells=None)``.
    """

    def __init__(self, source, registry: Optional[DerivedRegistry] = None):
        self.source = source
        self.registry = default_registry if registry is None else registry

    def can_resolve(self, name: str) -> bool:
        if self.source.has_variable(name):
            return True
        _, base = split_population(name)
        return base in self.registry

    def resolve(self, name: str, cells=None) -> np.ndarray:
        """
        Return the values of ``name``, reading it when stored and computing
        it from its rule otherwise.

        Parameters
        ----------
        name : str
            Variable or derived quantity name
        cells : array-like of int, optional
            Restrict to these cell ids

        Raises
        ------
        UnknownVariableError
            If the name is neither stored nor a known rule
        DependencyCycleError
            If resolution re-enters a name already being resolved
        """
        return self._resolve(name, cells, [], {})

    def _resolve(self, name, cells, stack: List[str], cache: Dict[str, np.ndarray]):
        if name in stack:
            raise DependencyCycleError(stack[stack.index(name):] + [name])
        if name in cache:
            return cache[name]

        if self.source.has_variable(name):
            value = self.source.read_variable(name, cells)
        else:
            pop, base = split_population(name)
            rule = self.registry.get(base)
            if rule is None:
                raise UnknownVariableError(
                    f"'{name}' is neither stored in the file nor a derived quantity"
                )
            stack.append(name)
            try:
                args = [
                    self._resolve(self._qualify(dep, pop), cells, stack, cache)
                    for dep in rule.inputs
                ]
            finally:
                stack.pop()
            logger.debug("Computing derived '%s' from %s", name, list(rule.inputs))
            value = rule.func(*args)

        cache[name] = value
        return value

    def _qualify(self, dep: str, pop: Optional[str]) -> str:
        """Population-qualified dependency name when one exists."""
        if pop is None or '/' in dep:
            return dep
        qualified = f"{pop}/{dep}"
        if self.source.has_variable(qualified) or dep in self.registry:
            return qualified
        return dep


default_registry = DerivedRegistry()
register = default_registry.register


def _magnitude(vector):
    return np.linalg.norm(vector, axis=-1)


@register("Bmag", ["vg_b_vol"], "magnetic field magnitude", "T")
def _bmag(b):
    return _magnitude(b)


@register("Emag", ["vg_e_vol"], "electric field magnitude", "V/m")
def _emag(e):
    return _magnitude(e)


@register("Vmag", ["vg_v"], "bulk speed", "m/s")
def _vmag(v):
    return _magnitude(v)


@register("P", ["vg_ptensor_diagonal"], "scalar thermal pressure", "Pa")
def _pressure(ptensor_diagonal):
    return np.mean(ptensor_diagonal, axis=-1)


@register("T", ["P", "vg_rho"], "scalar temperature", "K")
def _temperature(p, n):
    return p / (n * KB)


@register("VS", ["P", "vg_rho"], "sound speed", "m/s")
def _sound_speed(p, n):
    return np.sqrt(get_config().adiabatic_index * p / (n * MP))


@register("VA", ["vg_rho", "Bmag"], "Alfven speed", "m/s")
def _alfven_speed(n, b):
    return b / np.sqrt(MU0 * n * MP)


@register("MA", ["Vmag", "VA"], "Alfven Mach number", "")
def _alfven_mach(v, va):
    return v / va


@register("Vpar", ["vg_v", "vg_b_vol"], "bulk velocity parallel to B", "m/s")
def _vpar(v, b):
    return parallel_perpendicular(v, b)[0]


@register("Vperp", ["vg_v", "vg_b_vol"], "bulk velocity perpendicular to B", "m/s")
def _vperp(v, b):
    return parallel_perpendicular(v, b)[1]


@register("Protated", ["vg_ptensor_diagonal", "vg_ptensor_offdiagonal", "vg_b_vol"],
          "pressure tensor with z along B", "Pa")
def _protated(diagonal, offdiagonal, b):
    return rotate_tensor_to_vector(full_tensor(diagonal, offdiagonal), b)


@register("Tpar", ["vg_rho", "Protated"], "temperature parallel to B", "K")
def _tpar(n, p_rot):
    return p_rot[..., 2, 2] / (n * KB)


@register("Tperp", ["vg_rho", "Protated"], "temperature perpendicular to B", "K")
def _tperp(n, p_rot):
    return 0.5 * (p_rot[..., 0, 0] + p_rot[..., 1, 1]) / (n * KB)


@register("Anisotropy", ["Protated"], "P_perp / P_par", "")
def _anisotropy(p_rot):
    return 0.5 * (p_rot[..., 0, 0] + p_rot[..., 1, 1]) / p_rot[..., 2, 2]


@register("Pdynamic", ["vg_rho", "Vmag"], "dynamic pressure", "Pa")
def _pdynamic(n, v):
    return n * MP * v ** 2


@register("Poynting", ["vg_e_vol", "vg_b_vol"], "Poynting flux", "W/m^2")
def _poynting(e, b):
    return np.cross(e, b) / MU0


@register("Beta", ["P", "Bmag"], "plasma beta, P / P_B", "")
def _beta(p, b):
    return 2 * MU0 * p / b ** 2


def _plasma_frequency(n):
    return np.sqrt(n * QE ** 2 / (EPSILON0 * MP))


@register("IonInertial", ["vg_rho"], "ion inertial length", "m")
def _ion_inertial(n):
    return C / _plasma_frequency(n)


@register("Larmor", ["Vperp", "Bmag"], "Larmor radius", "m")
def _larmor(vperp, b):
    return MP * vperp / (QE * b)


@register("Gyrofrequency", ["Bmag"], "ion gyrofrequency", "Hz")
def _gyrofrequency(b):
    return QE * b / (2 * np.pi * MP)


@register("Plasmaperiod", ["vg_rho"], "plasma oscillation period", "s")
def _plasma_period(n):
    return 2 * np.pi / _plasma_frequency(n)
