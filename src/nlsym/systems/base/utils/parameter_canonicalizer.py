# Copyright (C) 2025 Gil Benezer
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Parameter Canonicalizer

Maps requested parameter orders onto a system's free parameters and packs
values into the containers generated functions consume.

Parameter containers are a tagged variant:

- FlatParams:    one ordered sequence of values
- GroupedParams: several labelled groups, e.g. ('tunable', 'discrete')

Generated functions accept either one (or a bare sequence) and split them
with as_parameter_groups() according to a ParameterLayout.

Everything here is reindexing. Values are never converted except that the
tunable group of a packed container becomes a numpy array.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import sympy as sp

from nlsym.systems.base.equation import is_array_parameter
from nlsym.systems.base.errors import UnresolvedSymbolError
from nlsym.types.config import DISCRETE, TUNABLE

if TYPE_CHECKING:
    from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem

FLAT_LABEL = "parameters"


# ============================================================================
# Layout
# ============================================================================


@dataclass(frozen=True)
class ParameterLayout:
    """
    Ordered, labelled parameter slots.

    Attributes:
        groups: ((label, (symbol, ...)), ...)

    Example:
        >>> layout = ParameterLayout((("tunable", (a, b)), ("discrete", (n,))))
        >>> layout.sizes
        (2, 1)
        >>> layout.index_of(n)
        (1, 0)
    """

    groups: Tuple[Tuple[str, Tuple[Any, ...]], ...] = ((FLAT_LABEL, ()),)

    @property
    def sizes(self) -> Tuple[int, ...]:
        return tuple(len(symbols) for _, symbols in self.groups)

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(label for label, _ in self.groups)

    @property
    def symbols(self) -> Tuple[Any, ...]:
        """All symbols, group after group."""
        return tuple(s for _, symbols in self.groups for s in symbols)

    @property
    def is_flat(self) -> bool:
        return len(self.groups) == 1

    def index_of(self, sym) -> Tuple[int, int]:
        """(group, position) of ``sym``."""
        for g, (_, symbols) in enumerate(self.groups):
            for k, s in enumerate(symbols):
                if s == sym:
                    return g, k
        raise UnresolvedSymbolError([sym], context="parameter layout")

    def __len__(self) -> int:
        return sum(self.sizes)


def as_layout(ps: Union[ParameterLayout, Sequence, None]) -> ParameterLayout:
    """
    Normalise a parameter order or grouping into a ParameterLayout.

    ``None`` gives one empty group, a flat sequence one group, and a
    sequence of sequences one group each (labelled group_0, group_1, ...).
    """
    if isinstance(ps, ParameterLayout):
        return ps
    if ps is None:
        return ParameterLayout()
    ps = list(ps)
    if ps and all(isinstance(group, (list, tuple)) for group in ps):
        return ParameterLayout(tuple((f"group_{g}", tuple(group)) for g, group in enumerate(ps)))
    return ParameterLayout(((FLAT_LABEL, tuple(ps)),))


# ============================================================================
# Containers
# ============================================================================


@dataclass(frozen=True)
class FlatParams:
    """Parameter values in one flat order."""

    values: Tuple[Any, ...]

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self):
        return iter(self.values)

    def __getitem__(self, index):
        return self.values[index]


@dataclass(frozen=True)
class GroupedParams:
    """
    Parameter values split into labelled groups.

    Example:
        >>> gp = GroupedParams((np.array([1.0, 2.0]), (3,)), ("tunable", "discrete"))
        >>> gp.tunable
        array([1., 2.])
        >>> gp["discrete"]
        (3,)
    """

    groups: Tuple[Any, ...]
    labels: Tuple[str, ...]

    @property
    def tunable(self):
        return self[TUNABLE]

    def __getitem__(self, key):
        if isinstance(key, str):
            if key not in self.labels:
                raise KeyError(f"No parameter group labelled {key!r}; groups: {list(self.labels)}")
            return self.groups[self.labels.index(key)]
        return self.groups[key]

    def __len__(self) -> int:
        return len(self.groups)

    def flatten(self) -> FlatParams:
        return FlatParams(tuple(v for group in self.groups for v in group))


ParameterContainer = Union[FlatParams, GroupedParams, Sequence, np.ndarray]


def as_parameter_groups(p: Optional[ParameterContainer], layout: ParameterLayout) -> Tuple[Any, ...]:
    """
    Split a parameter container into one value sequence per layout group.

    Args:
        p: FlatParams, GroupedParams, a flat sequence, a numpy array or None
        layout: Target layout

    Returns:
        Tuple with one entry per group in ``layout``

    Raises:
        ValueError: If the number of values or the group sizes do not match
            the layout
    """
    sizes = layout.sizes
    if isinstance(p, GroupedParams):
        if len(p.groups) == len(sizes):
            lengths = tuple(len(group) for group in p.groups)
            if lengths != sizes:
                raise ValueError(
                    f"Expected parameter groups of sizes {list(sizes)} for layout "
                    f"{list(layout.labels)}, got {list(lengths)}"
                )
            return tuple(p.groups)
        values = p.flatten().values
    elif isinstance(p, FlatParams):
        values = p.values
    elif p is None:
        values = ()
    else:
        values = p

    if len(values) != sum(sizes):
        raise ValueError(
            f"Expected {sum(sizes)} parameter values for layout {list(layout.labels)}, "
            f"got {len(values)}"
        )
    if len(sizes) == 1:
        return (values,)
    groups = []
    start = 0
    for size in sizes:
        groups.append(values[start:start + size])
        start += size
    return tuple(groups)


def _tunable_array(values: Sequence[Any]):
    """numpy array of promoted type, or a tuple when entries are arrays."""
    if any(np.ndim(v) > 0 for v in values):
        return tuple(values)
    if not values:
        return np.zeros(0)
    return np.asarray(values, dtype=np.result_type(*[np.asarray(v).dtype for v in values]))


def expand_array_values(values: Mapping) -> Dict:
    """
    Add component entries ``k[i]`` for every array parameter ``k`` in ``values``.

    Lets array values be substituted into expressions that index them.
    """
    expanded = dict(values)
    for sym, value in values.items():
        if is_array_parameter(sym) and value is not None and np.ndim(value) > 0:
            for i, item in enumerate(value):
                expanded[sym[i]] = item
    return expanded


def to_python_number(expr):
    """Convert a SymPy number to int/float/complex, leave anything else alone."""
    if not isinstance(expr, sp.Basic):
        return expr
    if expr.is_Integer:
        return int(expr)
    if expr.is_number:
        value = complex(expr)
        return value.real if value.imag == 0 else value
    return expr


# ============================================================================
# Canonicalizer
# ============================================================================


def is_discrete(sym) -> bool:
    """Integer-valued parameters go in the discrete slot."""
    if is_array_parameter(sym):
        sym = sym.label
    return bool(getattr(sym, "is_integer", False))


class ParameterCanonicalizer:
    """
    Reorders and groups a system's free parameters.

    Dependent parameters (``p2 = h(p1)``) are not part of any layout; they
    are recovered with evaluate_dependencies() once free values are known.

    Example:
        >>> canon = ParameterCanonicalizer(sys)
        >>> layout = canon.reorder([b, a], split=True)
        >>> canon.pack({a: 1.0, b: 2.0}, layout, structured=True).tunable
        array([2., 1.])
    """

    def __init__(self, system: "NonlinearSystem"):
        self.system = system

    def _resolve(self, requested) -> Any:
        free = self.system.parameters
        sym = requested
        if isinstance(requested, str):
            sym = self.system.lookup(requested)
        if sym not in free:
            raise UnresolvedSymbolError(
                [requested], context=f"free parameters of system '{self.system.name}'"
            )
        return sym

    def reorder(self, ps: Optional[Sequence] = None, split: bool = False) -> ParameterLayout:
        """
        Build the layout for a requested parameter order.

        Args:
            ps: None (model order), a flat sequence of symbols/names, or a
                sequence of sequences (explicit groups)
            split: Partition a flat order into tunable and discrete slots

        Returns:
            ParameterLayout

        Raises:
            UnresolvedSymbolError: If a requested symbol is not a free parameter
        """
        if isinstance(ps, ParameterLayout):
            return ps
        if ps is None:
            order = list(self.system.parameters)
        else:
            ps = list(ps)
            if ps and all(isinstance(group, (list, tuple)) for group in ps):
                return ParameterLayout(
                    tuple(
                        (f"group_{g}", tuple(self._resolve(s) for s in group))
                        for g, group in enumerate(ps)
                    )
                )
            order = [self._resolve(s) for s in ps]

        if not split:
            return ParameterLayout(((FLAT_LABEL, tuple(order)),))
        tunable = tuple(s for s in order if not is_discrete(s))
        discrete = tuple(s for s in order if is_discrete(s))
        return ParameterLayout(((TUNABLE, tunable), (DISCRETE, discrete)))

    def pack(
        self, values: Mapping, layout: ParameterLayout, structured: bool = False
    ) -> Union[FlatParams, GroupedParams]:
        """
        Arrange ``{symbol: value}`` into a container following ``layout``.

        Raises:
            UnresolvedSymbolError: If ``values`` lacks a symbol of the layout
        """
        missing = [s for s in layout.symbols if s not in values]
        if missing:
            raise UnresolvedSymbolError(missing, context="parameter values")
        groups = []
        for label, symbols in layout.groups:
            group = [values[s] for s in symbols]
            if label in (TUNABLE, FLAT_LABEL):
                groups.append(_tunable_array(group))
            else:
                groups.append(tuple(group))
        if structured:
            return GroupedParams(tuple(groups), layout.labels)
        return FlatParams(tuple(v for group in groups for v in group))

    def evaluate_dependencies(self, values: Mapping) -> Dict:
        """
        Evaluate dependent parameters in dependency order.

        Args:
            values: {free parameter: value}

        Returns:
            New mapping with free and dependent parameter values
        """
        result = dict(values)
        for eq in self.system.parameter_dependencies:
            rhs = sp.sympify(eq.rhs).xreplace(expand_array_values(result))
            result[eq.lhs] = to_python_number(rhs)
        return result


__all__ = [
    "ParameterLayout",
    "FlatParams",
    "GroupedParams",
    "ParameterCanonicalizer",
    "as_layout",
    "as_parameter_groups",
    "expand_array_values",
    "to_python_number",
    "is_discrete",
]
