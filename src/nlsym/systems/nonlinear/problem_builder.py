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
Problem Builder

Turns a COMPLETE NonlinearSystem into solver-ready problem objects:

- NonlinearFunction: compiled residual (+ optional Jacobian), prototypes and
  an observed-value accessor
- NonlinearProblem: square system, solved by root finding
- NonlinearLeastSquaresProblem: any shape, solved by least squares

Value maps
----------
Initial values and parameter values are given as maps keyed by symbol or
name. Missing entries fall back to the system's defaults; defaults may be
expressions of other values and are resolved by fixpoint evaluation:

>>> ns = NonlinearSystem(eqs, [x, y], [a, b], name="s", defaults={b: 2 * a})
>>> prob = build_nonlinear_problem(complete(ns), {x: 1.0, y: 0.0}, {a: 3.0})
>>> prob[b]
6.0

A symbol with neither a value nor a default raises MissingValueError
listing every such symbol.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse
import sympy as sp

from nlsym.systems.base.errors import (
    MissingValueError,
    NotCompletedError,
    UnresolvedSymbolError,
)
from nlsym.systems.base.utils.codegen_utils import (
    CompiledFunction,
    FunctionSource,
    compile_function_source,
    csc_prototype,
)
from nlsym.systems.base.utils.observed_resolver import ObservedFunctionCache, fixpoint_substitute
from nlsym.systems.base.utils.parameter_canonicalizer import (
    FlatParams,
    GroupedParams,
    ParameterCanonicalizer,
    ParameterLayout,
    expand_array_values,
    to_python_number,
)
from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem
from nlsym.types.config import TUNABLE
from nlsym.types.core import ArrayLike, ResidualPrototype, ResidualVector, UnknownVector
from nlsym.types.problems import ProblemInfo, ProblemType

logger = logging.getLogger(__name__)

ParameterContainer = Union[FlatParams, GroupedParams]


# ============================================================================
# Helpers
# ============================================================================


def _check_complete(sys: NonlinearSystem, target: str) -> None:
    if not sys.is_complete:
        raise NotCompletedError(sys.name, target)


def _element_type(u0: Optional[ArrayLike] = None, p=None) -> np.dtype:
    """Widest element type of float64, ``u0`` and the tunable parameter slot."""
    dtype = np.dtype(np.float64)
    if u0 is not None:
        dtype = np.result_type(dtype, np.asarray(u0).dtype)
    if isinstance(p, GroupedParams) and TUNABLE in p.labels:
        tunable = p.tunable
        if isinstance(tunable, np.ndarray) and tunable.size:
            dtype = np.result_type(dtype, tunable.dtype)
    return dtype


def calculate_resid_prototype(n_residuals: int, n_unknowns: int, u0=None, p=None) -> ResidualPrototype:
    """
    Residual buffer prototype.

    None for square systems, otherwise a zero vector of length
    ``n_residuals`` whose dtype is the widest of float64, ``u0`` and the
    tunable slot.
    """
    if n_residuals == n_unknowns:
        return None
    return np.zeros(n_residuals, dtype=_element_type(u0, p))


def _normalize_map(sys: NonlinearSystem, values: Any, order: Sequence) -> Dict:
    """
    Accept a mapping, a sequence of (key, value) pairs, or values in ``order``.

    Name keys are resolved through ``sys.lookup``.
    """
    if values is None:
        return {}
    if isinstance(values, Mapping):
        items = list(values.items())
    else:
        values = list(values)
        if not values:
            return {}
        if all(isinstance(v, tuple) and len(v) == 2 for v in values):
            items = values
        elif len(values) == len(order):
            items = list(zip(order, values))
        else:
            raise ValueError(
                f"Expected a mapping or {len(order)} values in order {list(order)}, "
                f"got {len(values)} values"
            )

    result = {}
    for key, value in items:
        sym = sys.lookup(key) if isinstance(key, str) else key
        if not sys.has_symbol(sym):
            raise UnresolvedSymbolError([key], context=f"system '{sys.name}'")
        result[sym] = value
    return result


def _is_symbolic(value: Any) -> bool:
    return isinstance(value, sp.Basic) and not value.is_number


def resolve_values(sys: NonlinearSystem, targets: Sequence, explicit: Mapping) -> Dict:
    """
    Numeric values for ``targets`` from explicit values and defaults.

    Symbolic values (defaults like ``2 * a`` or dependent parameter
    definitions) are resolved by fixpoint substitution against every other
    known value.

    Raises:
        MissingValueError: Targets with no value and no resolvable default
        FixpointLimitError: Cyclic symbolic defaults
    """
    merged = dict(sys.defaults)
    merged.update(explicit)
    for eq in sys.parameter_dependencies:
        merged[eq.lhs] = eq.rhs

    numeric: Dict[Any, Any] = {}
    symbolic: Dict[Any, Any] = {}
    for sym, value in merged.items():
        if _is_symbolic(value):
            symbolic[sym] = value
        else:
            numeric[sym] = to_python_number(value)

    rules: Dict[Any, Any] = {}
    for sym, value in expand_array_values(numeric).items():
        if np.ndim(value) == 0:
            rules[sym] = sp.sympify(value)
    rules.update(symbolic)

    resolved: Dict[Any, Any] = {}
    missing: List[Any] = []
    for target in targets:
        if target in numeric:
            resolved[target] = numeric[target]
        elif target in symbolic:
            value = fixpoint_substitute(symbolic[target], rules)
            if value.is_number:
                resolved[target] = to_python_number(value)
            else:
                missing.append(target)
        else:
            missing.append(target)
    if missing:
        raise MissingValueError(missing)
    return resolved


# ============================================================================
# Functions
# ============================================================================


@dataclass
class NonlinearFunction:
    """
    Compiled residual function with everything a solver needs.

    Attributes:
        f: Residual CompiledFunction
        sys: Source system
        dvs: Unknown order of ``u``
        layout: Parameter layout of ``p``
        jac: Jacobian CompiledFunction (None unless built with jac=True)
        jac_prototype: Zero CSC matrix with the Jacobian pattern (sparse only)
        resid_prototype: Zero residual vector (non-square systems only)
        observed: Observed-value accessor

    Example:
        >>> nf = build_nonlinear_function(ns, jac=True)
        >>> r = nf(u, p)            # allocating
        >>> nf(buf, u, p)           # in-place
        >>> J = nf.jacobian(u, p)
    """

    f: CompiledFunction
    sys: NonlinearSystem
    dvs: Tuple[Any, ...]
    layout: ParameterLayout
    jac: Optional[CompiledFunction] = None
    jac_prototype: Optional[scipy.sparse.csc_matrix] = None
    resid_prototype: ResidualPrototype = None
    observed: Optional[ObservedFunctionCache] = None

    def __call__(self, *args):
        return self.f(*args)

    def jacobian(self, *args):
        if self.jac is None:
            raise ValueError(
                f"No Jacobian was generated for system '{self.sys.name}'. Build with jac=True."
            )
        return self.jac(*args)

    @property
    def sparse(self) -> bool:
        return self.jac_prototype is not None


@dataclass
class NonlinearFunctionExpr:
    """
    Source-text form of a NonlinearFunction.

    Attributes:
        f: Residual FunctionSource
        jac: Jacobian FunctionSource or None
        jac_prototype: Zero CSC prototype (sparse only)
        resid_prototype: Zero residual prototype (non-square only)
        linenumbers: Whether position annotations were kept
    """

    f: FunctionSource
    sys: NonlinearSystem
    dvs: Tuple[Any, ...]
    layout: ParameterLayout
    jac: Optional[FunctionSource] = None
    jac_prototype: Optional[scipy.sparse.csc_matrix] = None
    resid_prototype: ResidualPrototype = None
    linenumbers: bool = False

    def source(self) -> str:
        """All generated source text."""
        parts = [str(self.f)]
        if self.jac is not None:
            parts.append(str(self.jac))
        return "\n\n".join(parts)

    def compile(self) -> NonlinearFunction:
        """Compile the sources into a NonlinearFunction."""
        return NonlinearFunction(
            f=compile_function_source(self.f),
            sys=self.sys,
            dvs=self.dvs,
            layout=self.layout,
            jac=None if self.jac is None else compile_function_source(self.jac),
            jac_prototype=self.jac_prototype,
            resid_prototype=self.resid_prototype,
            observed=ObservedFunctionCache(self.sys, self.dvs, self.layout),
        )


def _function_parts(sys, dvs, ps, u0, p, jac, sparse, simplify, split, expression, linenumbers):
    gen = sys.code_generator
    dvs = gen.resolve_unknowns(dvs)
    layout = gen.resolve_layout(ps, split)
    options = {"expression": expression, "linenumbers": linenumbers}

    f = gen.generate_function(dvs, layout, **options)
    jac_fn = None
    if jac:
        jac_fn = gen.generate_jacobian(dvs, layout, sparse=sparse, simplify=simplify, **options)
    jac_prototype = None
    if sparse:
        jac_prototype = csc_prototype(
            gen.jacobian_matrix(dvs, sparse=True, simplify=simplify), dtype=_element_type(u0, p)
        )
    resid_prototype = calculate_resid_prototype(sys.n_residuals, len(dvs), u0, p)
    return dvs, layout, f, jac_fn, jac_prototype, resid_prototype


def build_nonlinear_function(
    sys: NonlinearSystem,
    dvs: Optional[Sequence] = None,
    ps=None,
    u0=None,
    p=None,
    *,
    jac: bool = False,
    sparse: bool = False,
    simplify: bool = False,
    split: bool = False,
    check_complete: bool = True,
) -> NonlinearFunction:
    """
    Compile the residual function of a complete system.

    Args:
        sys: Complete NonlinearSystem
        dvs: Unknown order (default: system order)
        ps: Parameter order, groups or layout (default: system order)
        u0: Initial values, only used for the prototypes' element type
        p: Parameter container, only used for the prototypes' element type
        jac: Also compile the Jacobian
        sparse: Sparse Jacobian and jac_prototype
        simplify: Simplify Jacobian entries
        split: Tunable/discrete parameter slots

    Raises:
        NotCompletedError: If the system is not complete
    """
    if check_complete:
        _check_complete(sys, "NonlinearFunction")
    dvs, layout, f, jac_fn, jac_prototype, resid_prototype = _function_parts(
        sys, dvs, ps, u0, p, jac, sparse, simplify, split, False, False
    )
    return NonlinearFunction(
        f=f,
        sys=sys,
        dvs=dvs,
        layout=layout,
        jac=jac_fn,
        jac_prototype=jac_prototype,
        resid_prototype=resid_prototype,
        observed=sys.code_generator.generate_observed(dvs, layout),
    )


def build_nonlinear_function_expr(
    sys: NonlinearSystem,
    dvs: Optional[Sequence] = None,
    ps=None,
    u0=None,
    p=None,
    *,
    jac: bool = False,
    sparse: bool = False,
    simplify: bool = False,
    split: bool = False,
    linenumbers: bool = False,
    check_complete: bool = True,
) -> NonlinearFunctionExpr:
    """
    Source-text variant of build_nonlinear_function.

    ``linenumbers=True`` keeps position annotations in the source.
    """
    if check_complete:
        _check_complete(sys, "NonlinearFunction")
    dvs, layout, f, jac_fn, jac_prototype, resid_prototype = _function_parts(
        sys, dvs, ps, u0, p, jac, sparse, simplify, split, True, linenumbers
    )
    return NonlinearFunctionExpr(
        f=f,
        sys=sys,
        dvs=dvs,
        layout=layout,
        jac=jac_fn,
        jac_prototype=jac_prototype,
        resid_prototype=resid_prototype,
        linenumbers=linenumbers,
    )


# ============================================================================
# Problems
# ============================================================================


@dataclass
class NonlinearProblem:
    """
    Square nonlinear problem ``0 = F(u, p)``.

    Supports symbolic indexing:

    >>> prob[x]                 # initial value of x
    >>> prob["sigma"]           # parameter value by name
    >>> prob.set_parameter(rho, 28.0)
    >>> prob.observed(E)        # observed value at u0
    """

    f: NonlinearFunction
    u0: np.ndarray
    p: ParameterContainer
    parameter_map: Dict[Any, Any] = field(default_factory=dict, repr=False)
    structured: bool = False
    kwargs: Dict[str, Any] = field(default_factory=dict)

    problem_type: ClassVar[ProblemType] = "square"

    @property
    def sys(self) -> NonlinearSystem:
        return self.f.sys

    @property
    def dvs(self) -> Tuple[Any, ...]:
        return self.f.dvs

    @property
    def layout(self) -> ParameterLayout:
        return self.f.layout

    # ------------------------------------------------------------------
    # Symbolic indexing
    # ------------------------------------------------------------------

    @property
    def state_values(self) -> Dict[Any, Any]:
        """{unknown: current initial value}"""
        return dict(zip(self.dvs, self.u0))

    @property
    def parameter_values(self) -> Dict[Any, Any]:
        """{parameter: value}, dependent parameters included."""
        return ParameterCanonicalizer(self.sys).evaluate_dependencies(self.parameter_map)

    def _symbol(self, key):
        return self.sys.lookup(key) if isinstance(key, str) else key

    def __getitem__(self, key):
        sym = self._symbol(key)
        if sym in self.dvs:
            return self.u0[self.dvs.index(sym)]
        values = self.parameter_values
        if sym in values:
            return values[sym]
        if isinstance(sym, sp.Indexed) and sym.base in values:
            return values[sym.base][int(sym.indices[0])]
        return self.observed(sym)

    def set_state(self, key, value) -> None:
        sym = self._symbol(key)
        if sym not in self.dvs:
            raise UnresolvedSymbolError([key], context=f"unknowns of system '{self.sys.name}'")
        u0 = np.array(self.u0, dtype=np.result_type(self.u0, np.asarray(value).dtype))
        u0[self.dvs.index(sym)] = value
        self.u0 = u0

    def set_parameter(self, key, value) -> None:
        sym = self._symbol(key)
        if sym not in self.layout.symbols:
            raise UnresolvedSymbolError([key], context=f"free parameters of system '{self.sys.name}'")
        self.parameter_map[sym] = value
        self.p = ParameterCanonicalizer(self.sys).pack(self.parameter_map, self.layout, self.structured)

    def observed(self, key, u=None):
        """Value of an observed (or any other) symbol at ``u`` (default u0)."""
        evaluator = self.f.observed(self._symbol(key))
        return evaluator(self.u0 if u is None else u, self.p)

    def residual(self, u: Optional[UnknownVector] = None) -> ResidualVector:
        """Residuals at ``u`` (default u0)."""
        return self.f(self.u0 if u is None else u, self.p)

    def get_info(self) -> ProblemInfo:
        return {
            "system": self.sys.name,
            "problem_type": self.problem_type,
            "n_residuals": self.sys.n_residuals,
            "n_unknowns": len(self.dvs),
            "n_parameters": len(self.layout),
            "has_jacobian": self.f.jac is not None,
            "sparse": self.f.sparse,
            "parameter_groups": list(self.layout.labels),
        }


@dataclass
class NonlinearLeastSquaresProblem(NonlinearProblem):
    """Nonlinear least-squares problem; residual and unknown counts may differ."""

    problem_type: ClassVar[ProblemType] = "least_squares"


@dataclass
class NonlinearProblemExpr:
    """
    Source-text form of a problem assembly.

    ``build()`` compiles it into the matching problem object.
    """

    f: NonlinearFunctionExpr
    u0: np.ndarray
    p: ParameterContainer
    parameter_map: Dict[Any, Any] = field(default_factory=dict, repr=False)
    structured: bool = False
    kwargs: Dict[str, Any] = field(default_factory=dict)
    problem_type: ProblemType = "square"

    def source(self) -> str:
        lines = [self.f.source(), ""]
        lines.append(f"u0 = numpy.array({np.asarray(self.u0).tolist()!r})")
        lines.append(f"p = {[_plain(v) for v in _flat_values(self.p)]!r}")
        return "\n".join(lines) + "\n"

    def build(self) -> NonlinearProblem:
        cls = NonlinearLeastSquaresProblem if self.problem_type == "least_squares" else NonlinearProblem
        return cls(
            f=self.f.compile(),
            u0=np.array(self.u0),
            p=self.p,
            parameter_map=dict(self.parameter_map),
            structured=self.structured,
            kwargs=dict(self.kwargs),
        )


def _flat_values(p: ParameterContainer):
    return p.flatten().values if isinstance(p, GroupedParams) else p.values


def _plain(value):
    return np.asarray(value).tolist()


def _process_problem(sys, u0map, parammap, check_length, structured, split, target):
    _check_complete(sys, target)
    split = structured if split is None else split
    canonicalizer = sys.code_generator.canonicalizer
    dvs = tuple(sys.unknowns)
    layout = canonicalizer.reorder(None, split=split)

    if check_length and sys.n_residuals != len(dvs):
        raise ValueError(
            f"System '{sys.name}' has {sys.n_residuals} equations and {len(dvs)} unknowns. "
            f"To allow a different number of equations than unknowns use check_length=False "
            f"or build a NonlinearLeastSquaresProblem."
        )

    explicit = _normalize_map(sys, u0map, dvs)
    explicit.update(_normalize_map(sys, parammap, sys.parameters))
    values = resolve_values(sys, list(dvs) + list(layout.symbols), explicit)

    u0 = np.asarray([values[u] for u in dvs]) if dvs else np.zeros(0)
    parameter_map = {s: values[s] for s in layout.symbols}
    p = canonicalizer.pack(parameter_map, layout, structured=structured)
    logger.debug("resolved %d initial values and %d parameters for '%s'", len(dvs), len(layout), sys.name)
    return dvs, layout, u0, parameter_map, p


def build_nonlinear_problem(
    sys: NonlinearSystem,
    u0map=None,
    parammap=None,
    *,
    check_length: bool = True,
    structured: bool = False,
    split: Optional[bool] = None,
    jac: bool = False,
    sparse: bool = False,
    simplify: bool = False,
    **kwargs,
) -> NonlinearProblem:
    """
    Build a NonlinearProblem from a complete system.

    Args:
        sys: Complete NonlinearSystem
        u0map: Initial values {unknown or name: value}, pairs, or values in
            unknown order; missing entries use defaults
        parammap: Parameter values, same forms; missing entries use defaults
        check_length: Require as many equations as unknowns
        structured: Pack parameters as GroupedParams (tunable/discrete)
        split: Split parameter slots (default: same as ``structured``)
        jac: Compile the Jacobian
        sparse: Sparse Jacobian with jac_prototype
        simplify: Simplify Jacobian entries
        **kwargs: Stored on the problem and forwarded to the solver

    Raises:
        NotCompletedError: System is not complete
        MissingValueError: Values missing with no default
        ValueError: Non-square system with check_length=True

    Example:
        >>> prob = build_nonlinear_problem(
        ...     complete(ns), {x: 1.0, y: 0.0, z: 0.0},
        ...     {sigma: 10.0, rho: 26.0, beta: 8 / 3}, jac=True)
        >>> prob.residual()
        array([-10.,  26.,   0.])
    """
    dvs, layout, u0, parameter_map, p = _process_problem(
        sys, u0map, parammap, check_length, structured, split, "NonlinearProblem"
    )
    f = build_nonlinear_function(
        sys, dvs, layout, u0, p, jac=jac, sparse=sparse, simplify=simplify, check_complete=False
    )
    return NonlinearProblem(f, u0, p, parameter_map, structured, kwargs)


def build_least_squares_problem(
    sys: NonlinearSystem,
    u0map=None,
    parammap=None,
    *,
    check_length: bool = False,
    structured: bool = False,
    split: Optional[bool] = None,
    jac: bool = False,
    sparse: bool = False,
    simplify: bool = False,
    **kwargs,
) -> NonlinearLeastSquaresProblem:
    """
    Build a NonlinearLeastSquaresProblem from a complete system.

    Same arguments as build_nonlinear_problem; the equation count need not
    match the unknown count, and non-square systems get a resid_prototype.
    """
    dvs, layout, u0, parameter_map, p = _process_problem(
        sys, u0map, parammap, check_length, structured, split, "NonlinearLeastSquaresProblem"
    )
    f = build_nonlinear_function(
        sys, dvs, layout, u0, p, jac=jac, sparse=sparse, simplify=simplify, check_complete=False
    )
    return NonlinearLeastSquaresProblem(f, u0, p, parameter_map, structured, kwargs)


def _build_problem_expr(sys, u0map, parammap, check_length, structured, split, jac, sparse, simplify, linenumbers, kwargs, problem_type, target):
    dvs, layout, u0, parameter_map, p = _process_problem(
        sys, u0map, parammap, check_length, structured, split, target
    )
    f = build_nonlinear_function_expr(
        sys,
        dvs,
        layout,
        u0,
        p,
        jac=jac,
        sparse=sparse,
        simplify=simplify,
        linenumbers=linenumbers,
        check_complete=False,
    )
    return NonlinearProblemExpr(f, u0, p, parameter_map, structured, kwargs, problem_type)


def build_nonlinear_problem_expr(
    sys: NonlinearSystem,
    u0map=None,
    parammap=None,
    *,
    check_length: bool = True,
    structured: bool = False,
    split: Optional[bool] = None,
    jac: bool = False,
    sparse: bool = False,
    simplify: bool = False,
    linenumbers: bool = False,
    **kwargs,
) -> NonlinearProblemExpr:
    """Source-text variant of build_nonlinear_problem."""
    return _build_problem_expr(
        sys, u0map, parammap, check_length, structured, split, jac, sparse, simplify,
        linenumbers, kwargs, "square", "NonlinearProblem",
    )


def build_least_squares_problem_expr(
    sys: NonlinearSystem,
    u0map=None,
    parammap=None,
    *,
    check_length: bool = False,
    structured: bool = False,
    split: Optional[bool] = None,
    jac: bool = False,
    sparse: bool = False,
    simplify: bool = False,
    linenumbers: bool = False,
    **kwargs,
) -> NonlinearProblemExpr:
    """Source-text variant of build_least_squares_problem."""
    return _build_problem_expr(
        sys, u0map, parammap, check_length, structured, split, jac, sparse, simplify,
        linenumbers, kwargs, "least_squares", "NonlinearLeastSquaresProblem",
    )
