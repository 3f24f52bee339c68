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
Low-level code generation utilities.

Turns SymPy expressions into NumPy functions with two calling conventions
derived from ONE intermediate representation:

- allocating:  f(u, p) -> new array / matrix
- in-place:    f(out, u, p) -> None, writes into ``out``

Pipeline:
    expressions ──► FunctionIR (symbol binding + sympy.cse) ──► source text
                                                               ├─► allocating body
                                                               └─► in-place body

The generated source is self-contained Python (only numpy/scipy imports) so
it can be returned as text (``expression=True``) and compiled later.

Functions are built from that module text with compile() and exec() rather
than sympy.lambdify: lambdify only produces the allocating form, while the
in-place form writes element-wise into a caller buffer (including the
``data`` array of a CSC matrix) and the text form has to match the compiled
code exactly.

Supported output shapes:
- scalar expression          -> Python/NumPy scalar
- list/tuple of expressions  -> 1-D array (n,)
- dense SymPy matrix         -> 2-D array (m, n)
- sparse SymPy matrix        -> scipy.sparse.csc_matrix (m, n)
- list of SymPy matrices     -> list of 2-D arrays / CSC matrices (Hessians)

Parameters are passed either flat or grouped; see ParameterLayout and
as_parameter_groups in parameter_canonicalizer.
"""

import linecache
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse
import sympy as sp
from sympy.printing.numpy import NumPyPrinter

from nlsym.systems.base.equation import Equation, collect_symbols
from nlsym.systems.base.errors import UnresolvedSymbolError
from nlsym.systems.base.utils.parameter_canonicalizer import (
    ParameterLayout,
    as_parameter_groups,
    as_layout,
)
from nlsym.types.core import AllocatingFunction, InPlaceFunction
from nlsym.types.symbolic import SymbolicExpressionInput, SymbolicMatrix, SymbolSequence

logger = logging.getLogger(__name__)

ANNOTATION_PREFIX = "# nlsym:"


# ============================================================================
# Printing
# ============================================================================


class NumPyCodePrinter(NumPyPrinter):
    """
    NumPy printer with variadic Min/Max support.

    SymPy's Min/Max take any number of arguments while numpy.minimum and
    numpy.maximum take two, so calls are nested pairwise.
    """

    def _nested(self, func: str, args) -> str:
        printed = [self._print(a) for a in args]
        result = printed[0]
        for arg in printed[1:]:
            result = f"{func}({result}, {arg})"
        return result

    def _print_Min(self, expr):
        return self._nested("numpy.minimum", expr.args)

    def _print_Max(self, expr):
        return self._nested("numpy.maximum", expr.args)


def _printer() -> NumPyCodePrinter:
    return NumPyCodePrinter({"fully_qualified_modules": True, "inline": True})


# ============================================================================
# Output normalisation
# ============================================================================


@dataclass
class OutputSpec:
    """
    Shape description of one generated output.

    kind is one of 'scalar', 'vector', 'dense', 'sparse'. For 'sparse',
    ``entries`` holds (row, col) pairs in CSC order, for 'dense' all
    nonzero entries, for 'vector' the row index.
    """

    kind: str
    shape: Tuple[int, ...]
    entries: List[Tuple[int, ...]]
    exprs: List[sp.Expr]


def _is_sparse_matrix(expr: Any) -> bool:
    return isinstance(expr, (sp.SparseMatrix, sp.ImmutableSparseMatrix))


def sparse_pattern(matrix: sp.MatrixBase) -> List[Tuple[int, int]]:
    """Structurally stored (row, col) entries of a sparse matrix, CSC order."""
    keys = matrix.todok().keys()
    return sorted(keys, key=lambda rc: (rc[1], rc[0]))


def csc_prototype(matrix: SymbolicMatrix, dtype=np.float64) -> scipy.sparse.csc_matrix:
    """
    Zero-valued CSC matrix with the stored pattern of ``matrix``.

    Entries are laid out exactly as generated sparse functions write them,
    so the prototype can be passed as the in-place output buffer.
    """
    rows, cols = matrix.shape
    entries = sparse_pattern(matrix)
    indices = np.array([r for r, _ in entries], dtype=np.int32)
    indptr = np.zeros(cols + 1, dtype=np.int32)
    for _, c in entries:
        indptr[c + 1] += 1
    indptr = np.cumsum(indptr, dtype=np.int32)
    data = np.zeros(len(entries), dtype=dtype)
    return scipy.sparse.csc_matrix((data, indices, indptr), shape=(rows, cols))


def _matrix_spec(matrix: sp.MatrixBase) -> OutputSpec:
    rows, cols = matrix.shape
    if _is_sparse_matrix(matrix):
        dok = matrix.todok()
        entries = sparse_pattern(matrix)
        return OutputSpec("sparse", (rows, cols), entries, [dok[rc] for rc in entries])
    entries = []
    exprs = []
    for i in range(rows):
        for j in range(cols):
            value = matrix[i, j]
            if value != 0:
                entries.append((i, j))
                exprs.append(value)
    return OutputSpec("dense", (rows, cols), entries, exprs)


def normalize_outputs(expr: Any) -> Tuple[str, List[OutputSpec]]:
    """
    Classify ``expr`` and flatten it into OutputSpecs.

    Returns:
        (structure, specs) where structure is 'single' or 'list'
    """
    if isinstance(expr, sp.MatrixBase):
        return "single", [_matrix_spec(expr)]
    if isinstance(expr, (list, tuple)):
        if len(expr) > 0 and all(isinstance(e, sp.MatrixBase) for e in expr):
            return "list", [_matrix_spec(m) for m in expr]
        items = [sp.sympify(e) for e in expr]
        return "single", [OutputSpec("vector", (len(items),), [(i,) for i in range(len(items))], items)]
    return "single", [OutputSpec("scalar", (), [()], [sp.sympify(expr)])]


# ============================================================================
# Intermediate representation
# ============================================================================


@dataclass
class FunctionIR:
    """
    Shared intermediate representation of a generated function.

    Attributes:
        prologue: (local name, source) pairs unpacking u and parameter groups
        lets: ordered substitution bindings (eliminated unknowns)
        cse: common subexpressions shared by all outputs
        structure: 'single' or 'list'
        outputs: per-output shape and reduced expressions
        n_groups: number of parameter group arguments
    """

    prologue: List[Tuple[str, str]]
    lets: List[Tuple[sp.Symbol, sp.Expr]]
    cse: List[Tuple[sp.Symbol, sp.Expr]]
    structure: str
    outputs: List[OutputSpec]
    n_groups: int


def _bind_arguments(dvs: Sequence, layout: ParameterLayout):
    """
    Map every unknown/parameter to a safe local name.

    Returns:
        (replacements, prologue, scalar_names, array_names)
    """
    replacements: Dict[Any, Any] = {}
    prologue: List[Tuple[str, str]] = []
    scalar_names = set()
    array_names = set()

    for i, u in enumerate(dvs):
        name = f"_u{i}"
        replacements[u] = sp.Symbol(name)
        prologue.append((name, f"u[{i}]"))
        scalar_names.add(name)

    for g, (_, symbols) in enumerate(layout.groups):
        for k, p in enumerate(symbols):
            name = f"_p{g}_{k}"
            prologue.append((name, f"p{g}[{k}]"))
            if isinstance(p, sp.IndexedBase):
                replacements[p] = sp.IndexedBase(name, shape=p.shape)
                array_names.add(name)
            else:
                replacements[p] = sp.Symbol(name)
                scalar_names.add(name)
    return replacements, prologue, scalar_names, array_names


def _check_bound(exprs: Sequence[sp.Expr], scalar_names: set, array_names: set) -> None:
    unresolved = []
    for atom in collect_symbols(exprs):
        if isinstance(atom, sp.Indexed):
            if str(atom.base) not in array_names:
                unresolved.append(atom)
        elif str(atom) not in scalar_names:
            unresolved.append(atom)
    if unresolved:
        raise UnresolvedSymbolError(unresolved, context="function arguments")


def build_ir(
    expr: Any,
    dvs: Sequence,
    layout: ParameterLayout,
    substitutions: Sequence[Equation] = (),
    use_cse: bool = True,
) -> FunctionIR:
    """
    Build the shared IR for ``expr``.

    Args:
        expr: Scalar, list, matrix or list of matrices
        dvs: Ordered unknowns (positions in ``u``)
        layout: Parameter layout (positions in each parameter group)
        substitutions: Ordered ``eliminated = expr`` bindings emitted as local
            assignments ahead of the body
        use_cse: Extract common subexpressions

    Raises:
        UnresolvedSymbolError: If an expression references a symbol that is
            neither an argument nor a substitution binding
    """
    replacements, prologue, scalar_names, array_names = _bind_arguments(dvs, layout)

    lets: List[Tuple[sp.Symbol, sp.Expr]] = []
    for s, eq in enumerate(substitutions):
        name = f"_s{s}"
        rhs = sp.sympify(eq.rhs).xreplace(replacements)
        _check_bound([rhs], scalar_names, array_names)
        local = sp.Symbol(name)
        lets.append((local, rhs))
        replacements[eq.lhs] = local
        scalar_names.add(name)

    structure, outputs = normalize_outputs(expr)
    flat: List[sp.Expr] = []
    for spec in outputs:
        spec.exprs = [sp.sympify(e).xreplace(replacements) for e in spec.exprs]
        flat.extend(spec.exprs)
    _check_bound(flat, scalar_names, array_names)

    cse_defs: List[Tuple[sp.Symbol, sp.Expr]] = []
    if use_cse and flat:
        cse_defs, reduced = sp.cse(flat, symbols=sp.numbered_symbols("_t"))
        position = 0
        for spec in outputs:
            count = len(spec.exprs)
            spec.exprs = list(reduced[position:position + count])
            position += count

    return FunctionIR(
        prologue=prologue,
        lets=lets,
        cse=list(cse_defs),
        structure=structure,
        outputs=outputs,
        n_groups=len(layout.groups),
    )


# ============================================================================
# Source emission (two backends, one IR)
# ============================================================================

_MODULE_HEADER = """import numpy
import scipy.sparse


def _result_dtype(*args):
    kinds = [a.dtype for a in args if isinstance(a, numpy.ndarray) and a.dtype.kind in "biufc"]
    return numpy.result_type(numpy.float64, *kinds)
"""


def _signature(name: str, ir: FunctionIR, inplace: bool) -> str:
    args = ["out"] if inplace else []
    args.append("u")
    args.extend(f"p{g}" for g in range(ir.n_groups))
    return f"def {name}({', '.join(args)}):"


def _body_common(ir: FunctionIR, printer: NumPyCodePrinter) -> List[str]:
    lines = [f"{name} = {source}" for name, source in ir.prologue]
    if ir.lets:
        lines.append(f"{ANNOTATION_PREFIX} eliminated unknowns")
    for sym, expr in ir.lets:
        lines.append(f"{sym} = {printer.doprint(expr)}")
    if ir.cse:
        lines.append(f"{ANNOTATION_PREFIX} shared subexpressions")
    for sym, expr in ir.cse:
        lines.append(f"{sym} = {printer.doprint(expr)}")
    return lines


def _constant_lines(prefix: str, ir: FunctionIR) -> List[str]:
    """Module-level CSC index arrays for sparse outputs."""
    lines = []
    for k, spec in enumerate(ir.outputs):
        if spec.kind != "sparse":
            continue
        rows, cols = spec.shape
        indices = [r for r, _ in spec.entries]
        indptr = [0] * (cols + 1)
        for _, c in spec.entries:
            indptr[c + 1] += 1
        for c in range(cols):
            indptr[c + 1] += indptr[c]
        lines.append(f"{prefix}_indices_{k} = numpy.array({indices!r}, dtype=numpy.int32)")
        lines.append(f"{prefix}_indptr_{k} = numpy.array({indptr!r}, dtype=numpy.int32)")
    return lines


def _label(spec: OutputSpec, entry: Tuple[int, ...]) -> str:
    if spec.kind == "scalar":
        return "value"
    if spec.kind == "vector":
        return f"entry {entry[0]}"
    return f"entry ({entry[0]}, {entry[1]})"


def _emit_writes(
    target: str, spec: OutputSpec, printer: NumPyCodePrinter, data_target: Optional[str] = None
) -> List[str]:
    lines = []
    for k, (entry, expr) in enumerate(zip(spec.entries, spec.exprs)):
        lines.append(f"{ANNOTATION_PREFIX} {_label(spec, entry)}")
        code = printer.doprint(expr)
        if spec.kind == "sparse":
            lines.append(f"{data_target}[{k}] = {code}")
        elif spec.kind == "scalar":
            lines.append(f"{target}[0] = {code}")
        else:
            index = ", ".join(str(i) for i in entry)
            lines.append(f"{target}[{index}] = {code}")
    return lines


def _emit_allocating(name: str, prefix: str, ir: FunctionIR, printer: NumPyCodePrinter) -> List[str]:
    groups = ", ".join(["u"] + [f"p{g}" for g in range(ir.n_groups)])
    lines = _body_common(ir, printer)
    lines.append(f"_dtype = _result_dtype({groups})")
    results = []
    for k, spec in enumerate(ir.outputs):
        var = f"_out{k}"
        if spec.kind == "scalar":
            lines.append(f"{ANNOTATION_PREFIX} value")
            lines.append(f"{var} = {printer.doprint(spec.exprs[0])}")
        elif spec.kind == "vector":
            lines.append(f"{var} = numpy.empty({spec.shape!r}, dtype=_dtype)")
            lines.extend(_emit_writes(var, spec, printer))
        elif spec.kind == "dense":
            lines.append(f"{var} = numpy.zeros({spec.shape!r}, dtype=_dtype)")
            lines.extend(_emit_writes(var, spec, printer))
        else:
            data = f"_data{k}"
            lines.append(f"{data} = numpy.empty({len(spec.entries)}, dtype=_dtype)")
            lines.extend(_emit_writes(var, spec, printer, data_target=data))
            lines.append(
                f"{var} = scipy.sparse.csc_matrix(({data}, {prefix}_indices_{k}.copy(), "
                f"{prefix}_indptr_{k}.copy()), shape={spec.shape!r})"
            )
        results.append(var)
    if ir.structure == "list":
        lines.append(f"return [{', '.join(results)}]")
    else:
        lines.append(f"return {results[0]}")
    return [_signature(name, ir, inplace=False)] + ["    " + line for line in lines]


def _emit_inplace(name: str, ir: FunctionIR, printer: NumPyCodePrinter) -> List[str]:
    lines = _body_common(ir, printer)
    for k, spec in enumerate(ir.outputs):
        target = f"out[{k}]" if ir.structure == "list" else "out"
        if ir.structure == "list":
            lines.append(f"_buf{k} = {target}")
            target = f"_buf{k}"
        if spec.kind == "sparse":
            data = f"_data{k}"
            lines.append(f"{data} = {target}.data")
            lines.extend(_emit_writes(target, spec, printer, data_target=data))
        else:
            if spec.kind == "dense":
                lines.append(f"{target}.fill(0)")
            lines.extend(_emit_writes(target, spec, printer))
    lines.append("return None")
    return [_signature(name, ir, inplace=True)] + ["    " + line for line in lines]


def strip_annotations(source: str) -> str:
    """Remove ``# nlsym:`` position annotations from generated source."""
    kept = [line for line in source.splitlines() if not line.strip().startswith(ANNOTATION_PREFIX)]
    return "\n".join(kept) + "\n"


# ============================================================================
# Public containers
# ============================================================================


@dataclass(frozen=True)
class FunctionSource:
    """
    Source-text form of a generated function pair.

    Attributes:
        oop: Module source defining ``oop_name(u, p0, ...)``
        iip: Module source defining ``iip_name(out, u, p0, ...)``
        oop_name: Name of the allocating function
        iip_name: Name of the in-place function
        layout: Parameter layout the functions expect
        linenumbers: Whether position annotations were kept
    """

    oop: str
    iip: str
    oop_name: str
    iip_name: str
    layout: ParameterLayout
    linenumbers: bool = False

    def __str__(self) -> str:
        return self.oop + "\n\n" + self.iip


@dataclass(frozen=True)
class CompiledFunction:
    """
    Executable function pair generated from one symbolic source.

    Call with 2 arguments for the allocating form and 3 for the in-place
    form:

        >>> F = build_function(rhs, [x, y], [[a]])
        >>> r = F(u, p)        # allocating
        >>> F(buf, u, p)       # in-place
        >>> np.allclose(r, buf)
        True

    ``p`` may be FlatParams, GroupedParams, or a flat sequence.
    """

    oop: AllocatingFunction
    iip: InPlaceFunction
    source: FunctionSource
    layout: ParameterLayout

    def __call__(self, *args):
        if len(args) == 2:
            return self.oop(*args)
        if len(args) == 3:
            return self.iip(*args)
        raise TypeError(
            f"Compiled function expects (u, p) or (out, u, p), got {len(args)} arguments"
        )


def _exec_module(source: str, filename: str, register: bool) -> Dict[str, Any]:
    if register:
        # lets tracebacks show generated lines
        linecache.cache[filename] = (len(source), None, source.splitlines(True), filename)
    namespace: Dict[str, Any] = {"__name__": "nlsym_generated"}
    code = compile(source, filename, "exec")
    exec(code, namespace)
    return namespace


def compile_function_source(source: FunctionSource) -> CompiledFunction:
    """
    Compile a FunctionSource into a CompiledFunction.

    The wrappers normalise ``u`` with numpy.asarray and split ``p`` into
    parameter groups before calling the generated functions.
    """
    oop_ns = _exec_module(source.oop, f"<nlsym:{source.oop_name}>", source.linenumbers)
    iip_ns = _exec_module(source.iip, f"<nlsym:{source.iip_name}>", source.linenumbers)
    raw_oop = oop_ns[source.oop_name]
    raw_iip = iip_ns[source.iip_name]
    layout = source.layout

    def oop(u, p=()):
        groups = as_parameter_groups(p, layout)
        return raw_oop(np.asarray(u), *groups)

    def iip(out, u, p=()):
        groups = as_parameter_groups(p, layout)
        raw_iip(out, np.asarray(u), *groups)

    oop.__name__ = source.oop_name
    iip.__name__ = source.iip_name
    return CompiledFunction(oop=oop, iip=iip, source=source, layout=layout)


def build_function(
    expr: SymbolicExpressionInput,
    dvs: SymbolSequence,
    ps: Union[ParameterLayout, Sequence, None] = None,
    *,
    substitutions: Sequence[Equation] = (),
    expression: bool = False,
    linenumbers: bool = False,
    function_name: str = "generated",
    use_cse: bool = True,
) -> Union[CompiledFunction, FunctionSource]:
    """
    Generate allocating and in-place NumPy functions from SymPy expression(s).

    Args:
        expr: Scalar, list of expressions, dense/sparse matrix, or list of
            matrices
        dvs: Ordered unknowns; ``u[i]`` binds ``dvs[i]``
        ps: ParameterLayout, flat sequence of parameters (one group), or a
            sequence of sequences (one group each)
        substitutions: Ordered eliminated-unknown bindings
        expression: Return source text (FunctionSource) instead of callables
        linenumbers: Keep ``# nlsym:`` position annotations in the source
        function_name: Base name of the generated functions
        use_cse: Share common subexpressions

    Returns:
        CompiledFunction, or FunctionSource when ``expression=True``

    Example:
        >>> x, y = sp.symbols('x y')
        >>> a = ParameterSymbol('a')
        >>> F = build_function([a * x - y, x * y], [x, y], [a])
        >>> F([1.0, 2.0], [3.0])
        array([1., 2.])
    """
    start = time.perf_counter()
    layout = as_layout(ps)
    ir = build_ir(expr, list(dvs), layout, substitutions=substitutions, use_cse=use_cse)
    printer = _printer()

    oop_name = f"{function_name}_oop"
    iip_name = f"{function_name}_iip"
    constants = _constant_lines(f"_{function_name}", ir)
    oop_lines = _emit_allocating(oop_name, f"_{function_name}", ir, printer)
    iip_lines = _emit_inplace(iip_name, ir, printer)

    header = [_MODULE_HEADER]
    if constants:
        header.append("\n".join(constants) + "\n")
    oop_source = "\n".join(header) + "\n\n" + "\n".join(oop_lines) + "\n"
    iip_source = "\n".join(header) + "\n\n" + "\n".join(iip_lines) + "\n"
    if not linenumbers:
        oop_source = strip_annotations(oop_source)
        iip_source = strip_annotations(iip_source)

    source = FunctionSource(
        oop=oop_source,
        iip=iip_source,
        oop_name=oop_name,
        iip_name=iip_name,
        layout=layout,
        linenumbers=linenumbers,
    )
    if expression:
        return source

    compiled = compile_function_source(source)
    logger.debug(
        "compiled %s (%d outputs, %d shared subexpressions) in %.3fs",
        function_name,
        len(ir.outputs),
        len(ir.cse),
        time.perf_counter() - start,
    )
    return compiled
