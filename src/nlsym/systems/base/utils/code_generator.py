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
Code Generator for NonlinearSystem

Orchestrates generation and caching of numerical functions from a system's
symbolic residuals.

Manages:
- Residual functions: f(u, p) / f(out, u, p)
- Jacobian functions (dense or sparse)
- Hessian functions (one matrix per residual)
- Observed-value evaluators
- Function caching per (unknown order, parameter layout, options)
- Cache invalidation

This class is the high-level orchestrator that uses codegen_utils for
the low-level SymPy -> executable code conversion.
"""

import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple, Union

import sympy as sp

from nlsym.systems.base.errors import UnresolvedSymbolError
from nlsym.systems.base.utils.codegen_utils import CompiledFunction, FunctionSource, build_function
from nlsym.systems.base.utils.derivative_engine import DerivativeEngine
from nlsym.systems.base.utils.observed_resolver import ObservedFunctionCache, ObservedResolver
from nlsym.systems.base.utils.parameter_canonicalizer import ParameterCanonicalizer, ParameterLayout
from nlsym.types.config import DEFAULT_COMPILATION_OPTIONS
from nlsym.types.symbolic import SymbolicMatrix

if TYPE_CHECKING:
    from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem

GeneratedFunction = Union[CompiledFunction, FunctionSource]

_KINDS = ("f", "jac", "hess")


def _resolve_matrix(matrix: sp.MatrixBase, resolver: ObservedResolver) -> sp.MatrixBase:
    """Resolve dependent parameters entry-wise, keeping sparse storage."""
    if isinstance(matrix, sp.ImmutableSparseMatrix):
        entries = {rc: resolver.resolve(v) for rc, v in matrix.todok().items()}
        return sp.ImmutableSparseMatrix(matrix.rows, matrix.cols, entries)
    return sp.ImmutableMatrix(matrix.applyfunc(resolver.resolve))


def _permute(matrix: sp.MatrixBase, rows: Sequence[int], cols: Sequence[int]) -> sp.MatrixBase:
    """Reorder rows/cols: new position k takes old index rows[k] / cols[k]."""
    if list(rows) == list(range(matrix.rows)) and list(cols) == list(range(matrix.cols)):
        return matrix
    if isinstance(matrix, sp.ImmutableSparseMatrix):
        new_row = {old: new for new, old in enumerate(rows)}
        new_col = {old: new for new, old in enumerate(cols)}
        entries = {(new_row[i], new_col[j]): v for (i, j), v in matrix.todok().items()}
        return sp.ImmutableSparseMatrix(matrix.rows, matrix.cols, entries)
    return sp.ImmutableMatrix(matrix.extract(list(rows), list(cols)))


class CodeGenerator:
    """
    Orchestrates code generation and caching for a nonlinear system.

    Example:
        >>> code_gen = CodeGenerator(system)
        >>>
        >>> # Generate residual function (with caching)
        >>> f = code_gen.generate_function()
        >>> f_again = code_gen.generate_function()  # Returns cached
        >>> assert f is f_again
        >>>
        >>> # Compile everything up front
        >>> timings = code_gen.compile_all(include_jacobians=True, verbose=True)
    """

    def __init__(self, system: "NonlinearSystem"):
        """
        Initialize code generator for a system.

        Args:
            system: The nonlinear system to generate code for
        """
        self.system = system
        self.engine = DerivativeEngine(system)
        self.canonicalizer = ParameterCanonicalizer(system)

        # (kind, dvs, layout, options) -> generated function
        self._functions: Dict[Tuple, GeneratedFunction] = {}

    # ========================================================================
    # Argument normalisation
    # ========================================================================

    def resolve_unknowns(self, dvs: Optional[Sequence] = None) -> Tuple[Any, ...]:
        """Requested unknown order (symbols or names) as a tuple of symbols."""
        unknowns = tuple(self.system.unknowns)
        if dvs is None:
            return unknowns
        resolved = []
        for requested in dvs:
            sym = self.system.lookup(requested) if isinstance(requested, str) else requested
            if sym not in unknowns:
                raise UnresolvedSymbolError(
                    [requested], context=f"unknowns of system '{self.system.name}'"
                )
            resolved.append(sym)
        return tuple(resolved)

    def resolve_layout(self, ps=None, split: bool = False) -> ParameterLayout:
        return self.canonicalizer.reorder(ps, split=split)

    def _positions(self, dvs: Tuple[Any, ...]) -> List[int]:
        unknowns = list(self.system.unknowns)
        return [unknowns.index(u) for u in dvs]

    # ========================================================================
    # Residual Function Generation
    # ========================================================================

    def generate_function(
        self,
        dvs: Optional[Sequence] = None,
        ps=None,
        *,
        split: bool = False,
        expression: bool = False,
        linenumbers: bool = False,
    ) -> GeneratedFunction:
        """
        Generate the residual function.

        Uses caching - if the function was already generated for the same
        unknown order, parameter layout and options, returns the cached one.

        Args:
            dvs: Unknown order (default: system order)
            ps: Parameter order or groups (default: system order)
            split: Split parameters into tunable/discrete slots
            expression: Return FunctionSource instead of callables
            linenumbers: Keep position annotations in the source

        Returns:
            CompiledFunction: f(u, p) -> residuals, f(out, u, p) -> None

        Example:
            >>> f = code_gen.generate_function()
            >>> r = f(u_vals, p_vals)
        """
        dvs = self.resolve_unknowns(dvs)
        layout = self.resolve_layout(ps, split)
        key = ("f", dvs, layout, expression, linenumbers)
        if key in self._functions:
            return self._functions[key]

        resolver = ObservedResolver(self.system)
        residuals = resolver.resolve(list(self.system.residuals))

        func = build_function(
            residuals,
            dvs,
            layout,
            substitutions=resolver.resolved_substitutions(),
            expression=expression,
            linenumbers=linenumbers,
            function_name="residual",
        )
        self._functions[key] = func
        return func

    # ========================================================================
    # Jacobian Generation
    # ========================================================================

    def jacobian_matrix(self, dvs: Optional[Sequence] = None, *, sparse: bool = False, simplify: bool = False) -> SymbolicMatrix:
        """
        Symbolic Jacobian as compiled: columns in ``dvs`` order, dependent
        parameters resolved.
        """
        dvs = self.resolve_unknowns(dvs)
        jac = self.engine.calculate_jacobian(sparse=sparse, simplify=simplify)
        jac = _permute(jac, range(jac.rows), self._positions(dvs))
        return _resolve_matrix(jac, ObservedResolver(self.system))

    def generate_jacobian(
        self,
        dvs: Optional[Sequence] = None,
        ps=None,
        *,
        sparse: bool = False,
        simplify: bool = False,
        split: bool = False,
        expression: bool = False,
        linenumbers: bool = False,
    ) -> GeneratedFunction:
        """
        Generate the Jacobian function.

        The symbolic Jacobian comes from the system's derivative cache, so
        repeated requests with the same (sparse, simplify) do not
        re-differentiate.

        Returns:
            CompiledFunction producing a dense array or a CSC matrix
        """
        dvs = self.resolve_unknowns(dvs)
        layout = self.resolve_layout(ps, split)
        key = ("jac", dvs, layout, sparse, simplify, expression, linenumbers)
        if key in self._functions:
            return self._functions[key]

        func = build_function(
            self.jacobian_matrix(dvs, sparse=sparse, simplify=simplify),
            dvs,
            layout,
            expression=expression,
            linenumbers=linenumbers,
            function_name="jacobian",
        )
        self._functions[key] = func
        return func

    def generate_hessian(
        self,
        dvs: Optional[Sequence] = None,
        ps=None,
        *,
        sparse: bool = False,
        simplify: bool = False,
        split: bool = False,
        expression: bool = False,
        linenumbers: bool = False,
    ) -> GeneratedFunction:
        """
        Generate the residual Hessians function.

        Returns:
            CompiledFunction producing a list with one matrix per residual
        """
        dvs = self.resolve_unknowns(dvs)
        layout = self.resolve_layout(ps, split)
        key = ("hess", dvs, layout, sparse, simplify, expression, linenumbers)
        if key in self._functions:
            return self._functions[key]

        resolver = ObservedResolver(self.system)
        positions = self._positions(dvs)
        hessians = [
            _resolve_matrix(_permute(h, positions, positions), resolver)
            for h in self.engine.calculate_hessian(sparse=sparse, simplify=simplify)
        ]

        func = build_function(
            hessians,
            dvs,
            layout,
            expression=expression,
            linenumbers=linenumbers,
            function_name="hessian",
        )
        self._functions[key] = func
        return func

    # ========================================================================
    # Observed Values
    # ========================================================================

    def generate_observed(self, dvs: Optional[Sequence] = None, ps=None, *, split: bool = False) -> ObservedFunctionCache:
        """
        Observed-value evaluators sharing the residual's argument layout.

        Example:
            >>> obs = code_gen.generate_observed()
            >>> obs(E)(u_vals, p_vals)
        """
        return ObservedFunctionCache(
            self.system, self.resolve_unknowns(dvs), self.resolve_layout(ps, split)
        )

    # ========================================================================
    # Compilation and Warmup
    # ========================================================================

    def compile_all(
        self,
        include_jacobians: bool = False,
        include_hessians: bool = False,
        verbose: bool = False,
        **kwargs,
    ) -> Dict[str, Optional[float]]:
        """
        Pre-compile functions for the default unknown order and layout.

        Args:
            include_jacobians: Also compile the Jacobian
            include_hessians: Also compile the Hessians
            verbose: Print compilation progress
            **kwargs: Options forwarded to the generators (sparse, split, ...)

        Returns:
            Dict mapping function name -> compilation time (None on failure)

        Example:
            >>> timings = code_gen.compile_all(include_jacobians=True, verbose=True)
            Compiling residual functions...
              f: 0.012s
              jac: 0.020s
        """
        opts = {**DEFAULT_COMPILATION_OPTIONS, **kwargs}
        split = opts["split"]
        derivative_opts = {"sparse": opts["sparse"], "simplify": opts["simplify"], "split": split}
        steps = [("f", lambda: self.generate_function(split=split))]
        if include_jacobians:
            steps.append(("jac", lambda: self.generate_jacobian(**derivative_opts)))
        if include_hessians:
            steps.append(("hess", lambda: self.generate_hessian(**derivative_opts)))

        if verbose:
            print("Compiling residual functions...")

        timings: Dict[str, Optional[float]] = {}
        for name, step in steps:
            try:
                start = time.time()
                step()
                timings[name] = time.time() - start
                if verbose:
                    print(f"  {name}: {timings[name]:.3f}s")
            except (ValueError, LookupError, RuntimeError, TypeError) as e:
                if verbose:
                    print(f"  {name}: FAILED ({e})")
                timings[name] = None
        return timings

    # ========================================================================
    # Cache Management
    # ========================================================================

    def reset_cache(self, kinds: Optional[List[str]] = None):
        """
        Clear cached functions.

        Args:
            kinds: Subset of ('f', 'jac', 'hess') to clear (None = all)

        Example:
            >>> code_gen.reset_cache()          # everything
            >>> code_gen.reset_cache(['jac'])   # Jacobians only
        """
        if kinds is None:
            self._functions.clear()
            return
        for key in [k for k in self._functions if k[0] in kinds]:
            del self._functions[key]

    def is_compiled(self) -> Dict[str, bool]:
        """
        Check which kinds of functions have been generated.

        Example:
            >>> code_gen.is_compiled()
            {'f': True, 'jac': False, 'hess': False}
        """
        compiled = {key[0] for key in self._functions}
        return {kind: kind in compiled for kind in _KINDS}

    def get_info(self) -> Dict[str, Any]:
        """
        Code generation status.

        Returns:
            Dict with compiled kinds, cached function count, and the
            derivative cache key
        """
        return {
            "compiled": self.is_compiled(),
            "n_cached": len(self._functions),
            "derivative_cache_key": self.system.derivative_cache.key,
        }

    # ========================================================================
    # String Representations
    # ========================================================================

    def __repr__(self) -> str:
        compiled = [kind for kind, done in self.is_compiled().items() if done]
        return f"CodeGenerator(system='{self.system.name}', compiled={compiled})"

    def __str__(self) -> str:
        return f"CodeGenerator({len(self._functions)} functions cached)"
