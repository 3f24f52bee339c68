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
Nonlinear Algebraic Equation Systems

A NonlinearSystem describes residual equations ``0 = F(u, p)`` in the
unknowns ``u`` and parameters ``p``, together with:

- observed equations: derived quantities ``w = g(u, p)`` that are not
  unknowns but can be evaluated from a solution
- parameter dependencies: parameters defined by other parameters
  ``p2 = h(p1)``
- substitutions: unknowns eliminated upstream as ``s = e(u, p)``
- defaults: fallback values (possibly symbolic) for unknowns/parameters

Lifecycle
---------
Systems start as drafts. ``complete(sys)`` (or ``sys.mark_complete()``)
freezes the definition; only complete systems may be turned into solver
problems. There is no way back to draft.

Architecture
------------
NonlinearSystem composes specialised components, like the dynamical
system classes it is modelled after:
- SystemValidator: definition checks
- DerivativeEngine: symbolic Jacobians/Hessians (cached per system)
- CodeGenerator: compiled residual/Jacobian/Hessian functions

Examples
--------
Lorenz system in steady state:

>>> x, y, z = variables("x y z")
>>> sigma, rho, beta = parameters("sigma rho beta")
>>> eqs = [
...     Equation(0, sigma * (y - x)),
...     Equation(0, x * (rho - z) - y),
...     Equation(0, x * y - beta * z),
... ]
>>> ns = NonlinearSystem(eqs, [x, y, z], [sigma, rho, beta], name="lorenz")
>>> ns.n_residuals, ns.n_unknowns
(3, 3)
>>> complete(ns).is_complete
True
"""

import json
import warnings
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import sympy as sp

from nlsym.systems.base.equation import (
    Equation,
    EquationLike,
    array_length,
    as_equation,
    as_equations,
    collect_symbols,
    is_array_parameter,
    is_parameter,
    symbol_name,
)
from nlsym.systems.base.errors import ConfigurationError, UnresolvedSymbolError
from nlsym.systems.base.utils.code_generator import CodeGenerator
from nlsym.systems.base.utils.derivative_cache import DerivativeCache
from nlsym.systems.base.utils.system_validator import SystemValidator
from nlsym.systems.base.utils.tag_sequence import TagSequence, get_tag_sequence
from nlsym.types.symbolic import DefaultsDict, SymbolLike, ValueMap


# ============================================================================
# Construction helpers
# ============================================================================


def _collapse_arrays(params: List[Any]) -> List[Any]:
    """
    Replace components k[0..n-1] by the array k when all of them are present.

    The array takes the position of its first component.
    """
    indices: Dict[Any, set] = {}
    for p in params:
        if isinstance(p, sp.Indexed) and len(p.indices) == 1 and p.indices[0].is_Integer:
            indices.setdefault(p.base, set()).add(int(p.indices[0]))

    result: List[Any] = []
    emitted = set()
    for p in params:
        if isinstance(p, sp.Indexed) and p.base in indices:
            base = p.base
            try:
                n = array_length(base)
            except ValueError:
                result.append(p)
                continue
            if indices[base] == set(range(n)):
                if base not in emitted:
                    result.append(base)
                    emitted.add(base)
                continue
        result.append(p)
    return result


def _covers(symbols: Iterable, atom: Any) -> bool:
    """True if ``atom`` is one of ``symbols`` or a component of an array among them."""
    symbols = set(symbols)
    if atom in symbols:
        return True
    return isinstance(atom, sp.Indexed) and atom.base in symbols


def _sort_dependencies(dependencies: Sequence[Equation]) -> List[Equation]:
    """
    Order parameter dependencies so every definition follows what it uses.

    Raises:
        ConfigurationError: Duplicate or cyclic definitions
    """
    defined_by = {}
    for eq in dependencies:
        if eq.lhs in defined_by:
            raise ConfigurationError(f"Parameter {eq.lhs} is defined by more than one dependency")
        defined_by[eq.lhs] = eq

    ordered: List[Equation] = []
    done = set()
    remaining = list(dependencies)
    while remaining:
        progressed = False
        for eq in list(remaining):
            needs = {s for s in collect_symbols([eq.rhs]) if s in defined_by and s not in done}
            if not needs:
                ordered.append(eq)
                done.add(eq.lhs)
                remaining.remove(eq)
                progressed = True
        if not progressed:
            names = ", ".join(str(eq.lhs) for eq in remaining)
            raise ConfigurationError(f"Cyclic parameter dependencies among: {names}")
    return ordered


def _as_mapping(values: Any) -> Dict:
    """Mapping or sequence of (key, value) pairs as a dict."""
    return {} if values is None else dict(values)


# ============================================================================
# NonlinearSystem
# ============================================================================


class NonlinearSystem:
    """
    A system of nonlinear algebraic equations ``0 = F(u, p)``.

    Parameters
    ----------
    equations : Equation or sequence of equation-likes
        Equations; scalar ones are canonicalised to ``0 ~ rhs - lhs``
    unknowns, parameters : sequence, optional
        Ordered unknowns and free parameters. When both are None they are
        inferred from the equations in first-appearance order
    name : str
        Required system name
    observed : sequence of Equation
        Derived quantities ``w = g(u, p)``
    defaults : mapping, optional
        Fallback values keyed by symbol or name; values may be symbolic
    default_u0, default_p : mapping, optional
        Deprecated, merged into ``defaults``
    subsystems : sequence of NonlinearSystem
        Named subsystems (names must be unique)
    parameter_dependencies : sequence of Equation
        Dependent parameters ``p2 = h(p1)``
    substitutions : sequence of Equation
        Unknowns eliminated upstream ``s = e(u, p)``
    description : str
    metadata : dict, optional
    continuous_events, discrete_events : optional
        Not supported; must be empty
    tag_sequence : TagSequence, optional
        Source of the structural tag (default: process-wide sequence)
    validate : bool
        Run SystemValidator after construction

    Raises
    ------
    ConfigurationError
        Missing name, duplicate subsystem names, events, invalid symbols
    """

    def __init__(
        self,
        equations,
        unknowns: Optional[Sequence] = None,
        parameters: Optional[Sequence] = None,
        *,
        name: Optional[str] = None,
        observed: Sequence[EquationLike] = (),
        defaults: Optional[ValueMap] = None,
        default_u0: Optional[ValueMap] = None,
        default_p: Optional[ValueMap] = None,
        subsystems: Sequence["NonlinearSystem"] = (),
        parameter_dependencies: Sequence[EquationLike] = (),
        substitutions: Sequence[EquationLike] = (),
        description: str = "",
        metadata: Optional[Dict] = None,
        continuous_events: Optional[Sequence] = None,
        discrete_events: Optional[Sequence] = None,
        tag_sequence: Optional[TagSequence] = None,
        validate: bool = True,
    ):
        if not name:
            raise ConfigurationError(
                "A `name` keyword argument is required to construct a NonlinearSystem"
            )
        if continuous_events:
            raise ConfigurationError(
                f"NonlinearSystem '{name}' cannot have events; got continuous_events={continuous_events!r}"
            )
        if discrete_events:
            raise ConfigurationError(
                f"NonlinearSystem '{name}' cannot have events; got discrete_events={discrete_events!r}"
            )

        self._name = name
        self._description = description
        self._metadata = dict(metadata) if metadata else {}

        self._equations: Tuple[Equation, ...] = tuple(
            eq.canonicalize() for eq in as_equations(equations)
        )
        self._observed: Tuple[Equation, ...] = tuple(as_equation(eq) for eq in observed)
        self._substitutions: Tuple[Equation, ...] = tuple(as_equation(eq) for eq in substitutions)
        self._parameter_dependencies: Tuple[Equation, ...] = tuple(
            _sort_dependencies([as_equation(eq) for eq in parameter_dependencies])
        )

        subsystems = tuple(subsystems)
        names = [sub.name for sub in subsystems]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Subsystem names must be unique in '{name}', duplicates: {', '.join(duplicates)}"
            )
        self._subsystems = subsystems

        self._unknowns, self._parameters = self._resolve_symbols(unknowns, parameters)
        self._residuals = sp.ImmutableMatrix(
            [r for eq in self._equations for r in eq.residual()]
        )

        if default_u0 is not None or default_p is not None:
            warnings.warn(
                "`default_u0` and `default_p` are deprecated. Use `defaults` instead.",
                DeprecationWarning,
                stacklevel=2,
            )
        merged = _as_mapping(default_u0)
        merged.update(_as_mapping(default_p))
        merged.update(_as_mapping(defaults))
        self._defaults = self._resolve_defaults(merged)

        sequence = tag_sequence if tag_sequence is not None else get_tag_sequence()
        self._tag = sequence.next()
        self.derivative_cache: DerivativeCache = DerivativeCache()
        self._complete = False

        self.code_generator = CodeGenerator(self)
        self.derivative_engine = self.code_generator.engine

        if validate:
            SystemValidator(self).validate(raise_on_error=True)

    # ========================================================================
    # Symbol resolution
    # ========================================================================

    def _resolve_symbols(self, unknowns, parameters) -> Tuple[Tuple[Any, ...], Tuple[Any, ...]]:
        dependent = {eq.lhs for eq in self._parameter_dependencies}
        derived = {eq.lhs for eq in self._observed} | {eq.lhs for eq in self._substitutions}

        exprs: List[Any] = []
        for eq in self._equations:
            exprs.extend(eq.residual())
        exprs.extend(eq.rhs for eq in self._parameter_dependencies)
        exprs.extend(eq.rhs for eq in self._observed)
        exprs.extend(eq.rhs for eq in self._substitutions)
        atoms = [a for a in collect_symbols(exprs) if a not in dependent and a not in derived]

        if parameters is None:
            found = [a for a in atoms if is_parameter(a)]
            if unknowns is not None:
                found = [a for a in found if not _covers(unknowns, a)]
            params = _collapse_arrays(found)
        else:
            params = [p for p in parameters if p not in dependent]

        if unknowns is None:
            unknown_list = [a for a in atoms if not is_parameter(a) and not _covers(params, a)]
        else:
            unknown_list = list(unknowns)

        return tuple(unknown_list), tuple(params)

    def _resolve_defaults(self, merged: Mapping) -> Dict[Any, Any]:
        resolved = {}
        for key, value in merged.items():
            if value is None:
                continue
            if isinstance(key, str):
                try:
                    key = self.lookup(key)
                except UnresolvedSymbolError as e:
                    raise ConfigurationError(
                        f"Default given for '{e.symbols[0]}', which is not a symbol of system '{self.name}'"
                    ) from e
            resolved[key] = value
        return resolved

    def _named_symbols(self) -> Dict[str, Any]:
        table: Dict[str, Any] = {}
        groups = (
            self._unknowns,
            self._parameters,
            [eq.lhs for eq in self._parameter_dependencies],
            [eq.lhs for eq in self._observed],
            [eq.lhs for eq in self._substitutions],
        )
        for group in groups:
            for sym in group:
                table.setdefault(symbol_name(sym), sym)
                if is_array_parameter(sym):
                    for i in range(array_length(sym)):
                        table.setdefault(str(sym[i]), sym[i])
        return table

    def lookup(self, name: SymbolLike) -> Any:
        """
        Symbol by name: unknowns, parameters, dependent parameters, observed.

        Raises
        ------
        UnresolvedSymbolError
            If no symbol has that name
        """
        if not isinstance(name, str):
            if self.has_symbol(name):
                return name
            raise UnresolvedSymbolError([name], context=f"system '{self._name}'")
        table = self._named_symbols()
        if name not in table:
            raise UnresolvedSymbolError([name], context=f"system '{self._name}'")
        return table[name]

    def has_symbol(self, sym: Any) -> bool:
        """True if ``sym`` (symbol or name) belongs to this system."""
        if isinstance(sym, str):
            return sym in self._named_symbols()
        known = set(self._unknowns) | set(self._parameters)
        known |= {eq.lhs for eq in self._parameter_dependencies}
        known |= {eq.lhs for eq in self._observed}
        known |= {eq.lhs for eq in self._substitutions}
        return _covers(known, sym)

    # ========================================================================
    # Accessors
    # ========================================================================

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def metadata(self) -> Dict:
        return self._metadata

    @property
    def equations(self) -> Tuple[Equation, ...]:
        """Canonicalised equations."""
        return self._equations

    @property
    def residuals(self) -> sp.ImmutableMatrix:
        """Column of residual entries (array equations flattened row-major)."""
        return self._residuals

    @property
    def unknowns(self) -> Tuple[Any, ...]:
        return self._unknowns

    @property
    def parameters(self) -> Tuple[Any, ...]:
        """Free parameters (dependent parameters excluded)."""
        return self._parameters

    @property
    def observed(self) -> Tuple[Equation, ...]:
        return self._observed

    @property
    def defaults(self) -> DefaultsDict:
        return self._defaults

    @property
    def parameter_dependencies(self) -> Tuple[Equation, ...]:
        """Dependent parameter definitions in evaluation order."""
        return self._parameter_dependencies

    @property
    def substitutions(self) -> Tuple[Equation, ...]:
        return self._substitutions

    @property
    def subsystems(self) -> Tuple["NonlinearSystem", ...]:
        return self._subsystems

    @property
    def tag(self) -> int:
        return self._tag

    @property
    def n_residuals(self) -> int:
        return self._residuals.rows

    @property
    def n_unknowns(self) -> int:
        return len(self._unknowns)

    @property
    def n_parameters(self) -> int:
        return len(self._parameters)

    @property
    def is_least_squares(self) -> bool:
        """True when residual and unknown counts differ."""
        return self.n_residuals != self.n_unknowns

    # ========================================================================
    # Completion
    # ========================================================================

    @property
    def is_complete(self) -> bool:
        return self._complete

    def mark_complete(self) -> "NonlinearSystem":
        """Mark the system complete (one way; repeated calls are no-ops)."""
        self._complete = True
        return self

    def flatten(self) -> "NonlinearSystem":
        """
        System without subsystems.

        Returns ``self`` when there are no subsystems, otherwise a new draft
        system with the same definition.
        """
        if not self._subsystems:
            return self
        return NonlinearSystem(
            self._equations,
            self._unknowns,
            self._parameters,
            name=self._name,
            observed=self._observed,
            defaults=self._defaults,
            parameter_dependencies=self._parameter_dependencies,
            substitutions=self._substitutions,
            description=self._description,
            metadata=self._metadata,
        )

    # ========================================================================
    # Derivatives and code generation
    # ========================================================================

    def calculate_jacobian(self, sparse: bool = False, simplify: bool = False):
        """Symbolic Jacobian dF/du (cached per (sparse, simplify))."""
        return self.derivative_engine.calculate_jacobian(sparse=sparse, simplify=simplify)

    def calculate_hessian(self, sparse: bool = False, simplify: bool = False):
        """Symbolic Hessians, one matrix per residual."""
        return self.derivative_engine.calculate_hessian(sparse=sparse, simplify=simplify)

    def jacobian_sparsity(self):
        return self.derivative_engine.jacobian_sparsity()

    def hessian_sparsity(self):
        return self.derivative_engine.hessian_sparsity()

    def generate_function(self, dvs=None, ps=None, **kwargs):
        return self.code_generator.generate_function(dvs, ps, **kwargs)

    def generate_jacobian(self, dvs=None, ps=None, **kwargs):
        return self.code_generator.generate_jacobian(dvs, ps, **kwargs)

    def generate_hessian(self, dvs=None, ps=None, **kwargs):
        return self.code_generator.generate_hessian(dvs, ps, **kwargs)

    # ========================================================================
    # Configuration and display
    # ========================================================================

    def get_config_dict(self) -> Dict:
        """
        Get system configuration as a JSON-serialisable dictionary.

        Returns
        -------
        Dict
            Name, description, equations, symbols, defaults and counts.
            Symbolic values are stored as strings.

        Examples
        --------
        >>> config = ns.get_config_dict()
        >>> config['unknowns']
        ['x', 'y', 'z']
        """

        def _value(v):
            if isinstance(v, bool):
                return v
            if isinstance(v, (int, float)):
                return v
            try:
                return float(v)
            except (TypeError, ValueError):
                return str(v)

        return {
            "class_name": self.__class__.__name__,
            "name": self._name,
            "description": self._description,
            "tag": self._tag,
            "complete": self._complete,
            "equations": [str(eq) for eq in self._equations],
            "unknowns": [symbol_name(u) for u in self._unknowns],
            "parameters": [symbol_name(p) for p in self._parameters],
            "observed": [str(eq) for eq in self._observed],
            "parameter_dependencies": [str(eq) for eq in self._parameter_dependencies],
            "substitutions": [str(eq) for eq in self._substitutions],
            "defaults": {symbol_name(k): _value(v) for k, v in self._defaults.items()},
            "subsystems": [sub.name for sub in self._subsystems],
            "n_residuals": self.n_residuals,
            "n_unknowns": self.n_unknowns,
            "n_parameters": self.n_parameters,
        }

    def save_config(self, filename: str):
        """
        Save system configuration to a JSON file.

        Parameters
        ----------
        filename : str
            Path to output file (will be created/overwritten)
        """
        config = self.get_config_dict()
        with open(filename, "w") as f:
            json.dump(config, f, indent=2)

    def print_equations(self, simplify: bool = False):
        """
        Print the equations in human-readable form.

        Parameters
        ----------
        simplify : bool
            If True, simplify residuals before printing
        """
        print("=" * 70)
        print(f"{self.__class__.__name__}: {self._name}")
        print("=" * 70)
        print(f"Unknowns: {list(self._unknowns)}")
        print(f"Parameters: {list(self._parameters)}")
        print(f"Dimensions: n_residuals={self.n_residuals}, n_unknowns={self.n_unknowns}")

        print("\nEquations: 0 = F(u, p)")
        for residual in self._residuals:
            expr = sp.simplify(residual) if simplify else residual
            print(f"  0 = {expr}")

        if self._observed:
            print("\nObserved:")
            for eq in self._observed:
                print(f"  {eq.lhs} = {eq.rhs}")

        if self._parameter_dependencies:
            print("\nParameter dependencies:")
            for eq in self._parameter_dependencies:
                print(f"  {eq.lhs} = {eq.rhs}")

        print("=" * 70)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(name='{self._name}', "
            f"n_residuals={self.n_residuals}, n_unknowns={self.n_unknowns}, "
            f"n_parameters={self.n_parameters}, complete={self._complete})"
        )

    def __str__(self) -> str:
        state = "complete" if self._complete else "draft"
        return f"{self.__class__.__name__} '{self._name}' ({self.n_residuals} equations, {state})"


def complete(system: NonlinearSystem) -> NonlinearSystem:
    """
    Mark ``system`` complete and return it.

    Example:
        >>> prob = build_nonlinear_problem(complete(ns), u0map, parammap)
    """
    return system.mark_complete()
