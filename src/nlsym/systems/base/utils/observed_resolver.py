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
Observed Resolver

Replaces observed (derived) symbols by their defining expressions until
nothing changes, and builds numeric accessors for observed quantities.

Observed definitions may reference each other in any order:

    >>> w, v = variables("w v")
    >>> sys = NonlinearSystem([x - w], [x], [], name="s",
    ...                       observed=[Equation(w, 2 * v), Equation(v, x + 1)])
    >>> ObservedResolver(sys).substitute(x - w)
    -x - 2

Cyclic definitions never reach a fixed point and raise FixpointLimitError
instead of looping.
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Sequence

import sympy as sp

from nlsym.systems.base.equation import Equation
from nlsym.systems.base.errors import FixpointLimitError, UnresolvedSymbolError
from nlsym.systems.base.utils.codegen_utils import build_function
from nlsym.types.symbolic import SubstitutionDict

if TYPE_CHECKING:
    from nlsym.systems.base.utils.parameter_canonicalizer import ParameterLayout
    from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem

logger = logging.getLogger(__name__)


def fixpoint_substitute(expr: Any, rules: SubstitutionDict, max_iterations: Optional[int] = None) -> Any:
    """
    Apply ``rules`` with xreplace until the expression stops changing.

    Args:
        expr: SymPy expression or matrix (lists are handled element-wise)
        rules: {symbol: replacement}
        max_iterations: Cap on substitution passes, default ``len(rules) + 1``

    Returns:
        Expression in which no rule applies any more

    Raises:
        FixpointLimitError: If the cap is reached without convergence
    """
    if isinstance(expr, (list, tuple)):
        return type(expr)(fixpoint_substitute(e, rules, max_iterations) for e in expr)
    rules = dict(rules)
    if not rules:
        return expr

    cap = len(rules) + 1 if max_iterations is None else max_iterations
    current = sp.sympify(expr)
    for _ in range(cap):
        updated = current.xreplace(rules)
        if updated == current:
            return current
        current = updated
    raise FixpointLimitError(cap, remaining=[s for s in rules if current.has(s)])


class ObservedResolver:
    """
    Substitutes observed definitions (and dependent parameters) of a system.

    Attributes:
        system: Owning system
        definitions: {observed symbol: defining expression}
    """

    def __init__(self, system: "NonlinearSystem"):
        self.system = system
        self.definitions: Dict[Any, Any] = {eq.lhs: eq.rhs for eq in system.observed}
        self.parameter_definitions: Dict[Any, Any] = {
            eq.lhs: eq.rhs for eq in system.parameter_dependencies
        }
        self.eliminated: Dict[Any, Any] = {eq.lhs: eq.rhs for eq in system.substitutions}

    def substitute(self, expr: Any, eliminated: bool = False) -> Any:
        """
        Replace observed symbols in ``expr`` until none remain.

        With ``eliminated=True`` eliminated unknowns are replaced as well, which
        is what differentiation with respect to the remaining unknowns needs.
        """
        if not eliminated:
            return fixpoint_substitute(expr, self.definitions)
        rules = dict(self.definitions)
        rules.update(self.eliminated)
        return fixpoint_substitute(expr, rules)

    def resolve(self, expr: Any) -> Any:
        """
        Replace observed symbols AND dependent parameters.

        The result references only unknowns, eliminated unknowns and free
        parameters, which is what generated code can bind.
        """
        rules = dict(self.definitions)
        rules.update(self.parameter_definitions)
        return fixpoint_substitute(expr, rules)

    def resolved_substitutions(self) -> list:
        """Eliminated-unknown bindings with their right-hand sides resolved."""
        return [Equation(eq.lhs, self.resolve(eq.rhs)) for eq in self.system.substitutions]

    def __repr__(self) -> str:
        return f"ObservedResolver(system='{self.system.name}', n_observed={len(self.definitions)})"


class ObservedFunctionCache:
    """
    Lazily compiled numeric evaluators for observed quantities.

    ``cache(sym)`` returns a function ``(u, p) -> value``; the first request
    for a symbol compiles it, later requests return the same function.

    Example:
        >>> obs = ObservedFunctionCache(sys, sys.unknowns, layout)
        >>> energy = obs(E)
        >>> energy(u_solution, p)
        12.5
        >>> obs(E) is energy
        True
    """

    def __init__(self, system: "NonlinearSystem", dvs: Sequence, layout: "ParameterLayout"):
        self.system = system
        self.dvs = list(dvs)
        self.layout = layout
        self.resolver = ObservedResolver(system)
        self._functions: Dict[Any, Callable] = {}

    def _target(self, sym: Any) -> Any:
        if isinstance(sym, str):
            return self.system.lookup(sym)
        if isinstance(sym, (sp.Symbol, sp.Indexed)) and not self.system.has_symbol(sym):
            raise UnresolvedSymbolError([sym], context=f"system '{self.system.name}'")
        return sym

    def __call__(self, sym: Any) -> Callable:
        key = tuple(sym) if isinstance(sym, list) else sym
        function = self._functions.get(key)
        if function is not None:
            return function

        if isinstance(sym, (list, tuple)):
            expr = [self.resolver.resolve(self._target(s)) for s in sym]
        else:
            expr = self.resolver.resolve(self._target(sym))

        compiled = build_function(
            expr,
            self.dvs,
            self.layout,
            substitutions=self.resolver.resolved_substitutions(),
            function_name="observed",
        )
        logger.debug("compiled observed evaluator for %s", sym)
        self._functions[key] = compiled.oop
        return compiled.oop

    def __contains__(self, sym: Any) -> bool:
        key = tuple(sym) if isinstance(sym, list) else sym
        return key in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def clear(self) -> None:
        self._functions.clear()
