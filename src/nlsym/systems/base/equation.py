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
Equations and Symbol Factories

Thin layer over SymPy that gives the pipeline:
- Equation: an immutable ``lhs = rhs`` pair (scalar or matrix valued)
- variables(): plain SymPy symbols for unknowns
- parameters(): ParameterSymbol instances (a Symbol subclass) so that
  unknowns and parameters can be told apart when a system is built from
  equations alone
- parameter_array(): 1-D IndexedBase parameters whose components k[i]
  appear in expressions

Example:
    >>> x, y, z = variables("x y z")
    >>> sigma, rho, beta = parameters("sigma rho beta")
    >>> eqs = [
    ...     Equation(0, sigma * (y - x)),
    ...     Equation(0, x * (rho - z) - y),
    ...     Equation(0, x * y - beta * z),
    ... ]
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple, Union

import sympy as sp


class ParameterSymbol(sp.Symbol):
    """SymPy symbol that marks a parameter (as opposed to an unknown)."""

    is_parameter = True


def variables(names: str, **assumptions) -> Union[sp.Symbol, Tuple[sp.Symbol, ...]]:
    """
    Create unknown symbols.

    Same calling convention as ``sympy.symbols``.

    Example:
        >>> x, y = variables("x y")
    """
    return sp.symbols(names, **assumptions)


def parameters(names: str, **assumptions) -> Union[ParameterSymbol, Tuple[ParameterSymbol, ...]]:
    """
    Create parameter symbols.

    Integer parameters (``integer=True``) end up in the discrete slot of a
    structured parameter container.

    Example:
        >>> sigma, rho = parameters("sigma rho")
        >>> n = parameters("n", integer=True)
    """
    return sp.symbols(names, cls=ParameterSymbol, **assumptions)


def parameter_array(name: str, length: int, **assumptions) -> sp.IndexedBase:
    """
    Create a 1-D array parameter.

    Components ``k[0] .. k[length-1]`` are used inside expressions. When all
    of them appear in a system, the system stores the whole array as ONE
    parameter whose value is an array of shape (length,).

    Example:
        >>> k = parameter_array("k", 3)
        >>> expr = k[0] * x + k[1] * y + k[2]
    """
    label = ParameterSymbol(name, **assumptions)
    return sp.IndexedBase(label, shape=(length,))


def is_parameter(sym: Any) -> bool:
    """True for ParameterSymbols, parameter arrays and their components."""
    if isinstance(sym, ParameterSymbol):
        return True
    if isinstance(sym, sp.IndexedBase):
        return isinstance(sym.label, ParameterSymbol)
    if isinstance(sym, sp.Indexed):
        return is_parameter(sym.base)
    return False


def is_array_parameter(sym: Any) -> bool:
    """True for a whole (collapsed) array parameter."""
    return isinstance(sym, sp.IndexedBase) and is_parameter(sym)


def array_length(base: sp.IndexedBase) -> int:
    """Number of components of a 1-D array parameter."""
    if base.shape is None or len(base.shape) != 1:
        raise ValueError(f"Array parameter {base} must be one-dimensional with a known shape")
    return int(base.shape[0])


def symbol_name(sym: Any) -> str:
    """Name used for symbol-by-name lookup."""
    if isinstance(sym, sp.IndexedBase):
        return str(sym.label)
    return str(sym)


@dataclass(frozen=True)
class Equation:
    """
    An equation ``lhs = rhs``.

    Either side may be a scalar SymPy expression or, for array equations,
    a SymPy matrix of matching shape.

    Attributes:
        lhs: Left-hand side
        rhs: Right-hand side
    """

    lhs: Any
    rhs: Any

    def __post_init__(self):
        object.__setattr__(self, "lhs", _sympify(self.lhs))
        object.__setattr__(self, "rhs", _sympify(self.rhs))
        if isinstance(self.rhs, sp.MatrixBase) and not isinstance(self.lhs, sp.MatrixBase):
            if self.lhs != 0:
                raise ValueError(f"Cannot equate scalar {self.lhs} with a matrix")
            object.__setattr__(self, "lhs", sp.ImmutableMatrix(sp.zeros(*self.rhs.shape)))

    @property
    def is_array(self) -> bool:
        """True when the equation is matrix valued."""
        return isinstance(self.lhs, sp.MatrixBase)

    def canonicalize(self) -> "Equation":
        """
        Return the residual form of this equation.

        Scalar equations are rewritten as ``0 = rhs - lhs``. Array equations
        are returned untouched.
        """
        if self.is_array:
            return self
        if self.lhs == 0:
            return self
        return Equation(sp.Integer(0), self.rhs - self.lhs)

    def residual(self) -> List[sp.Expr]:
        """Residual entries (row-major for array equations)."""
        if self.is_array:
            diff = sp.Matrix(self.rhs) - sp.Matrix(self.lhs)
            return list(diff)
        return [self.rhs - self.lhs]

    def free_symbols(self) -> set:
        lhs_free = self.lhs.free_symbols
        return lhs_free | self.rhs.free_symbols

    def __str__(self) -> str:
        return f"{self.lhs} ~ {self.rhs}"


EquationLike = Union[Equation, sp.Eq, Tuple[Any, Any], sp.Expr]


def _sympify(value: Any) -> Any:
    if isinstance(value, sp.MatrixBase):
        return sp.ImmutableMatrix(value)
    if isinstance(value, (list, tuple)):
        return sp.ImmutableMatrix(value)
    return sp.sympify(value)


def as_equation(eq: EquationLike) -> Equation:
    """
    Convert supported equation inputs into an Equation.

    Accepts Equation, sympy.Eq, a (lhs, rhs) tuple, or a bare expression
    ``e`` meaning ``0 = e``.
    """
    if isinstance(eq, Equation):
        return eq
    if isinstance(eq, sp.Equality):
        return Equation(eq.lhs, eq.rhs)
    if isinstance(eq, tuple) and len(eq) == 2:
        return Equation(eq[0], eq[1])
    return Equation(sp.Integer(0), eq)


def as_equations(eqs: Union[EquationLike, Iterable[EquationLike]]) -> List[Equation]:
    """Accept a single equation or a sequence of them."""
    if isinstance(eqs, (Equation, sp.Equality, sp.Basic)):
        return [as_equation(eqs)]
    if isinstance(eqs, tuple) and len(eqs) == 2 and not _is_equation_like(eqs[0]):
        return [as_equation(eqs)]
    return [as_equation(eq) for eq in eqs]


def _is_equation_like(obj: Any) -> bool:
    return isinstance(obj, (Equation, sp.Equality)) or (isinstance(obj, tuple) and len(obj) == 2)


def collect_symbols(exprs: Sequence[Any]) -> List[Any]:
    """
    Collect the atoms that may be unknowns or parameters, in first-appearance order.

    Returns plain Symbols and Indexed components. IndexedBase labels and index
    symbols of Indexed atoms are not reported on their own.
    """
    seen = set()
    found: List[Any] = []
    for expr in exprs:
        items = list(expr) if isinstance(expr, sp.MatrixBase) else [expr]
        for item in items:
            _collect(sp.sympify(item), seen, found)
    return found


def _collect(expr: sp.Basic, seen: set, found: List[Any]) -> None:
    if isinstance(expr, sp.Indexed):
        if expr not in seen:
            seen.add(expr)
            found.append(expr)
        return
    if isinstance(expr, sp.Symbol):
        if expr not in seen:
            seen.add(expr)
            found.append(expr)
        return
    for arg in expr.args:
        _collect(arg, seen, found)
