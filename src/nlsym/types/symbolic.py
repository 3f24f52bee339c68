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
Symbolic Types

Defines types for symbolic mathematics using SymPy:
- Symbolic expressions and matrices
- Symbol containers (unknowns, parameters)
- Value maps (defaults, initial guesses, parameter values)
- Substitution dictionaries

These are TYPE DEFINITIONS only - no implementation logic.

Usage
-----
>>> from nlsym.types.symbolic import SymbolicMatrix, ValueMap
>>> import sympy as sp
>>>
>>> x, y = sp.symbols('x y')
>>> F: SymbolicMatrix = sp.Matrix([x**2 - y, x + y - 2])
>>> u0: ValueMap = {x: 1.0, 'y': 0.5}
"""

from typing import Any, Dict, List, Mapping, Sequence, Union

import sympy as sp

# ============================================================================
# Basic Symbolic Types
# ============================================================================

SymbolicExpression = sp.Expr
"""
Single symbolic expression.

Examples
--------
>>> x, p = sp.symbols('x p')
>>> expr: SymbolicExpression = p * x**2 - 1
>>> sp.diff(expr, x)  # 2*p*x
"""

SymbolicMatrix = sp.MatrixBase
"""
Matrix of symbolic expressions (dense or sparse, mutable or immutable).

Jacobians computed by DerivativeEngine are ImmutableMatrix (dense) or
ImmutableSparseMatrix (sparse) so that cached results cannot be mutated.
"""

SymbolicSymbol = Union[sp.Symbol, sp.IndexedBase, sp.Indexed]
"""
A symbol that can act as an unknown or a parameter.

Plain symbols and ParameterSymbols are scalar slots. An IndexedBase is a
whole array parameter, an Indexed one of its components.
"""

SymbolLike = Union[SymbolicSymbol, str]
"""
Symbol or symbol name. Names are resolved against the system.
"""

SymbolicExpressionInput = Union[sp.Expr, List[sp.Expr], sp.MatrixBase]
"""
Flexible symbolic expression input for code generation.

- Single expression (sp.Expr)
- List of expressions
- Matrix of expressions (dense or sparse)
"""

# ============================================================================
# Maps
# ============================================================================

ValueMap = Mapping[SymbolLike, Any]
"""
Mapping from unknown/parameter (or name) to a value.

Values are numbers, numpy arrays (array parameters) or symbolic
expressions of other symbols in the same resolution context.

Examples
--------
>>> u0: ValueMap = {x: 1.0, y: 2.0}
>>> ps: ValueMap = {'sigma': 10.0, rho: 28.0}
"""

DefaultsDict = Dict[Any, Any]
"""
Default values stored by a system, keyed by symbol. Never holds None.
"""

SubstitutionDict = Dict[sp.Basic, sp.Basic]
"""
Symbol → expression replacements (observed definitions, eliminated unknowns).
"""

SymbolSequence = Sequence[SymbolicSymbol]
