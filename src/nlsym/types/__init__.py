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
Type Definitions
================

Central import point for the type aliases used across nlsym.

Usage
-----
>>> from nlsym.types import (
...     UnknownVector,
...     ResidualVector,
...     JacobianMatrix,
...     ValueMap,
...     SolveResult,
... )

Module Organization
-------------------
- core: Arrays, vectors, matrices and generated-function signatures
- symbolic: SymPy expression, symbol and value-map types
- config: Compilation options and parameter slot labels
- problems: Problem metadata and solver results
"""

# ============================================================================
# Core Types
# ============================================================================

from .core import (
    AllocatingFunction,
    ArrayLike,
    InPlaceFunction,
    JacobianMatrix,
    ResidualPrototype,
    ResidualVector,
    SparseMatrix,
    UnknownVector,
)

# ============================================================================
# Symbolic Types
# ============================================================================

from .symbolic import (
    DefaultsDict,
    SubstitutionDict,
    SymbolicExpression,
    SymbolicExpressionInput,
    SymbolicMatrix,
    SymbolicSymbol,
    SymbolLike,
    SymbolSequence,
    ValueMap,
)

# ============================================================================
# Configuration and Problem Types
# ============================================================================

from .config import (
    DEFAULT_COMPILATION_OPTIONS,
    DISCRETE,
    TUNABLE,
    CompilationOptions,
    DerivativeKey,
    ParameterGroupLabel,
)
from .problems import ProblemInfo, ProblemType, SolveResult

__all__ = [
    # Core
    "AllocatingFunction",
    "ArrayLike",
    "InPlaceFunction",
    "JacobianMatrix",
    "ResidualPrototype",
    "ResidualVector",
    "SparseMatrix",
    "UnknownVector",
    # Symbolic
    "DefaultsDict",
    "SubstitutionDict",
    "SymbolicExpression",
    "SymbolicExpressionInput",
    "SymbolicMatrix",
    "SymbolicSymbol",
    "SymbolLike",
    "SymbolSequence",
    "ValueMap",
    # Config
    "DEFAULT_COMPILATION_OPTIONS",
    "DISCRETE",
    "TUNABLE",
    "CompilationOptions",
    "DerivativeKey",
    "ParameterGroupLabel",
    # Problems
    "ProblemInfo",
    "ProblemType",
    "SolveResult",
]
