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
nlsym: symbolic nonlinear equation systems compiled to NumPy/SciPy
==================================================================

Build a system from SymPy equations, mark it complete, and turn it into
a problem a SciPy solver can run:

>>> from nlsym import (
...     NonlinearSystem, Equation, variables, parameters, complete,
...     build_nonlinear_problem, solve,
... )
>>> x, y, z = variables("x y z")
>>> sigma, rho, beta = parameters("sigma rho beta")
>>> ns = NonlinearSystem(
...     [Equation(0, sigma * (y - x)),
...      Equation(0, x * (rho - z) - y),
...      Equation(0, x * y - beta * z)],
...     [x, y, z], [sigma, rho, beta], name="lorenz")
>>> prob = build_nonlinear_problem(
...     complete(ns), {x: 1.0, y: 0.0, z: 0.0},
...     {sigma: 10.0, rho: 26.0, beta: 8 / 3}, jac=True)
>>> result = solve(prob)

Importing the package installs the process-wide structural tag sequence.
"""

from nlsym.systems.base.equation import (
    Equation,
    ParameterSymbol,
    parameter_array,
    parameters,
    variables,
)
from nlsym.systems.base.errors import (
    ConfigurationError,
    ErrorCode,
    ExtensionUnavailableError,
    FixpointLimitError,
    MissingValueError,
    NonlinearSystemError,
    NotCompletedError,
    UnresolvedSymbolError,
)
from nlsym.systems.base.utils.codegen_utils import build_function
from nlsym.systems.base.utils.parameter_canonicalizer import FlatParams, GroupedParams, ParameterLayout
from nlsym.systems.base.utils.tag_sequence import init_tag_sequence
from nlsym.systems.nonlinear import (
    HomotopyBackend,
    HomotopyContinuationProblem,
    NonlinearFunction,
    NonlinearFunctionExpr,
    NonlinearLeastSquaresProblem,
    NonlinearProblem,
    NonlinearProblemExpr,
    NonlinearSystem,
    build_homotopy_continuation_problem,
    build_least_squares_problem,
    build_least_squares_problem_expr,
    build_nonlinear_function,
    build_nonlinear_function_expr,
    build_nonlinear_problem,
    build_nonlinear_problem_expr,
    calculate_resid_prototype,
    complete,
    solve,
)

__version__ = "0.1.0"
__author__ = "Gil Benezer"

init_tag_sequence()

__all__ = [
    # Equations and symbols
    "Equation",
    "ParameterSymbol",
    "parameter_array",
    "parameters",
    "variables",
    # Systems
    "NonlinearSystem",
    "complete",
    # Functions and problems
    "NonlinearFunction",
    "NonlinearFunctionExpr",
    "NonlinearProblem",
    "NonlinearLeastSquaresProblem",
    "NonlinearProblemExpr",
    "build_function",
    "build_nonlinear_function",
    "build_nonlinear_function_expr",
    "build_nonlinear_problem",
    "build_nonlinear_problem_expr",
    "build_least_squares_problem",
    "build_least_squares_problem_expr",
    "calculate_resid_prototype",
    "solve",
    # Parameters
    "FlatParams",
    "GroupedParams",
    "ParameterLayout",
    # Homotopy continuation
    "HomotopyBackend",
    "HomotopyContinuationProblem",
    "build_homotopy_continuation_problem",
    # Errors
    "ConfigurationError",
    "ErrorCode",
    "ExtensionUnavailableError",
    "FixpointLimitError",
    "MissingValueError",
    "NonlinearSystemError",
    "NotCompletedError",
    "UnresolvedSymbolError",
]
