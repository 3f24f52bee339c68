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
Nonlinear Systems
=================

NonlinearSystem plus everything that turns a complete system into
something a solver can run:

- problem_builder: NonlinearFunction, NonlinearProblem,
  NonlinearLeastSquaresProblem and their source-text (Expr) variants
- solvers: scipy.optimize front end
- homotopy: extension point for homotopy continuation backends
"""

from .homotopy import (
    HomotopyBackend,
    HomotopyContinuationProblem,
    UnavailableHomotopyBackend,
    build_homotopy_continuation_problem,
)
from .nonlinear_system import NonlinearSystem, complete
from .problem_builder import (
    NonlinearFunction,
    NonlinearFunctionExpr,
    NonlinearLeastSquaresProblem,
    NonlinearProblem,
    NonlinearProblemExpr,
    build_least_squares_problem,
    build_least_squares_problem_expr,
    build_nonlinear_function,
    build_nonlinear_function_expr,
    build_nonlinear_problem,
    build_nonlinear_problem_expr,
    calculate_resid_prototype,
)
from .solvers import solve

__all__ = [
    "NonlinearSystem",
    "complete",
    # Functions
    "NonlinearFunction",
    "NonlinearFunctionExpr",
    "build_nonlinear_function",
    "build_nonlinear_function_expr",
    "calculate_resid_prototype",
    # Problems
    "NonlinearProblem",
    "NonlinearLeastSquaresProblem",
    "NonlinearProblemExpr",
    "build_nonlinear_problem",
    "build_least_squares_problem",
    "build_nonlinear_problem_expr",
    "build_least_squares_problem_expr",
    # Solving
    "solve",
    # Homotopy continuation
    "HomotopyBackend",
    "HomotopyContinuationProblem",
    "UnavailableHomotopyBackend",
    "build_homotopy_continuation_problem",
]
