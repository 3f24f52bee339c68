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
Problem and Solve Result Types

TypedDicts returned by the problem layer:
- ProblemInfo: summary of a built problem (sizes, options)
- SolveResult: outcome of solving a problem with scipy.optimize

Usage
-----
>>> from nlsym.types.problems import SolveResult
>>>
>>> result: SolveResult = solve(prob)
>>> if result['success']:
...     u_star = result['u']
"""

from typing import Literal

from typing_extensions import TypedDict

from .core import ResidualVector, UnknownVector

ProblemType = Literal["square", "least_squares"]
"""
Kind of problem: square systems (n_residuals == n_unknowns) are solved by
root finding, all others by nonlinear least squares.
"""


class ProblemInfo(TypedDict):
    """
    Summary of a built problem.

    Fields
    ------
    system : str
        Name of the source system
    problem_type : ProblemType
        'square' or 'least_squares'
    n_residuals : int
        Number of residual entries
    n_unknowns : int
        Number of unknowns
    n_parameters : int
        Number of free parameter slots
    has_jacobian : bool
        Whether a compiled Jacobian is attached
    sparse : bool
        Whether the Jacobian is sparse (a jac_prototype is attached)
    parameter_groups : list
        Labels of the parameter groups

    Examples
    --------
    >>> info: ProblemInfo = prob.get_info()
    >>> info['problem_type']
    'square'
    """

    system: str
    problem_type: ProblemType
    n_residuals: int
    n_unknowns: int
    n_parameters: int
    has_jacobian: bool
    sparse: bool
    parameter_groups: list


class SolveResult(TypedDict, total=False):
    """
    Nonlinear solve result.

    Compatible with the fields scipy.optimize returns.

    Fields
    ------
    u : UnknownVector
        Solution (n_unknowns,)
    success : bool
        Whether the solver reported convergence
    message : str
        Solver status message
    residual : ResidualVector
        Residuals at the solution
    residual_norm : float
        Euclidean norm of the residuals at the solution
    nfev : int
        Number of residual evaluations
    method : str
        scipy.optimize method used

    Examples
    --------
    >>> result: SolveResult = solve(prob)
    >>> result['residual_norm'] < 1e-8
    True
    """

    u: UnknownVector
    success: bool
    message: str
    residual: ResidualVector
    residual_norm: float
    nfev: int
    method: str
