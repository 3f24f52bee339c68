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
SciPy Solve Adapter

Solves built problems with scipy.optimize:

- NonlinearProblem             -> scipy.optimize.root (default 'hybr')
- NonlinearLeastSquaresProblem -> scipy.optimize.least_squares (default 'trf')

Compiled Jacobians are passed when the problem has one. For least squares
without a compiled Jacobian, a sparse jac_prototype is passed as
``jac_sparsity`` so finite differences exploit the structure.

Example:
    >>> prob = build_nonlinear_problem(complete(ns), u0map, parammap, jac=True)
    >>> result = solve(prob)
    >>> result['success'], result['residual_norm'] < 1e-10
    (True, True)
"""

import logging
from typing import Optional

import numpy as np
import scipy.optimize
import scipy.sparse

from nlsym.systems.nonlinear.problem_builder import NonlinearLeastSquaresProblem, NonlinearProblem
from nlsym.types.core import JacobianMatrix
from nlsym.types.problems import SolveResult

logger = logging.getLogger(__name__)


def _dense(matrix: JacobianMatrix) -> np.ndarray:
    return matrix.toarray() if scipy.sparse.issparse(matrix) else matrix


def solve(problem: NonlinearProblem, method: Optional[str] = None, **options) -> SolveResult:
    """
    Solve a nonlinear (least-squares) problem.

    Args:
        problem: Built problem
        method: scipy.optimize method name (default 'hybr' for root finding,
            'trf' for least squares)
        **options: Solver options; merged over ``problem.kwargs``. ``tol`` is
            passed to root() directly, everything else as its ``options``.
            For least squares all options are keyword arguments.

    Returns:
        SolveResult
    """
    options = {**problem.kwargs, **options}
    p = problem.p
    u0 = np.asarray(problem.u0, dtype=np.result_type(problem.u0, np.float64))
    nf = problem.f

    def fun(u):
        return nf(u, p)

    if isinstance(problem, NonlinearLeastSquaresProblem):
        method = method or "trf"
        if nf.jac is not None:
            options.setdefault("jac", lambda u: nf.jacobian(u, p))
        elif nf.jac_prototype is not None and method != "lm":
            options.setdefault("jac_sparsity", nf.jac_prototype)
        result = scipy.optimize.least_squares(fun, u0, method=method, **options)
    else:
        method = method or "hybr"
        jac = None
        if nf.jac is not None:
            def jac(u):
                return _dense(nf.jacobian(u, p))
        tol = options.pop("tol", None)
        result = scipy.optimize.root(fun, u0, method=method, jac=jac, tol=tol, options=options or None)

    residual = np.asarray(fun(result.x))
    norm = float(np.linalg.norm(residual))
    logger.debug(
        "solved '%s' with %s: success=%s, |F|=%.3e", problem.sys.name, method, result.success, norm
    )
    return {
        "u": result.x,
        "success": bool(result.success),
        "message": str(result.message),
        "residual": residual,
        "residual_norm": norm,
        "nfev": int(result.get("nfev", 0)),
        "method": method,
    }
