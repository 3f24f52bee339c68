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
Unit tests for the SciPy solve adapter

Tests cover:
1. Root finding for square problems (with and without Jacobians)
2. Least squares for non-square problems
3. Option forwarding
4. Result dictionary contents
"""

import numpy as np
import pytest

from nlsym.systems.base.equation import Equation, parameters, variables
from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem, complete
from nlsym.systems.nonlinear.problem_builder import build_least_squares_problem, build_nonlinear_problem
from nlsym.systems.nonlinear.solvers import solve

x, y, z = variables("x y z")
a, = parameters("a,")
sigma, rho, beta = parameters("sigma rho beta")

PARAMS = {sigma: 10.0, rho: 26.0, beta: 8.0 / 3.0}
EQUILIBRIUM = np.array([np.sqrt(8.0 / 3.0 * 25.0), np.sqrt(8.0 / 3.0 * 25.0), 25.0])


@pytest.fixture
def lorenz():
    eqs = [
        Equation(0, sigma * (y - x)),
        Equation(0, x * (rho - z) - y),
        Equation(0, x * y - beta * z),
    ]
    return complete(NonlinearSystem(eqs, [x, y, z], [sigma, rho, beta], name="lorenz"))


@pytest.fixture
def overdetermined():
    eqs = [Equation(0, x + y - 3), Equation(0, x - y - 1), Equation(0, 2 * x - a)]
    return complete(NonlinearSystem(eqs, [x, y], [a], name="overdetermined"))


U0 = {x: 8.0, y: 8.0, z: 24.0}


# ============================================================================
# Test Class 1: Root Finding
# ============================================================================


class TestRootFinding:
    def test_without_jacobian(self, lorenz):
        result = solve(build_nonlinear_problem(lorenz, U0, PARAMS))
        assert result["success"]
        assert result["method"] == "hybr"
        np.testing.assert_allclose(result["u"], EQUILIBRIUM, rtol=1e-6)

    def test_with_jacobian(self, lorenz):
        result = solve(build_nonlinear_problem(lorenz, U0, PARAMS, jac=True))
        assert result["success"]
        assert result["residual_norm"] < 1e-8
        np.testing.assert_allclose(result["u"], EQUILIBRIUM, rtol=1e-6)

    def test_with_sparse_jacobian(self, lorenz):
        result = solve(build_nonlinear_problem(lorenz, U0, PARAMS, jac=True, sparse=True))
        assert result["success"]
        np.testing.assert_allclose(result["u"], EQUILIBRIUM, rtol=1e-6)

    def test_other_method(self, lorenz):
        result = solve(build_nonlinear_problem(lorenz, U0, PARAMS, jac=True), method="lm")
        assert result["method"] == "lm"
        np.testing.assert_allclose(result["u"], EQUILIBRIUM, rtol=1e-6)

    def test_problem_kwargs_forwarded(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS, xtol=1e-12)
        result = solve(prob)
        assert result["residual_norm"] < 1e-8

    def test_tol_option(self, lorenz):
        result = solve(build_nonlinear_problem(lorenz, U0, PARAMS), tol=1e-12)
        assert result["success"]

    def test_u0_unchanged(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        solve(prob)
        np.testing.assert_array_equal(prob.u0, [8.0, 8.0, 24.0])


# ============================================================================
# Test Class 2: Least Squares
# ============================================================================


class TestLeastSquares:
    def test_finite_differences(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 4.0})
        result = solve(prob)
        assert result["success"]
        assert result["method"] == "trf"
        np.testing.assert_allclose(result["u"], [2.0, 1.0], atol=1e-8)

    def test_with_jacobian(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 4.0}, jac=True)
        result = solve(prob)
        np.testing.assert_allclose(result["u"], [2.0, 1.0], atol=1e-8)
        assert result["residual_norm"] < 1e-8

    def test_sparse_pattern(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 4.0}, sparse=True)
        result = solve(prob)
        np.testing.assert_allclose(result["u"], [2.0, 1.0], atol=1e-6)

    def test_inconsistent_system(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 5.0}, jac=True)
        result = solve(prob)
        assert result["success"]
        assert result["residual_norm"] > 0.1

    def test_lm_method(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 4.0}, sparse=True)
        result = solve(prob, method="lm")
        np.testing.assert_allclose(result["u"], [2.0, 1.0], atol=1e-6)


# ============================================================================
# Test Class 3: Result Contents
# ============================================================================


class TestResult:
    def test_keys(self, lorenz):
        result = solve(build_nonlinear_problem(lorenz, U0, PARAMS))
        assert set(result) == {"u", "success", "message", "residual", "residual_norm", "nfev", "method"}
        assert isinstance(result["message"], str)
        assert result["nfev"] > 0
        assert result["residual"].shape == (3,)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
