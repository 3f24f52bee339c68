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
Unit tests for the problem builder

Tests cover:
1. Completion requirement
2. Value maps (symbols, names, ordered values) and defaults
3. Symbolic defaults and parameter dependencies
4. NonlinearFunction (residual, Jacobian, prototypes)
5. Least-squares problems
6. Structured parameters
7. Symbolic indexing (getitem, set_state, set_parameter, observed)
8. Source-text variants
"""

import numpy as np
import pytest
import sympy as sp

from nlsym.systems.base.equation import Equation, parameters, variables
from nlsym.systems.base.errors import (
    FixpointLimitError,
    MissingValueError,
    NotCompletedError,
    UnresolvedSymbolError,
)
from nlsym.systems.base.utils.parameter_canonicalizer import FlatParams, GroupedParams
from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem, complete
from nlsym.systems.nonlinear.problem_builder import (
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

x, y, z = variables("x y z")
a, b = parameters("a b")
sigma, rho, beta = parameters("sigma rho beta")

U0 = {x: 1.0, y: 0.0, z: 0.0}
PARAMS = {sigma: 10.0, rho: 26.0, beta: 8.0 / 3.0}


def lorenz_system(**kwargs):
    eqs = [
        Equation(0, sigma * (y - x)),
        Equation(0, x * (rho - z) - y),
        Equation(0, x * y - beta * z),
    ]
    return NonlinearSystem(eqs, [x, y, z], [sigma, rho, beta], name="lorenz", **kwargs)


@pytest.fixture
def lorenz():
    return complete(lorenz_system())


@pytest.fixture
def overdetermined():
    eqs = [Equation(0, x + y - 3), Equation(0, x - y - 1), Equation(0, 2 * x - a)]
    return complete(NonlinearSystem(eqs, [x, y], [a], name="overdetermined"))


# ============================================================================
# Test Class 1: Completion
# ============================================================================


class TestCompletionRequired:
    @pytest.mark.parametrize(
        "builder",
        [
            build_nonlinear_problem,
            build_least_squares_problem,
            build_nonlinear_problem_expr,
            build_least_squares_problem_expr,
        ],
    )
    def test_draft_rejected(self, builder):
        with pytest.raises(NotCompletedError, match="lorenz"):
            builder(lorenz_system(), U0, PARAMS)

    def test_function_draft_rejected(self):
        with pytest.raises(NotCompletedError):
            build_nonlinear_function(lorenz_system())
        with pytest.raises(NotCompletedError):
            build_nonlinear_function_expr(lorenz_system())

    def test_least_squares_target_named(self):
        with pytest.raises(NotCompletedError) as exc_info:
            build_least_squares_problem(lorenz_system(), U0, PARAMS)
        assert exc_info.value.target == "NonlinearLeastSquaresProblem"


# ============================================================================
# Test Class 2: Value Maps
# ============================================================================


class TestValueMaps:
    def test_residual_at_u0(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        assert isinstance(prob, NonlinearProblem)
        np.testing.assert_allclose(prob.residual(), [-10.0, 26.0, 0.0])

    def test_names_as_keys(self, lorenz):
        prob = build_nonlinear_problem(
            lorenz, {"x": 1.0, "y": 0.0, "z": 0.0}, {"sigma": 10.0, "rho": 26.0, "beta": 8.0 / 3.0}
        )
        np.testing.assert_allclose(prob.residual(), [-10.0, 26.0, 0.0])

    def test_ordered_values(self, lorenz):
        prob = build_nonlinear_problem(lorenz, [1.0, 0.0, 0.0], [10.0, 26.0, 8.0 / 3.0])
        np.testing.assert_allclose(prob.residual(), [-10.0, 26.0, 0.0])

    def test_pairs(self, lorenz):
        prob = build_nonlinear_problem(lorenz, list(U0.items()), list(PARAMS.items()))
        np.testing.assert_allclose(prob.u0, [1.0, 0.0, 0.0])

    def test_wrong_number_of_ordered_values(self, lorenz):
        with pytest.raises(ValueError, match="Expected a mapping or 3 values"):
            build_nonlinear_problem(lorenz, [1.0, 0.0], PARAMS)

    def test_foreign_key(self, lorenz):
        with pytest.raises(UnresolvedSymbolError):
            build_nonlinear_problem(lorenz, {**U0, sp.Symbol("q"): 1.0}, PARAMS)

    def test_defaults_fill_missing(self):
        sys = complete(lorenz_system(defaults={x: 1.0, y: 0.0, z: 0.0, sigma: 10.0}))
        prob = build_nonlinear_problem(sys, None, {rho: 26.0, beta: 8.0 / 3.0})
        np.testing.assert_allclose(prob.residual(), [-10.0, 26.0, 0.0])

    def test_explicit_overrides_default(self):
        sys = complete(lorenz_system(defaults={x: 5.0}))
        prob = build_nonlinear_problem(sys, U0, PARAMS)
        assert prob[x] == 1.0

    def test_missing_values_listed(self, lorenz):
        with pytest.raises(MissingValueError) as exc_info:
            build_nonlinear_problem(lorenz, {x: 1.0}, {sigma: 10.0})
        assert set(exc_info.value.symbols) == {y, z, rho, beta}

    def test_kwargs_stored(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS, xtol=1e-12)
        assert prob.kwargs == {"xtol": 1e-12}


# ============================================================================
# Test Class 3: Symbolic Defaults and Dependencies
# ============================================================================


class TestSymbolicValues:
    def test_symbolic_parameter_default(self):
        sys = complete(
            NonlinearSystem([Equation(0, x - a * b)], [x], [a, b], name="s", defaults={b: 2 * a})
        )
        prob = build_nonlinear_problem(sys, {x: 1.0}, {a: 3.0})
        assert prob[b] == pytest.approx(6.0)
        np.testing.assert_allclose(prob.residual(), [1.0 - 18.0])

    def test_chained_unknown_defaults(self):
        sys = complete(
            NonlinearSystem(
                [Equation(0, x - y), Equation(0, y - a)],
                [x, y],
                [a],
                name="chain",
                defaults={x: y + 1, y: 2.0},
            )
        )
        prob = build_nonlinear_problem(sys, None, {a: 1.0})
        np.testing.assert_allclose(prob.u0, [3.0, 2.0])

    def test_default_from_parameter(self):
        sys = complete(
            NonlinearSystem([Equation(0, x - a)], [x], [a], name="s", defaults={x: a / 2})
        )
        prob = build_nonlinear_problem(sys, None, {a: 4.0})
        assert prob[x] == pytest.approx(2.0)

    def test_cyclic_defaults(self):
        sys = complete(
            NonlinearSystem(
                [Equation(0, x - y), Equation(0, y - 1)], [x, y], [], name="cyc", defaults={x: y, y: x}
            )
        )
        with pytest.raises(FixpointLimitError):
            build_nonlinear_problem(sys)

    def test_unresolvable_default_is_missing(self):
        sys = complete(
            NonlinearSystem([Equation(0, x - a)], [x], [a], name="s", defaults={x: 2 * a})
        )
        with pytest.raises(MissingValueError) as exc_info:
            build_nonlinear_problem(sys)
        assert set(exc_info.value.symbols) == {x, a}

    def test_dependency_overrides_explicit_value(self):
        sys = complete(
            NonlinearSystem(
                [Equation(0, x - b)], [x], [a], name="dep", parameter_dependencies=[Equation(b, 2 * a)]
            )
        )
        prob = build_nonlinear_problem(sys, {x: 1.0}, {a: 3.0, b: 100.0})
        assert prob[b] == pytest.approx(6.0)
        np.testing.assert_allclose(prob.residual(), [-5.0])
        assert b in prob.parameter_values
        assert len(prob.p) == 1


# ============================================================================
# Test Class 4: NonlinearFunction
# ============================================================================


class TestNonlinearFunction:
    def test_build(self, lorenz):
        nf = build_nonlinear_function(lorenz)
        assert isinstance(nf, NonlinearFunction)
        assert nf.jac is None
        assert not nf.sparse
        assert nf.resid_prototype is None
        np.testing.assert_allclose(nf([1.0, 0.0, 0.0], [10.0, 26.0, 8.0 / 3.0]), [-10.0, 26.0, 0.0])

    def test_inplace(self, lorenz):
        nf = build_nonlinear_function(lorenz)
        out = np.zeros(3)
        nf(out, [1.0, 0.0, 0.0], [10.0, 26.0, 8.0 / 3.0])
        np.testing.assert_allclose(out, [-10.0, 26.0, 0.0])

    def test_jacobian(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS, jac=True)
        J = prob.f.jacobian(prob.u0, prob.p)
        expected = [[-10.0, 10.0, 0.0], [26.0, -1.0, -1.0], [0.0, 1.0, -8.0 / 3.0]]
        np.testing.assert_allclose(J, expected)

    def test_jacobian_not_built(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        with pytest.raises(ValueError, match="jac=True"):
            prob.f.jacobian(prob.u0, prob.p)

    def test_sparse_prototype(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS, jac=True, sparse=True)
        proto = prob.f.jac_prototype
        assert prob.f.sparse
        assert proto.format == "csc"
        assert proto.shape == (3, 3)
        assert proto.nnz == 8
        assert not proto.data.any()
        J = prob.f.jacobian(prob.u0, prob.p)
        np.testing.assert_array_equal(J.indices, proto.indices)
        np.testing.assert_array_equal(J.indptr, proto.indptr)

    def test_sparse_prototype_without_jacobian(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS, sparse=True)
        assert prob.f.jac is None
        assert prob.f.jac_prototype is not None

    def test_integer_u0_sparse_in_place_matches_allocating(self, lorenz):
        prob = build_nonlinear_problem(
            lorenz, {x: 1, y: 1, z: 1}, {sigma: 10, rho: 8, beta: 8.0 / 3.0}, jac=True, sparse=True
        )
        J = prob.f.jac_prototype.copy()
        assert J.dtype == np.float64
        prob.f.jacobian(J, prob.u0, prob.p)
        expected = prob.f.jacobian(prob.u0, prob.p).toarray()
        np.testing.assert_allclose(J.toarray(), expected)
        np.testing.assert_allclose(expected[2], [1.0, 1.0, -8.0 / 3.0])

    def test_reordered_unknowns(self, lorenz):
        nf = build_nonlinear_function(lorenz, dvs=[z, y, x])
        assert nf.dvs == (z, y, x)
        np.testing.assert_allclose(nf([0.0, 0.0, 1.0], [10.0, 26.0, 8.0 / 3.0]), [-10.0, 26.0, 0.0])

    def test_observed_accessor(self):
        E = sp.Symbol("E")
        sys = complete(NonlinearSystem([Equation(0, x - 1)], [x], [], name="o", observed=[Equation(E, x**2)]))
        nf = build_nonlinear_function(sys)
        assert nf.observed(E)([3.0], []) == pytest.approx(9.0)


# ============================================================================
# Test Class 5: Least Squares
# ============================================================================


class TestLeastSquares:
    def test_check_length(self, overdetermined):
        with pytest.raises(ValueError, match="check_length=False"):
            build_nonlinear_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 4.0})

    def test_square_check_disabled(self, overdetermined):
        prob = build_nonlinear_problem(overdetermined, {x: 0.0, y: 0.0}, {a: 4.0}, check_length=False)
        assert prob.f.resid_prototype.shape == (3,)

    def test_least_squares_problem(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 2.0, y: 1.0}, {a: 4.0})
        assert isinstance(prob, NonlinearLeastSquaresProblem)
        assert prob.problem_type == "least_squares"
        np.testing.assert_allclose(prob.residual(), [0.0, 0.0, 0.0])
        np.testing.assert_array_equal(prob.f.resid_prototype, np.zeros(3))
        assert prob.f.resid_prototype.dtype == np.float64

    def test_resid_prototype_follows_u0_dtype(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 1.0 + 0j, y: 0.0 + 0j}, {a: 4.0})
        assert prob.f.resid_prototype.dtype == np.complex128

    def test_square_least_squares_has_no_prototype(self, lorenz):
        prob = build_least_squares_problem(lorenz, U0, PARAMS)
        assert prob.f.resid_prototype is None

    def test_calculate_resid_prototype(self):
        assert calculate_resid_prototype(3, 3) is None
        proto = calculate_resid_prototype(4, 2)
        assert proto.shape == (4,)
        assert proto.dtype == np.float64
        grouped = GroupedParams((np.array([1.0 + 1j]), (2,)), ("tunable", "discrete"))
        assert calculate_resid_prototype(2, 1, np.array([0.0]), grouped).dtype == np.complex128
        assert calculate_resid_prototype(2, 1, np.array([1], dtype=np.float32)).dtype == np.float64
        assert calculate_resid_prototype(2, 1, np.array([1, 2])).dtype == np.float64

    def test_integer_u0_in_place_matches_allocating(self, overdetermined):
        prob = build_least_squares_problem(overdetermined, {x: 1, y: 1}, {a: 0.5})
        buf = prob.f.resid_prototype.copy()
        assert buf.dtype == np.float64
        prob.f(buf, prob.u0, prob.p)
        np.testing.assert_allclose(buf, prob.f(prob.u0, prob.p))
        np.testing.assert_allclose(buf, [-1.0, -1.0, 1.5])


# ============================================================================
# Test Class 6: Structured Parameters
# ============================================================================


class TestStructuredParameters:
    @pytest.fixture
    def mixed(self):
        (n,) = parameters("n,", integer=True)
        sys = complete(NonlinearSystem([Equation(0, x - n * a)], [x], [n, a], name="mixed"))
        return sys, n

    def test_flat_by_default(self, mixed):
        sys, n = mixed
        prob = build_nonlinear_problem(sys, {x: 1.0}, {a: 2.0, n: 3})
        assert isinstance(prob.p, FlatParams)
        assert prob.p.values == (3, 2.0)

    def test_structured(self, mixed):
        sys, n = mixed
        prob = build_nonlinear_problem(sys, {x: 1.0}, {a: 2.0, n: 3}, structured=True)
        assert isinstance(prob.p, GroupedParams)
        assert prob.p.labels == ("tunable", "discrete")
        np.testing.assert_array_equal(prob.p.tunable, [2.0])
        assert prob.p["discrete"] == (3,)
        assert prob.layout.labels == ("tunable", "discrete")
        np.testing.assert_allclose(prob.residual(), [-5.0])

    @pytest.mark.parametrize("structured", [False, True])
    def test_ordered_values_follow_model_order(self, mixed, structured):
        sys, n = mixed
        prob = build_nonlinear_problem(sys, [1.0], [3, 2.0], structured=structured)
        assert prob[n] == 3
        assert prob[a] == 2.0
        np.testing.assert_allclose(prob.residual(), [-5.0])

    def test_structured_set_parameter(self, mixed):
        sys, n = mixed
        prob = build_nonlinear_problem(sys, {x: 1.0}, {a: 2.0, n: 3}, structured=True)
        prob.set_parameter(n, 4)
        assert prob.p["discrete"] == (4,)
        np.testing.assert_allclose(prob.residual(), [-7.0])


# ============================================================================
# Test Class 7: Symbolic Indexing
# ============================================================================


class TestSymbolicIndexing:
    def test_getitem(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        assert prob[x] == 1.0
        assert prob["sigma"] == 10.0
        assert prob.state_values == {x: 1.0, y: 0.0, z: 0.0}

    def test_set_state(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        prob.set_state(x, 2.0)
        prob.set_state("y", 1.0)
        np.testing.assert_allclose(prob.u0, [2.0, 1.0, 0.0])
        np.testing.assert_allclose(prob.residual(), [-10.0, 51.0, 2.0])

    def test_set_state_promotes_dtype(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        prob.set_state(z, 1j)
        assert prob.u0.dtype == np.complex128

    def test_set_state_rejects_parameter(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        with pytest.raises(UnresolvedSymbolError):
            prob.set_state(sigma, 1.0)

    def test_set_parameter(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        prob.set_parameter(rho, 28.0)
        prob.set_parameter("sigma", 5.0)
        assert prob[rho] == 28.0
        np.testing.assert_allclose(prob.residual(), [-5.0, 28.0, 0.0])

    def test_set_parameter_rejects_unknown(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        with pytest.raises(UnresolvedSymbolError):
            prob.set_parameter(x, 1.0)

    def test_observed(self):
        E = sp.Symbol("E")
        sys = complete(
            NonlinearSystem(
                [Equation(0, x - a), Equation(0, y - 1)],
                [x, y],
                [a],
                name="energy",
                observed=[Equation(E, x**2 + y**2)],
            )
        )
        prob = build_nonlinear_problem(sys, {x: 3.0, y: 4.0}, {a: 1.0})
        assert prob.observed(E) == pytest.approx(25.0)
        assert prob["E"] == pytest.approx(25.0)
        assert prob.observed(E, u=[1.0, 1.0]) == pytest.approx(2.0)

    def test_residual_at_other_point(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS)
        np.testing.assert_allclose(prob.residual([0.0, 0.0, 0.0]), [0.0, 0.0, 0.0])

    def test_get_info(self, lorenz):
        prob = build_nonlinear_problem(lorenz, U0, PARAMS, jac=True, sparse=True)
        info = prob.get_info()
        assert info["system"] == "lorenz"
        assert info["problem_type"] == "square"
        assert info["n_residuals"] == 3
        assert info["n_parameters"] == 3
        assert info["has_jacobian"]
        assert info["sparse"]
        assert info["parameter_groups"] == ["parameters"]


# ============================================================================
# Test Class 8: Source-Text Variants
# ============================================================================


class TestExpressionVariants:
    def test_function_expr(self, lorenz):
        nfe = build_nonlinear_function_expr(lorenz, jac=True)
        assert isinstance(nfe, NonlinearFunctionExpr)
        source = nfe.source()
        assert "def residual_oop(u, p0):" in source
        assert "def jacobian_iip(out, u, p0):" in source
        nf = nfe.compile()
        np.testing.assert_allclose(nf([1.0, 0.0, 0.0], [10.0, 26.0, 8.0 / 3.0]), [-10.0, 26.0, 0.0])

    def test_problem_expr_source(self, lorenz):
        expr = build_nonlinear_problem_expr(lorenz, U0, PARAMS)
        assert isinstance(expr, NonlinearProblemExpr)
        source = expr.source()
        assert "u0 = numpy.array([1.0, 0.0, 0.0])" in source
        assert "p = [10.0, 26.0, " in source
        assert "# nlsym:" not in source

    def test_linenumbers(self, lorenz):
        expr = build_nonlinear_problem_expr(lorenz, U0, PARAMS, linenumbers=True)
        assert "# nlsym:" in expr.source()
        assert expr.f.linenumbers

    def test_build_matches_direct(self, lorenz):
        expr = build_nonlinear_problem_expr(lorenz, U0, PARAMS, jac=True)
        built = expr.build()
        direct = build_nonlinear_problem(lorenz, U0, PARAMS, jac=True)
        assert type(built) is NonlinearProblem
        np.testing.assert_allclose(built.residual(), direct.residual())
        np.testing.assert_allclose(
            built.f.jacobian(built.u0, built.p), direct.f.jacobian(direct.u0, direct.p)
        )

    def test_least_squares_expr(self, overdetermined):
        expr = build_least_squares_problem_expr(overdetermined, {x: 2.0, y: 1.0}, {a: 4.0})
        assert expr.problem_type == "least_squares"
        assert expr.f.resid_prototype.shape == (3,)
        built = expr.build()
        assert isinstance(built, NonlinearLeastSquaresProblem)
        np.testing.assert_allclose(built.residual(), [0.0, 0.0, 0.0])

    def test_structured_expr_source(self):
        (n,) = parameters("n,", integer=True)
        sys = complete(NonlinearSystem([Equation(0, x - n * a)], [x], [a, n], name="mixed"))
        expr = build_nonlinear_problem_expr(sys, {x: 1.0}, {a: 2.0, n: 3}, structured=True)
        assert "def residual_oop(u, p0, p1):" in expr.source()
        assert "p = [2.0, 3]" in expr.source()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
