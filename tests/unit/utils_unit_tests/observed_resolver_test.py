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
Unit tests for ObservedResolver, fixpoint substitution and
ObservedFunctionCache

Tests cover:
1. Fixpoint substitution (ordering independence, cap, cycles)
2. Observed and dependent-parameter resolution
3. Compiled observed evaluators and their cache
"""

import numpy as np
import pytest
import sympy as sp

from nlsym.systems.base.equation import Equation, parameters, variables
from nlsym.systems.base.errors import FixpointLimitError, UnresolvedSymbolError
from nlsym.systems.base.utils.observed_resolver import (
    ObservedFunctionCache,
    ObservedResolver,
    fixpoint_substitute,
)
from nlsym.systems.base.utils.parameter_canonicalizer import ParameterCanonicalizer
from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem

x, y = variables("x y")
w, v, E = variables("w v E")
a, b = parameters("a b")


def make_system(**kwargs):
    return NonlinearSystem(
        [Equation(0, x - w), Equation(0, y - a)],
        [x, y],
        [a],
        name="observed",
        observed=[Equation(w, 2 * v), Equation(v, x + 1), Equation(E, x**2 + y**2)],
        **kwargs,
    )


# ============================================================================
# Test Class 1: Fixpoint Substitution
# ============================================================================


class TestFixpointSubstitute:
    def test_chain_in_any_order(self):
        rules = {w: 2 * v, v: x + 1}
        assert fixpoint_substitute(x - w, rules) == -x - 2

    def test_no_rules_returns_input(self):
        expr = x + y
        assert fixpoint_substitute(expr, {}) is expr

    def test_lists_are_elementwise(self):
        result = fixpoint_substitute([w, v], {w: v, v: x})
        assert result == [x, x]

    def test_cycle_hits_cap(self):
        with pytest.raises(FixpointLimitError) as excinfo:
            fixpoint_substitute(w, {w: v + 1, v: w + 1})
        assert excinfo.value.max_iterations == 3
        assert set(excinfo.value.remaining) <= {w, v}

    def test_explicit_cap(self):
        rules = {w: v, v: E, E: x}
        with pytest.raises(FixpointLimitError):
            fixpoint_substitute(w, rules, max_iterations=2)
        assert fixpoint_substitute(w, rules, max_iterations=4) == x

    def test_fixpoint_error_is_runtime_error(self):
        with pytest.raises(RuntimeError):
            fixpoint_substitute(w, {w: w + 1})


# ============================================================================
# Test Class 2: Resolution
# ============================================================================


class TestObservedResolver:
    def test_substitute(self):
        assert ObservedResolver(make_system()).substitute(x - w) == -x - 2

    def test_resolve_includes_dependent_parameters(self):
        sys = make_system(parameter_dependencies=[Equation(b, 3 * a)])
        resolver = ObservedResolver(sys)
        assert sp.expand(resolver.resolve(b * w) - 6 * a * (x + 1)) == 0
        assert sp.expand(resolver.substitute(b * w) - 2 * b * (x + 1)) == 0

    def test_eliminated_unknowns(self):
        s = sp.Symbol("s")
        sys = NonlinearSystem(
            [Equation(0, s - x)], [x], [], name="elim", substitutions=[Equation(s, 2 * x)]
        )
        resolver = ObservedResolver(sys)
        assert resolver.substitute(s) == s
        assert resolver.substitute(s, eliminated=True) == 2 * x
        assert resolver.resolved_substitutions() == [Equation(s, 2 * x)]

    def test_cyclic_observed_raises(self):
        sys = NonlinearSystem(
            [Equation(0, x - w)],
            [x],
            [],
            name="cyclic",
            observed=[Equation(w, v + 1), Equation(v, w + 1)],
        )
        with pytest.raises(FixpointLimitError):
            ObservedResolver(sys).substitute(w)


# ============================================================================
# Test Class 3: Observed Evaluators
# ============================================================================


class TestObservedFunctionCache:
    def _cache(self, sys=None):
        sys = sys or make_system()
        layout = ParameterCanonicalizer(sys).reorder()
        return ObservedFunctionCache(sys, sys.unknowns, layout)

    def test_evaluate_observed(self):
        obs = self._cache()
        assert obs(E)([3.0, 4.0], [0.0]) == pytest.approx(25.0)
        assert obs(w)([1.0, 0.0], [0.0]) == pytest.approx(4.0)

    def test_by_name(self):
        obs = self._cache()
        assert obs("E")([1.0, 1.0], [0.0]) == pytest.approx(2.0)

    def test_unknowns_and_parameters(self):
        obs = self._cache()
        assert obs(y)([1.0, 5.0], [0.0]) == pytest.approx(5.0)
        assert obs(a)([1.0, 5.0], [7.0]) == pytest.approx(7.0)

    def test_list_of_symbols(self):
        obs = self._cache()
        np.testing.assert_allclose(obs([w, E])([1.0, 2.0], [0.0]), [4.0, 5.0])

    def test_cached(self):
        obs = self._cache()
        f = obs(E)
        assert obs(E) is f
        assert E in obs
        assert len(obs) == 1
        obs.clear()
        assert len(obs) == 0

    def test_unknown_symbol(self):
        obs = self._cache()
        with pytest.raises(UnresolvedSymbolError):
            obs(sp.Symbol("nope"))
        with pytest.raises(UnresolvedSymbolError):
            obs("nope")

    def test_dependent_parameter_observed(self):
        sys = make_system(parameter_dependencies=[Equation(b, 3 * a)])
        obs = self._cache(sys)
        assert obs(b)([0.0, 0.0], [2.0]) == pytest.approx(6.0)

    def test_eliminated_unknown_observed(self):
        s = sp.Symbol("s")
        sys = NonlinearSystem(
            [Equation(0, s - x - 1)], [x], [], name="elim", substitutions=[Equation(s, 2 * x)]
        )
        obs = self._cache(sys)
        assert obs(s)([1.5], []) == pytest.approx(3.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
