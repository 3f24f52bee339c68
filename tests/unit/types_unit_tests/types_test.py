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
Unit Tests for the Types Package

Tests cover:
1. Public exports
2. Compilation option defaults
3. Parameter group labels
4. TypedDict fields against the dictionaries the pipeline returns
"""

import numpy as np
import pytest
import scipy.sparse

import nlsym.types as types
from nlsym.systems.base.equation import Equation, parameters, variables
from nlsym.systems.base.utils.codegen_utils import CompiledFunction
from nlsym.systems.base.utils.observed_resolver import fixpoint_substitute
from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem, complete
from nlsym.systems.nonlinear.problem_builder import build_nonlinear_problem
from nlsym.systems.nonlinear.solvers import solve
from nlsym.types.config import DEFAULT_COMPILATION_OPTIONS, DISCRETE, TUNABLE, CompilationOptions
from nlsym.types.core import AllocatingFunction, InPlaceFunction, JacobianMatrix, SparseMatrix
from nlsym.types.problems import ProblemInfo, SolveResult
from nlsym.types.symbolic import SubstitutionDict

x, y = variables("x y")
a, = parameters("a,")


@pytest.fixture
def problem():
    sys = complete(NonlinearSystem([Equation(0, x**2 - a), Equation(0, y - x)], [x, y], [a], name="sq"))
    return build_nonlinear_problem(sys, {x: 1.0, y: 1.0}, {a: 4.0}, jac=True)


# ============================================================================
# Exports
# ============================================================================


class TestExports:
    def test_all_names_importable(self):
        for name in types.__all__:
            assert hasattr(types, name), name

    def test_no_duplicates(self):
        assert len(types.__all__) == len(set(types.__all__))

    def test_dropped_aliases_absent(self):
        for name in ("NumpyArray", "ScalarLike", "ParameterVector", "HessianMatrix"):
            assert name not in types.__all__

    def test_aliases_in_signatures(self):
        assert CompiledFunction.__annotations__["oop"] is AllocatingFunction
        assert CompiledFunction.__annotations__["iip"] is InPlaceFunction
        assert fixpoint_substitute.__annotations__["rules"] is SubstitutionDict


# ============================================================================
# Configuration
# ============================================================================


class TestCompilationOptions:
    def test_defaults_cover_every_option(self):
        assert set(DEFAULT_COMPILATION_OPTIONS) == set(CompilationOptions.__annotations__)

    def test_defaults_are_off(self):
        assert not any(DEFAULT_COMPILATION_OPTIONS.values())

    def test_group_labels(self):
        assert (TUNABLE, DISCRETE) == ("tunable", "discrete")

    def test_sparse_matrix_alias(self):
        assert isinstance(scipy.sparse.csc_matrix((2, 2)), SparseMatrix)
        assert JacobianMatrix is not None


# ============================================================================
# Problem Types
# ============================================================================


class TestProblemTypes:
    def test_problem_info_fields(self, problem):
        assert set(problem.get_info()) == set(ProblemInfo.__annotations__)

    def test_solve_result_fields(self, problem):
        result = solve(problem)
        assert set(result) == set(SolveResult.__annotations__)
        np.testing.assert_allclose(result["u"], [2.0, 2.0], rtol=1e-8)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
