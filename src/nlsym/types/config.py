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
Compilation Configuration Types

Options shared by the derivative engine, code generator and problem
builders. All options are keyword arguments with the defaults below.

Usage
-----
>>> from nlsym.types.config import DEFAULT_COMPILATION_OPTIONS
>>> opts = {**DEFAULT_COMPILATION_OPTIONS, 'sparse': True}
>>> build_nonlinear_function_expr(sys, **opts)
"""

from typing import Literal, Tuple

from typing_extensions import TypedDict

DerivativeKey = Tuple[bool, bool]
"""
Cache key of a symbolic Jacobian: (sparse, simplify).
"""

ParameterGroupLabel = Literal["tunable", "discrete"]
"""
Labels of the slots produced by ``ParameterCanonicalizer.reorder(split=True)``.
"""

TUNABLE: ParameterGroupLabel = "tunable"
DISCRETE: ParameterGroupLabel = "discrete"


class CompilationOptions(TypedDict, total=False):
    """
    Options understood by the compilation pipeline.

    Attributes
    ----------
    jac : bool
        Also compile the Jacobian function
    sparse : bool
        Produce sparse Jacobians (and a jac_prototype)
    simplify : bool
        Run sympy.simplify on derivative entries
    split : bool
        Split parameters into tunable/discrete slots
    linenumbers : bool
        Keep ``# nlsym:`` position annotations in generated source
    """

    jac: bool
    sparse: bool
    simplify: bool
    split: bool
    linenumbers: bool


DEFAULT_COMPILATION_OPTIONS: CompilationOptions = {
    "jac": False,
    "sparse": False,
    "simplify": False,
    "split": False,
    "linenumbers": False,
}
