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
Structural Sparsity Analysis

Computes which Jacobian/Hessian entries CAN be nonzero by walking
expression trees. No differentiation and no numeric evaluation happen
here, so this is cheap enough to size sparse storage before running the
derivative engine.

Patterns are conservative: every entry that is symbolically nonzero is
marked, some marked entries may turn out to be zero.

Example:
    >>> x, y, z = sp.symbols('x y z')
    >>> J = jacobian_sparsity([x*y, z], [x, y, z])
    >>> J.toarray()
    array([[ True,  True, False],
           [False, False,  True]])
"""

from typing import Dict, FrozenSet, List, Sequence, Set, Tuple

import numpy as np
import scipy.sparse
import sympy as sp

Pair = Tuple[int, int]


def _atom_index(unknowns: Sequence) -> Dict:
    return {u: i for i, u in enumerate(unknowns)}


def _dependencies(expr: sp.Basic, index: Dict) -> Set[int]:
    """Indices of unknowns occurring anywhere in ``expr``."""
    found: Set[int] = set()
    for node in sp.preorder_traversal(expr):
        if node in index:
            found.add(index[node])
    return found


def jacobian_sparsity(exprs: Sequence[sp.Expr], unknowns: Sequence) -> scipy.sparse.csr_matrix:
    """
    Structural Jacobian pattern.

    Args:
        exprs: Residual expressions (or a SymPy column matrix)
        unknowns: Ordered unknowns

    Returns:
        Boolean CSR matrix of shape (len(exprs), len(unknowns)); entry (i, j)
        is True iff unknown j occurs in residual i.
    """
    exprs = list(exprs)
    index = _atom_index(unknowns)
    rows: List[int] = []
    cols: List[int] = []
    for i, expr in enumerate(exprs):
        for j in sorted(_dependencies(sp.sympify(expr), index)):
            rows.append(i)
            cols.append(j)
    data = np.ones(len(rows), dtype=bool)
    return scipy.sparse.csr_matrix(
        (data, (rows, cols)), shape=(len(exprs), len(unknowns)), dtype=bool
    )


def hessian_sparsity(expr: sp.Expr, unknowns: Sequence) -> scipy.sparse.csr_matrix:
    """
    Structural Hessian pattern of a single expression.

    Uses linearity propagation: a sum keeps the patterns of its terms, a
    product couples the variables of different factors, and anything
    nonlinear (powers other than 0/1, functions) couples all variables
    below it.

    Args:
        expr: Scalar expression
        unknowns: Ordered unknowns

    Returns:
        Symmetric boolean CSR matrix of shape (n, n)
    """
    index = _atom_index(unknowns)
    _, pairs = _hessian_pattern(sp.sympify(expr), index, {})
    n = len(unknowns)
    rows = [i for i, _ in pairs]
    cols = [j for _, j in pairs]
    data = np.ones(len(rows), dtype=bool)
    return scipy.sparse.csr_matrix((data, (rows, cols)), shape=(n, n), dtype=bool)


def _all_pairs(vars_: FrozenSet[int]) -> Set[Pair]:
    return {(i, j) for i in vars_ for j in vars_}


def _cross_pairs(a: FrozenSet[int], b: FrozenSet[int]) -> Set[Pair]:
    pairs = set()
    for i in a:
        for j in b:
            pairs.add((i, j))
            pairs.add((j, i))
    return pairs


def _hessian_pattern(
    expr: sp.Basic, index: Dict, memo: Dict
) -> Tuple[FrozenSet[int], FrozenSet[Pair]]:
    """
    Return (variables, second-order pairs) of ``expr``.

    ``memo`` keeps shared subtrees from being walked twice.
    """
    if expr in memo:
        return memo[expr]

    if expr in index:
        result = (frozenset([index[expr]]), frozenset())
    elif not expr.args:
        result = (frozenset(), frozenset())
    elif isinstance(expr, sp.Add):
        vars_: Set[int] = set()
        pairs: Set[Pair] = set()
        for arg in expr.args:
            v, p = _hessian_pattern(arg, index, memo)
            vars_ |= v
            pairs |= p
        result = (frozenset(vars_), frozenset(pairs))
    elif isinstance(expr, sp.Mul):
        vars_ = set()
        pairs = set()
        for arg in expr.args:
            v, p = _hessian_pattern(arg, index, memo)
            pairs |= p
            pairs |= _cross_pairs(frozenset(vars_), v)
            vars_ |= v
        result = (frozenset(vars_), frozenset(pairs))
    elif isinstance(expr, sp.Pow):
        base_vars, base_pairs = _hessian_pattern(expr.base, index, memo)
        exp_vars, exp_pairs = _hessian_pattern(expr.exp, index, memo)
        vars_ = base_vars | exp_vars
        if not exp_vars and expr.exp in (sp.Integer(0), sp.Integer(1)):
            pairs = set(base_pairs)
        else:
            pairs = set(base_pairs) | set(exp_pairs) | _all_pairs(frozenset(vars_))
        result = (frozenset(vars_), frozenset(pairs))
    elif isinstance(expr, sp.Indexed):
        # k[i] with a symbolic index behaves like an atom of its own
        result = (frozenset(), frozenset())
    else:
        vars_ = set()
        pairs = set()
        for arg in expr.args:
            v, p = _hessian_pattern(arg, index, memo)
            vars_ |= v
            pairs |= p
        pairs |= _all_pairs(frozenset(vars_))
        result = (frozenset(vars_), frozenset(pairs))

    memo[expr] = result
    return result


def pattern_entries(pattern: scipy.sparse.spmatrix) -> List[Pair]:
    """(row, col) pairs of a boolean pattern in column-major order."""
    coo = scipy.sparse.csc_matrix(pattern).tocoo()
    order = np.lexsort((coo.row, coo.col))
    return [(int(coo.row[k]), int(coo.col[k])) for k in order]
