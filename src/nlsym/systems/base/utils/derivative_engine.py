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
Derivative Engine for NonlinearSystem

Computes symbolic Jacobians and Hessians of a system's residuals with
respect to its unknowns.

Residuals are observed-substituted (and eliminated unknowns are replaced
by their definitions) before differentiating, so the chain rule through
derived quantities is accounted for.

Caching:
    Jacobians are cached in the system's single-slot DerivativeCache under
    the key (sparse, simplify). Repeating a request returns the SAME
    object; changing either option recomputes and replaces the entry.
    Hessians are not cached.
"""

import logging
import time
from typing import TYPE_CHECKING, Dict, List, Tuple, Union

import scipy.sparse
import sympy as sp

from nlsym.systems.base.utils.observed_resolver import ObservedResolver
from nlsym.systems.base.utils.sparsity import (
    hessian_sparsity,
    jacobian_sparsity,
    pattern_entries,
)
from nlsym.types.config import DerivativeKey
from nlsym.types.symbolic import SymbolicExpression

if TYPE_CHECKING:
    from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem

logger = logging.getLogger(__name__)

SymbolicJacobian = Union[sp.ImmutableMatrix, sp.ImmutableSparseMatrix]


class DerivativeEngine:
    """
    Symbolic differentiation of system residuals.

    Example:
        >>> engine = DerivativeEngine(sys)
        >>> J = engine.calculate_jacobian()
        >>> engine.calculate_jacobian() is J
        True
        >>> Js = engine.calculate_jacobian(sparse=True)  # recomputed
    """

    def __init__(self, system: "NonlinearSystem"):
        self.system = system

    def substituted_residuals(self) -> List[SymbolicExpression]:
        """Residual entries with observed and eliminated symbols replaced."""
        resolver = ObservedResolver(self.system)
        return [
            resolver.substitute(r, eliminated=True) for r in self.system.residuals
        ]

    # ========================================================================
    # Jacobian
    # ========================================================================

    def calculate_jacobian(self, sparse: bool = False, simplify: bool = False) -> SymbolicJacobian:
        """
        Jacobian of the residuals with respect to the unknowns.

        Args:
            sparse: Return ImmutableSparseMatrix, differentiating only the
                structurally nonzero entries
            simplify: Apply sympy.simplify to every entry

        Returns:
            (n_residuals, n_unknowns) immutable SymPy matrix
        """
        key: DerivativeKey = (bool(sparse), bool(simplify))
        return self.system.derivative_cache.get_or_compute(
            key, lambda: self._compute_jacobian(*key)
        )

    def _compute_jacobian(self, sparse: bool, simplify: bool) -> SymbolicJacobian:
        start = time.perf_counter()
        residuals = self.substituted_residuals()
        unknowns = list(self.system.unknowns)
        shape = (len(residuals), len(unknowns))

        if sparse:
            pattern = jacobian_sparsity(residuals, unknowns)
            entries = {}
            for i, j in pattern_entries(pattern):
                value = sp.diff(residuals[i], unknowns[j])
                if simplify:
                    value = sp.simplify(value)
                if value != 0:
                    entries[(i, j)] = value
            result = sp.ImmutableSparseMatrix(shape[0], shape[1], entries)
        else:
            if residuals and unknowns:
                jac = sp.Matrix(residuals).jacobian(unknowns)
            else:
                jac = sp.zeros(*shape)
            if simplify:
                jac = jac.applyfunc(sp.simplify)
            result = sp.ImmutableMatrix(jac)

        logger.debug(
            "Jacobian of '%s' (sparse=%s, simplify=%s) computed in %.3fs",
            self.system.name,
            sparse,
            simplify,
            time.perf_counter() - start,
        )
        return result

    # ========================================================================
    # Hessian
    # ========================================================================

    def calculate_hessian(self, sparse: bool = False, simplify: bool = False) -> List[SymbolicJacobian]:
        """
        Hessian of every residual with respect to the unknowns.

        Returns:
            List of (n_unknowns, n_unknowns) matrices, one per residual
        """
        residuals = self.substituted_residuals()
        unknowns = list(self.system.unknowns)
        n = len(unknowns)
        hessians: List[SymbolicJacobian] = []
        for residual in residuals:
            if sparse:
                entries: Dict[Tuple[int, int], sp.Expr] = {}
                for i, j in pattern_entries(hessian_sparsity(residual, unknowns)):
                    value = sp.diff(residual, unknowns[i], unknowns[j])
                    if simplify:
                        value = sp.simplify(value)
                    if value != 0:
                        entries[(i, j)] = value
                hessians.append(sp.ImmutableSparseMatrix(n, n, entries))
            else:
                hess = sp.hessian(residual, unknowns) if n else sp.zeros(0, 0)
                if simplify:
                    hess = hess.applyfunc(sp.simplify)
                hessians.append(sp.ImmutableMatrix(hess))
        return hessians

    # ========================================================================
    # Sparsity
    # ========================================================================

    def jacobian_sparsity(self) -> scipy.sparse.csr_matrix:
        """Structural Jacobian pattern of the substituted residuals."""
        return jacobian_sparsity(self.substituted_residuals(), list(self.system.unknowns))

    def hessian_sparsity(self) -> List[scipy.sparse.csr_matrix]:
        """Structural Hessian pattern of every substituted residual."""
        unknowns = list(self.system.unknowns)
        return [hessian_sparsity(r, unknowns) for r in self.substituted_residuals()]

    def invalidate(self) -> None:
        """Drop the cached Jacobian."""
        self.system.derivative_cache.clear()

    def __repr__(self) -> str:
        return f"DerivativeEngine(system='{self.system.name}', cache={self.system.derivative_cache!r})"
