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
Core Numeric Types

Array, vector and matrix aliases used by generated functions and problems.

Naming follows the residual formulation of a nonlinear system:

    0 = F(u, p)

- u: UnknownVector (n_unknowns,)
- p: parameter container (flat or grouped, see ParameterCanonicalizer)
- F(u, p): ResidualVector (n_residuals,)
- ∂F/∂u: JacobianMatrix (n_residuals, n_unknowns), dense or sparse

Usage
-----
>>> from nlsym.types.core import UnknownVector, ResidualVector
>>>
>>> def residual(u: UnknownVector, p) -> ResidualVector:
...     ...
"""

from typing import Callable, List, Optional, Union

import numpy as np
import scipy.sparse

# ============================================================================
# Basic Array Types
# ============================================================================

ArrayLike = Union[np.ndarray, List[float], tuple]
"""
Anything numpy.asarray accepts as a 1-D numeric array.
"""

SparseMatrix = scipy.sparse.spmatrix
"""
SciPy sparse matrix. Compiled sparse Jacobians/Hessians are CSC matrices.
"""

# ============================================================================
# Vector Types
# ============================================================================

UnknownVector = ArrayLike
"""
Values of the unknowns, ordered as in ``system.unknowns`` (or the order
requested when the function was compiled).

Shape: (n_unknowns,)
"""

ResidualVector = np.ndarray
"""
Residual values F(u, p).

Shape: (n_residuals,)

For square systems n_residuals == n_unknowns. Least-squares systems have
n_residuals != n_unknowns and their buffers are sized by n_residuals.
"""

# ============================================================================
# Matrix Types
# ============================================================================

JacobianMatrix = Union[np.ndarray, SparseMatrix]
"""
Jacobian ∂F/∂u.

Shape: (n_residuals, n_unknowns)

Dense functions return np.ndarray, sparse functions return a CSC matrix
with the structural pattern of the symbolic Jacobian.
"""

# ============================================================================
# Function Types
# ============================================================================

AllocatingFunction = Callable[..., Union[np.ndarray, SparseMatrix, list]]
"""
Out-of-place function ``f(u, p) -> result``. Returns new storage.
"""

InPlaceFunction = Callable[..., None]
"""
In-place function ``f(out, u, p) -> None``. Writes into ``out``.
"""

ResidualPrototype = Optional[np.ndarray]
"""
Zero vector sized by residual count, or None for square systems.
"""
