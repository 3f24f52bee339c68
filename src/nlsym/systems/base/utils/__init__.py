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
System Utilities
================

Compilation pipeline stages behind NonlinearSystem.

Derivatives
-----------
>>> from nlsym.systems.base.utils import DerivativeEngine
>>>
>>> engine = DerivativeEngine(system)
>>> J = engine.calculate_jacobian(sparse=True)
>>> S = engine.jacobian_sparsity()

Code Generation
---------------
>>> from nlsym.systems.base.utils import CodeGenerator, build_function
>>>
>>> generator = CodeGenerator(system)
>>> f = generator.generate_function()
>>>
>>> # Or from bare expressions
>>> g = build_function([x**2 - a, x + y], [x, y], [a])

Parameters and Observed Values
------------------------------
>>> from nlsym.systems.base.utils import ParameterCanonicalizer, ObservedFunctionCache
>>>
>>> layout = ParameterCanonicalizer(system).reorder(split=True)
>>> obs = ObservedFunctionCache(system, system.unknowns, layout)

Authors
-------
Gil Benezer

License
-------
GNU Affero General Public License v3.0
"""

# Symbolic stages
from .derivative_cache import CacheEntry, DerivativeCache
from .derivative_engine import DerivativeEngine
from .observed_resolver import ObservedFunctionCache, ObservedResolver, fixpoint_substitute
from .sparsity import hessian_sparsity, jacobian_sparsity, pattern_entries

# Parameters
from .parameter_canonicalizer import (
    FlatParams,
    GroupedParams,
    ParameterCanonicalizer,
    ParameterLayout,
    as_parameter_groups,
)

# Validation
from .system_validator import SystemValidator, ValidationResult

# Code generation
from .code_generator import CodeGenerator
from .codegen_utils import CompiledFunction, FunctionSource, build_function, strip_annotations

# Tags
from .tag_sequence import TagSequence, get_tag_sequence, init_tag_sequence

# Export public API
__all__ = [
    # Symbolic stages
    "CacheEntry",
    "DerivativeCache",
    "DerivativeEngine",
    "ObservedFunctionCache",
    "ObservedResolver",
    "fixpoint_substitute",
    "hessian_sparsity",
    "jacobian_sparsity",
    "pattern_entries",
    # Parameters
    "FlatParams",
    "GroupedParams",
    "ParameterCanonicalizer",
    "ParameterLayout",
    "as_parameter_groups",
    # Validation
    "SystemValidator",
    "ValidationResult",
    # Code generation
    "CodeGenerator",
    "CompiledFunction",
    "FunctionSource",
    "build_function",
    "strip_annotations",
    # Tags
    "TagSequence",
    "get_tag_sequence",
    "init_tag_sequence",
]
