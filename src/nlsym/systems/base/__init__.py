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
Base layer: equations, symbol factories, errors and compilation utilities.
"""

from .equation import (
    Equation,
    ParameterSymbol,
    parameter_array,
    parameters,
    variables,
)
from .errors import (
    ConfigurationError,
    ErrorCode,
    ExtensionUnavailableError,
    FixpointLimitError,
    MissingValueError,
    NonlinearSystemError,
    NotCompletedError,
    UnresolvedSymbolError,
)

__all__ = [
    "Equation",
    "ParameterSymbol",
    "parameter_array",
    "parameters",
    "variables",
    "ConfigurationError",
    "ErrorCode",
    "ExtensionUnavailableError",
    "FixpointLimitError",
    "MissingValueError",
    "NonlinearSystemError",
    "NotCompletedError",
    "UnresolvedSymbolError",
]
