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
Error Types for Nonlinear Equation Systems

Every error raised by the compilation pipeline derives from
NonlinearSystemError and ALSO from the builtin exception that best describes
it, so callers can catch either:

>>> try:
...     build_nonlinear_problem(sys, u0map)
... except NotCompletedError:
...     ...
>>> try:
...     build_nonlinear_problem(sys, u0map)
... except RuntimeError:  # also catches NotCompletedError
...     ...

Each error carries a machine-readable ErrorCode in ``.code``.

Errors are raised synchronously at the call that detects them. Symbolic
computation is deterministic, so nothing in the pipeline retries.
"""

from enum import Enum
from typing import Iterable, Optional


class ErrorCode(str, Enum):
    """Machine-readable classification for pipeline failures."""

    CONFIGURATION = "configuration"
    NOT_COMPLETED = "not_completed"
    UNRESOLVED_SYMBOL = "unresolved_symbol"
    MISSING_VALUE = "missing_value"
    EXTENSION_UNAVAILABLE = "extension_unavailable"
    FIXPOINT_LIMIT = "fixpoint_limit"


class NonlinearSystemError(Exception):
    """Base class for all errors raised by nlsym."""

    code: ErrorCode = ErrorCode.CONFIGURATION

    def __init__(self, message: str, *, code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ConfigurationError(NonlinearSystemError, ValueError):
    """Invalid system definition (missing name, duplicate names, events, ...)."""

    code = ErrorCode.CONFIGURATION


class NotCompletedError(NonlinearSystemError, RuntimeError):
    """Problem construction was attempted on a system that is not complete."""

    code = ErrorCode.NOT_COMPLETED

    def __init__(self, system_name: str, target: str = "NonlinearProblem"):
        self.system_name = system_name
        self.target = target
        super().__init__(
            f"A completed NonlinearSystem is required to build a {target}, but "
            f"system '{system_name}' is not complete. Call `complete(sys)` or "
            f"`sys.mark_complete()` before building a {target}."
        )


class UnresolvedSymbolError(NonlinearSystemError, LookupError):
    """A requested unknown/parameter/observed symbol is absent from the system."""

    code = ErrorCode.UNRESOLVED_SYMBOL

    def __init__(self, symbols: Iterable, context: str = "system"):
        self.symbols = tuple(symbols)
        names = ", ".join(str(s) for s in self.symbols)
        super().__init__(f"Symbol(s) not found in {context}: {names}")

    # KeyError-style repr would quote the message; keep it readable
    def __str__(self) -> str:
        return self.args[0]


class MissingValueError(NonlinearSystemError, ValueError):
    """An unknown or parameter has neither an explicit value nor a default."""

    code = ErrorCode.MISSING_VALUE

    def __init__(self, symbols: Iterable, kind: str = "value"):
        self.symbols = tuple(symbols)
        self.kind = kind
        names = ", ".join(str(s) for s in self.symbols)
        super().__init__(
            f"No {kind} or default provided for: {names}. "
            f"Pass an explicit value or add an entry to `defaults`."
        )


class ExtensionUnavailableError(NonlinearSystemError, ImportError):
    """An optional capability (e.g. homotopy continuation) is not installed."""

    code = ErrorCode.EXTENSION_UNAVAILABLE

    def __init__(self, feature: str, hint: str = ""):
        self.feature = feature
        message = f"{feature} requires an extension that is not loaded."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message)


class FixpointLimitError(NonlinearSystemError, RuntimeError):
    """Fixpoint substitution did not converge within its iteration cap."""

    code = ErrorCode.FIXPOINT_LIMIT

    def __init__(self, max_iterations: int, remaining: Iterable = ()):
        self.max_iterations = max_iterations
        self.remaining = tuple(remaining)
        message = (
            f"Substitution did not reach a fixed point after {max_iterations} "
            f"iterations. The definitions are probably cyclic."
        )
        if self.remaining:
            message += f" Still substitutable: {', '.join(str(s) for s in self.remaining)}"
        super().__init__(message)
