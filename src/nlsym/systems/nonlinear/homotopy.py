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
Homotopy Continuation Extension Point

Polynomial homotopy continuation is NOT implemented here. This module only
defines the contract an external backend must satisfy and the problem
object built around it:

    backend.construct(sys, u0, p, **kwargs) -> (system_handle, denominator)
    backend.state_values(problem) / backend.set_state(problem, sym, value)
    backend.parameter_values(problem) / backend.set_parameter(problem, sym, value)
    backend.observed(problem, sym)

Without a backend, build_homotopy_continuation_problem() fails with
ExtensionUnavailableError:

>>> build_homotopy_continuation_problem(complete(ns), u0map)
Traceback (most recent call last):
    ...
ExtensionUnavailableError: HomotopyContinuationProblem requires an extension that is not loaded. ...

With a backend:

>>> prob = build_homotopy_continuation_problem(complete(ns), u0map, backend=MyBackend())
>>> prob.state_values
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

from nlsym.systems.base.errors import ExtensionUnavailableError
from nlsym.systems.base.utils.observed_resolver import ObservedFunctionCache
from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem
from nlsym.systems.nonlinear.problem_builder import _process_problem

FEATURE = "HomotopyContinuationProblem"
HINT = "Pass a homotopy continuation backend with `backend=` to enable it."


@runtime_checkable
class HomotopyBackend(Protocol):
    """
    Accessor contract of a homotopy continuation backend.

    ``observed`` may return NotImplemented to fall back to the system's
    compiled observed evaluators.
    """

    def construct(self, sys: NonlinearSystem, u0, p, **kwargs) -> Tuple[Any, Any]:
        ...

    def state_values(self, problem: "HomotopyContinuationProblem") -> Dict:
        ...

    def set_state(self, problem: "HomotopyContinuationProblem", sym, value) -> None:
        ...

    def parameter_values(self, problem: "HomotopyContinuationProblem") -> Dict:
        ...

    def set_parameter(self, problem: "HomotopyContinuationProblem", sym, value) -> None:
        ...

    def observed(self, problem: "HomotopyContinuationProblem", sym) -> Any:
        ...


class UnavailableHomotopyBackend:
    """Default backend: every operation raises ExtensionUnavailableError."""

    def _fail(self):
        raise ExtensionUnavailableError(FEATURE, hint=HINT)

    def construct(self, sys, u0, p, **kwargs):
        self._fail()

    def state_values(self, problem):
        self._fail()

    def set_state(self, problem, sym, value):
        self._fail()

    def parameter_values(self, problem):
        self._fail()

    def set_parameter(self, problem, sym, value):
        self._fail()

    def observed(self, problem, sym):
        self._fail()


@dataclass
class HomotopyContinuationProblem:
    """
    Problem object of an external homotopy continuation backend.

    Attributes:
        u0: Initial values in unknown order
        p: Parameter container
        system_handle: Backend representation of the polynomial system
        denominator: Backend denominator data (rational systems)
        sys: Source system
        obsfn: Observed-value evaluators
        backend: Backend implementing HomotopyBackend
    """

    u0: Any
    p: Any
    system_handle: Any
    denominator: Any
    sys: NonlinearSystem
    obsfn: ObservedFunctionCache
    backend: HomotopyBackend
    kwargs: Dict[str, Any] = field(default_factory=dict)

    @property
    def state_values(self) -> Dict:
        return self.backend.state_values(self)

    def set_state(self, sym, value) -> None:
        self.backend.set_state(self, sym, value)

    @property
    def parameter_values(self) -> Dict:
        return self.backend.parameter_values(self)

    def set_parameter(self, sym, value) -> None:
        self.backend.set_parameter(self, sym, value)

    def observed(self, sym, u=None):
        value = self.backend.observed(self, sym)
        if value is NotImplemented:
            value = self.obsfn(sym)(self.u0 if u is None else u, self.p)
        return value


def build_homotopy_continuation_problem(
    sys: NonlinearSystem,
    u0map=None,
    parammap=None,
    *,
    backend: Optional[HomotopyBackend] = None,
    check_length: bool = True,
    **kwargs,
) -> HomotopyContinuationProblem:
    """
    Build a HomotopyContinuationProblem through an injected backend.

    Raises:
        ExtensionUnavailableError: If no backend is given
        NotCompletedError: If the system is not complete
    """
    if backend is None:
        UnavailableHomotopyBackend().construct(sys, None, None)

    dvs, layout, u0, _, p = _process_problem(
        sys, u0map, parammap, check_length, False, False, FEATURE
    )
    system_handle, denominator = backend.construct(sys, u0, p, **kwargs)
    return HomotopyContinuationProblem(
        u0=u0,
        p=p,
        system_handle=system_handle,
        denominator=denominator,
        sys=sys,
        obsfn=ObservedFunctionCache(sys, dvs, layout),
        backend=backend,
        kwargs=kwargs,
    )
