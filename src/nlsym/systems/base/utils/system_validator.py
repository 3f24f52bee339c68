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
System Validator for NonlinearSystem

Checks a constructed system's definition: naming, symbol declarations,
defaults, observed equations and subsystems.

Errors make the system unusable and raise ConfigurationError. Warnings
(unused parameters, undeclared symbols) are issued with warnings.warn and
never abort construction.
"""

import warnings
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List

import sympy as sp

from nlsym.systems.base.equation import ParameterSymbol, collect_symbols, is_parameter
from nlsym.systems.base.errors import ConfigurationError

if TYPE_CHECKING:
    from nlsym.systems.nonlinear.nonlinear_system import NonlinearSystem


# ============================================================================
# Validation Result Container
# ============================================================================


@dataclass
class ValidationResult:
    """
    Container for validation results.

    Attributes
    ----------
    is_valid : bool
        True if the system passed all validation checks
    errors : List[str]
        Validation errors (empty if valid)
    warnings : List[str]
        Validation warnings (non-fatal issues)
    info : Dict
        Counts describing the validated system
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]
    info: Dict


# ============================================================================
# System Validator
# ============================================================================


class SystemValidator:
    """
    Validates nonlinear system definitions.

    Examples
    --------
    >>> result = SystemValidator(system).validate(raise_on_error=False)
    >>> if not result.is_valid:
    ...     print(result.errors)
    """

    def __init__(self, system: "NonlinearSystem"):
        self.system = system
        self._errors: List[str] = []
        self._warnings: List[str] = []

    # ========================================================================
    # Public API
    # ========================================================================

    def validate(self, raise_on_error: bool = True) -> ValidationResult:
        """
        Validate the system definition.

        Parameters
        ----------
        raise_on_error : bool
            If True, raise ConfigurationError when validation fails

        Returns
        -------
        ValidationResult

        Raises
        ------
        ConfigurationError
            If validation fails and raise_on_error=True
        """
        self._errors = []
        self._warnings = []

        self._validate_name()
        self._validate_symbols()
        self._validate_observed()
        self._validate_defaults()
        self._validate_subsystems()
        self._check_usage_patterns()

        result = ValidationResult(
            is_valid=not self._errors,
            errors=self._errors.copy(),
            warnings=self._warnings.copy(),
            info=self._build_info(),
        )

        if result.warnings:
            self._issue_warnings(result.warnings)

        if not result.is_valid and raise_on_error:
            raise ConfigurationError(self._format_error_message())

        return result

    # ========================================================================
    # Checks
    # ========================================================================

    def _validate_name(self):
        name = self.system.name
        if not isinstance(name, str) or not name:
            self._errors.append("System name must be a non-empty string")

    def _validate_symbols(self):
        unknowns = list(self.system.unknowns)
        params = list(self.system.parameters)

        for label, symbols in (("unknown", unknowns), ("parameter", params)):
            duplicates = [s for s, count in Counter(symbols).items() if count > 1]
            if duplicates:
                self._errors.append(
                    f"Duplicate {label}s: {', '.join(str(s) for s in duplicates)}"
                )

        overlap = set(unknowns) & set(params)
        if overlap:
            self._errors.append(
                f"Symbols declared both as unknowns and parameters: "
                f"{', '.join(sorted(str(s) for s in overlap))}"
            )

        for u in unknowns:
            if not isinstance(u, sp.Symbol):
                self._errors.append(f"Unknown {u} must be a SymPy Symbol, got {type(u).__name__}")
            elif isinstance(u, ParameterSymbol):
                self._warnings.append(f"Parameter symbol {u} is declared as an unknown")

        for p in params:
            if not is_parameter(p) and not isinstance(p, (sp.Symbol, sp.IndexedBase, sp.Indexed)):
                self._errors.append(f"Parameter {p} must be a SymPy symbol, got {type(p).__name__}")

    def _validate_observed(self):
        unknowns = set(self.system.unknowns)
        seen = set()
        for eq in self.system.observed:
            if not isinstance(eq.lhs, sp.Symbol):
                self._errors.append(f"Observed equation {eq} must have a single symbol on the left")
                continue
            if eq.lhs in unknowns:
                self._errors.append(f"Observed symbol {eq.lhs} is also declared as an unknown")
            if eq.lhs in seen:
                self._errors.append(f"Observed symbol {eq.lhs} is defined more than once")
            seen.add(eq.lhs)

    def _validate_defaults(self):
        system = self.system
        allowed = set(system.unknowns) | set(system.parameters)
        allowed |= {eq.lhs for eq in system.parameter_dependencies}
        for key in system.defaults:
            if key in allowed or (isinstance(key, sp.Indexed) and key.base in allowed):
                continue
            self._errors.append(
                f"Default given for {key}, which is not an unknown or parameter of the system"
            )

    def _validate_subsystems(self):
        names = [sub.name for sub in self.system.subsystems]
        duplicates = sorted(n for n, count in Counter(names).items() if count > 1)
        if duplicates:
            self._errors.append(
                f"Subsystem names must be unique, duplicates: {', '.join(duplicates)}"
            )

    def _check_usage_patterns(self):
        """Unused parameters and undeclared symbols (warnings only)"""
        residuals = list(self.system.residuals)
        used = set(collect_symbols(residuals))
        for eq in self.system.observed:
            used.update(collect_symbols([eq.rhs]))
        for eq in self.system.parameter_dependencies:
            used.update(collect_symbols([eq.rhs]))
        for eq in self.system.substitutions:
            used.update(collect_symbols([eq.rhs]))

        def _used(p) -> bool:
            if isinstance(p, sp.IndexedBase):
                return any(isinstance(s, sp.Indexed) and s.base == p for s in used)
            return p in used

        unused = [p for p in self.system.parameters if not _used(p)]
        if unused:
            self._warnings.append(
                f"Parameters not used by any equation: {', '.join(str(p) for p in unused)}"
            )

        undeclared = [s for s in used if not self.system.has_symbol(s)]
        if undeclared:
            self._warnings.append(
                f"Symbols used but not declared: {', '.join(sorted(str(s) for s in undeclared))}"
            )

    # ========================================================================
    # Helpers
    # ========================================================================

    def _build_info(self) -> Dict:
        return {
            "name": self.system.name,
            "n_residuals": self.system.n_residuals,
            "n_unknowns": self.system.n_unknowns,
            "n_parameters": self.system.n_parameters,
            "n_observed": len(self.system.observed),
            "n_parameter_dependencies": len(self.system.parameter_dependencies),
            "n_substitutions": len(self.system.substitutions),
        }

    def _issue_warnings(self, warnings_list: List[str]):
        for warning in warnings_list:
            warnings.warn(f"System validation warning: {warning}", UserWarning, stacklevel=4)

    def _format_error_message(self) -> str:
        msg = f"Validation of system '{self.system.name}' failed:\n"
        msg += "\n".join(f"  • {error}" for error in self._errors)
        if self._warnings:
            msg += "\n\nWarnings:\n"
            msg += "\n".join(f"  • {warning}" for warning in self._warnings)
        return msg

    def __repr__(self) -> str:
        return f"SystemValidator(system='{self.system.name}')"
