# src/dycore_stepper/errors.py
"""Error types and dependency-guard utilities for dycore_stepper.

This module centralizes:
- the exception taxonomy shared by every time-integration scheme, and
- small helpers to guard optional integrator backends.

Design intent:
- every failure surfaces as a single exception carrying a descriptive message
- the driver layer is the only recovery boundary; schemes never return codes
- a scheme whose backend is missing fails at selection time, not mid-run
"""

from __future__ import annotations

from dataclasses import dataclass
from importlib.util import find_spec
from typing import Final, NoReturn

_BACKEND_INSTALL_MSG: Final[str] = (
    "Install the missing dependency with:\n"
    "  pip install {package}\n"
    "or reinstall dycore-stepper with its default dependencies."
)


class TimeIntegrationError(Exception):
    """Base exception for dycore_stepper time-integration errors."""


class ConfigurationError(TimeIntegrationError, ValueError):
    """Raised when a scheme configuration is invalid or inconsistent."""


class UnsupportedConfigurationError(ConfigurationError):
    """Raised when a scheme cannot run in the current environment."""


class ConvergenceError(TimeIntegrationError, RuntimeError):
    """Raised when an implicit solve or an integrator step fails to converge."""


class NumericalDomainError(TimeIntegrationError, ArithmeticError):
    """Raised when a derived quantity leaves its valid range.

    Attributes:
        name: Name of the offending quantity.
        value: Offending value.
    """

    def __init__(self, msg: str, *, name: str, value: object) -> None:
        super().__init__(msg)
        self.name = name
        self.value = value


class InstanceIndexError(TimeIntegrationError, IndexError):
    """Raised when a data instance index is outside the allocated range."""


class StateShapeError(TimeIntegrationError, ValueError):
    """Raised when a state or tendency array has an incompatible shape."""


@dataclass(frozen=True, slots=True)
class DependencyStatus:
    """Structured description of optional dependency availability."""

    package: str
    is_available: bool
    detail: str | None = None


def check_backend_available(package: str) -> DependencyStatus:
    """Check whether an integrator backend is importable.

    Args:
        package: Importable module name (for example, "scipy.optimize").

    Returns:
        DependencyStatus describing the backend availability.
    """
    try:
        spec = find_spec(package)
    except ModuleNotFoundError:
        spec = None
    if spec is None:
        return DependencyStatus(
            package=package,
            is_available=False,
            detail="Module spec not found",
        )
    return DependencyStatus(package=package, is_available=True, detail=None)


def require_backend(package: str, *, scheme: str) -> None:
    """Require that the backend of a timestep scheme is importable.

    Args:
        package: Importable module name.
        scheme: Name of the scheme that needs the backend.

    Raises:
        UnsupportedConfigurationError: If the backend cannot be imported.
    """
    status = check_backend_available(package)
    if status.is_available:
        return

    root = package.split(".", maxsplit=1)[0]
    msg = (
        f"Timestep scheme '{scheme}' is an unsupported configuration: it "
        f"requires {package}, which is not available in this environment.\n\n"
        f"Import detail: {status.detail}\n\n"
        f"{_BACKEND_INSTALL_MSG.format(package=root)}"
    )
    raise UnsupportedConfigurationError(msg)


def raise_configuration_error(
    *,
    scheme: str,
    detail: str,
    invalid: list[str] | None = None,
) -> NoReturn:
    """Raise a standardized ConfigurationError.

    Args:
        scheme: Scheme name reporting the problem.
        detail: Human-readable description of the problem.
        invalid: Optional names of offending settings.

    Raises:
        ConfigurationError: Always.
    """
    parts: list[str] = [f"Invalid {scheme} configuration."]
    if invalid:
        parts.append(f"Offending setting(s): {sorted(set(invalid))}.")
    parts.append(f"Detail: {detail}")
    raise ConfigurationError(" ".join(parts))


def raise_convergence_error(*, where: str, time: float, reason: str) -> NoReturn:
    """Raise a standardized ConvergenceError.

    Args:
        where: Component that failed (for example, "ARKode step").
        time: Simulation time at which the failure happened.
        reason: Human-readable failure reason.

    Raises:
        ConvergenceError: Always.
    """
    msg = f"{where} failed at t={time:.16g}. Reason: {reason}"
    raise ConvergenceError(msg)


def raise_numerical_domain_error(
    *,
    name: str,
    value: object,
    valid: str,
) -> NoReturn:
    """Raise a standardized NumericalDomainError.

    Args:
        name: Name of the offending quantity.
        value: Offending value.
        valid: Human-readable description of the valid range.

    Raises:
        NumericalDomainError: Always.
    """
    msg = f"{name} left its valid range {valid}. Got: {value!r}."
    raise NumericalDomainError(msg, name=name, value=value)


def raise_state_shape_error(*, name: str, expected: str, got: object) -> NoReturn:
    """Raise a standardized StateShapeError.

    Args:
        name: Name of the object with the shape issue.
        expected: Human-readable expected shape description.
        got: Actual observed shape/value.

    Raises:
        StateShapeError: Always.
    """
    msg = f"{name} has an invalid shape/value. Expected {expected}. Got: {got!r}."
    raise StateShapeError(msg)
