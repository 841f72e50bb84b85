"""dycore_stepper: time integration for atmospheric dynamical cores."""

from __future__ import annotations

from .ark_engine import (
    ARKStepError,
    ARKStepFlag,
    ARKStepIntegrator,
    ARKStepOptions,
    ArrayVector,
    DtControllerConfig,
    NVector,
)
from .arkode import ARKodeSettings, ARKodeState, TimestepSchemeARKode
from .ars343 import TimestepSchemeARS343
from .butcher import (
    AdditiveButcherTable,
    ButcherTable,
    custom_preset,
    explicit_preset,
    resolve_named_table,
)
from .config import ARKodeOptions, AdditiveTableSpec, SchemeConfig, TableSpec
from .errors import (
    ConfigurationError,
    ConvergenceError,
    InstanceIndexError,
    NumericalDomainError,
    StateShapeError,
    TimeIntegrationError,
    UnsupportedConfigurationError,
)
from .explicit_rk import TimestepSchemeExplicitRK
from .logging import set_log_handler
from .matrix_ops import (
    Operator,
    block_diagonal_operator,
    build_centered_difference,
    build_implicit_euler_operators,
    build_laplacian_tridiag,
    clear_implicit_solver_cache,
    factorize_implicit,
    implicit_solve,
)
from .model import Model, ModelOptions
from .rhs import (
    FunctionRHSEvaluator,
    ImplicitSolveOptions,
    LinearOperatorRHSEvaluator,
    RHSEvaluator,
)
from .state_container import (
    CURRENT_INSTANCE,
    StateBuffer,
    StateContainer,
    StateContainerOptions,
)
from .timestep_scheme import TimestepScheme

__all__ = [
    "CURRENT_INSTANCE",
    "ARKStepError",
    "ARKStepFlag",
    "ARKStepIntegrator",
    "ARKStepOptions",
    "ARKodeOptions",
    "ARKodeSettings",
    "ARKodeState",
    "AdditiveButcherTable",
    "AdditiveTableSpec",
    "ArrayVector",
    "ButcherTable",
    "ConfigurationError",
    "ConvergenceError",
    "DtControllerConfig",
    "FunctionRHSEvaluator",
    "ImplicitSolveOptions",
    "InstanceIndexError",
    "LinearOperatorRHSEvaluator",
    "Model",
    "ModelOptions",
    "NVector",
    "NumericalDomainError",
    "Operator",
    "RHSEvaluator",
    "SchemeConfig",
    "StateBuffer",
    "StateContainer",
    "StateContainerOptions",
    "StateShapeError",
    "TableSpec",
    "TimeIntegrationError",
    "TimestepScheme",
    "TimestepSchemeARKode",
    "TimestepSchemeARS343",
    "TimestepSchemeExplicitRK",
    "UnsupportedConfigurationError",
    "block_diagonal_operator",
    "build_centered_difference",
    "build_implicit_euler_operators",
    "build_laplacian_tridiag",
    "clear_implicit_solver_cache",
    "custom_preset",
    "explicit_preset",
    "factorize_implicit",
    "implicit_solve",
    "resolve_named_table",
    "set_log_handler",
]

__version__ = "0.1.0"
