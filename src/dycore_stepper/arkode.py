# src/dycore_stepper/arkode.py
"""Timestep scheme backed by the adaptive additive Runge-Kutta integrator.

The adapter maps the model's instance-indexed state onto the integrator's
vector abstraction:

- every integrator vector is one container instance, handed out by a pool;
- the solution vector is instance 0 itself (no copy);
- RHS callbacks receive the model evaluator through a context object and call
  it with the instance indices of their vectors.

Lifecycle: UNCONFIGURED -> INITIALIZED (``initialize``) -> STEPPING (first
successful ``step``) -> FINALIZED (``close``). ``initialize`` validates every
setting and may be called again to rebuild the integrator.

Modes:
    imex      explicit tendency -> explicit table, implicit -> implicit table
    explicit  full tendency E + I -> explicit table
    implicit  full tendency E + I -> diagonally implicit table
"""

from __future__ import annotations

import logging
import warnings
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Final, Literal

import numpy as np

from .ark_engine import (
    ARKStepError,
    ARKStepIntegrator,
    ARKStepOptions,
    DtControllerConfig,
    required_vectors,
)
from .butcher import (
    DEFAULT_TABLE_IDS,
    AdditiveButcherTable,
    resolve_named_table,
)
from .errors import (
    ConfigurationError,
    ConvergenceError,
    NumericalDomainError,
    raise_configuration_error,
)
from .state_container import CURRENT_INSTANCE
from .timestep_scheme import TimestepScheme

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from .ark_engine import NVector
    from .model import Model
    from .rhs import RHSEvaluator
    from .state_container import StateContainer

logger = logging.getLogger(__name__)

IntegrationMode = Literal["imex", "explicit", "implicit"]
NonlinearSolverName = Literal["newton", "fixed-point"]

_MODES: Final[tuple[str, ...]] = ("imex", "explicit", "implicit")
_SOLVERS: Final[tuple[str, ...]] = ("newton", "fixed-point")
_SCHEME: Final[str] = "ARKode"

# Instances used when the table cannot be resolved before initialize();
# initialize() then reports the actual configuration problem.
_FALLBACK_INSTANCES: Final[int] = 18

_NOT_INITIALIZED_MSG = "ARKode scheme must be initialized before stepping"
_FINALIZED_MSG = "ARKode scheme was closed; call initialize() to rebuild it"
_POOL_EXHAUSTED_MSG = (
    "All {n} instances reserved for ARKode vectors are in use; raise n_vectors"
)
_TIME_TOL: Final[float] = 1e-12


class ARKodeState(Enum):
    """Lifecycle of the ARKode adapter."""

    UNCONFIGURED = "unconfigured"
    INITIALIZED = "initialized"
    STEPPING = "stepping"
    FINALIZED = "finalized"


@dataclass(frozen=True, slots=True, eq=False)
class ARKodeSettings:
    """Integrator settings of the ARKode scheme.

    Attributes:
        rtol: Relative tolerance (> 0).
        atol: Absolute tolerance (> 0).
        mode: "imex", "explicit" or "implicit".
        fixed_step: If True, take one step per requested interval (or steps of
            initial_step) with no error test.
        nonlinear_solver: "newton" or "fixed-point".
        anderson_vectors: Anderson acceleration depth; fixed point only.
        max_nonlinear_iters: Maximum nonlinear iterations per stage.
        max_linear_iters: Maximum Krylov iterations per Newton iteration.
        butcher_table: Integrator-known table ID, or None.
        custom_table: Custom additive table, or None. Mutually exclusive with
            butcher_table.
        n_vectors: Container instances reserved for the integrator, including
            instance 0. None means exactly the requirement of the table.
        max_steps: Maximum internal steps per model step.
        initial_step: Initial (adaptive) or fixed step size, or None.
        dt_controller: Adaptive step size controller settings.
    """

    rtol: float = 1e-6
    atol: float = 1e-9
    mode: IntegrationMode = "imex"
    fixed_step: bool = False
    nonlinear_solver: NonlinearSolverName = "newton"
    anderson_vectors: int = 0
    max_nonlinear_iters: int = 3
    max_linear_iters: int = 5
    butcher_table: int | None = None
    custom_table: AdditiveButcherTable | None = None
    n_vectors: int | None = None
    max_steps: int = 500
    initial_step: float | None = None
    dt_controller: DtControllerConfig = field(default_factory=DtControllerConfig)

    def to_options(self) -> ARKStepOptions:
        """Integrator options derived from these settings."""
        return ARKStepOptions(
            rtol=self.rtol,
            atol=self.atol,
            fixed_step=self.fixed_step,
            initial_step=self.initial_step,
            nonlinear_solver=self.nonlinear_solver,
            anderson_vectors=self.anderson_vectors,
            max_nonlinear_iters=self.max_nonlinear_iters,
            max_linear_iters=self.max_linear_iters,
            max_steps=self.max_steps,
            dt_controller=self.dt_controller,
        )


# =============================================================================
# Instance-backed vectors
# =============================================================================


class InstanceVectorPool:
    """Hands out container instances 1..capacity-1 as integrator vectors."""

    def __init__(self, state: StateContainer, capacity: int) -> None:
        self.state = state
        self.capacity = int(capacity)
        self._free = list(range(self.capacity - 1, CURRENT_INSTANCE, -1))
        self._combo = np.zeros(self.capacity)

    @property
    def n_in_use(self) -> int:
        """Number of instances currently handed out (instance 0 excluded)."""
        return self.capacity - 1 - len(self._free)

    def acquire(self) -> int:
        """Reserve a free instance.

        Raises:
            ConfigurationError: If every reserved instance is in use.
        """
        if not self._free:
            raise ConfigurationError(_POOL_EXHAUSTED_MSG.format(n=self.capacity))
        return self._free.pop()

    def release(self, idx: int) -> None:
        """Return an instance to the pool."""
        if idx != CURRENT_INSTANCE and idx not in self._free:
            self._free.append(idx)

    def combine(
        self, coeffs: Sequence[float], indices: Sequence[int], dest: int
    ) -> None:
        """dest <- sum_k coeffs[k] * instance[indices[k]]."""
        self._combo.fill(0.0)
        for c, i in zip(coeffs, indices, strict=True):
            self._combo[i] += c
        self.state.linear_combine(self._combo, dest)


class InstanceVector:
    """Integrator vector stored in one container instance."""

    __slots__ = ("index", "pool")

    def __init__(self, pool: InstanceVectorPool, index: int) -> None:
        self.pool = pool
        self.index = index

    @property
    def state(self) -> StateContainer:
        return self.pool.state

    def clone(self) -> InstanceVector:
        return InstanceVector(self.pool, self.pool.acquire())

    def destroy(self) -> None:
        self.pool.release(self.index)

    def assign(self, other: NVector) -> None:
        if isinstance(other, InstanceVector):
            self.state.copy_instance(other.index, self.index)
        else:
            self.from_array(other.to_array())

    def linear_sum(self, coeffs: Sequence[float], vectors: Sequence[NVector]) -> None:
        indices = [v.index for v in vectors]  # type: ignore[attr-defined]
        self.pool.combine(coeffs, indices, self.index)

    def scale(self, c: float) -> None:
        self.pool.combine([c], [self.index], self.index)

    def const(self, c: float) -> None:
        self.state.component_data(self.index).fill(c)
        self.state.tracer_data(self.index).fill(c)

    def error_weights(self, y: NVector, rtol: float, atol: float) -> None:
        self.from_array(1.0 / (rtol * np.abs(y.to_array()) + atol))

    def wrms_norm(self, weights: NVector) -> float:
        prod = self.to_array() * weights.to_array()
        if prod.size == 0:
            return 0.0
        v = float(np.sqrt(np.mean(prod * prod)))
        return v if np.isfinite(v) else float("inf")

    def to_array(self) -> NDArray[np.floating]:
        return self.state.gather(self.index)

    def from_array(self, values: NDArray[np.floating]) -> None:
        self.state.scatter(values, self.index)


# =============================================================================
# Callbacks
# =============================================================================


@dataclass(slots=True)
class ARKodeCallbackContext:
    """User data handed to every integrator callback.

    Attributes:
        state: Model state container.
        rhs: Model tendency evaluator.
        scratch: Instance used to sum E and I for the full tendency.
        recoverable_failures: Evaluator failures reported as recoverable.
        last_error: Most recent evaluator failure, if any.
    """

    state: StateContainer
    rhs: RHSEvaluator
    scratch: int | None = None
    recoverable_failures: int = 0
    last_error: Exception | None = field(default=None)

    def call(
        self,
        fn: Callable[[StateContainer, int, int, float], None],
        t: float,
        y: InstanceVector,
        ydot: InstanceVector,
    ) -> int:
        """Run one evaluator call, mapping soft failures to a positive code."""
        try:
            fn(self.state, y.index, ydot.index, t)
        except (ConvergenceError, NumericalDomainError) as exc:
            self.recoverable_failures += 1
            self.last_error = exc
            logger.debug("Recoverable tendency failure at t=%.6g: %s", t, exc)
            return 1
        return 0


def explicit_rhs_callback(
    t: float, y: InstanceVector, ydot: InstanceVector, ctx: ARKodeCallbackContext
) -> int:
    """Explicit tendency E(t, y)."""
    return ctx.call(ctx.rhs.evaluate_explicit_rhs, t, y, ydot)


def implicit_rhs_callback(
    t: float, y: InstanceVector, ydot: InstanceVector, ctx: ARKodeCallbackContext
) -> int:
    """Implicit tendency I(t, y)."""
    return ctx.call(ctx.rhs.evaluate_implicit_rhs, t, y, ydot)


def full_rhs_callback(
    t: float, y: InstanceVector, ydot: InstanceVector, ctx: ARKodeCallbackContext
) -> int:
    """Full tendency E(t, y) + I(t, y), summed through the scratch instance."""
    scratch = ctx.scratch
    if scratch is None:
        msg = "full_rhs_callback requires a scratch instance"
        raise RuntimeError(msg)
    code = ctx.call(ctx.rhs.evaluate_explicit_rhs, t, y, ydot)
    if code != 0:
        return code
    code = ctx.call(
        ctx.rhs.evaluate_implicit_rhs, t, y, InstanceVector(ydot.pool, scratch)
    )
    if code != 0:
        return code
    ydot.pool.combine([1.0, 1.0], [ydot.index, scratch], ydot.index)
    return 0


# =============================================================================
# Adapter
# =============================================================================


class _IntegratorHandle:
    """Owns the integrator so it can be released from a finalizer."""

    __slots__ = ("integrator",)

    def __init__(self) -> None:
        self.integrator: ARKStepIntegrator | None = None

    def release(self) -> None:
        if self.integrator is not None:
            self.integrator.free()
            self.integrator = None


class TimestepSchemeARKode(TimestepScheme):
    """Adaptive (or fixed-step) additive Runge-Kutta scheme."""

    name: ClassVar[str] = _SCHEME

    def __init__(self, model: Model, settings: ARKodeSettings | None = None) -> None:
        """
        Create the adapter. No integrator exists until ``initialize``.

        Args:
            model: Model owning the state container and the evaluator.
            settings: Integrator settings; defaults to ARKodeSettings().
        """
        super().__init__(model)
        self.settings = settings or ARKodeSettings()
        self.lifecycle = ARKodeState.UNCONFIGURED
        self.table: AdditiveButcherTable | None = None
        self.context: ARKodeCallbackContext | None = None
        self._pool: InstanceVectorPool | None = None
        self._needs_reinit = True
        self._handle = _IntegratorHandle()
        self._finalizer = weakref.finalize(self, self._handle.release)
        self._n_instances = self._planned_instances()

    # ------------------------------------------------------------------
    # Instance bookkeeping
    # ------------------------------------------------------------------

    def _full_rhs_scratch(self) -> int:
        return 0 if self.settings.mode == "imex" else 1

    def required_instances(self, table: AdditiveButcherTable) -> int:
        """Instances needed for a table: solution, work vectors and scratch."""
        return 1 + required_vectors(table) + self._full_rhs_scratch()

    def _planned_instances(self) -> int:
        if self.settings.n_vectors is not None:
            return int(self.settings.n_vectors)
        try:
            table = self._resolve_table()
        except (ConfigurationError, ValueError):
            return _FALLBACK_INSTANCES
        return self.required_instances(table)

    def get_component_data_instances(self) -> int:
        """Instances reserved for the integrator (n_vectors or requirement)."""
        return self._n_instances

    def get_tracer_data_instances(self) -> int:
        """Same as the component instance count."""
        return self._n_instances

    @property
    def integrator(self) -> ARKStepIntegrator | None:
        """Underlying integrator, or None before initialize / after close."""
        return self._handle.integrator

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _resolve_table(self) -> AdditiveButcherTable:
        s = self.settings
        if s.mode not in _MODES:
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=["mode"],
                detail=f"Unknown mode '{s.mode}'. Valid modes: {list(_MODES)}.",
            )
        if s.butcher_table is not None and s.custom_table is not None:
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=["butcher_table", "custom_table"],
                detail="butcher_table and custom_table are mutually exclusive.",
            )
        if s.custom_table is not None:
            return self._custom_table_for_mode(s.custom_table)
        table_id = (
            s.butcher_table
            if s.butcher_table is not None
            else DEFAULT_TABLE_IDS[s.mode]
        )
        return resolve_named_table(int(table_id), s.mode)

    def _custom_table_for_mode(
        self, table: AdditiveButcherTable
    ) -> AdditiveButcherTable:
        mode = self.settings.mode
        needed = {
            "imex": ("explicit", "implicit"),
            "explicit": ("explicit",),
            "implicit": ("implicit",),
        }[mode]
        missing = [part for part in needed if getattr(table, part) is None]
        if missing:
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=["custom_table"],
                detail=f"Mode '{mode}' needs the {missing} part(s) of the "
                f"custom table '{table.name}'.",
            )
        if mode == "imex":
            return table
        if getattr(table, "implicit" if mode == "explicit" else "explicit") is not None:
            warnings.warn(
                f"Mode '{mode}' uses only the {mode} part of custom table "
                f"'{table.name}'; the other part is ignored.",
                RuntimeWarning,
                stacklevel=3,
            )
        if mode == "explicit":
            return AdditiveButcherTable(name=table.name, explicit=table.explicit)
        return AdditiveButcherTable(name=table.name, implicit=table.implicit)

    def _validate_settings(self) -> AdditiveButcherTable:
        s = self.settings
        invalid: list[str] = []
        if not (np.isfinite(s.rtol) and s.rtol > 0.0):
            invalid.append("rtol")
        if not (np.isfinite(s.atol) and s.atol > 0.0):
            invalid.append("atol")
        if s.nonlinear_solver not in _SOLVERS:
            invalid.append("nonlinear_solver")
        if s.anderson_vectors < 0:
            invalid.append("anderson_vectors")
        if s.max_nonlinear_iters < 1:
            invalid.append("max_nonlinear_iters")
        if s.max_linear_iters < 1:
            invalid.append("max_linear_iters")
        if s.max_steps < 1:
            invalid.append("max_steps")
        if s.initial_step is not None and not s.initial_step > 0.0:
            invalid.append("initial_step")
        if invalid:
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=invalid,
                detail="Tolerances and step sizes must be positive and "
                "iteration limits at least one.",
            )
        if s.anderson_vectors > 0 and s.nonlinear_solver != "fixed-point":
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=["anderson_vectors", "nonlinear_solver"],
                detail="Anderson acceleration requires the fixed-point solver.",
            )

        table = self._resolve_table()
        if not s.fixed_step and not table.has_embedding:
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=["fixed_step"],
                detail=f"Table '{table.name}' has no embedding; adaptive "
                "stepping is impossible. Enable fixed_step.",
            )

        need = self.required_instances(table)
        if self._n_instances < need:
            raise_configuration_error(
                scheme=_SCHEME,
                invalid=["n_vectors"],
                detail=f"Table '{table.name}' needs {need} instances "
                f"(including instance 0); n_vectors={self._n_instances}.",
            )
        return table

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Validate settings and (re)build the integrator.

        Raises:
            ConfigurationError: If any setting is invalid or the container
                holds too few instances.
        """
        table = self._validate_settings()
        super().initialize()

        self._handle.release()

        pool = InstanceVectorPool(self.state, self._n_instances)
        y = InstanceVector(pool, CURRENT_INSTANCE)
        context = ARKodeCallbackContext(state=self.state, rhs=self.rhs)
        if self.settings.mode != "imex":
            context.scratch = pool.acquire()

        fe: Callable[..., int] | None
        fi: Callable[..., int] | None
        if self.settings.mode == "imex":
            fe, fi = explicit_rhs_callback, implicit_rhs_callback
        elif self.settings.mode == "explicit":
            fe, fi = full_rhs_callback, None
        else:
            fe, fi = None, full_rhs_callback

        try:
            integrator = ARKStepIntegrator(
                fe,
                fi,
                0.0,
                y,
                table,
                options=self.settings.to_options(),
                user_data=context,
            )
        except ARKStepError as exc:
            msg = f"Invalid {_SCHEME} configuration. Detail: {exc}"
            raise ConfigurationError(msg) from exc

        self._handle.integrator = integrator
        self._pool = pool
        self.table = table
        self.context = context
        self._needs_reinit = True
        self.lifecycle = ARKodeState.INITIALIZED
        logger.info(
            "ARKode initialized: mode=%s table=%s order=%d fixed_step=%s "
            "solver=%s vectors=%d",
            self.settings.mode,
            table.name,
            table.order,
            self.settings.fixed_step,
            self.settings.nonlinear_solver,
            integrator.n_vectors,
        )

    def step(
        self, first_step: bool, last_step: bool, time: float, dt: float  # noqa: ARG002
    ) -> None:
        """
        Advance instance 0 from ``time`` to ``time + dt`` with the integrator.

        Args:
            first_step: Ignored.
            last_step: Ignored.
            time: Simulation time at the start of the step.
            dt: Step size.

        Raises:
            ConfigurationError: If the scheme is not initialized.
            ConvergenceError: If the integrator fails. Instance 0 then still
                holds the state at ``time``.
        """
        integrator = self._handle.integrator
        if self.lifecycle is ARKodeState.FINALIZED:
            raise ConfigurationError(_FINALIZED_MSG)
        if integrator is None:
            raise ConfigurationError(_NOT_INITIALIZED_MSG)

        if self._needs_reinit or abs(integrator.tn - time) > _TIME_TOL * max(
            1.0, abs(time)
        ):
            integrator.reinit(time)
            self._needs_reinit = False
            logger.info("ARKode re-initialized from instance 0 at t=%.6g", time)

        try:
            integrator.evolve(time + dt)
        except ARKStepError as exc:
            self._needs_reinit = True
            msg = (
                f"ARKode step failed at t={time:.16g} (dt={dt:.6g}). "
                f"Reason: {exc}"
            )
            raise ConvergenceError(msg) from exc

        self.lifecycle = ARKodeState.STEPPING
        st = integrator.stats
        logger.debug(
            "ARKode t=%.6g: steps=%d attempts=%d fe=%d fi=%d netf=%d ncfn=%d nni=%d "
            "h=%.3g",
            time + dt,
            st.steps,
            st.attempts,
            st.fe_evals,
            st.fi_evals,
            st.error_test_failures,
            st.convergence_failures,
            st.nonlinear_iters,
            st.last_step,
        )

    def close(self) -> None:
        """Release the integrator and its vectors."""
        self._handle.release()
        self._pool = None
        self.lifecycle = ARKodeState.FINALIZED

    def statistics(self) -> dict[str, Any]:
        """Integrator counters since the last re-initialization."""
        integrator = self._handle.integrator
        if integrator is None:
            return {}
        st = integrator.stats
        return {
            "steps": st.steps,
            "attempts": st.attempts,
            "fe_evals": st.fe_evals,
            "fi_evals": st.fi_evals,
            "error_test_failures": st.error_test_failures,
            "convergence_failures": st.convergence_failures,
            "nonlinear_iters": st.nonlinear_iters,
            "last_step": st.last_step,
        }
