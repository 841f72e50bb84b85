# src/dycore_stepper/ark_engine.py
"""Adaptive additive Runge-Kutta integrator with an opaque vector interface.

The integrator advances

    y' = fE(t, y) + fI(t, y)

with an additive Runge-Kutta pair: fE is treated with an explicit table and
fI with a diagonally implicit table sharing the same abscissae. Either part
may be absent, which gives a purely explicit or a purely diagonally implicit
method.

Stage i computes

    s_i = y_n + h sum_{j<i} (aE_ij FE_j + aI_ij FI_j)
    z_i = s_i + h aI_ii fI(t_n + c_i h, z_i)

where the second line is an identity when aI_ii = 0 and a nonlinear solve
otherwise. The step and its embedded error estimate are

    y_{n+1} = y_n + h sum_j (bE_j FE_j + bI_j FI_j)
    e       = h sum_j ((bE_j - dE_j) FE_j + (bI_j - dI_j) FI_j).

Vector abstraction:
    The integrator never touches array storage directly. Every state-sized
    quantity is an object implementing :class:`NVector` (clone, destroy,
    assign, linear_sum, scale, const, error_weights, wrms_norm, to_array,
    from_array). :class:`ArrayVector` is the serial NumPy implementation;
    other implementations can place vectors in model storage.

Callbacks:
    ``f(t, y, ydot, user_data) -> int`` writes the tendency of ``y`` into
    ``ydot``. A return of 0 (or None) means success, a positive value a
    recoverable failure (the step is retried with a smaller step size), and a
    negative value an unrecoverable failure.

Step control:
    Error weights are 1 / (rtol |y_n| + atol) and the error norm is the
    weighted RMS norm. New step sizes are h * safety * err^(-1/(q+1)), clamped
    to [fac_min, fac_max] and [dt_min, dt_max]. Each ``evolve`` lands exactly on its
    target time. Failures raise :class:`ARKStepError` carrying an
    :class:`ARKStepFlag`.

Nonlinear solves:
    Implicit stages are solved with SciPy: Jacobian-free Newton-Krylov
    (GMRES) or Anderson-accelerated fixed-point iteration (plain fixed-point
    iteration without acceleration vectors). Convergence is tested on the
    residual in the weighted RMS norm against ``nonlinear_conv_coef``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

import numpy as np
from scipy.optimize import NoConvergence, anderson, newton_krylov

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from .butcher import AdditiveButcherTable

logger = logging.getLogger(__name__)


# =============================================================================
# Errors / messages
# =============================================================================

_MISSING_PART_MSG = "Table '{name}' has an {part} part but no {part} RHS was given"
_UNUSED_RHS_MSG = "An {part} RHS was given but table '{name}' has no {part} part"
_NO_EMBEDDING_MSG = (
    "Adaptive stepping requires an embedding; table '{name}' has none. "
    "Use fixed-step mode."
)
_NOT_EXPLICIT_MSG = "Explicit table '{name}' has nonzero diagonal coefficients"
_TOUT_BEHIND_MSG = "tout={tout} is behind the current time t={t}"
_TOO_MUCH_WORK_MSG = "Reached max_steps={max_steps} before reaching tout={tout}"
_ERR_FAILURE_MSG = "Error test failed {n} times in one step (h={h:.6g})"
_CONV_FAILURE_MSG = "Nonlinear solve failed {n} times in one step (h={h:.6g})"
_FIXED_CONV_FAILURE_MSG = "Nonlinear solve failed in fixed-step mode (h={h:.6g})"
_REPTD_RHS_MSG = "Recoverable RHS failures repeated {n} times in one step (h={h:.6g})"
_FIRST_RHS_MSG = "Recoverable RHS failure on the first call at t={t}"
_UNREC_RHS_MSG = "RHS callback reported an unrecoverable failure (code {code})"
_TOO_CLOSE_MSG = "Step size h={h:.3g} is too small relative to t={t}"
_BAD_OPTION_MSG = "Invalid integrator option: {detail}"


class ARKStepFlag(IntEnum):
    """Integrator return flags, numbered like ARKode's."""

    SUCCESS = 0
    TOO_MUCH_WORK = -1
    ERR_FAILURE = -3
    CONV_FAILURE = -4
    FIRST_RHSFUNC_ERR = -9
    REPTD_RHSFUNC_ERR = -10
    UNREC_RHSFUNC_ERR = -11
    ILL_INPUT = -22
    TOO_CLOSE = -27


class ARKStepError(RuntimeError):
    """Raised when the integrator cannot complete a request.

    Attributes:
        flag: Failure flag.
        t: Integrator time when the failure happened.
    """

    def __init__(self, msg: str, *, flag: ARKStepFlag, t: float) -> None:
        super().__init__(f"[{flag.name}] {msg}")
        self.flag = flag
        self.t = t


class _StageFailure(Exception):
    """Internal: a stage could not be computed; retry with a smaller step."""


class _RecoverableRHSFailure(_StageFailure):
    """Internal: an RHS callback returned a positive code."""


# =============================================================================
# Vector protocol + serial NumPy implementation
# =============================================================================


@runtime_checkable
class NVector(Protocol):
    """Operations the integrator needs from a state-sized vector."""

    def clone(self) -> NVector:
        """Return a new vector of the same layout (contents undefined)."""
        ...

    def destroy(self) -> None:
        """Release the vector's storage."""
        ...

    def assign(self, other: NVector) -> None:
        """self <- other."""
        ...

    def linear_sum(self, coeffs: Sequence[float], vectors: Sequence[NVector]) -> None:
        """self <- sum_i coeffs[i] * vectors[i]; self may appear in vectors."""
        ...

    def scale(self, c: float) -> None:
        """self <- c * self."""
        ...

    def const(self, c: float) -> None:
        """Set every entry to c."""
        ...

    def error_weights(self, y: NVector, rtol: float, atol: float) -> None:
        """self <- 1 / (rtol * |y| + atol)."""
        ...

    def wrms_norm(self, weights: NVector) -> float:
        """Weighted root-mean-square norm of self."""
        ...

    def to_array(self) -> NDArray[np.floating]:
        """Copy the contents into a new flat array."""
        ...

    def from_array(self, values: NDArray[np.floating]) -> None:
        """Overwrite the contents from a flat array."""
        ...


class ArrayVector:
    """Serial NVector backed by a 1D NumPy array."""

    __slots__ = ("data",)

    def __init__(self, data: NDArray[np.floating] | Sequence[float]) -> None:
        self.data = np.array(data, dtype=np.float64).reshape(-1)

    def clone(self) -> ArrayVector:
        return ArrayVector(np.zeros_like(self.data))

    def destroy(self) -> None:
        self.data = np.empty(0)

    def assign(self, other: NVector) -> None:
        np.copyto(self.data, _as_array(other))

    def linear_sum(self, coeffs: Sequence[float], vectors: Sequence[NVector]) -> None:
        acc = np.zeros_like(self.data)
        for c, v in zip(coeffs, vectors, strict=True):
            if c != 0.0:
                acc += c * _as_array(v)
        np.copyto(self.data, acc)

    def scale(self, c: float) -> None:
        self.data *= c

    def const(self, c: float) -> None:
        self.data.fill(c)

    def error_weights(self, y: NVector, rtol: float, atol: float) -> None:
        np.copyto(self.data, 1.0 / (rtol * np.abs(_as_array(y)) + atol))

    def wrms_norm(self, weights: NVector) -> float:
        return _wrms(self.data, _as_array(weights))

    def to_array(self) -> NDArray[np.floating]:
        return self.data.copy()

    def from_array(self, values: NDArray[np.floating]) -> None:
        np.copyto(self.data, np.asarray(values, dtype=self.data.dtype).reshape(-1))


def _as_array(v: NVector) -> NDArray[np.floating]:
    if isinstance(v, ArrayVector):
        return v.data
    return v.to_array()


def _wrms(values: NDArray[np.floating], weights: NDArray[np.floating]) -> float:
    if values.size == 0:
        return 0.0
    prod = values * weights
    v = float(np.sqrt(np.mean(prod * prod)))
    if not np.isfinite(v):
        return float("inf")
    return v


# =============================================================================
# Options / statistics
# =============================================================================

NonlinearSolver = Literal["newton", "fixed-point"]


@dataclass(slots=True, frozen=True)
class DtControllerConfig:
    """Configuration for adaptive timestep control.

    Attributes:
        dt_min: Minimum allowed dt.
        dt_max: Maximum allowed dt.
        safety: Safety factor applied to dt updates.
        fac_min: Minimum multiplicative change factor.
        fac_max: Maximum multiplicative change factor.
    """

    dt_min: float = 0.0
    dt_max: float = float("inf")
    safety: float = 0.9
    fac_min: float = 0.2
    fac_max: float = 5.0


@dataclass(slots=True, frozen=True)
class ARKStepOptions:
    """Integrator options.

    Attributes:
        rtol: Relative tolerance.
        atol: Absolute tolerance.
        fixed_step: If True, take steps of fixed size with no error test.
        initial_step: Initial (or fixed) step size; None means estimate it
            (adaptive) or use the whole interval (fixed step).
        nonlinear_solver: "newton" or "fixed-point".
        anderson_vectors: Anderson acceleration depth for fixed point.
        max_nonlinear_iters: Maximum nonlinear iterations per stage.
        max_linear_iters: Maximum Krylov iterations per Newton iteration.
        nonlinear_conv_coef: Tolerance on the weighted residual norm.
        max_steps: Maximum internal steps per call to evolve.
        max_error_failures: Maximum error test failures in one step.
        max_convergence_failures: Maximum stage failures in one step.
        convergence_failure_eta: Step size factor after a stage failure.
        dt_controller: Step size controller settings.
    """

    rtol: float = 1e-6
    atol: float = 1e-9
    fixed_step: bool = False
    initial_step: float | None = None
    nonlinear_solver: NonlinearSolver = "newton"
    anderson_vectors: int = 0
    max_nonlinear_iters: int = 3
    max_linear_iters: int = 5
    nonlinear_conv_coef: float = 0.1
    max_steps: int = 500
    max_error_failures: int = 7
    max_convergence_failures: int = 10
    convergence_failure_eta: float = 0.25
    dt_controller: DtControllerConfig = field(default_factory=DtControllerConfig)


@dataclass(slots=True)
class ARKStepStats:
    """Cumulative integrator counters since the last (re)initialization.

    Attributes:
        steps: Accepted steps.
        attempts: Attempted steps.
        fe_evals: Explicit RHS evaluations.
        fi_evals: Implicit RHS evaluations.
        error_test_failures: Rejected steps due to the error test.
        convergence_failures: Rejected steps due to failed stages.
        nonlinear_iters: Nonlinear solver iterations.
        last_step: Size of the last accepted step.
    """

    steps: int = 0
    attempts: int = 0
    fe_evals: int = 0
    fi_evals: int = 0
    error_test_failures: int = 0
    convergence_failures: int = 0
    nonlinear_iters: int = 0
    last_step: float = 0.0


# =============================================================================
# Integrator
# =============================================================================

_N_WORK_VECTORS = 7
_ROUNDOFF = 100.0 * float(np.finfo(np.float64).eps)
_H0_FALLBACK = 1e-6
_H0_FRACTION = 0.01
_H0_THRESHOLD = 1e-5
_INNER_RTOL = 1e-10


def required_vectors(table: AdditiveButcherTable) -> int:
    """Number of vectors the integrator clones for a table.

    Seven work vectors plus one stage-tendency vector per stage and part. The
    caller's solution vector comes on top of this.
    """
    n_parts = int(table.explicit is not None) + int(table.implicit is not None)
    return _N_WORK_VECTORS + table.stages * n_parts


def _propose_dt(
    dt: float,
    err_norm: float,
    order: int,
    *,
    cfg: DtControllerConfig,
) -> float:
    """
    Propose a new dt based on error norm and method order.

    Args:
        dt: Current dt.
        err_norm: Current error norm.
        order: Order used for the controller exponent 1 / (order + 1).
        cfg: Dt controller configuration.

    Returns:
        Proposed new dt.
    """
    if err_norm <= 0.0:
        fac = cfg.fac_max
    else:
        exp = 1.0 / float(order + 1)
        fac = cfg.safety * (err_norm ** (-exp))
        fac = min(cfg.fac_max, max(cfg.fac_min, fac))

    dt_new = dt * fac
    if dt_new < cfg.dt_min:
        return cfg.dt_min
    if dt_new > cfg.dt_max:
        return cfg.dt_max
    return dt_new


class ARKStepIntegrator:
    """Additive Runge-Kutta integrator (ARKStep-style)."""

    def __init__(  # noqa: PLR0913
        self,
        fe: Callable[[float, NVector, NVector, Any], int | None] | None,
        fi: Callable[[float, NVector, NVector, Any], int | None] | None,
        t0: float,
        y0: NVector,
        table: AdditiveButcherTable,
        *,
        options: ARKStepOptions | None = None,
        user_data: Any = None,
    ) -> None:
        """
        Create the integrator and clone its work vectors from y0.

        Args:
            fe: Explicit RHS callback, or None.
            fi: Implicit RHS callback, or None.
            t0: Initial time.
            y0: Solution vector. It is read at (re)initialization and written
                when ``evolve`` succeeds; it is never cloned into.
            table: Additive Butcher table.
            options: Integrator options.
            user_data: Opaque object passed to every callback.

        Raises:
            ARKStepError: With ILL_INPUT if the table, callbacks and options
                are inconsistent.
        """
        self.options = options or ARKStepOptions()
        self.table = table
        self.user_data = user_data
        self._fe = fe
        self._fi = fi
        self._validate(t0)

        self._s = table.stages
        self._y = y0
        self._vectors: list[NVector] = []

        self._yn = self._new_vector(y0)
        self._ytrial = self._new_vector(y0)
        self._ystage = self._new_vector(y0)
        self._sdata = self._new_vector(y0)
        self._err = self._new_vector(y0)
        self._ewt = self._new_vector(y0)
        self._ftemp = self._new_vector(y0)
        self._fe_stages = (
            [self._new_vector(y0) for _ in range(self._s)] if fe is not None else []
        )
        self._fi_stages = (
            [self._new_vector(y0) for _ in range(self._s)] if fi is not None else []
        )

        self.stats = ARKStepStats()
        self.tn = float(t0)
        self._h = 0.0
        self._yn.assign(y0)
        self._freed = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _ill_input(self, msg: str, t0: float) -> ARKStepError:
        return ARKStepError(msg, flag=ARKStepFlag.ILL_INPUT, t=t0)

    def _validate(self, t0: float) -> None:
        table, opts = self.table, self.options
        for part, tab, fn in (
            ("explicit", table.explicit, self._fe),
            ("implicit", table.implicit, self._fi),
        ):
            if tab is not None and fn is None:
                raise self._ill_input(
                    _MISSING_PART_MSG.format(name=table.name, part=part), t0
                )
            if tab is None and fn is not None:
                raise self._ill_input(
                    _UNUSED_RHS_MSG.format(name=table.name, part=part), t0
                )
        if table.explicit is not None and not table.explicit.is_explicit:
            raise self._ill_input(_NOT_EXPLICIT_MSG.format(name=table.name), t0)
        if not opts.fixed_step and not table.has_embedding:
            raise self._ill_input(_NO_EMBEDDING_MSG.format(name=table.name), t0)

        checks = (
            (opts.rtol >= 0.0 and opts.atol >= 0.0, "rtol and atol must be >= 0"),
            (opts.rtol > 0.0 or opts.atol > 0.0, "rtol and atol cannot both be 0"),
            (opts.anderson_vectors >= 0, "anderson_vectors must be >= 0"),
            (opts.max_nonlinear_iters >= 1, "max_nonlinear_iters must be >= 1"),
            (opts.max_linear_iters >= 1, "max_linear_iters must be >= 1"),
            (opts.max_steps >= 1, "max_steps must be >= 1"),
            (
                opts.initial_step is None or opts.initial_step > 0.0,
                "initial_step must be > 0",
            ),
        )
        for ok, detail in checks:
            if not ok:
                raise self._ill_input(_BAD_OPTION_MSG.format(detail=detail), t0)

    def _new_vector(self, template: NVector) -> NVector:
        v = template.clone()
        self._vectors.append(v)
        return v

    @property
    def n_vectors(self) -> int:
        """Number of vectors cloned by the integrator."""
        return len(self._vectors)

    @property
    def step_size(self) -> float:
        """Step size that the next internal step will try first (0 if unset)."""
        return self._h

    def reinit(self, t0: float, y0: NVector | None = None) -> None:
        """
        Restart integration from a new initial condition.

        Args:
            t0: New initial time.
            y0: Vector holding the new initial state. Defaults to the solution
                vector given at construction, which also becomes the new
                solution vector when provided.
        """
        if y0 is not None:
            self._y = y0
        self._yn.assign(self._y)
        self.tn = float(t0)
        self._h = 0.0
        self.stats = ARKStepStats()

    def free(self) -> None:
        """Destroy every cloned vector. The integrator is unusable afterwards."""
        if self._freed:
            return
        for v in reversed(self._vectors):
            v.destroy()
        self._vectors.clear()
        self._freed = True

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _call(
        self,
        fn: Callable[[float, NVector, NVector, Any], int | None],
        t: float,
        y: NVector,
        ydot: NVector,
    ) -> None:
        code = fn(t, y, ydot, self.user_data)
        if code is None or code == 0:
            return
        if code > 0:
            raise _RecoverableRHSFailure
        raise ARKStepError(
            _UNREC_RHS_MSG.format(code=code), flag=ARKStepFlag.UNREC_RHSFUNC_ERR, t=t
        )

    def _eval_fe(self, t: float, y: NVector, ydot: NVector) -> None:
        self.stats.fe_evals += 1
        self._call(self._fe, t, y, ydot)  # type: ignore[arg-type]

    def _eval_fi(self, t: float, y: NVector, ydot: NVector) -> None:
        self.stats.fi_evals += 1
        self._call(self._fi, t, y, ydot)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Step size selection
    # ------------------------------------------------------------------

    @property
    def _controller_order(self) -> int:
        embedded = self.table.embedded_order
        if embedded is None:
            return self.table.order
        return min(self.table.order, embedded)

    def _estimate_initial_step(self, tout: float) -> float:
        """Estimate h0 from the full RHS at (tn, yn).

        Raises:
            ARKStepError: FIRST_RHSFUNC_ERR if the RHS fails recoverably.
        """
        opts = self.options
        span = abs(tout - self.tn)
        if opts.initial_step is not None:
            return min(opts.initial_step, span)

        self._ewt.error_weights(self._yn, opts.rtol, opts.atol)
        parts: list[NVector] = []
        try:
            if self._fe is not None:
                self._eval_fe(self.tn, self._yn, self._fe_stages[0])
                parts.append(self._fe_stages[0])
            if self._fi is not None:
                self._eval_fi(self.tn, self._yn, self._fi_stages[0])
                parts.append(self._fi_stages[0])
        except _RecoverableRHSFailure:
            raise ARKStepError(
                _FIRST_RHS_MSG.format(t=self.tn),
                flag=ARKStepFlag.FIRST_RHSFUNC_ERR,
                t=self.tn,
            ) from None
        self._ftemp.linear_sum([1.0] * len(parts), parts)

        d0 = self._yn.wrms_norm(self._ewt)
        d1 = self._ftemp.wrms_norm(self._ewt)
        if d0 < _H0_THRESHOLD or d1 < _H0_THRESHOLD or not np.isfinite(d1):
            h0 = _H0_FALLBACK
        else:
            h0 = _H0_FRACTION * d0 / d1
        return float(min(h0, span, opts.dt_controller.dt_max))

    # ------------------------------------------------------------------
    # One step attempt
    # ------------------------------------------------------------------

    def _solve_stage(self, t_stage: float, h_gamma: float) -> None:
        """Solve z = sdata + h_gamma fI(t_stage, z) into ystage.

        Raises:
            _StageFailure: If the nonlinear solve does not converge.
        """
        opts = self.options
        sdata = self._sdata.to_array()
        weights = self._ewt.to_array()

        def residual(z: NDArray[np.floating]) -> NDArray[np.floating]:
            self._ystage.from_array(z)
            self._eval_fi(t_stage, self._ystage, self._ftemp)
            res = sdata + h_gamma * self._ftemp.to_array() - z
            if not np.all(np.isfinite(res)):
                raise _StageFailure
            return res

        def count_iteration(_x: object, _f: object) -> None:
            self.stats.nonlinear_iters += 1

        common: dict[str, Any] = {
            "f_tol": opts.nonlinear_conv_coef,
            "tol_norm": lambda r: _wrms(np.asarray(r), weights),
            "maxiter": opts.max_nonlinear_iters + 1,
            "line_search": None,
            "callback": count_iteration,
        }
        try:
            if opts.nonlinear_solver == "newton":
                z = newton_krylov(
                    residual,
                    sdata.copy(),
                    method="gmres",
                    inner_maxiter=opts.max_linear_iters,
                    inner_rtol=_INNER_RTOL,
                    **common,
                )
            else:
                z = anderson(
                    residual,
                    sdata.copy(),
                    alpha=1.0,
                    M=opts.anderson_vectors,
                    **common,
                )
        except NoConvergence as exc:
            raise _StageFailure from exc
        self._ystage.from_array(np.asarray(z))

    def _attempt_step(self, h: float) -> float:
        """Compute ytrial from yn with step h.

        Returns:
            Weighted error norm of the step (0.0 in fixed-step mode).

        Raises:
            _StageFailure: If a stage solve or a recoverable RHS call failed.
        """
        table = self.table
        exp_tab, imp_tab = table.explicit, table.implicit
        c = table.c
        t = self.tn

        self._ewt.error_weights(self._yn, self.options.rtol, self.options.atol)

        for i in range(self._s):
            t_stage = t + c[i] * h
            coeffs: list[float] = [1.0]
            vecs: list[NVector] = [self._yn]
            for j in range(i):
                if exp_tab is not None and exp_tab.a[i, j] != 0.0:
                    coeffs.append(h * exp_tab.a[i, j])
                    vecs.append(self._fe_stages[j])
                if imp_tab is not None and imp_tab.a[i, j] != 0.0:
                    coeffs.append(h * imp_tab.a[i, j])
                    vecs.append(self._fi_stages[j])
            self._sdata.linear_sum(coeffs, vecs)

            gamma_i = 0.0 if imp_tab is None else float(imp_tab.a[i, i])
            if gamma_i == 0.0:
                self._ystage.assign(self._sdata)
            else:
                self._solve_stage(t_stage, h * gamma_i)

            if exp_tab is not None:
                self._eval_fe(t_stage, self._ystage, self._fe_stages[i])
            if imp_tab is not None:
                self._eval_fi(t_stage, self._ystage, self._fi_stages[i])

        sol_coeffs: list[float] = [1.0]
        sol_vecs: list[NVector] = [self._yn]
        err_coeffs: list[float] = []
        err_vecs: list[NVector] = []
        adaptive = not self.options.fixed_step
        for tab, stage_vecs in ((exp_tab, self._fe_stages), (imp_tab, self._fi_stages)):
            if tab is None:
                continue
            for j in range(self._s):
                if tab.b[j] != 0.0:
                    sol_coeffs.append(h * tab.b[j])
                    sol_vecs.append(stage_vecs[j])
                if adaptive and tab.d is not None and tab.b[j] != tab.d[j]:
                    err_coeffs.append(h * (tab.b[j] - tab.d[j]))
                    err_vecs.append(stage_vecs[j])
        self._ytrial.linear_sum(sol_coeffs, sol_vecs)

        if not adaptive:
            return 0.0
        if not err_vecs:
            return 0.0
        self._err.linear_sum(err_coeffs, err_vecs)
        return self._err.wrms_norm(self._ewt)

    # ------------------------------------------------------------------
    # Public driver
    # ------------------------------------------------------------------

    def evolve(self, tout: float) -> float:
        """
        Integrate from the current time to exactly ``tout``.

        On success the solution vector holds y(tout). On failure it is left
        untouched and :class:`ARKStepError` is raised.

        Args:
            tout: Target time (>= current time).

        Raises:
            ARKStepError: If the target cannot be reached.

        Returns:
            The time reached, equal to tout.
        """
        opts = self.options
        tout = float(tout)
        if tout < self.tn:
            msg = _TOUT_BEHIND_MSG.format(tout=tout, t=self.tn)
            raise self._ill_input(msg, self.tn)

        if opts.fixed_step:
            h = opts.initial_step if opts.initial_step is not None else tout - self.tn
        else:
            h = self._h if self._h > 0.0 else self._estimate_initial_step(tout)

        n_steps = 0
        while tout - self.tn > _ROUNDOFF * max(abs(tout), abs(self.tn), 1.0):
            if n_steps >= opts.max_steps:
                raise ARKStepError(
                    _TOO_MUCH_WORK_MSG.format(max_steps=opts.max_steps, tout=tout),
                    flag=ARKStepFlag.TOO_MUCH_WORK,
                    t=self.tn,
                )
            h = self._take_step(h, tout)
            n_steps += 1

        self.tn = tout
        self._y.assign(self._yn)
        return tout

    def _take_step(self, h: float, tout: float) -> float:
        """Take one accepted step toward tout, retrying as needed.

        Returns:
            Step size proposed for the next step.
        """
        opts = self.options
        n_err_fail = 0
        n_conv_fail = 0
        last_fail_rhs = False

        while True:
            remaining = tout - self.tn
            landing = h >= remaining or remaining - h <= _ROUNDOFF * remaining
            h_try = remaining if landing else h
            if self.tn + h_try == self.tn:
                raise ARKStepError(
                    _TOO_CLOSE_MSG.format(h=h_try, t=self.tn),
                    flag=ARKStepFlag.TOO_CLOSE,
                    t=self.tn,
                )

            self.stats.attempts += 1
            try:
                err_norm = self._attempt_step(h_try)
            except _StageFailure as exc:
                self.stats.convergence_failures += 1
                n_conv_fail += 1
                last_fail_rhs = isinstance(exc, _RecoverableRHSFailure)
                self._check_stage_failure(n_conv_fail, h_try, last_fail_rhs)
                h = h_try * opts.convergence_failure_eta
                logger.debug(
                    "Stage failure at t=%.6g; retrying with h=%.6g", self.tn, h
                )
                continue

            if not opts.fixed_step and err_norm > 1.0:
                self.stats.error_test_failures += 1
                n_err_fail += 1
                if n_err_fail >= opts.max_error_failures:
                    raise ARKStepError(
                        _ERR_FAILURE_MSG.format(n=n_err_fail, h=h_try),
                        flag=ARKStepFlag.ERR_FAILURE,
                        t=self.tn,
                    )
                h = min(
                    _propose_dt(
                        h_try, err_norm, self._controller_order,
                        cfg=opts.dt_controller,
                    ),
                    h_try,
                )
                logger.debug(
                    "Error test failed at t=%.6g (err=%.3g); retrying with h=%.6g",
                    self.tn,
                    err_norm,
                    h,
                )
                continue
            break

        self.tn = tout if landing else self.tn + h_try
        self._yn.assign(self._ytrial)
        self.stats.steps += 1
        self.stats.last_step = h_try

        if opts.fixed_step:
            return h
        h_next = _propose_dt(
            h_try, err_norm, self._controller_order, cfg=opts.dt_controller
        )
        if n_err_fail or n_conv_fail:
            h_next = min(h_next, h_try)
        self._h = h_next
        return h_next

    def _check_stage_failure(self, n_fail: int, h: float, from_rhs: bool) -> None:
        opts = self.options
        if opts.fixed_step:
            flag = (
                ARKStepFlag.REPTD_RHSFUNC_ERR if from_rhs else ARKStepFlag.CONV_FAILURE
            )
            msg = (
                _REPTD_RHS_MSG.format(n=n_fail, h=h)
                if from_rhs
                else _FIXED_CONV_FAILURE_MSG.format(h=h)
            )
            raise ARKStepError(msg, flag=flag, t=self.tn)
        if n_fail >= opts.max_convergence_failures:
            if from_rhs:
                raise ARKStepError(
                    _REPTD_RHS_MSG.format(n=n_fail, h=h),
                    flag=ARKStepFlag.REPTD_RHSFUNC_ERR,
                    t=self.tn,
                )
            raise ARKStepError(
                _CONV_FAILURE_MSG.format(n=n_fail, h=h),
                flag=ARKStepFlag.CONV_FAILURE,
                t=self.tn,
            )
