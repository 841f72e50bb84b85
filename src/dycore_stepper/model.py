# src/dycore_stepper/model.py
"""Minimal model driver: owns the state, the evaluator and one timestep scheme.

The driver is the only recovery boundary of the package. Schemes raise; the
driver logs and re-raises, leaving instance 0 at the last completed step.

Typical use:

    state = StateContainer(n_components, n_tracers, grid_shape)
    model = Model(state, evaluator)
    model.set_timestep_scheme(TimestepSchemeARS343(model))
    state.set_state(initial_components, initial_tracers)
    model.run(time_grid)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .errors import raise_configuration_error, raise_numerical_domain_error
from .state_container import CURRENT_INSTANCE

if TYPE_CHECKING:
    from .rhs import RHSEvaluator
    from .state_container import StateContainer
    from .timestep_scheme import TimestepScheme

logger = logging.getLogger(__name__)


# Error / message constants -------------------------------------------------

_TIMEGRID_1D_ERROR = "time_grid must be a 1D array"
_TIMEGRID_MIN_POINTS_ERROR = "time_grid must contain at least two time points"
_TIMEGRID_MONOTONE_ERROR = "time_grid must be strictly increasing"
_N_STEPS_ERROR = "n_steps must be >= 1; got {n}"
_DT_ERROR = "dt must be a positive finite float; got {dt}"
_NO_SCHEME_DETAIL = "No timestep scheme set; call set_timestep_scheme() first."
_FOREIGN_SCHEME_DETAIL = "The timestep scheme was created for a different model."
_HISTORY_NOT_STORED_ERROR = "History is not stored (store_history=False)."

FloatArray = npt.NDArray[np.floating[Any]]


@dataclass(slots=True)
class ModelOptions:
    """Optional configuration for Model.

    Attributes:
        store_history: Store instance 0 at every time of each run.
        check_finite: Fail as soon as a step produces non-finite values.
    """

    store_history: bool = False
    check_finite: bool = True


class Model:
    """Driver advancing instance 0 of a state container through time."""

    def __init__(
        self,
        state: StateContainer,
        rhs: RHSEvaluator,
        *,
        options: ModelOptions | None = None,
    ) -> None:
        """
        Initialize Model.

        Args:
            state: State container holding instance 0 and scheme workspace.
            rhs: Tendency evaluator used by the timestep scheme.
            options: Optional ModelOptions.
        """
        opts = options or ModelOptions()
        self.state = state
        self.rhs = rhs
        self.store_history = opts.store_history
        self.check_finite = opts.check_finite

        self.scheme: TimestepScheme | None = None
        self.current_time: float | None = None
        self.n_steps_taken = 0

        self.history_times: FloatArray | None = None
        self.history_components: FloatArray | None = None
        self.history_tracers: FloatArray | None = None

    def set_timestep_scheme(
        self, scheme: TimestepScheme, *, initialize: bool = True
    ) -> None:
        """
        Attach a scheme, allocate its data instances and initialize it.

        The container is resized to exactly the declared instance counts, so
        any access beyond them fails with InstanceIndexError.

        Args:
            scheme: Scheme created for this model.
            initialize: If True, call scheme.initialize().

        Raises:
            ConfigurationError: If the scheme belongs to another model or its
                initialization fails.
        """
        if scheme.model is not self:
            raise_configuration_error(scheme=scheme.name, detail=_FOREIGN_SCHEME_DETAIL)

        n_comp = scheme.get_component_data_instances()
        n_tracer = scheme.get_tracer_data_instances()
        self.state.allocate(n_comp, n_tracer)
        logger.info(
            "Timestep scheme %s: %d component / %d tracer instances",
            scheme.name,
            n_comp,
            n_tracer,
        )

        self.scheme = scheme
        if initialize:
            scheme.initialize()

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_time_grid(time_grid: np.ndarray) -> FloatArray:
        grid = np.asarray(time_grid, dtype=float)
        if grid.ndim != 1:
            raise ValueError(_TIMEGRID_1D_ERROR)
        if grid.size < 2:  # noqa: PLR2004
            raise ValueError(_TIMEGRID_MIN_POINTS_ERROR)
        if np.any(np.diff(grid) <= 0.0):
            raise ValueError(_TIMEGRID_MONOTONE_ERROR)
        return grid

    def _init_history(self, grid: FloatArray) -> None:
        state = self.state
        self.history_times = grid.copy()
        self.history_components = np.zeros(
            (grid.size, *state.component_shape), dtype=state.dtype
        )
        self.history_tracers = np.zeros(
            (grid.size, *state.tracer_shape), dtype=state.dtype
        )
        self._record(0)

    def _record(self, idx: int) -> None:
        if self.history_components is None or self.history_tracers is None:
            return
        self.history_components[idx] = self.state.component_data(CURRENT_INSTANCE)
        self.history_tracers[idx] = self.state.tracer_data(CURRENT_INSTANCE)

    def run(self, time_grid: np.ndarray) -> None:
        """
        Step instance 0 through consecutive times of a grid.

        Args:
            time_grid: Strictly increasing 1D array of at least two times. The
                state in instance 0 is taken to be at time_grid[0].

        Raises:
            ValueError: If the time grid is invalid.
            ConfigurationError: If no scheme is set.
            ConvergenceError: If a step fails; instance 0 keeps the state of
                the last completed step.
            NumericalDomainError: If check_finite is on and a step produced
                non-finite values; instance 0 is restored to the start of that
                step.
        """
        scheme = self.scheme
        if scheme is None:
            raise_configuration_error(scheme="Model", detail=_NO_SCHEME_DETAIL)

        grid = self._validate_time_grid(time_grid)
        n_steps = grid.size - 1
        if self.store_history:
            self._init_history(grid)

        logger.info(
            "Run start: scheme=%s t=%.6g -> %.6g in %d step(s)",
            scheme.name,
            grid[0],
            grid[-1],
            n_steps,
        )
        self.current_time = float(grid[0])
        # Instance 0 at the start of the step, restored if the step goes
        # non-finite.
        snapshot = (
            np.empty(self.state.flat_size, dtype=self.state.dtype)
            if self.check_finite
            else None
        )

        for i in range(n_steps):
            t0 = float(grid[i])
            dt = float(grid[i + 1]) - t0
            if snapshot is not None:
                self.state.gather(CURRENT_INSTANCE, out=snapshot)
            try:
                scheme.step(i == 0, i == n_steps - 1, t0, dt)
            except Exception:
                logger.exception("Step %d failed at t=%.6g (dt=%.6g)", i, t0, dt)
                raise

            if snapshot is not None and not self.state.is_finite(CURRENT_INSTANCE):
                self.state.scatter(snapshot, CURRENT_INSTANCE)
                logger.error("Step %d at t=%.6g produced non-finite values", i, t0)
                raise_numerical_domain_error(
                    name=f"state after step at t={t0:.6g}",
                    value="non-finite values",
                    valid="(finite values only)",
                )

            self.current_time = float(grid[i + 1])
            self.n_steps_taken += 1
            self._record(i + 1)
            logger.debug("Step %d: t=%.6g dt=%.6g", i, self.current_time, dt)

        logger.info("Run end: t=%.6g after %d step(s)", self.current_time, n_steps)

    def run_steps(self, t0: float, dt: float, n_steps: int) -> None:
        """
        Take n_steps uniform steps of size dt starting at t0.

        Args:
            t0: Start time.
            dt: Step size (> 0).
            n_steps: Number of steps (>= 1).

        Raises:
            ValueError: If dt or n_steps is invalid.
        """
        if n_steps < 1:
            raise ValueError(_N_STEPS_ERROR.format(n=n_steps))
        if not (np.isfinite(dt) and dt > 0.0):
            raise ValueError(_DT_ERROR.format(dt=dt))
        self.run(t0 + dt * np.arange(n_steps + 1, dtype=float))

    def get_history(self) -> tuple[FloatArray, FloatArray, FloatArray]:
        """
        Return (times, components, tracers) recorded by the last run.

        Raises:
            RuntimeError: If history storage is disabled or no run happened.
        """
        if (
            self.history_times is None
            or self.history_components is None
            or self.history_tracers is None
        ):
            raise RuntimeError(_HISTORY_NOT_STORED_ERROR)
        return self.history_times, self.history_components, self.history_tracers
