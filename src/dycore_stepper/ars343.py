# src/dycore_stepper/ars343.py
"""Hand-coded ARS(3,4,3) implicit-explicit additive Runge-Kutta scheme.

Ascher, Ruuth and Spiteri (1997), scheme (3,4,3): three implicit stages with
the same diagonal coefficient gamma, four explicit stages, third order in both
parts. The implicit part is L-stable, which suits stiff vertical acoustic
and gravity-wave terms of a dynamical core.

Each step makes four explicit tendency evaluations, two extra implicit
tendency evaluations and three implicit solves with the same sub-step
gamma * dt, so an evaluator can reuse one factorization per step.

Instance layout (components and tracers alike):

    0     u0, the current state; overwritten with the new state at the end
    1     u1, the first stage state; then the partial combination P
    2     u2
    3     u3
    4..7  explicit tendencies Kh0..Kh3 at u0..u3
    8     implicit tendency scratch
    9     stage perturbation handed to the implicit solve
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar, Final

import numpy as np

from .butcher import (
    ARS343_A31,
    ARS343_A32,
    ARS343_A41,
    ARS343_A42,
    ARS343_A43,
    ARS343_B1,
    ARS343_B2,
    ARS343_GAMMA,
    ARS343_TIME_FRACTIONS,
)
from .timestep_scheme import TimestepScheme

if TYPE_CHECKING:
    from .model import Model

logger = logging.getLogger(__name__)

_N_INSTANCES: Final[int] = 10

_U0: Final[int] = 0
_U1: Final[int] = 1
_PARTIAL: Final[int] = 1
_U2: Final[int] = 2
_U3: Final[int] = 3
_KH0: Final[int] = 4
_KH1: Final[int] = 5
_KH2: Final[int] = 6
_KH3: Final[int] = 7
_KI: Final[int] = 8
_KPERT: Final[int] = 9


class TimestepSchemeARS343(TimestepScheme):
    """Third-order IMEX scheme ARS(3,4,3) with fixed coefficients."""

    name: ClassVar[str] = "ARS343"

    def __init__(self, model: Model) -> None:
        """
        Create the scheme and its combination buffers.

        Args:
            model: Model owning the state container and the evaluator.
        """
        super().__init__(model)
        self._allocate_combos()

    def _allocate_combos(self) -> None:
        self.k0_combo = np.zeros(_N_INSTANCES)
        self.k1_combo = np.zeros(_N_INSTANCES)
        self.u1f_combo = np.zeros(_N_INSTANCES)
        self.k2_combo = np.zeros(_N_INSTANCES)
        self.u4f_combo = np.zeros(_N_INSTANCES)

    def get_component_data_instances(self) -> int:
        """Ten component instances (see module docstring)."""
        return _N_INSTANCES

    def get_tracer_data_instances(self) -> int:
        """Ten tracer instances (see module docstring)."""
        return _N_INSTANCES

    def initialize(self) -> None:
        """Check the container and reset the combination buffers.

        Raises:
            ConfigurationError: If the container holds too few instances.
        """
        super().initialize()
        self._allocate_combos()

    def _fill_combos(self, dt: float) -> None:
        g = ARS343_GAMMA

        self.k0_combo.fill(0.0)
        self.k0_combo[_U0] = 1.0
        self.k0_combo[_KH0] = g * dt

        self.k1_combo.fill(0.0)
        self.k1_combo[_U0] = 1.0
        self.k1_combo[_KH0] = ARS343_A31 * dt
        self.k1_combo[_KH1] = ARS343_A32 * dt
        self.k1_combo[_KI] = 0.5 * (1.0 - g) * dt

        self.u1f_combo.fill(0.0)
        self.u1f_combo[_U0] = 1.0
        self.u1f_combo[_KH0] = ARS343_A41 * dt
        self.u1f_combo[_KH1] = ARS343_A42 * dt
        self.u1f_combo[_KI] = ARS343_B1 * dt

        self.k2_combo.fill(0.0)
        self.k2_combo[_PARTIAL] = 1.0
        self.k2_combo[_KH2] = ARS343_A43 * dt
        self.k2_combo[_KI] = ARS343_B2 * dt

        self.u4f_combo.fill(0.0)
        self.u4f_combo[_U3] = 1.0
        self.u4f_combo[_KH0] = -ARS343_A41 * dt
        self.u4f_combo[_KH1] = (ARS343_B1 - ARS343_A42) * dt
        self.u4f_combo[_KH2] = (ARS343_B2 - ARS343_A43) * dt
        self.u4f_combo[_KH3] = g * dt

    def step(
        self, first_step: bool, last_step: bool, time: float, dt: float  # noqa: ARG002
    ) -> None:
        """
        Advance instance 0 by one ARS(3,4,3) step.

        Instance 0 is written only by the final combination, so a failing
        evaluator call leaves the state at the start of the step in place.

        Args:
            first_step: Ignored.
            last_step: Ignored.
            time: Simulation time at the start of the step.
            dt: Step size.
        """
        state = self.state
        rhs = self.rhs
        sub_dt = ARS343_GAMMA * dt
        t1, t2, t3 = (time + f * dt for f in ARS343_TIME_FRACTIONS)

        self._fill_combos(dt)

        # Stage 1
        rhs.evaluate_explicit_rhs(state, _U0, _KH0, time)
        state.linear_combine(self.k0_combo, _KPERT)
        rhs.solve_implicit(state, _KPERT, _U1, sub_dt, t1)

        # Stage 2
        rhs.evaluate_explicit_rhs(state, _U1, _KH1, t1)
        rhs.evaluate_implicit_rhs(state, _U1, _KI, t1)
        state.linear_combine(self.k1_combo, _KPERT)
        rhs.solve_implicit(state, _KPERT, _U2, sub_dt, t2)
        state.linear_combine(self.u1f_combo, _PARTIAL)

        # Stage 3
        rhs.evaluate_explicit_rhs(state, _U2, _KH2, t2)
        rhs.evaluate_implicit_rhs(state, _U2, _KI, t2)
        state.linear_combine(self.k2_combo, _KPERT)
        rhs.solve_implicit(state, _KPERT, _U3, sub_dt, t3)

        # Final explicit evaluation and update
        rhs.evaluate_explicit_rhs(state, _U3, _KH3, t3)
        state.linear_combine(self.u4f_combo, _U0)

        logger.debug("ARS343 step t=%.6g -> %.6g", time, time + dt)
