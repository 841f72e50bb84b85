# src/dycore_stepper/explicit_rk.py
"""Classic explicit Runge-Kutta schemes applied to the full tendency E + I.

These schemes ignore the explicit / implicit split and treat the sum of both
tendencies explicitly, so they are only stable for time steps resolving the
fastest (stiff) modes. They are useful as references and for non-stiff
configurations.

Instance layout for an s-stage table:

    0        current state, overwritten with the new state at the end
    1..s     full stage tendencies K_1..K_s
    s + 1    stage state
    s + 2    implicit tendency scratch
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar

import numpy as np

from .butcher import ButcherTable, explicit_preset
from .errors import raise_configuration_error
from .state_container import CURRENT_INSTANCE
from .timestep_scheme import TimestepScheme

if TYPE_CHECKING:
    from .model import Model

logger = logging.getLogger(__name__)


class TimestepSchemeExplicitRK(TimestepScheme):
    """Explicit Runge-Kutta scheme defined by a Butcher table."""

    name: ClassVar[str] = "explicit RK"

    def __init__(self, model: Model, table: ButcherTable | str = "rk4") -> None:
        """
        Create the scheme.

        Args:
            model: Model owning the state container and the evaluator.
            table: Explicit Butcher table, or the name of a preset ("euler",
                "heun", "ssprk3", "rk4").

        Raises:
            ConfigurationError: If the preset is unknown or the table is not
                explicit.
        """
        super().__init__(model)
        resolved = explicit_preset(table) if isinstance(table, str) else table
        if not resolved.is_explicit:
            raise_configuration_error(
                scheme=self.name,
                invalid=["table"],
                detail=f"Table '{resolved.name}' is not explicit.",
            )
        self.table = resolved
        self._n_instances = resolved.stages + 3
        self._stage_slot = resolved.stages + 1
        self._scratch_slot = resolved.stages + 2
        self._combo = np.zeros(self._n_instances)

    def get_component_data_instances(self) -> int:
        """Stage count plus three."""
        return self._n_instances

    def get_tracer_data_instances(self) -> int:
        """Stage count plus three."""
        return self._n_instances

    def _tendency_slot(self, stage: int) -> int:
        return 1 + stage

    def _evaluate_full(self, i_state: int, i_tendency: int, time: float) -> None:
        state = self.state
        self.rhs.evaluate_explicit_rhs(state, i_state, i_tendency, time)
        self.rhs.evaluate_implicit_rhs(state, i_state, self._scratch_slot, time)
        self._combo.fill(0.0)
        self._combo[i_tendency] = 1.0
        self._combo[self._scratch_slot] = 1.0
        state.linear_combine(self._combo, i_tendency)

    def step(
        self, first_step: bool, last_step: bool, time: float, dt: float  # noqa: ARG002
    ) -> None:
        """
        Advance instance 0 by one explicit Runge-Kutta step.

        Args:
            first_step: Ignored.
            last_step: Ignored.
            time: Simulation time at the start of the step.
            dt: Step size.
        """
        a, b, c = self.table.a, self.table.b, self.table.c

        for i in range(self.table.stages):
            i_stage = CURRENT_INSTANCE
            if i > 0 and np.any(a[i, :i] != 0.0):
                self._combo.fill(0.0)
                self._combo[CURRENT_INSTANCE] = 1.0
                for j in range(i):
                    self._combo[self._tendency_slot(j)] = dt * a[i, j]
                self.state.linear_combine(self._combo, self._stage_slot)
                i_stage = self._stage_slot
            self._evaluate_full(i_stage, self._tendency_slot(i), time + c[i] * dt)

        self._combo.fill(0.0)
        self._combo[CURRENT_INSTANCE] = 1.0
        for j in range(self.table.stages):
            self._combo[self._tendency_slot(j)] = dt * b[j]
        self.state.linear_combine(self._combo, CURRENT_INSTANCE)

        logger.debug("%s step t=%.6g -> %.6g", self.table.name, time, time + dt)
