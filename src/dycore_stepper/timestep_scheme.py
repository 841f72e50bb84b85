# src/dycore_stepper/timestep_scheme.py
"""Abstract base for schemes that advance the current state by one step.

A scheme separates *how* the state is advanced in time from *how* tendencies
are computed. It owns no field storage: it works on the owning model's state
container through instance indices and asks the model's evaluator for
tendencies and implicit solves.

Contract:
- ``get_component_data_instances`` / ``get_tracer_data_instances`` declare how
  many container instances the scheme uses. They are constant for the lifetime
  of the scheme, and the scheme never touches an index at or beyond them.
- ``initialize`` runs once after the model has allocated instances.
- ``step`` advances instance 0 by ``dt``. On failure it raises and leaves
  instance 0 holding the state at the start of the step.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from .model import Model
    from .rhs import RHSEvaluator
    from .state_container import StateContainer


class TimestepScheme(ABC):
    """Base class of every time-integration scheme."""

    name: ClassVar[str] = "timestep scheme"

    def __init__(self, model: Model) -> None:
        """
        Attach the scheme to its model.

        Args:
            model: Model owning the state container and the evaluator.
        """
        self.model = model

    @property
    def state(self) -> StateContainer:
        """State container of the owning model."""
        return self.model.state

    @property
    def rhs(self) -> RHSEvaluator:
        """Tendency evaluator of the owning model."""
        return self.model.rhs

    @abstractmethod
    def get_component_data_instances(self) -> int:
        """Number of component data instances the scheme requires."""

    @abstractmethod
    def get_tracer_data_instances(self) -> int:
        """Number of tracer data instances the scheme requires."""

    def initialize(self) -> None:
        """
        One-time setup before the first step.

        The default checks that the container holds the declared instances.

        Raises:
            ConfigurationError: If the container holds too few instances.
        """
        self.state.validate_instance_counts(
            self.get_component_data_instances(),
            self.get_tracer_data_instances(),
            owner=self.name,
        )

    @abstractmethod
    def step(self, first_step: bool, last_step: bool, time: float, dt: float) -> None:
        """
        Advance instance 0 from ``time`` to ``time + dt``.

        Args:
            first_step: True on the first step of a run.
            last_step: True on the last step of a run.
            time: Simulation time at the start of the step.
            dt: Step size.
        """
