"""Global pytest configuration and shared fixtures for dycore_stepper."""

from __future__ import annotations

from collections.abc import Callable, Iterator

import numpy as np
import pytest

from dycore_stepper.matrix_ops import clear_implicit_solver_cache
from dycore_stepper.model import Model
from dycore_stepper.rhs import FunctionRHSEvaluator, LinearOperatorRHSEvaluator
from dycore_stepper.state_container import StateContainer

# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "slow: multi-dt convergence studies (deselect with -m \"not slow\")",
    )


# -----------------------------------------------------------------------------
# Shared state
# -----------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _fresh_solver_cache() -> Iterator[None]:
    """Isolate tests from factorizations cached by earlier tests."""
    clear_implicit_solver_cache()
    yield
    clear_implicit_solver_cache()


@pytest.fixture
def decay_model() -> Model:
    """
    Scalar decay y' = -y split as E(y) = -y, I(y) = 0, with y(0) = 1.

    One component, no tracers, a single grid point.
    """
    state = StateContainer(1, 0, (1,))
    model = Model(state, FunctionRHSEvaluator(explicit=lambda _t, y: -y))
    state.set_state(np.ones((1, 1)))
    return model


@pytest.fixture
def make_oscillator_model() -> Callable[[float], Model]:
    """
    Factory for a damped oscillator split into a rotation and a damping.

    E = [[0, 1], [-1, 0]] (explicit), I = -damping * Id (implicit), with
    y(0) = (1, 0). Two components, no tracers, one grid point.
    """

    def _make(damping: float = 0.5) -> Model:
        state = StateContainer(2, 0, (1,))
        rotation = np.array([[0.0, 1.0], [-1.0, 0.0]])
        evaluator = LinearOperatorRHSEvaluator(
            -damping * np.eye(2), explicit=rotation
        )
        model = Model(state, evaluator)
        state.set_state(np.array([[1.0], [0.0]]))
        return model

    return _make


@pytest.fixture
def oscillator_exact() -> Callable[..., np.ndarray]:
    """Exact components (shape (2, 1)) of the oscillator model at time t."""

    def _exact(t: float, damping: float = 0.5) -> np.ndarray:
        decay = np.exp(-damping * t)
        return decay * np.array([[np.cos(t)], [-np.sin(t)]])

    return _exact
