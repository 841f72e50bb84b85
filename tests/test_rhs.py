# tests/test_rhs.py
"""Unit tests for the tendency evaluators in dycore_stepper.rhs."""

from __future__ import annotations

import gc
import weakref

import numpy as np
import pytest
from scipy.sparse import csr_matrix

from dycore_stepper import matrix_ops
from dycore_stepper.ars343 import TimestepSchemeARS343
from dycore_stepper.errors import ConvergenceError, NumericalDomainError
from dycore_stepper.matrix_ops import build_laplacian_tridiag
from dycore_stepper.model import Model
from dycore_stepper.rhs import (
    FunctionRHSEvaluator,
    ImplicitSolveOptions,
    LinearOperatorRHSEvaluator,
    RHSEvaluator,
)
from dycore_stepper.state_container import StateContainer, StateContainerOptions


def _state(n_components: int = 2, n_tracers: int = 1) -> StateContainer:
    return StateContainer(
        n_components,
        n_tracers,
        (1,),
        options=StateContainerOptions(n_component_instances=3, n_tracer_instances=3),
    )


def test_evaluators_satisfy_protocol() -> None:
    """Both reference evaluators are RHSEvaluator instances."""
    assert isinstance(FunctionRHSEvaluator(), RHSEvaluator)
    assert isinstance(LinearOperatorRHSEvaluator(np.eye(2)), RHSEvaluator)


def test_function_evaluator_tendencies_by_instance() -> None:
    """Tendencies of one instance are written into another, tracers included."""
    sc = _state()
    sc.set_state(np.array([[1.0], [2.0]]), np.array([[3.0]]), instance=1)
    evaluator = FunctionRHSEvaluator(
        explicit=lambda t, y: t * y,
        implicit=lambda _t, y: -y,
    )

    evaluator.evaluate_explicit_rhs(sc, 1, 2, 2.0)
    assert np.allclose(sc.gather(2), [2.0, 4.0, 6.0])

    evaluator.evaluate_implicit_rhs(sc, 1, 0, 0.0)
    assert np.allclose(sc.gather(0), [-1.0, -2.0, -3.0])
    assert evaluator.n_explicit_evals == 1
    assert evaluator.n_implicit_evals == 1


def test_missing_tendencies_are_zero() -> None:
    """Omitted tendencies evaluate to zero and the solve is the identity."""
    sc = _state()
    sc.set_state(np.ones((2, 1)), np.ones((1, 1)), instance=0)
    evaluator = FunctionRHSEvaluator()
    evaluator.evaluate_explicit_rhs(sc, 0, 1, 0.0)
    assert not np.any(sc.gather(1))
    evaluator.solve_implicit(sc, 0, 2, 0.5, 0.0)
    assert np.allclose(sc.gather(2), 1.0)


@pytest.mark.parametrize("with_jacobian", [False, True])
def test_function_evaluator_nonlinear_solve(with_jacobian: bool) -> None:
    """The stage solve satisfies y = p + h I(y) for a nonlinear I."""
    sc = _state(n_components=2, n_tracers=0)
    p = np.array([0.5, 1.5])
    sc.scatter(p, 0)

    def implicit(_t: float, y: np.ndarray) -> np.ndarray:
        return -(y**3)

    def jacobian(_t: float, y: np.ndarray) -> np.ndarray:
        return np.diag(-3.0 * y**2)

    evaluator = FunctionRHSEvaluator(
        implicit=implicit, jacobian=jacobian if with_jacobian else None
    )
    h = 0.2
    evaluator.solve_implicit(sc, 0, 1, h, 0.0)
    y = sc.gather(1)
    assert np.allclose(y, p + h * implicit(0.0, y), atol=1e-10)
    assert evaluator.n_implicit_solves == 1


def test_sparse_jacobian_path() -> None:
    """A sparse Jacobian uses the sparse direct linear solve."""
    sc = _state(n_components=3, n_tracers=0)
    p = np.array([1.0, -1.0, 2.0])
    sc.scatter(p, 0)
    a = csr_matrix(np.diag([-1.0, -2.0, -3.0]))
    evaluator = FunctionRHSEvaluator(
        implicit=lambda _t, y: a @ y, jacobian=lambda _t, _y: a
    )
    evaluator.solve_implicit(sc, 0, 1, 0.5, 0.0)
    assert np.allclose(sc.gather(1), p / (1.0 + 0.5 * np.array([1.0, 2.0, 3.0])))


def test_newton_failure_raises_convergence_error() -> None:
    """A solve that cannot converge in the iteration budget raises."""
    sc = _state(n_components=1, n_tracers=0)
    sc.scatter(np.array([10.0]), 0)
    evaluator = FunctionRHSEvaluator(
        implicit=lambda _t, y: -(y**5),
        jacobian=lambda _t, y: np.array([[-5.0 * y[0] ** 4]]),
        options=ImplicitSolveOptions(max_iters=1),
    )
    with pytest.raises(ConvergenceError, match="Implicit Newton solve"):
        evaluator.solve_implicit(sc, 0, 1, 1.0, 0.0)


def test_nonfinite_tendency_is_domain_error() -> None:
    """Non-finite tendencies are reported with the offending value."""
    sc = _state()
    evaluator = FunctionRHSEvaluator(explicit=lambda _t, y: y / 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        with pytest.raises(NumericalDomainError, match="explicit tendency") as info:
            evaluator.evaluate_explicit_rhs(sc, 0, 1, 0.0)
    assert not np.isfinite(info.value.value)


@pytest.mark.parametrize(
    "kwargs", [{"max_iters": 0}, {"rtol": -1.0}, {"atol": -1.0}]
)
def test_solve_options_validation(kwargs: dict[str, float]) -> None:
    """Solve options are validated at construction."""
    with pytest.raises(ValueError):
        ImplicitSolveOptions(**kwargs)  # type: ignore[arg-type]


# -------------------------------------------------------------------
# Linear operator evaluator
# -------------------------------------------------------------------


@pytest.mark.parametrize("sparse", [False, True])
def test_linear_operator_solve_is_exact(sparse: bool) -> None:
    """(I - h A) y = p is solved directly."""
    sc = _state(n_components=2, n_tracers=0)
    a = np.array([[-2.0, 1.0], [1.0, -2.0]])
    p = np.array([1.0, 3.0])
    sc.scatter(p, 0)

    evaluator = LinearOperatorRHSEvaluator(csr_matrix(a) if sparse else a)
    evaluator.solve_implicit(sc, 0, 1, 0.25, 0.0)
    assert np.allclose(sc.gather(1), np.linalg.solve(np.eye(2) - 0.25 * a, p))

    evaluator.evaluate_implicit_rhs(sc, 0, 2, 0.0)
    assert np.allclose(sc.gather(2), a @ p)


def test_linear_operator_explicit_forms() -> None:
    """The explicit tendency may be a matrix or a callable."""
    sc = _state(n_components=2, n_tracers=0)
    sc.scatter(np.array([1.0, 2.0]), 0)
    rotation = np.array([[0.0, 1.0], [-1.0, 0.0]])

    by_matrix = LinearOperatorRHSEvaluator(np.zeros((2, 2)), explicit=rotation)
    by_matrix.evaluate_explicit_rhs(sc, 0, 1, 0.0)
    assert np.allclose(sc.gather(1), [2.0, -1.0])

    LinearOperatorRHSEvaluator(
        np.zeros((2, 2)), explicit=lambda t, y: t + y
    ).evaluate_explicit_rhs(sc, 0, 1, 1.0)
    assert np.allclose(sc.gather(1), [2.0, 3.0])


def test_stage_operator_cache_is_bounded() -> None:
    """Stage operators are reused per step size and the oldest are dropped."""
    evaluator = LinearOperatorRHSEvaluator(-np.eye(2), cache_size=2)
    first_left, _ = evaluator.stage_operators(0.1)
    assert evaluator.stage_operators(0.1)[0] is first_left
    evaluator.stage_operators(0.2)
    evaluator.stage_operators(0.3)
    assert evaluator.stage_operators(0.1)[0] is not first_left

    with pytest.raises(ValueError, match="cache_size"):
        LinearOperatorRHSEvaluator(np.eye(2), cache_size=0)


def test_factorizations_are_released_with_their_models() -> None:
    """Discarded models leave no factorization behind in any shared cache."""
    refs = []
    for k in range(20):
        state = StateContainer(1, 0, (4,))
        evaluator = LinearOperatorRHSEvaluator(
            build_laplacian_tridiag(4, 1.0, 1.0, bc="periodic")
        )
        model = Model(state, evaluator)
        model.set_timestep_scheme(TimestepSchemeARS343(model))
        state.set_state(np.ones((1, 4)))
        model.run_steps(0.0, 0.01 * (k + 1), 2)
        refs.append(weakref.ref(evaluator))
        del state, evaluator, model

    gc.collect()
    assert len(matrix_ops._IMPLICIT_SOLVER_CACHE) == 0  # noqa: SLF001
    assert all(ref() is None for ref in refs)
