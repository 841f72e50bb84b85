# tests/test_ark_engine.py
"""Tests for the additive Runge-Kutta integrator on plain NumPy vectors.

Coverage in this file:
1) ArrayVector operations used by the integrator
2) Adaptive accuracy in explicit, implicit and IMEX configurations
3) Fixed-step mode and exact landing on the output time
4) Failure flags: bad input, step budget, callback return codes
5) Vector bookkeeping: clone count and release
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pytest

from dycore_stepper.ark_engine import (
    ARKStepError,
    ARKStepFlag,
    ARKStepIntegrator,
    ARKStepOptions,
    ArrayVector,
    DtControllerConfig,
    NVector,
    _propose_dt,
    required_vectors,
)
from dycore_stepper.butcher import custom_preset, resolve_named_table


def _decay(rate: float) -> Any:
    def rhs(_t: float, y: NVector, ydot: NVector, _data: object) -> int:
        ydot.from_array(-rate * y.to_array())
        return 0

    return rhs


def _zero(_t: float, _y: NVector, ydot: NVector, _data: object) -> int:
    ydot.const(0.0)
    return 0


# -------------------------------------------------------------------
# ArrayVector
# -------------------------------------------------------------------


def test_array_vector_operations() -> None:
    """ArrayVector implements the NVector operations."""
    x = ArrayVector([1.0, -2.0])
    assert isinstance(x, NVector)
    y = x.clone()
    assert np.array_equal(y.data, [0.0, 0.0])

    y.assign(x)
    y.scale(2.0)
    assert np.array_equal(y.data, [2.0, -4.0])

    x.linear_sum([1.0, 0.5], [x, y])
    assert np.array_equal(x.data, [2.0, -4.0])

    w = x.clone()
    w.error_weights(ArrayVector([0.0, 10.0]), rtol=0.1, atol=1.0)
    assert np.allclose(w.data, [1.0, 0.5])
    assert x.wrms_norm(w) == pytest.approx(np.sqrt((4.0 + 4.0) / 2.0))

    x.const(3.0)
    assert np.array_equal(x.to_array(), [3.0, 3.0])


def test_propose_dt_clamps() -> None:
    """The controller clamps growth, shrink and absolute step size."""
    cfg = DtControllerConfig(dt_min=0.01, dt_max=1.0, fac_min=0.2, fac_max=5.0)
    assert _propose_dt(0.1, 0.0, 3, cfg=cfg) == pytest.approx(0.5)
    assert _propose_dt(0.1, 1e12, 3, cfg=cfg) == pytest.approx(0.02)
    assert _propose_dt(0.5, 0.0, 3, cfg=cfg) == 1.0
    assert _propose_dt(0.02, 1e12, 3, cfg=cfg) == 0.01
    assert _propose_dt(0.1, 1.0, 3, cfg=cfg) == pytest.approx(0.09)


# -------------------------------------------------------------------
# Accuracy
# -------------------------------------------------------------------


@pytest.mark.parametrize("mode", ["explicit", "implicit"])
def test_adaptive_decay_single_part(mode: str) -> None:
    """Adaptive explicit and implicit runs reach tout within tolerance."""
    y = ArrayVector([1.0, 2.0])
    table_id = 3 if mode == "explicit" else 16
    table = resolve_named_table(table_id, mode)  # type: ignore[arg-type]
    fe = _decay(1.0) if mode == "explicit" else None
    fi = _decay(1.0) if mode == "implicit" else None
    integrator = ARKStepIntegrator(
        fe, fi, 0.0, y, table, options=ARKStepOptions(rtol=1e-8, atol=1e-10)
    )
    assert integrator.evolve(1.0) == 1.0
    assert integrator.tn == 1.0
    assert np.allclose(y.data, np.exp(-1.0) * np.array([1.0, 2.0]), atol=1e-6)
    assert integrator.stats.steps > 1
    assert integrator.stats.attempts >= integrator.stats.steps


def test_adaptive_imex_stiff_decay() -> None:
    """An IMEX split with a stiff implicit part is accurate and stable."""
    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        _decay(1.0),
        _decay(1000.0),
        0.0,
        y,
        resolve_named_table(16, "imex"),
        options=ARKStepOptions(rtol=1e-6, atol=1e-10),
    )
    integrator.evolve(0.5)
    assert y.data[0] == pytest.approx(np.exp(-1001.0 * 0.5), abs=1e-8)
    assert integrator.stats.fi_evals > 0
    assert integrator.stats.nonlinear_iters > 0


def test_repeated_evolve_continues_from_last_time() -> None:
    """Successive evolve calls continue the same trajectory."""
    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        _decay(2.0),
        None,
        0.0,
        y,
        resolve_named_table(1, "explicit"),
        options=ARKStepOptions(rtol=1e-9, atol=1e-12),
    )
    for tout in (0.1, 0.35, 1.0):
        integrator.evolve(tout)
        assert y.data[0] == pytest.approx(np.exp(-2.0 * tout), rel=1e-6)
    assert integrator.step_size > 0.0


def test_fixed_step_takes_requested_steps() -> None:
    """Fixed-step mode uses initial_step and lands exactly on tout."""
    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        _decay(1.0),
        _zero,
        0.0,
        y,
        custom_preset("ars343"),
        options=ARKStepOptions(fixed_step=True, initial_step=0.3),
    )
    integrator.evolve(1.0)
    assert integrator.tn == 1.0
    assert integrator.stats.steps == 4
    assert integrator.stats.last_step == pytest.approx(0.1)
    assert y.data[0] == pytest.approx(np.exp(-1.0), abs=2e-4)


# -------------------------------------------------------------------
# Failures
# -------------------------------------------------------------------


def test_flags_are_the_raised_set() -> None:
    """Only flags the integrator can actually report are declared."""
    assert {flag.name for flag in ARKStepFlag} == {
        "SUCCESS",
        "TOO_MUCH_WORK",
        "ERR_FAILURE",
        "CONV_FAILURE",
        "FIRST_RHSFUNC_ERR",
        "REPTD_RHSFUNC_ERR",
        "UNREC_RHSFUNC_ERR",
        "ILL_INPUT",
        "TOO_CLOSE",
    }


def test_ill_input_is_reported() -> None:
    """Missing callbacks, embedding-free adaptive runs and bad options fail early."""
    y = ArrayVector([1.0])
    pair = resolve_named_table(16, "imex")
    with pytest.raises(ARKStepError) as info:
        ARKStepIntegrator(_decay(1.0), None, 0.0, y, pair)
    assert info.value.flag is ARKStepFlag.ILL_INPUT

    with pytest.raises(ARKStepError, match="embedding"):
        ARKStepIntegrator(_decay(1.0), _zero, 0.0, y, custom_preset("ars343"))

    with pytest.raises(ARKStepError, match="max_steps"):
        ARKStepIntegrator(
            _decay(1.0), _zero, 0.0, y, pair, options=ARKStepOptions(max_steps=0)
        )

    integrator = ARKStepIntegrator(_decay(1.0), _zero, 1.0, y, pair)
    with pytest.raises(ARKStepError, match="behind"):
        integrator.evolve(0.5)


def test_step_budget_leaves_solution_untouched() -> None:
    """TOO_MUCH_WORK is raised and the solution vector is not written."""
    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        _decay(1.0),
        None,
        0.0,
        y,
        resolve_named_table(3, "explicit"),
        options=ARKStepOptions(rtol=1e-10, atol=1e-12, max_steps=2),
    )
    with pytest.raises(ARKStepError) as info:
        integrator.evolve(10.0)
    assert info.value.flag is ARKStepFlag.TOO_MUCH_WORK
    assert y.data[0] == 1.0


def test_negative_callback_code_is_unrecoverable() -> None:
    """A negative return code aborts with UNREC_RHSFUNC_ERR."""

    def broken(_t: float, _y: NVector, _ydot: NVector, _data: object) -> int:
        return -1

    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        broken,
        None,
        0.0,
        y,
        resolve_named_table(0, "explicit"),
        options=ARKStepOptions(fixed_step=True),
    )
    with pytest.raises(ARKStepError) as info:
        integrator.evolve(1.0)
    assert info.value.flag is ARKStepFlag.UNREC_RHSFUNC_ERR


def test_recoverable_failure_shrinks_the_step() -> None:
    """A positive return code on large steps is retried with smaller ones."""
    calls = {"failures": 0}

    def picky(_t: float, y: NVector, ydot: NVector, data: dict[str, float]) -> int:
        if data["h"] > 0.3:
            calls["failures"] += 1
            return 1
        ydot.from_array(-y.to_array())
        return 0

    y = ArrayVector([1.0])
    data = {"h": 0.0}
    integrator = ARKStepIntegrator(
        picky,
        None,
        0.0,
        y,
        resolve_named_table(3, "explicit"),
        options=ARKStepOptions(rtol=1e-6, atol=1e-9, initial_step=1.0),
        user_data=data,
    )

    # Record the attempted step size before each attempt.
    original = integrator._attempt_step  # noqa: SLF001

    def tracking(h: float) -> float:
        data["h"] = h
        return original(h)

    integrator._attempt_step = tracking  # type: ignore[method-assign]  # noqa: SLF001
    integrator.evolve(1.0)
    assert calls["failures"] >= 1
    assert integrator.stats.convergence_failures >= 1
    assert y.data[0] == pytest.approx(np.exp(-1.0), rel=1e-5)


def test_recoverable_failure_on_first_call() -> None:
    """A recoverable failure while estimating h0 is FIRST_RHSFUNC_ERR."""

    def soft_fail(_t: float, _y: NVector, _ydot: NVector, _data: object) -> int:
        return 1

    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        soft_fail, None, 0.0, y, resolve_named_table(3, "explicit")
    )
    with pytest.raises(ARKStepError) as info:
        integrator.evolve(1.0)
    assert info.value.flag is ARKStepFlag.FIRST_RHSFUNC_ERR


def test_fixed_step_convergence_failure_is_fatal() -> None:
    """Fixed-point iteration on a stiff stage fails at once in fixed-step mode."""
    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        _zero,
        _decay(1000.0),
        0.0,
        y,
        custom_preset("ars343"),
        options=ARKStepOptions(
            fixed_step=True, nonlinear_solver="fixed-point", max_nonlinear_iters=2
        ),
    )
    with pytest.raises(ARKStepError) as info:
        integrator.evolve(0.1)
    assert info.value.flag is ARKStepFlag.CONV_FAILURE
    assert y.data[0] == 1.0


# -------------------------------------------------------------------
# Vector bookkeeping
# -------------------------------------------------------------------


def test_vector_count_and_free() -> None:
    """The integrator clones exactly required_vectors(table) vectors."""
    pair = resolve_named_table(16, "imex")
    integrator = ARKStepIntegrator(_decay(1.0), _zero, 0.0, ArrayVector([1.0]), pair)
    assert integrator.n_vectors == required_vectors(pair) == 7 + 2 * 4
    integrator.free()
    assert integrator.n_vectors == 0
    integrator.free()


def test_reinit_restarts_from_new_state() -> None:
    """reinit resets time, statistics and the starting state."""
    y = ArrayVector([1.0])
    integrator = ARKStepIntegrator(
        _decay(1.0), None, 0.0, y, resolve_named_table(3, "explicit")
    )
    integrator.evolve(0.5)
    y.from_array(np.array([2.0]))
    integrator.reinit(5.0)
    assert integrator.tn == 5.0
    assert integrator.stats.steps == 0
    integrator.evolve(5.5)
    assert y.data[0] == pytest.approx(2.0 * np.exp(-0.5), rel=1e-5)
