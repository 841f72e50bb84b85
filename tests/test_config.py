# tests/test_config.py
"""Tests for the pydantic configuration layer in dycore_stepper.config."""

from __future__ import annotations

import numpy as np
import pytest
from pydantic import ValidationError

from dycore_stepper.arkode import TimestepSchemeARKode
from dycore_stepper.ars343 import TimestepSchemeARS343
from dycore_stepper.config import (
    ARKodeOptions,
    AdditiveTableSpec,
    SchemeConfig,
    TableSpec,
)
from dycore_stepper.errors import ConfigurationError
from dycore_stepper.explicit_rk import TimestepSchemeExplicitRK
from dycore_stepper.model import Model
from dycore_stepper.rhs import FunctionRHSEvaluator
from dycore_stepper.state_container import StateContainer


def _model() -> Model:
    state = StateContainer(1, 0, (1,))
    model = Model(state, FunctionRHSEvaluator(explicit=lambda _t, y: -y))
    state.set_state(np.ones((1, 1)))
    return model


_HEUN = {
    "name": "heun",
    "a": [[0.0, 0.0], [1.0, 0.0]],
    "b": [0.5, 0.5],
    "c": [0.0, 1.0],
    "order": 2,
    "d": [1.0, 0.0],
    "embedded_order": 1,
}


@pytest.mark.parametrize(
    ("name", "cls"),
    [
        ("ars343", TimestepSchemeARS343),
        ("arkode", TimestepSchemeARKode),
        ("rk4", TimestepSchemeExplicitRK),
        ("ssprk3", TimestepSchemeExplicitRK),
        ("heun", TimestepSchemeExplicitRK),
        ("euler", TimestepSchemeExplicitRK),
    ],
)
def test_build_selects_scheme(name: str, cls: type) -> None:
    """Each scheme name builds the matching scheme for the model."""
    model = _model()
    scheme = SchemeConfig(scheme=name).build(model)  # type: ignore[arg-type]
    assert isinstance(scheme, cls)
    assert scheme.model is model
    model.set_timestep_scheme(scheme)
    model.run_steps(0.0, 0.1, 2)
    assert model.state.component_data(0)[0, 0] == pytest.approx(np.exp(-0.2), abs=1e-2)


def test_default_scheme_is_ars343() -> None:
    """Without a selection the driver uses ARS343."""
    assert isinstance(SchemeConfig().build(_model()), TimestepSchemeARS343)


def test_unknown_fields_are_rejected() -> None:
    """Typos in option names fail at parse time."""
    with pytest.raises(ValidationError):
        SchemeConfig.model_validate({"scheme": "arkode", "arkdoe": {}})
    with pytest.raises(ValidationError):
        ARKodeOptions.model_validate({"reltol": 1e-6})
    with pytest.raises(ValidationError):
        SchemeConfig(scheme="rk45")  # type: ignore[arg-type]


@pytest.mark.parametrize(
    "field",
    [
        {"rtol": 0.0},
        {"atol": -1.0},
        {"max_nonlinear_iters": 0},
        {"mode": "semi-implicit"},
        {"nonlinear_solver": "picard"},
        {"initial_step": 0.0},
    ],
)
def test_field_validation(field: dict[str, object]) -> None:
    """Per-field bounds and literals are enforced by the schema."""
    with pytest.raises(ValidationError):
        ARKodeOptions.model_validate(field)


def test_to_settings_maps_every_option() -> None:
    """ARKodeOptions converts to equivalent native settings."""
    opts = ARKodeOptions.model_validate(
        {
            "rtol": 1e-5,
            "atol": 1e-7,
            "mode": "implicit",
            "fixed_step": True,
            "nonlinear_solver": "fixed-point",
            "anderson_vectors": 2,
            "max_nonlinear_iters": 7,
            "butcher_table": 14,
            "n_vectors": 30,
            "max_steps": 100,
            "initial_step": 0.01,
            "dt_max": 0.5,
            "safety": 0.8,
        }
    )
    settings = opts.to_settings()
    assert settings.rtol == 1e-5
    assert settings.atol == 1e-7
    assert settings.mode == "implicit"
    assert settings.fixed_step
    assert settings.nonlinear_solver == "fixed-point"
    assert settings.anderson_vectors == 2
    assert settings.max_nonlinear_iters == 7
    assert settings.butcher_table == 14
    assert settings.custom_table is None
    assert settings.n_vectors == 30
    assert settings.max_steps == 100
    assert settings.initial_step == 0.01
    assert settings.dt_controller.dt_max == 0.5
    assert settings.dt_controller.safety == 0.8


def test_arkode_config_with_preset_runs() -> None:
    """A preset custom table from configuration drives a fixed-step run."""
    config = SchemeConfig.model_validate(
        {
            "scheme": "arkode",
            "arkode": {"fixed_step": True, "custom_table": {"preset": "ars343"}},
        }
    )
    model = _model()
    model.set_timestep_scheme(config.build(model))
    model.run_steps(0.0, 0.1, 10)
    assert model.state.component_data(0)[0, 0] == pytest.approx(np.exp(-1.0), abs=1e-6)


def test_cross_field_checks_happen_at_initialize() -> None:
    """A table ID together with a custom table parses but fails to initialize."""
    config = SchemeConfig.model_validate(
        {
            "scheme": "arkode",
            "arkode": {"butcher_table": 16, "custom_table": {"preset": "ars343"}},
        }
    )
    model = _model()
    scheme = config.build(model)
    with pytest.raises(ConfigurationError, match="mutually exclusive"):
        model.set_timestep_scheme(scheme)


# -------------------------------------------------------------------
# Table specs
# -------------------------------------------------------------------


def test_additive_spec_needs_exactly_one_source() -> None:
    """A preset and explicit coefficients are alternatives."""
    with pytest.raises(ValidationError, match="Give either a preset"):
        AdditiveTableSpec()
    with pytest.raises(ValidationError, match="preset cannot be combined"):
        AdditiveTableSpec(preset="ars343", explicit=TableSpec.model_validate(_HEUN))


def test_additive_spec_from_preset() -> None:
    """from_preset builds the named built-in pair."""
    table = AdditiveTableSpec.from_preset("ars232").to_table()
    assert table.name == "ARS232"
    assert table.explicit is not None
    assert table.implicit is not None


def test_table_spec_builds_explicit_table() -> None:
    """Coefficients from configuration become a validated table."""
    spec = AdditiveTableSpec(name="heun-only", explicit=TableSpec.model_validate(_HEUN))
    table = spec.to_table()
    assert table.implicit is None
    assert table.explicit is not None
    assert table.explicit.order == 2
    assert table.has_embedding


def test_table_spec_errors_are_configuration_errors() -> None:
    """Inconsistent coefficients raise ConfigurationError, not ValueError only."""
    bad = TableSpec.model_validate({**_HEUN, "c": [0.0, 0.9]})
    with pytest.raises(ConfigurationError, match="Invalid custom Butcher table 'heun'"):
        bad.to_table()

    implicit = TableSpec.model_validate(
        {"name": "be", "a": [[1.0]], "b": [1.0], "c": [1.0], "order": 1}
    )
    spec = AdditiveTableSpec(
        name="mismatch", explicit=TableSpec.model_validate(_HEUN), implicit=implicit
    )
    with pytest.raises(ConfigurationError, match="mismatch"):
        spec.to_table()
