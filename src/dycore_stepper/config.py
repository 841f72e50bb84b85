# src/dycore_stepper/config.py
"""Configuration models for timestep scheme selection.

This module defines the pydantic-facing configuration objects read from run
configuration files and translates them into native scheme objects.

Notes:
    - Unknown fields are rejected (`extra="forbid"`), so typos in option names
      fail at parse time.
    - Cross-field consistency of the ARKode options (table ID vs. custom
      table, embedding vs. adaptive stepping, instance counts) is checked by
      the scheme's ``initialize`` so the same rules apply to configurations
      built in code.
    - Selecting a scheme whose backend cannot be imported raises
      UnsupportedConfigurationError at selection time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .ark_engine import DtControllerConfig
from .arkode import ARKodeSettings, TimestepSchemeARKode
from .ars343 import TimestepSchemeARS343
from .butcher import AdditiveButcherTable, ButcherTable, custom_preset
from .errors import ConfigurationError, require_backend
from .explicit_rk import TimestepSchemeExplicitRK

if TYPE_CHECKING:
    from .model import Model
    from .timestep_scheme import TimestepScheme

SchemeName = Literal["ars343", "arkode", "rk4", "ssprk3", "heun", "euler"]

#: Importable module each scheme needs beyond the base install.
SCHEME_BACKENDS: dict[str, str] = {"arkode": "scipy.optimize"}

_TABLE_PARTS_ERROR = "Give either a preset or at least one of explicit/implicit"
_TABLE_BOTH_ERROR = "preset cannot be combined with explicit/implicit tables"


class TableSpec(BaseModel):
    """Coefficients of one Butcher table."""

    model_config = ConfigDict(extra="forbid")

    name: str = "custom"
    a: list[list[float]]
    b: list[float]
    c: list[float]
    order: int = Field(ge=1)
    d: list[float] | None = None
    embedded_order: int | None = Field(default=None, ge=1)

    def to_table(self) -> ButcherTable:
        """Build the ButcherTable.

        Raises:
            ConfigurationError: If the coefficients are inconsistent.

        Returns:
            Validated ButcherTable.
        """
        try:
            return ButcherTable(
                name=self.name,
                a=np.asarray(self.a, dtype=float),
                b=np.asarray(self.b, dtype=float),
                c=np.asarray(self.c, dtype=float),
                order=self.order,
                d=None if self.d is None else np.asarray(self.d, dtype=float),
                embedded_order=self.embedded_order,
            )
        except ValueError as exc:
            msg = f"Invalid custom Butcher table '{self.name}': {exc}"
            raise ConfigurationError(msg) from exc


class AdditiveTableSpec(BaseModel):
    """Custom additive table: a named preset or explicit/implicit coefficients."""

    model_config = ConfigDict(extra="forbid")

    name: str = "custom"
    preset: Literal["ars232", "ars343", "ars443"] | None = None
    explicit: TableSpec | None = None
    implicit: TableSpec | None = None

    @model_validator(mode="after")
    def _check_parts(self) -> AdditiveTableSpec:
        has_parts = self.explicit is not None or self.implicit is not None
        if self.preset is None and not has_parts:
            raise ValueError(_TABLE_PARTS_ERROR)
        if self.preset is not None and has_parts:
            raise ValueError(_TABLE_BOTH_ERROR)
        return self

    @classmethod
    def from_preset(
        cls, preset: Literal["ars232", "ars343", "ars443"]
    ) -> AdditiveTableSpec:
        """Additive table referring to a built-in preset."""
        return cls(name=preset, preset=preset)

    def to_table(self) -> AdditiveButcherTable:
        """Build the AdditiveButcherTable.

        Raises:
            ConfigurationError: If the tables are inconsistent.

        Returns:
            Validated AdditiveButcherTable.
        """
        if self.preset is not None:
            return custom_preset(self.preset)
        explicit = None if self.explicit is None else self.explicit.to_table()
        implicit = None if self.implicit is None else self.implicit.to_table()
        try:
            return AdditiveButcherTable(
                name=self.name, explicit=explicit, implicit=implicit
            )
        except ValueError as exc:
            msg = f"Invalid custom additive table '{self.name}': {exc}"
            raise ConfigurationError(msg) from exc


class ARKodeOptions(BaseModel):
    """Configuration schema of the ARKode scheme.

    Mirrors ARKodeSettings with file-friendly defaults and per-field
    validation.
    """

    model_config = ConfigDict(extra="forbid")

    rtol: float = Field(default=1e-6, gt=0.0)
    atol: float = Field(default=1e-9, gt=0.0)
    mode: Literal["imex", "explicit", "implicit"] = Field(
        default="imex",
        description="How the explicit and implicit tendencies map onto the tables",
    )
    fixed_step: bool = Field(
        default=False,
        description="Disable error control and step with the requested dt",
    )
    nonlinear_solver: Literal["newton", "fixed-point"] = "newton"
    anderson_vectors: int = Field(default=0, ge=0)
    max_nonlinear_iters: int = Field(default=3, ge=1)
    max_linear_iters: int = Field(default=5, ge=1)
    butcher_table: int | None = Field(
        default=None,
        description="Integrator-known table ID (exclusive with custom_table)",
    )
    custom_table: AdditiveTableSpec | None = None
    n_vectors: int | None = Field(default=None, ge=1)
    max_steps: int = Field(default=500, ge=1)
    initial_step: float | None = Field(default=None, gt=0.0)

    # dt controller controls
    dt_min: float = Field(default=0.0, ge=0.0)
    dt_max: float = Field(default=float("inf"), gt=0.0)
    safety: float = Field(default=0.9, gt=0.0)
    fac_min: float = Field(default=0.2, gt=0.0)
    fac_max: float = Field(default=5.0, gt=0.0)

    def to_settings(self) -> ARKodeSettings:
        """Convert this config to native ARKodeSettings.

        Returns:
            Fully constructed ARKodeSettings instance.
        """
        return ARKodeSettings(
            rtol=self.rtol,
            atol=self.atol,
            mode=self.mode,
            fixed_step=self.fixed_step,
            nonlinear_solver=self.nonlinear_solver,
            anderson_vectors=self.anderson_vectors,
            max_nonlinear_iters=self.max_nonlinear_iters,
            max_linear_iters=self.max_linear_iters,
            butcher_table=self.butcher_table,
            custom_table=(
                None if self.custom_table is None else self.custom_table.to_table()
            ),
            n_vectors=self.n_vectors,
            max_steps=self.max_steps,
            initial_step=self.initial_step,
            dt_controller=DtControllerConfig(
                dt_min=self.dt_min,
                dt_max=self.dt_max,
                safety=self.safety,
                fac_min=self.fac_min,
                fac_max=self.fac_max,
            ),
        )


class SchemeConfig(BaseModel):
    """Run-time selection of the timestep scheme."""

    model_config = ConfigDict(extra="forbid")

    scheme: SchemeName = Field(default="ars343", description="Timestep scheme")
    arkode: ARKodeOptions = Field(default_factory=ARKodeOptions)

    def build(self, model: Model) -> TimestepScheme:
        """Create the selected scheme for a model.

        The scheme is not attached to the model; pass it to
        ``model.set_timestep_scheme``.

        Args:
            model: Model the scheme will belong to.

        Raises:
            UnsupportedConfigurationError: If the scheme's backend is missing.

        Returns:
            The selected TimestepScheme.
        """
        backend = SCHEME_BACKENDS.get(self.scheme)
        if backend is not None:
            require_backend(backend, scheme=self.scheme)

        if self.scheme == "ars343":
            return TimestepSchemeARS343(model)
        if self.scheme == "arkode":
            return TimestepSchemeARKode(model, self.arkode.to_settings())
        return TimestepSchemeExplicitRK(model, self.scheme)
