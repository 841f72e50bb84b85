# src/dycore_stepper/state_container.py
"""Instance-indexed storage for the prognostic state of a dynamical core.

This module provides the state container consumed by the time-integration
schemes. It is designed to support:

- A fixed small set of "component" fields (winds, density, potential
  temperature, ...) and a variable set of "tracer" fields.
- Any number of addressable data instances, each holding one full snapshot
  of both field groups; instance 0 is the canonical current state.
- Aliasing-safe linear combinations of instances, the basic operation of
  every Runge-Kutta stage.
- Flat-vector views for solvers that only understand 1D arrays.

The container intentionally does not compute tendencies or manage time; it
only owns field storage, shape metadata, and instance bookkeeping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import numpy as np
import numpy.typing as npt

from .errors import (
    ConfigurationError,
    InstanceIndexError,
    raise_state_shape_error,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import DTypeLike


# Error / message constants -------------------------------------------------

_GRID_SHAPE_ERROR = "grid_shape must contain only positive sizes; got {shape}"
_N_COMPONENTS_ERROR = "n_components must be >= 1; got {n}"
_N_TRACERS_ERROR = "n_tracers must be >= 0; got {n}"
_NAMES_LEN_ERROR = "{kind} names length {actual} doesn't match count {expected}"
_UNKNOWN_FIELD_ERROR = "Unknown {kind} field: {name}"
_N_INSTANCES_ERROR = "Instance counts must be >= 1; got ({n_comp}, {n_tracer})"
_INSTANCE_OOB_ERROR = (
    "{kind} instance index {idx} out of range; {n} instance(s) allocated"
)
_TOO_FEW_INSTANCES_ERROR = (
    "{owner} requires {need_comp} component and {need_tracer} tracer data "
    "instances but the container holds {have_comp} and {have_tracer}"
)
_COEFFS_LEN_ERROR = (
    "Combination has {n} coefficients but only {n_inst} instances are allocated"
)


# Typing helpers ------------------------------------------------------------

FloatArray = npt.NDArray[np.floating[Any]]

CURRENT_INSTANCE: Final[int] = 0


@dataclass(slots=True)
class StateContainerOptions:
    """Optional configuration for StateContainer.

    Attributes:
        component_names: Optional names of the component fields. Length must
            equal n_components. Defaults to ("c0", "c1", ...).
        tracer_names: Optional names of the tracer fields. Length must equal
            n_tracers. Defaults to ("q0", "q1", ...).
        dtype: Floating-point dtype for internal arrays.
        n_component_instances: Component data instances allocated up front.
        n_tracer_instances: Tracer data instances allocated up front.
    """

    component_names: tuple[str, ...] | None = None
    tracer_names: tuple[str, ...] | None = None
    dtype: DTypeLike = np.float64
    n_component_instances: int = 1
    n_tracer_instances: int = 1


@dataclass(slots=True)
class StateBuffer:
    """Views of the component and tracer arrays of one data instance.

    Attributes:
        components: Component fields, shape (n_components, *grid_shape).
        tracers: Tracer fields, shape (n_tracers, *grid_shape).
    """

    components: FloatArray
    tracers: FloatArray


class StateContainer:
    """Instance-indexed component and tracer storage."""

    def __init__(
        self,
        n_components: int,
        n_tracers: int,
        grid_shape: tuple[int, ...],
        *,
        options: StateContainerOptions | None = None,
    ) -> None:
        """
        Initialize StateContainer.

        Args:
            n_components: Number of component fields.
            n_tracers: Number of tracer fields (may be zero).
            grid_shape: Spatial extent of every field.
            options: Optional StateContainerOptions for additional configuration.

        Raises:
            ValueError: if counts, names or the grid shape are invalid.
        """
        opts = options or StateContainerOptions()

        self.dtype = np.dtype(opts.dtype)

        self.n_components = int(n_components)
        if self.n_components < 1:
            raise ValueError(_N_COMPONENTS_ERROR.format(n=n_components))

        self.n_tracers = int(n_tracers)
        if self.n_tracers < 0:
            raise ValueError(_N_TRACERS_ERROR.format(n=n_tracers))

        self.grid_shape = tuple(int(x) for x in grid_shape)
        if any(x < 1 for x in self.grid_shape):
            raise ValueError(_GRID_SHAPE_ERROR.format(shape=grid_shape))

        self.component_shape = (self.n_components, *self.grid_shape)
        self.tracer_shape = (self.n_tracers, *self.grid_shape)

        self.component_names = self._resolve_names(
            opts.component_names, self.n_components, prefix="c", kind="component"
        )
        self.tracer_names = self._resolve_names(
            opts.tracer_names, self.n_tracers, prefix="q", kind="tracer"
        )

        self._components: list[FloatArray] = []
        self._tracers: list[FloatArray] = []

        # Scratch space for aliasing-safe linear combinations.
        self._combo_components = np.zeros(self.component_shape, dtype=self.dtype)
        self._combo_tracers = np.zeros(self.tracer_shape, dtype=self.dtype)

        self.max_component_instance_accessed = -1
        self.max_tracer_instance_accessed = -1

        self.allocate(opts.n_component_instances, opts.n_tracer_instances)

    @staticmethod
    def _resolve_names(
        names: tuple[str, ...] | None,
        count: int,
        *,
        prefix: str,
        kind: str,
    ) -> tuple[str, ...]:
        if names is None:
            return tuple(f"{prefix}{i}" for i in range(count))
        if len(names) != count:
            raise ValueError(
                _NAMES_LEN_ERROR.format(kind=kind, actual=len(names), expected=count)
            )
        return tuple(str(n) for n in names)

    # ------------------------------------------------------------------
    # Instance allocation
    # ------------------------------------------------------------------

    @property
    def n_component_instances(self) -> int:
        """Number of allocated component data instances."""
        return len(self._components)

    @property
    def n_tracer_instances(self) -> int:
        """Number of allocated tracer data instances."""
        return len(self._tracers)

    @property
    def flat_size(self) -> int:
        """Length of the flat vector holding one instance (components + tracers)."""
        return int(np.prod(self.component_shape)) + int(np.prod(self.tracer_shape))

    def allocate(self, n_component_instances: int, n_tracer_instances: int) -> None:
        """
        Resize the instance pools.

        Existing instances below the new counts keep their data; newly created
        instances are zero-filled.

        Args:
            n_component_instances: Number of component data instances.
            n_tracer_instances: Number of tracer data instances.

        Raises:
            ValueError: if either count is below one.
        """
        n_comp = int(n_component_instances)
        n_tracer = int(n_tracer_instances)
        if n_comp < 1 or n_tracer < 1:
            raise ValueError(
                _N_INSTANCES_ERROR.format(n_comp=n_comp, n_tracer=n_tracer)
            )

        del self._components[n_comp:]
        while len(self._components) < n_comp:
            self._components.append(np.zeros(self.component_shape, dtype=self.dtype))

        del self._tracers[n_tracer:]
        while len(self._tracers) < n_tracer:
            self._tracers.append(np.zeros(self.tracer_shape, dtype=self.dtype))

    def validate_instance_counts(
        self,
        n_component_instances: int,
        n_tracer_instances: int,
        *,
        owner: str = "Scheme",
    ) -> None:
        """
        Check that at least the requested number of instances exist.

        Args:
            n_component_instances: Required component data instances.
            n_tracer_instances: Required tracer data instances.
            owner: Name used in the error message.

        Raises:
            ConfigurationError: if the container holds fewer instances.
        """
        if (
            self.n_component_instances < n_component_instances
            or self.n_tracer_instances < n_tracer_instances
        ):
            raise ConfigurationError(
                _TOO_FEW_INSTANCES_ERROR.format(
                    owner=owner,
                    need_comp=n_component_instances,
                    need_tracer=n_tracer_instances,
                    have_comp=self.n_component_instances,
                    have_tracer=self.n_tracer_instances,
                )
            )

    def reset_access_log(self) -> None:
        """Forget the highest instance indices touched so far."""
        self.max_component_instance_accessed = -1
        self.max_tracer_instance_accessed = -1

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def component_data(self, idx: int) -> FloatArray:
        """
        Return the component array of one instance (a view, not a copy).

        Args:
            idx: Component instance index.

        Raises:
            InstanceIndexError: if idx is out of range.

        Returns:
            Component array, shape component_shape.
        """
        if not (0 <= idx < len(self._components)):
            raise InstanceIndexError(
                _INSTANCE_OOB_ERROR.format(
                    kind="Component", idx=idx, n=len(self._components)
                )
            )
        self.max_component_instance_accessed = max(
            self.max_component_instance_accessed, idx
        )
        return self._components[idx]

    def tracer_data(self, idx: int) -> FloatArray:
        """
        Return the tracer array of one instance (a view, not a copy).

        Args:
            idx: Tracer instance index.

        Raises:
            InstanceIndexError: if idx is out of range.

        Returns:
            Tracer array, shape tracer_shape.
        """
        if not (0 <= idx < len(self._tracers)):
            raise InstanceIndexError(
                _INSTANCE_OOB_ERROR.format(kind="Tracer", idx=idx, n=len(self._tracers))
            )
        self.max_tracer_instance_accessed = max(self.max_tracer_instance_accessed, idx)
        return self._tracers[idx]

    def buffer(self, idx: int) -> StateBuffer:
        """Return views of both field groups of one instance."""
        return StateBuffer(
            components=self.component_data(idx),
            tracers=self.tracer_data(idx),
        )

    @property
    def current(self) -> StateBuffer:
        """Views of the canonical current instance."""
        return self.buffer(CURRENT_INSTANCE)

    def component_index(self, name: str) -> int:
        """
        Resolve a component field name into its row index.

        Args:
            name: Component field name.

        Raises:
            ValueError: if the name is unknown.

        Returns:
            Row index into the component arrays.
        """
        try:
            return self.component_names.index(name)
        except ValueError as exc:
            raise ValueError(
                _UNKNOWN_FIELD_ERROR.format(kind="component", name=name)
            ) from exc

    def tracer_index(self, name: str) -> int:
        """
        Resolve a tracer field name into its row index.

        Args:
            name: Tracer field name.

        Raises:
            ValueError: if the name is unknown.

        Returns:
            Row index into the tracer arrays.
        """
        try:
            return self.tracer_names.index(name)
        except ValueError as exc:
            raise ValueError(
                _UNKNOWN_FIELD_ERROR.format(kind="tracer", name=name)
            ) from exc

    def set_state(
        self,
        components: np.ndarray,
        tracers: np.ndarray | None = None,
        *,
        instance: int = CURRENT_INSTANCE,
    ) -> None:
        """
        Copy field values into an instance.

        Args:
            components: Component values, shape component_shape.
            tracers: Tracer values, shape tracer_shape. If None, tracers are
                left untouched.
            instance: Target instance index.

        Raises:
            StateShapeError: if an array has an incorrect shape.
        """
        comp_arr = np.asarray(components, dtype=self.dtype)
        if comp_arr.shape != self.component_shape:
            raise_state_shape_error(
                name="components",
                expected=str(self.component_shape),
                got=comp_arr.shape,
            )
        np.copyto(self.component_data(instance), comp_arr)

        if tracers is None:
            return
        tracer_arr = np.asarray(tracers, dtype=self.dtype)
        if tracer_arr.shape != self.tracer_shape:
            raise_state_shape_error(
                name="tracers",
                expected=str(self.tracer_shape),
                got=tracer_arr.shape,
            )
        np.copyto(self.tracer_data(instance), tracer_arr)

    # ------------------------------------------------------------------
    # Instance arithmetic
    # ------------------------------------------------------------------

    def copy_instance(self, src: int, dst: int) -> None:
        """Copy both field groups of instance src into instance dst."""
        if src == dst:
            return
        np.copyto(self.component_data(dst), self.component_data(src))
        np.copyto(self.tracer_data(dst), self.tracer_data(src))

    def zero_instance(self, idx: int) -> None:
        """Fill both field groups of one instance with zeros."""
        self.component_data(idx).fill(0.0)
        self.tracer_data(idx).fill(0.0)

    def linear_combine(self, coeffs: Sequence[float] | np.ndarray, dest: int) -> None:
        """
        Overwrite dest with sum_i coeffs[i] * instance[i].

        Zero coefficients are skipped, so their instances are never touched.
        dest may appear in the sum with a nonzero coefficient; the combination
        is accumulated in scratch space before it is written.

        Args:
            coeffs: One coefficient per instance, starting at instance 0.
            dest: Destination instance index.

        Raises:
            ValueError: if there are more coefficients than instances.
        """
        c = np.asarray(coeffs, dtype=float)
        n_inst = min(self.n_component_instances, self.n_tracer_instances)
        if c.size > n_inst:
            raise ValueError(_COEFFS_LEN_ERROR.format(n=c.size, n_inst=n_inst))

        self._combo_components.fill(0.0)
        self._combo_tracers.fill(0.0)
        for i in np.flatnonzero(c):
            weight = float(c[i])
            self._combo_components += weight * self.component_data(int(i))
            self._combo_tracers += weight * self.tracer_data(int(i))

        np.copyto(self.component_data(dest), self._combo_components)
        np.copyto(self.tracer_data(dest), self._combo_tracers)

    # ------------------------------------------------------------------
    # Flat-vector views
    # ------------------------------------------------------------------

    def gather(self, idx: int, out: np.ndarray | None = None) -> FloatArray:
        """
        Pack one instance into a flat vector (components first, then tracers).

        Args:
            idx: Instance index.
            out: Optional 1D array of length flat_size to write into.

        Returns:
            Flat vector of length flat_size.
        """
        comp = self.component_data(idx)
        tracer = self.tracer_data(idx)
        if out is None:
            out = np.empty(self.flat_size, dtype=self.dtype)
        n_comp = comp.size
        out[:n_comp] = comp.reshape(-1)
        out[n_comp:] = tracer.reshape(-1)
        return out

    def scatter(self, vec: np.ndarray, idx: int) -> None:
        """
        Unpack a flat vector into one instance.

        Args:
            vec: 1D array of length flat_size.
            idx: Destination instance index.

        Raises:
            StateShapeError: if vec has the wrong size.
        """
        arr = np.asarray(vec, dtype=self.dtype).reshape(-1)
        if arr.size != self.flat_size:
            raise_state_shape_error(
                name="flat vector",
                expected=f"size {self.flat_size}",
                got=arr.size,
            )
        comp = self.component_data(idx)
        tracer = self.tracer_data(idx)
        n_comp = comp.size
        comp.reshape(-1)[:] = arr[:n_comp]
        tracer.reshape(-1)[:] = arr[n_comp:]

    def is_finite(self, idx: int = CURRENT_INSTANCE) -> bool:
        """Return True if every value of one instance is finite."""
        return bool(
            np.all(np.isfinite(self.component_data(idx)))
            and np.all(np.isfinite(self.tracer_data(idx)))
        )
