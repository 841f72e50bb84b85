# src/dycore_stepper/rhs.py
"""Tendency evaluators consumed by the timestep schemes.

A timestep scheme never computes tendencies itself. It asks an evaluator to:

- evaluate the explicit (non-stiff) tendency E of one instance,
- evaluate the implicit (stiff) tendency I of one instance,
- solve the implicit stage equation  y = p + h I(y)  for y.

Every call addresses data by container instance index, so a scheme only has
to manage instance bookkeeping. The reference evaluators here work on the
flattened state (components first, then tracers) and are meant for tests,
examples and small column models.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, cast, runtime_checkable

import numpy as np
from scipy.linalg import lu_factor, lu_solve
from scipy.optimize import NoConvergence, newton_krylov
from scipy.sparse import issparse
from scipy.sparse.linalg import spsolve

from .errors import raise_convergence_error, raise_numerical_domain_error
from .matrix_ops import (
    Operator,
    build_identity_operator,
    build_implicit_euler_operators,
    factorize_implicit,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from .state_container import StateContainer

    FlatRHS = Callable[[float, NDArray[np.floating]], NDArray[np.floating]]
    FlatJacobian = Callable[[float, NDArray[np.floating]], Any]
    # (L, R, x -> L^{-1} R x) for one implicit step size.
    _StageEntry = tuple[
        Operator, Operator, Callable[[NDArray[np.floating]], NDArray[np.floating]]
    ]

logger = logging.getLogger(__name__)

_NONFINITE_VALID = "(finite values only)"
_MAX_ITERS_ERROR = "max_iters must be >= 1; got {n}"
_TOL_ERROR = "rtol and atol must be >= 0; got rtol={rtol}, atol={atol}"
_CACHE_SIZE_ERROR = "cache_size must be >= 1; got {n}"


@runtime_checkable
class RHSEvaluator(Protocol):
    """Tendency provider addressed by container instance indices."""

    def evaluate_explicit_rhs(
        self,
        state: StateContainer,
        i_state: int,
        i_tendency: int,
        time: float,
    ) -> None:
        """Write E(instance i_state, time) into instance i_tendency."""
        ...

    def evaluate_implicit_rhs(
        self,
        state: StateContainer,
        i_state: int,
        i_tendency: int,
        time: float,
    ) -> None:
        """Write I(instance i_state, time) into instance i_tendency."""
        ...

    def solve_implicit(
        self,
        state: StateContainer,
        i_perturbation: int,
        i_result: int,
        sub_dt: float,
        time: float,
    ) -> None:
        """Write y solving y = p + sub_dt * I(y, time) into instance i_result.

        p is read from instance i_perturbation. i_result may equal
        i_perturbation.
        """
        ...


@dataclass(frozen=True, slots=True)
class ImplicitSolveOptions:
    """Stopping criteria of the nonlinear implicit solve.

    Attributes:
        rtol: Relative tolerance on the Newton update (max norm).
        atol: Absolute tolerance on the Newton update (max norm).
        max_iters: Maximum number of Newton iterations.
    """

    rtol: float = 1e-12
    atol: float = 1e-14
    max_iters: int = 25

    def __post_init__(self) -> None:
        """Validate tolerances and the iteration cap.

        Raises:
            ValueError: If a tolerance is negative or max_iters < 1.
        """
        if self.rtol < 0.0 or self.atol < 0.0:
            raise ValueError(_TOL_ERROR.format(rtol=self.rtol, atol=self.atol))
        if self.max_iters < 1:
            raise ValueError(_MAX_ITERS_ERROR.format(n=self.max_iters))


class _FlatVectorEvaluator:
    """Shared gather / evaluate / scatter plumbing for flat-vector evaluators.

    Subclasses implement ``_explicit``, ``_implicit`` and ``_solve`` on 1D
    arrays. Call counters are kept for diagnostics and tests.
    """

    def __init__(self) -> None:
        self.n_explicit_evals = 0
        self.n_implicit_evals = 0
        self.n_implicit_solves = 0

    def _explicit(self, time: float, y: NDArray[np.floating]) -> NDArray[np.floating]:
        raise NotImplementedError

    def _implicit(self, time: float, y: NDArray[np.floating]) -> NDArray[np.floating]:
        raise NotImplementedError

    def _solve(
        self, p: NDArray[np.floating], sub_dt: float, time: float
    ) -> NDArray[np.floating]:
        raise NotImplementedError

    @staticmethod
    def _checked(name: str, values: NDArray[np.floating], time: float) -> None:
        if not np.all(np.isfinite(values)):
            raise_numerical_domain_error(
                name=f"{name} at t={time:.16g}",
                value=float(values[~np.isfinite(values)][0]),
                valid=_NONFINITE_VALID,
            )

    def evaluate_explicit_rhs(
        self,
        state: StateContainer,
        i_state: int,
        i_tendency: int,
        time: float,
    ) -> None:
        """Write the explicit tendency of i_state into i_tendency.

        Raises:
            NumericalDomainError: If the tendency is not finite.
        """
        self.n_explicit_evals += 1
        y = state.gather(i_state)
        dy = np.asarray(self._explicit(time, y), dtype=y.dtype).reshape(-1)
        self._checked("explicit tendency", dy, time)
        state.scatter(dy, i_tendency)

    def evaluate_implicit_rhs(
        self,
        state: StateContainer,
        i_state: int,
        i_tendency: int,
        time: float,
    ) -> None:
        """Write the implicit tendency of i_state into i_tendency.

        Raises:
            NumericalDomainError: If the tendency is not finite.
        """
        self.n_implicit_evals += 1
        y = state.gather(i_state)
        dy = np.asarray(self._implicit(time, y), dtype=y.dtype).reshape(-1)
        self._checked("implicit tendency", dy, time)
        state.scatter(dy, i_tendency)

    def solve_implicit(
        self,
        state: StateContainer,
        i_perturbation: int,
        i_result: int,
        sub_dt: float,
        time: float,
    ) -> None:
        """Solve y = p + sub_dt * I(y, time) and write y into i_result.

        Raises:
            ConvergenceError: If the nonlinear solve does not converge.
            NumericalDomainError: If the solution is not finite.
        """
        self.n_implicit_solves += 1
        p = state.gather(i_perturbation)
        y = np.asarray(self._solve(p, float(sub_dt), time), dtype=p.dtype).reshape(-1)
        self._checked("implicit solve result", y, time)
        state.scatter(y, i_result)


class FunctionRHSEvaluator(_FlatVectorEvaluator):
    """Evaluator built from plain flat-vector callables f(t, y) -> dy/dt.

    Args:
        explicit: Explicit tendency callable. If None, E is zero.
        implicit: Implicit tendency callable. If None, I is zero and the
            implicit solve returns the perturbation unchanged.
        jacobian: Optional dI/dy callable returning a dense or sparse matrix.
            With a Jacobian the implicit solve uses Newton with direct linear
            solves; without one it uses Jacobian-free Newton-Krylov.
        options: Nonlinear solve stopping criteria.
    """

    def __init__(
        self,
        explicit: FlatRHS | None = None,
        implicit: FlatRHS | None = None,
        jacobian: FlatJacobian | None = None,
        *,
        options: ImplicitSolveOptions | None = None,
    ) -> None:
        super().__init__()
        self.explicit = explicit
        self.implicit = implicit
        self.jacobian = jacobian
        self.options = options or ImplicitSolveOptions()

    def _explicit(self, time: float, y: NDArray[np.floating]) -> NDArray[np.floating]:
        if self.explicit is None:
            return np.zeros_like(y)
        return cast("NDArray[np.floating]", self.explicit(time, y))

    def _implicit(self, time: float, y: NDArray[np.floating]) -> NDArray[np.floating]:
        if self.implicit is None:
            return np.zeros_like(y)
        return cast("NDArray[np.floating]", self.implicit(time, y))

    def _converged(self, dz: NDArray[np.floating], z: NDArray[np.floating]) -> bool:
        opts = self.options
        scale = opts.rtol * float(np.max(np.abs(z), initial=0.0)) + opts.atol
        return float(np.max(np.abs(dz), initial=0.0)) <= scale

    def _solve(
        self, p: NDArray[np.floating], sub_dt: float, time: float
    ) -> NDArray[np.floating]:
        if self.implicit is None or sub_dt == 0.0:
            return p.copy()
        if self.jacobian is not None:
            return self._solve_newton_direct(p, sub_dt, time)
        return self._solve_newton_krylov(p, sub_dt, time)

    def _solve_newton_direct(
        self, p: NDArray[np.floating], sub_dt: float, time: float
    ) -> NDArray[np.floating]:
        jacobian = cast("FlatJacobian", self.jacobian)
        z = p.copy()
        for _ in range(self.options.max_iters):
            residual = z - sub_dt * self._implicit(time, z) - p
            jac = jacobian(time, z)
            if issparse(jac):
                lhs = (build_implicit_euler_operators(jac, sub_dt)[0]).tocsc()
                dz = np.asarray(spsolve(lhs, -residual), dtype=z.dtype)
            else:
                eye = build_identity_operator(
                    z.size, dtype=z.dtype, prefer_sparse=False
                )
                lhs = eye - sub_dt * np.asarray(jac)
                dz = lu_solve(lu_factor(lhs), -residual)
            z += dz
            if not np.all(np.isfinite(z)):
                break
            if self._converged(dz, z):
                return z

        raise_convergence_error(
            where="Implicit Newton solve",
            time=time,
            reason=f"no convergence within {self.options.max_iters} iterations "
            f"(sub_dt={sub_dt:.6g})",
        )

    def _solve_newton_krylov(
        self, p: NDArray[np.floating], sub_dt: float, time: float
    ) -> NDArray[np.floating]:
        opts = self.options
        f_tol = opts.atol + opts.rtol * max(float(np.max(np.abs(p), initial=0.0)), 1.0)

        def residual(z: NDArray[np.floating]) -> NDArray[np.floating]:
            return z - sub_dt * self._implicit(time, z) - p

        try:
            z = newton_krylov(
                residual,
                p.copy(),
                method="gmres",
                f_tol=f_tol,
                maxiter=opts.max_iters,
            )
        except NoConvergence as exc:
            raise_convergence_error(
                where="Implicit Newton-Krylov solve",
                time=time,
                reason=f"{exc} (sub_dt={sub_dt:.6g})",
            )
        return np.asarray(z, dtype=p.dtype)


class LinearOperatorRHSEvaluator(_FlatVectorEvaluator):
    """Evaluator whose implicit tendency is a fixed linear operator I(y) = A y.

    The implicit solve (I - h A) y = p is a single direct linear solve. The
    implicit Euler operators and the factorization of I - h A are cached per
    step size h on the evaluator itself, with least recently used entries
    dropped beyond ``cache_size``. Discarding the evaluator frees them.

    Args:
        implicit_operator: Dense or sparse matrix A acting on the flat state.
        explicit: Explicit tendency as a flat-vector callable f(t, y) or as a
            matrix. If None, E is zero.
        cache_size: Number of step sizes whose operators are kept.
    """

    def __init__(
        self,
        implicit_operator: Operator,
        explicit: FlatRHS | Operator | None = None,
        *,
        cache_size: int = 8,
    ) -> None:
        super().__init__()
        if cache_size < 1:
            raise ValueError(_CACHE_SIZE_ERROR.format(n=cache_size))
        self.implicit_operator = implicit_operator
        self.explicit = explicit
        self.cache_size = int(cache_size)
        self._stage_ops: OrderedDict[float, _StageEntry] = OrderedDict()

    def _explicit(self, time: float, y: NDArray[np.floating]) -> NDArray[np.floating]:
        if self.explicit is None:
            return np.zeros_like(y)
        if callable(self.explicit):
            return cast("NDArray[np.floating]", self.explicit(time, y))
        return cast("NDArray[np.floating]", self.explicit @ y)

    def _implicit(self, time: float, y: NDArray[np.floating]) -> NDArray[np.floating]:
        return cast("NDArray[np.floating]", self.implicit_operator @ y)

    def _stage_entry(self, sub_dt: float) -> _StageEntry:
        key = float(sub_dt)
        entry = self._stage_ops.get(key)
        if entry is not None:
            self._stage_ops.move_to_end(key)
            return entry

        left, right = build_implicit_euler_operators(self.implicit_operator, key)
        entry = (left, right, factorize_implicit(left, right))
        self._stage_ops[key] = entry
        if len(self._stage_ops) > self.cache_size:
            self._stage_ops.popitem(last=False)
        logger.debug("Factorized implicit Euler operators for sub_dt=%.6g", key)
        return entry

    def stage_operators(self, sub_dt: float) -> tuple[Operator, Operator]:
        """Return the cached (L, R) = (I - sub_dt A, I) pair for one step size."""
        left, right, _ = self._stage_entry(sub_dt)
        return left, right

    def _solve(
        self, p: NDArray[np.floating], sub_dt: float, time: float
    ) -> NDArray[np.floating]:
        if sub_dt == 0.0:
            return p.copy()
        return self._stage_entry(sub_dt)[2](p)
