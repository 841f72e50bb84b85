# src/dycore_stepper/matrix_ops.py
"""Linear operators and cached implicit solves for stiff tendencies.

Reference evaluators describe the implicit (stiff) part of a tendency as a
linear operator A acting on the flattened state. This module provides:

- Construction of common 1D spatial operators on a column or a periodic ring
  (second-difference Laplacian, centered first difference).
- Lifting of a single-field operator to every field of a flattened state.
- Implicit Euler operators (L, R) = (I - h A, I) for the stage equation
  y = p + h A y.
- Factorized solvers for repeated systems L @ y = R @ x, either owned by the
  caller or kept in a module-level cache.

Design notes:
    * Dense paths rely on NumPy/SciPy LAPACK; sparse paths rely on SciPy sparse
      factorizations. Small systems default to dense.
    * Cache semantics: the implicit_solve cache is keyed by (id(left_op),
      id(right_op)) and only cleared explicitly. Long-lived owners such as the
      evaluators in ``rhs`` use factorize_implicit and hold the solver
      themselves, so it is freed with them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias, cast

import numpy as np
from numpy.typing import DTypeLike, NDArray
from scipy.linalg import lu_factor, lu_solve
from scipy.sparse import csr_matrix, diags, identity, issparse, kron
from scipy.sparse.linalg import factorized as sparse_factorized

if TYPE_CHECKING:
    from collections.abc import Callable


# =============================================================================
# Public operator types
# =============================================================================

DenseOperator: TypeAlias = NDArray[np.floating]
SparseOperator: TypeAlias = csr_matrix
Operator: TypeAlias = DenseOperator | SparseOperator


# Below this size, dense ops tend to be faster; above it, sparse is preferred.
_DISPATCH_THRESHOLD = 350

# key = (id(L), id(R)) -> (meta, solver)
# meta guards against id reuse in long-lived processes.
_SolverMeta = tuple[tuple[int, int], tuple[int, int], str, str, bool]
_IMPLICIT_SOLVER_CACHE: dict[
    tuple[int, int],
    tuple[_SolverMeta, Callable[[NDArray[np.floating]], NDArray[np.floating]]],
] = {}


# =============================================================================
# Error message constants
# =============================================================================

_UNKNOWN_BC_ERROR = "Unknown bc: {bc}"
_GRID_SIZE_ERROR = "n must be >= {min_n} for bc={bc}; got {n}"
_OPERATORS_SQUARE_ERROR = "Operator must be square; got shape {shape}"
_OPERATORS_DIM_ERROR = "Operator shape {shape} is incompatible with x shape {x_shape}"
_X_NDIM_ERROR = "x must be 1D or 2D; got ndim={ndim}"
_OPERATOR_SCALE_ERROR = "scale must be a finite float; got {scale}"
_N_FIELDS_ERROR = "n_fields must be >= 1; got {n_fields}"


# =============================================================================
# Spatial operators
# =============================================================================


def build_laplacian_tridiag(
    n: int,
    dx: float,
    coeff: float,
    dtype: DTypeLike = np.float64,
    bc: str = "neumann",
) -> csr_matrix:
    """Build a second-difference Laplacian for a given boundary condition.

    Returns coeff times the three-point second difference, suitable as the
    implicit (diffusive) tendency operator of one field.

    Args:
        n: Number of grid points.
        dx: Grid spacing.
        coeff: Diffusivity (length^2 / time).
        dtype: Floating dtype.
        bc: Boundary condition: "neumann", "absorbing" or "periodic".

    Raises:
        ValueError: If bc is unknown, or a periodic ring has fewer than 3 points.

    Returns:
        Sparse CSR tendency operator.
    """
    dtype_obj = np.dtype(dtype)
    factor = coeff / dx**2

    main_diag = -2.0 * np.ones(n, dtype=dtype_obj)
    off_diag = np.ones(n - 1, dtype=dtype_obj)

    if bc == "neumann":
        main_diag[0] = -1.0
        main_diag[-1] = -1.0
    elif bc in {"absorbing", "periodic"}:
        pass
    else:
        msg = _UNKNOWN_BC_ERROR.format(bc=bc)
        raise ValueError(msg)

    laplacian = diags(
        [off_diag.tolist(), main_diag.tolist(), off_diag.tolist()],
        [-1, 0, 1],
        shape=(n, n),
        dtype=dtype_obj,
    ).tolil()

    if bc == "periodic":
        if n < 3:  # noqa: PLR2004
            raise ValueError(_GRID_SIZE_ERROR.format(min_n=3, bc=bc, n=n))
        laplacian[0, n - 1] = 1.0
        laplacian[n - 1, 0] = 1.0

    scaled = laplacian.tocsr() * factor
    return scaled.tocsr()


def build_centered_difference(
    n: int,
    dx: float,
    speed: float,
    dtype: DTypeLike = np.float64,
) -> csr_matrix:
    """Build the periodic advection operator -speed * d/dx (centered).

    Args:
        n: Number of grid points on the periodic ring.
        dx: Grid spacing.
        speed: Advection speed.
        dtype: Floating dtype.

    Raises:
        ValueError: If the ring has fewer than 3 points.

    Returns:
        Sparse CSR matrix whose product with a field gives its advective tendency.
    """
    if n < 3:  # noqa: PLR2004
        raise ValueError(_GRID_SIZE_ERROR.format(min_n=3, bc="periodic", n=n))

    dtype_obj = np.dtype(dtype)
    factor = -speed / (2.0 * dx)
    upper = np.ones(n - 1, dtype=dtype_obj)

    op = diags([-upper, upper], [-1, 1], shape=(n, n), dtype=dtype_obj).tolil()
    op[0, n - 1] = -1.0
    op[n - 1, 0] = 1.0
    return (op.tocsr() * factor).tocsr()


def build_identity_operator(
    n: int,
    *,
    dtype: DTypeLike = np.float64,
    prefer_sparse: bool | None = None,
) -> Operator:
    """
    Build an identity operator with dense/sparse autodispatch.

    Args:
        n: Size of the identity operator (n x n).
        dtype: Floating dtype (e.g. np.float64).
        prefer_sparse: If True, always return a sparse operator; if False,
            always return a dense operator; if None, autodispatch based on n.

    Returns:
        Identity operator of shape (n, n) as either a dense ndarray or CSR matrix.
    """
    dtype_obj = np.dtype(dtype)
    use_sparse = (
        prefer_sparse if prefer_sparse is not None else n >= _DISPATCH_THRESHOLD
    )
    if use_sparse:
        return identity(n, format="csr", dtype=dtype_obj)
    return cast("DenseOperator", np.eye(n, dtype=dtype_obj))


def block_diagonal_operator(op: Operator, n_fields: int) -> Operator:
    """Apply one single-field operator to each of n_fields stacked fields.

    The flattened state stores fields contiguously (field-major), so the
    lifted operator is kron(I_{n_fields}, op).

    Args:
        op: Square operator acting on one field.
        n_fields: Number of stacked fields.

    Raises:
        ValueError: If n_fields < 1.

    Returns:
        Operator of shape (n_fields * n, n_fields * n), sparse if op is sparse.
    """
    if n_fields < 1:
        raise ValueError(_N_FIELDS_ERROR.format(n_fields=n_fields))
    _validate_square_operator(op)

    if issparse(op):
        eye = build_identity_operator(n_fields, dtype=op.dtype, prefer_sparse=True)
        return cast("csr_matrix", kron(eye, op, format="csr"))

    op_arr = np.asarray(op)
    eye_dense = build_identity_operator(
        n_fields, dtype=op_arr.dtype, prefer_sparse=False
    )
    return cast("DenseOperator", np.kron(eye_dense, op_arr))


def build_implicit_euler_operators(
    base_op: Operator,
    dt_scale: float,
) -> tuple[Operator, Operator]:
    """Build implicit Euler operators for a time-scaled linear operator.

    Solving L @ y = R @ p with the returned pair gives y = p + dt_scale * A y.

    Args:
        base_op: Base linear operator A.
        dt_scale: Time-step scaling factor.

    Raises:
        ValueError: If dt_scale is not finite.

    Returns:
        Tuple of (L, R) = (I - dt_scale * A, I).
    """
    if not np.isfinite(dt_scale):
        raise ValueError(_OPERATOR_SCALE_ERROR.format(scale=dt_scale))

    n = base_op.shape[0]

    if issparse(base_op):
        base_csr = base_op.tocsr()
        identity_csr = build_identity_operator(
            n, dtype=base_csr.dtype, prefer_sparse=True
        )
        left_csr = (identity_csr - (dt_scale * base_csr)).tocsr()
        return left_csr, identity_csr

    base_arr = np.asarray(base_op)
    identity_arr = build_identity_operator(
        n, dtype=base_arr.dtype, prefer_sparse=False
    )
    left_arr = identity_arr - (dt_scale * base_arr)
    return cast("DenseOperator", left_arr), cast("DenseOperator", identity_arr)


# =============================================================================
# Implicit solvers: factorized and cached
# =============================================================================


def clear_implicit_solver_cache() -> None:
    """Forget every cached factorization."""
    _IMPLICIT_SOLVER_CACHE.clear()


def _operator_meta(left_op: Operator, right_op: Operator) -> _SolverMeta:
    l_arr = left_op if issparse(left_op) else np.asarray(left_op)
    r_arr = right_op if issparse(right_op) else np.asarray(right_op)
    return (
        cast("tuple[int, int]", l_arr.shape),
        cast("tuple[int, int]", r_arr.shape),
        str(l_arr.dtype),
        str(r_arr.dtype),
        bool(issparse(left_op) and issparse(right_op)),
    )


def _validate_square_operator(op: Operator) -> tuple[int, int]:
    shape = cast("tuple[int, int]", op.shape)
    if len(shape) != 2 or shape[0] != shape[1]:  # noqa: PLR2004
        raise ValueError(_OPERATORS_SQUARE_ERROR.format(shape=shape))
    return shape


def _validate_solve_dimensions(
    left_op: Operator,
    right_op: Operator,
    x: NDArray[np.floating],
) -> None:
    l_shape = _validate_square_operator(left_op)
    r_shape = _validate_square_operator(right_op)
    if l_shape != r_shape:
        raise ValueError(_OPERATORS_SQUARE_ERROR.format(shape=(l_shape, r_shape)))

    if x.ndim not in {1, 2}:
        raise ValueError(_X_NDIM_ERROR.format(ndim=x.ndim))

    if x.shape[0] != l_shape[0]:
        raise ValueError(_OPERATORS_DIM_ERROR.format(shape=l_shape, x_shape=x.shape))


def _build_implicit_solver(
    left_op: Operator,
    right_op: Operator,
) -> Callable[[NDArray[np.floating]], NDArray[np.floating]]:
    """Factorize L once and return x -> L^{-1} R x."""
    if issparse(left_op) and issparse(right_op):
        left_csr = cast("csr_matrix", left_op)
        right_csr = cast("csr_matrix", right_op)
        solve_left = sparse_factorized(left_csr.tocsc())

        def sparse_solver(x: NDArray[np.floating]) -> NDArray[np.floating]:
            x_arr = np.asarray(x, dtype=left_csr.dtype)
            rhs = right_csr @ x_arr
            if rhs.ndim == 1:
                return np.asarray(solve_left(rhs), dtype=x_arr.dtype)

            out = np.empty(rhs.shape, dtype=x_arr.dtype)
            for j in range(rhs.shape[1]):
                out[:, j] = np.asarray(solve_left(rhs[:, j]), dtype=x_arr.dtype)
            return out

        return sparse_solver

    left_dense = left_op.toarray() if issparse(left_op) else np.asarray(left_op)
    right_dense = right_op.toarray() if issparse(right_op) else np.asarray(right_op)
    lu, piv = lu_factor(left_dense)

    def dense_solver(x: NDArray[np.floating]) -> NDArray[np.floating]:
        x_arr = np.asarray(x, dtype=left_dense.dtype)
        out = lu_solve((lu, piv), right_dense @ x_arr)
        return np.asarray(out, dtype=x_arr.dtype)

    return dense_solver


def factorize_implicit(
    left_op: Operator,
    right_op: Operator,
) -> Callable[[NDArray[np.floating]], NDArray[np.floating]]:
    """
    Factorize L once and return a solver x -> L^{-1} R x owned by the caller.

    Unlike implicit_solve, nothing is stored in the module cache: the
    factorization lives exactly as long as the returned callable.

    Args:
        left_op: Stage operator L, typically I - h A.
        right_op: Operator R applied to x, typically I.

    Raises:
        ValueError: If the operators are not square or differ in shape.

    Returns:
        Solver accepting a 1D state or a 2D array of states as columns.
    """
    l_shape = _validate_square_operator(left_op)
    r_shape = _validate_square_operator(right_op)
    if l_shape != r_shape:
        raise ValueError(_OPERATORS_SQUARE_ERROR.format(shape=(l_shape, r_shape)))
    return _build_implicit_solver(left_op, right_op)


def implicit_solve(
    left_op: Operator,
    right_op: Operator,
    x: NDArray[np.floating],
) -> NDArray[np.floating]:
    """
    Solve L @ y = R @ x, reusing the factorization of L across calls.

    Stage solves of one step size pass the same (L, R) objects every time, so
    L is factorized once per step size.

    Args:
        left_op: Stage operator L, typically I - h A.
        right_op: Operator R applied to x, typically I.
        x: Flattened state (1D) or several states as columns (2D).

    Raises:
        ValueError: If the operators are not square or do not match x.

    Returns:
        y with the shape of x.
    """
    x_arr = cast("NDArray[np.floating]", np.asarray(x))
    _validate_solve_dimensions(left_op, right_op, x_arr)

    key = (id(left_op), id(right_op))
    meta = _operator_meta(left_op, right_op)

    cached = _IMPLICIT_SOLVER_CACHE.get(key)
    if cached is None or cached[0] != meta:
        solver = _build_implicit_solver(left_op, right_op)
        _IMPLICIT_SOLVER_CACHE[key] = (meta, solver)
    else:
        solver = cached[1]
    return solver(x_arr)
