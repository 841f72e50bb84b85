# tests/test_matrix_ops.py
"""Unit tests for dycore_stepper.matrix_ops.

This module verifies:
- Laplacian and centered-difference construction for supported boundaries.
- Identity and block-diagonal lifting of single-field operators.
- Implicit Euler operator pairs.
- implicit_solve correctness (dense and sparse paths) and its cache.
- Caller-owned factorizations from factorize_implicit.
"""

from __future__ import annotations

import numpy as np
import pytest
from scipy.sparse import csr_matrix, issparse

from dycore_stepper import matrix_ops
from dycore_stepper.matrix_ops import (
    block_diagonal_operator,
    build_centered_difference,
    build_identity_operator,
    build_implicit_euler_operators,
    build_laplacian_tridiag,
    clear_implicit_solver_cache,
    factorize_implicit,
    implicit_solve,
)


def _as_dense(mat: object) -> np.ndarray:
    if hasattr(mat, "toarray"):
        return np.asarray(mat.toarray())
    return np.asarray(mat)


# -------------------------------------------------------------------
# Spatial operators
# -------------------------------------------------------------------


def test_laplacian_neumann_conserves_mass() -> None:
    """Neumann rows sum to zero, so the field mean is preserved."""
    a = _as_dense(build_laplacian_tridiag(6, 0.5, 2.0, bc="neumann"))
    assert np.allclose(a, a.T)
    assert np.allclose(a.sum(axis=1), 0.0)
    assert a[0, 0] == pytest.approx(-1.0 * 2.0 / 0.25)


def test_laplacian_absorbing_and_periodic() -> None:
    """Absorbing rows leak at the ends; periodic rows wrap around."""
    absorbing = _as_dense(build_laplacian_tridiag(5, 1.0, 1.0, bc="absorbing"))
    assert absorbing[0, 0] == -2.0
    assert absorbing[0, -1] == 0.0

    periodic = _as_dense(build_laplacian_tridiag(5, 1.0, 1.0, bc="periodic"))
    assert periodic[0, -1] == 1.0
    assert periodic[-1, 0] == 1.0
    assert np.allclose(periodic.sum(axis=1), 0.0)


def test_laplacian_invalid_bc() -> None:
    """Unknown boundaries and too-small periodic rings are rejected."""
    with pytest.raises(ValueError, match="Unknown bc"):
        build_laplacian_tridiag(4, 1.0, 1.0, bc="dirichlet")
    with pytest.raises(ValueError, match="n must be >= 3"):
        build_laplacian_tridiag(2, 1.0, 1.0, bc="periodic")


def test_centered_difference_is_skew_and_exact_on_sine() -> None:
    """The periodic advection operator is skew-symmetric and differentiates sines."""
    n = 64
    dx = 2.0 * np.pi / n
    speed = 3.0
    op = build_centered_difference(n, dx, speed)
    dense = _as_dense(op)
    assert np.allclose(dense, -dense.T)

    x = dx * np.arange(n)
    tendency = op @ np.sin(x)
    expected = -speed * np.cos(x) * np.sin(dx) / dx
    assert np.allclose(tendency, expected, atol=1e-12)

    with pytest.raises(ValueError):
        build_centered_difference(2, 1.0, 1.0)


def test_identity_dispatch() -> None:
    """Identity honors prefer_sparse and otherwise dispatches on size."""
    assert isinstance(build_identity_operator(4), np.ndarray)
    assert issparse(build_identity_operator(4, prefer_sparse=True))
    assert issparse(build_identity_operator(1000))


def test_block_diagonal_operator() -> None:
    """Lifting applies the same operator to each stacked field."""
    op = np.array([[1.0, 2.0], [3.0, 4.0]])
    lifted = block_diagonal_operator(op, 3)
    y = np.arange(6, dtype=float)
    expected = np.concatenate([op @ y[i : i + 2] for i in (0, 2, 4)])
    assert np.allclose(lifted @ y, expected)

    sparse_lifted = block_diagonal_operator(csr_matrix(op), 2)
    assert issparse(sparse_lifted)
    assert sparse_lifted.shape == (4, 4)

    with pytest.raises(ValueError, match="n_fields"):
        block_diagonal_operator(op, 0)
    with pytest.raises(ValueError, match="square"):
        block_diagonal_operator(np.zeros((2, 3)), 2)


def test_implicit_euler_operators() -> None:
    """(L, R) = (I - h A, I) for dense and sparse A."""
    a = np.array([[-1.0, 0.5], [0.0, -2.0]])
    left, right = build_implicit_euler_operators(a, 0.1)
    assert np.allclose(left, np.eye(2) - 0.1 * a)
    assert np.allclose(right, np.eye(2))

    left_s, right_s = build_implicit_euler_operators(csr_matrix(a), 0.1)
    assert issparse(left_s)
    assert issparse(right_s)
    assert np.allclose(left_s.toarray(), left)

    with pytest.raises(ValueError, match="finite"):
        build_implicit_euler_operators(a, float("nan"))


# -------------------------------------------------------------------
# Implicit solves
# -------------------------------------------------------------------


@pytest.mark.parametrize("sparse", [False, True])
def test_implicit_solve_matches_direct_solution(sparse: bool) -> None:
    """implicit_solve returns L^{-1} R x for 1D and 2D right-hand sides."""
    a = build_laplacian_tridiag(8, 1.0, 1.0, bc="neumann")
    base = a if sparse else a.toarray()
    left, right = build_implicit_euler_operators(base, 0.3)
    dense_left = _as_dense(left)

    x = np.linspace(0.0, 1.0, 8)
    assert np.allclose(implicit_solve(left, right, x), np.linalg.solve(dense_left, x))

    xs = np.stack([x, x**2], axis=1)
    assert np.allclose(implicit_solve(left, right, xs), np.linalg.solve(dense_left, xs))


def test_implicit_solve_dimension_errors() -> None:
    """Incompatible operators and vectors are rejected before factorization."""
    left, right = build_implicit_euler_operators(np.eye(3), 0.1)
    with pytest.raises(ValueError, match="incompatible"):
        implicit_solve(left, right, np.ones(4))
    with pytest.raises(ValueError, match="1D or 2D"):
        implicit_solve(left, right, np.ones((3, 1, 1)))
    with pytest.raises(ValueError, match="square"):
        implicit_solve(np.ones((3, 2)), right, np.ones(3))


def test_solver_cache_reuse_and_clear() -> None:
    """Factorizations are cached per operator pair until cleared."""
    clear_implicit_solver_cache()
    left, right = build_implicit_euler_operators(np.diag([-1.0, -2.0]), 0.5)
    implicit_solve(left, right, np.ones(2))
    implicit_solve(left, right, np.zeros(2))
    assert len(matrix_ops._IMPLICIT_SOLVER_CACHE) == 1  # noqa: SLF001

    clear_implicit_solver_cache()
    assert len(matrix_ops._IMPLICIT_SOLVER_CACHE) == 0  # noqa: SLF001


@pytest.mark.parametrize("sparse", [False, True])
def test_factorize_implicit_is_caller_owned(sparse: bool) -> None:
    """factorize_implicit solves like implicit_solve without touching the cache."""
    a = build_laplacian_tridiag(6, 1.0, 0.5, bc="periodic")
    base = a if sparse else a.toarray()
    left, right = build_implicit_euler_operators(base, 0.2)
    solver = factorize_implicit(left, right)

    x = np.cos(np.arange(6.0))
    assert np.allclose(solver(x), np.linalg.solve(_as_dense(left), x))
    assert len(matrix_ops._IMPLICIT_SOLVER_CACHE) == 0  # noqa: SLF001

    with pytest.raises(ValueError, match="square"):
        factorize_implicit(left, build_identity_operator(5))
