"""
Linear Operators
================

The solver only ever needs two things from the system matrix T: its
dimension and its action on a vector. Anything that provides both can be
solved, whether T is a dense array, a scipy.sparse matrix, or a fully
implicit operator such as a finite-difference stencil or a Hessian-vector
product.

Operators:
- MatrixOperator: dense np.ndarray or scipy.sparse matrix
- FunctionOperator: arbitrary callable v -> T v
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Tuple
import numpy as np
import scipy.sparse
import scipy.sparse.linalg


class LinearOperator(ABC):
    """
    Abstract linear operator T acting on vectors of length ``dim``.

    Implementations must be pure: applying the same vector twice gives the
    same result and leaves the operator unchanged.
    """

    @property
    @abstractmethod
    def dim(self) -> int:
        """Dimension n of the operator."""

    @abstractmethod
    def apply(self, v: np.ndarray) -> np.ndarray:
        """Return T @ v as a new vector of length n."""

    def __repr__(self):
        return f"{type(self).__name__}(dim={self.dim})"


class MatrixOperator(LinearOperator):
    """Operator backed by an explicit square matrix (dense or sparse)."""

    def __init__(self, matrix: Any):
        if scipy.sparse.issparse(matrix):
            self.matrix = matrix.tocsr()
        else:
            self.matrix = np.asarray(matrix, dtype=np.float64)

        if self.matrix.ndim != 2 or self.matrix.shape[0] != self.matrix.shape[1]:
            raise ValueError(f"Matrix must be square, got shape {self.matrix.shape}")
        if self.matrix.shape[0] < 1:
            raise ValueError("Matrix must have at least one row")

    @property
    def dim(self) -> int:
        return self.matrix.shape[0]

    def apply(self, v: np.ndarray) -> np.ndarray:
        return np.asarray(self.matrix @ v, dtype=np.float64).ravel()


class FunctionOperator(LinearOperator):
    """
    Operator defined by a callable.

    Parameters
    ----------
    dim : int
        Dimension n of the operator
    func : callable
        Maps a vector of length n to T @ v, a vector of length n
    """

    def __init__(self, dim: int, func: Callable[[np.ndarray], np.ndarray]):
        if int(dim) < 1:
            raise ValueError(f"Operator dimension must be positive, got {dim}")
        self._dim = int(dim)
        self.func = func

    @property
    def dim(self) -> int:
        return self._dim

    def apply(self, v: np.ndarray) -> np.ndarray:
        # Copy so a callable returning its input cannot alias solver state
        w = np.array(self.func(v), dtype=np.float64).ravel()
        if len(w) != self._dim:
            raise ValueError(f"Operator returned a vector of length {len(w)}, "
                             f"expected {self._dim}")
        return w


def as_operator(obj: Any) -> LinearOperator:
    """
    Convert caller input into a LinearOperator.

    Accepts LinearOperator instances, scipy.sparse.linalg.LinearOperator,
    scipy.sparse matrices and anything np.asarray turns into a square matrix.
    """
    if isinstance(obj, LinearOperator):
        return obj

    if isinstance(obj, scipy.sparse.linalg.LinearOperator):
        rows, cols = obj.shape
        if rows != cols:
            raise ValueError(f"Operator must be square, got shape {obj.shape}")
        return FunctionOperator(rows, obj.matvec)

    if scipy.sparse.issparse(obj):
        return MatrixOperator(obj)

    try:
        matrix = np.asarray(obj, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise TypeError(f"Cannot use object of type {type(obj).__name__} "
                        f"as a linear operator") from exc

    return MatrixOperator(matrix)


def poisson_1d(n: int, shift: float = 0.0) -> FunctionOperator:
    """
    Matrix-free 1-D Poisson stencil with Dirichlet boundaries.

    T v[i] = (2 + shift) v[i] - v[i-1] - v[i+1]

    SPD for shift >= 0. Its condition number grows like n^2, which makes it
    a useful stress test for residual drift.
    """
    diagonal = 2.0 + shift

    def apply(v: np.ndarray) -> np.ndarray:
        w = diagonal * v
        w[1:] -= v[:-1]
        w[:-1] -= v[1:]
        return w

    return FunctionOperator(n, apply)


def to_dense(op: LinearOperator) -> np.ndarray:
    """Materialise an operator column by column."""
    n = op.dim
    columns = np.empty((n, n))
    basis = np.zeros(n)
    for j in range(n):
        basis[j] = 1.0
        columns[:, j] = op.apply(basis)
        basis[j] = 0.0
    return columns


def verify_spd(t: Any, tol: float = 1e-10) -> Tuple[bool, float]:
    """
    Verify that an operator is symmetric positive definite.

    Parameters
    ----------
    t : LinearOperator or matrix-like
        Operator to verify
    tol : float
        Tolerance for symmetry check

    Returns
    -------
    tuple
        (is_spd, min_eigenvalue)
    """
    A = to_dense(as_operator(t))

    # Check symmetry
    if not np.allclose(A, A.T, atol=tol):
        return False, 0.0

    # Check positive definiteness
    eigenvalues = np.linalg.eigvalsh(A)
    min_eig = eigenvalues.min()

    return bool(min_eig > 0), float(min_eig)
