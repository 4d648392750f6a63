"""
Base class for iterative solvers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Tuple
import numpy as np
import time

from .operators import LinearOperator, as_operator


# Termination reasons reported in SolverResult.termination
CONVERGED = 'converged'
DEGENERATE = 'degenerate'
CANCELLED = 'cancelled'
MAX_ITERATIONS = 'max_iterations'


@dataclass
class SolverResult:
    """Container for solver results and diagnostics."""
    solution: np.ndarray
    converged: bool
    iterations: int
    termination: str
    final_residual_norm: float
    residual_history: List[float]
    elapsed_time: float
    solver_name: str

    # Additional diagnostics
    operator_applications: int = 0
    initial_residual_norm: float = 0.0
    relative_residual: float = 0.0

    def __post_init__(self):
        if self.initial_residual_norm > 0:
            self.relative_residual = self.final_residual_norm / self.initial_residual_norm


def is_cancelled(signal: Any) -> bool:
    """
    Poll a cancellation signal without blocking.

    Accepted signals: None (never fires), objects with ``is_set()``
    such as ``threading.Event``, objects with ``done()`` such as
    ``concurrent.futures.Future``, and zero-argument callables.
    """
    if signal is None:
        return False
    if callable(getattr(signal, 'is_set', None)):
        return bool(signal.is_set())
    if callable(getattr(signal, 'done', None)):
        return bool(signal.done())
    return bool(signal())


def check_cancel_signal(signal: Any):
    """Reject cancellation signals that cannot be polled."""
    if signal is None or callable(signal):
        return
    if callable(getattr(signal, 'is_set', None)) or callable(getattr(signal, 'done', None)):
        return
    raise TypeError(f"Cannot poll cancellation signal of type "
                    f"{type(signal).__name__}")


def prepare_system(t: Any, b: Any) -> Tuple[LinearOperator, np.ndarray]:
    """
    Normalise an operator and right-hand side into solver inputs.

    Parameters
    ----------
    t : LinearOperator, np.ndarray, scipy.sparse matrix or scipy LinearOperator
        The symmetric positive definite operator T
    b : array-like
        Right-hand side vector (n,)

    Returns
    -------
    tuple
        (operator, b as a float64 vector)
    """
    op = as_operator(t)
    b = np.asarray(b, dtype=np.float64)

    if b.ndim != 1:
        raise ValueError(f"Right-hand side must be a vector, got shape {b.shape}")
    if len(b) != op.dim:
        raise ValueError(f"Right-hand side has length {len(b)}, "
                         f"operator dimension is {op.dim}")

    return op, b


class IterativeSolver(ABC):
    """
    Abstract base class for iterative linear system solvers.

    Solves: T @ x = b

    where T is only available through its action on a vector.
    """

    def __init__(self,
                 precision: float = 0.0,
                 verbose: bool = False):
        """
        Initialize solver with convergence parameters.

        Parameters
        ----------
        precision : float
            Stopping criterion on the largest absolute entry of b - Tx.
            Zero solves to the best attainable accuracy.
        verbose : bool
            Print iteration progress
        """
        if not precision >= 0:
            raise ValueError(f"Precision must be non-negative, got {precision}")

        self.precision = float(precision)
        self.verbose = verbose
        self.name = "IterativeSolver"

    @abstractmethod
    def _solve_impl(self,
                    op: LinearOperator,
                    b: np.ndarray,
                    cancel_signal: Any) -> Tuple[np.ndarray, List[float], int, str, int]:
        """
        Internal solve implementation.

        Parameters
        ----------
        op : LinearOperator
            System operator of dimension n, must be symmetric positive definite
        b : np.ndarray
            Right-hand side vector (n,)
        cancel_signal : object or None
            Polled between iterations, see ``is_cancelled``

        Returns
        -------
        tuple
            (solution, residual_history, iterations, termination,
             operator_applications)
        """
        pass

    def solve(self,
              t: Any,
              b: Any,
              cancel_signal: Any = None) -> SolverResult:
        """
        Solve the linear system T @ x = b starting from the zero vector.

        Parameters
        ----------
        t : LinearOperator or matrix-like
            System operator (n x n), symmetric positive definite
        b : array-like
            Right-hand side vector (n,)
        cancel_signal : object, optional
            Stops the solve early once set. The partial solution is returned.

        Returns
        -------
        SolverResult
            Solution and convergence diagnostics
        """
        op, b = prepare_system(t, b)
        check_cancel_signal(cancel_signal)

        initial_residual_norm = float(np.max(np.abs(b), initial=0.0))

        # Time the solve
        start_time = time.perf_counter()
        x, residual_history, iterations, termination, applications = \
            self._solve_impl(op, b, cancel_signal)
        elapsed_time = time.perf_counter() - start_time

        # True residual, independent of the one maintained by the solver
        with np.errstate(invalid='ignore', over='ignore'):
            final_residual = b - op.apply(x)
            final_residual_norm = float(np.max(np.abs(final_residual), initial=0.0))

        return SolverResult(
            solution=x,
            converged=termination in (CONVERGED, DEGENERATE),
            iterations=iterations,
            termination=termination,
            final_residual_norm=final_residual_norm,
            residual_history=residual_history,
            elapsed_time=elapsed_time,
            solver_name=self.name,
            operator_applications=applications,
            initial_residual_norm=initial_residual_norm,
        )

    def _check_convergence(self, residual_norm: float) -> bool:
        """Check if solver has converged."""
        return residual_norm <= self.precision

    def _log(self, iteration: int, residual_norm: float):
        """Log iteration progress."""
        if self.verbose:
            print(f"  {self.name} iter {iteration:4d}: max|r| = {residual_norm:.6e}")
