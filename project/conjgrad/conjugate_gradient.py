"""
Conjugate Gradient Solver for Linear Systems
============================================

Solves T @ x = b using the Conjugate Gradient method, where T is a
symmetric positive definite operator known only through its action on
vectors.

For symmetric positive definite T, CG converges in at most n iterations
(in exact arithmetic), so the iteration count is capped at the operator
dimension.

The method generates T-conjugate search directions that span the Krylov subspace:
    K_k(T, b) = span{b, T b, T^2 b, ..., T^{k-1} b}

The residual r = b - T x is updated incrementally and recomputed directly
every RESIDUAL_UPDATE_FREQUENCY iterations to cancel floating-point drift.

Reference: Shewchuk, "An Introduction to the Conjugate Gradient Method
Without the Agonizing Pain", 1994.
"""

from typing import Any, List, Tuple
import numpy as np

from .base import (IterativeSolver, CONVERGED, DEGENERATE, CANCELLED,
                   MAX_ITERATIONS, check_cancel_signal, is_cancelled,
                   prepare_system)
from .operators import LinearOperator


# =============================================================================
# CONFIGURATION
# =============================================================================

# Iterations between direct recomputations of the residual b - T x
RESIDUAL_UPDATE_FREQUENCY = 20


def greatest_value(v: np.ndarray) -> float:
    """Largest absolute entry of v (0 for an empty vector)."""
    return float(np.max(np.abs(v), initial=0.0))


def all_zero(v: np.ndarray) -> bool:
    """True if every entry of v is exactly zero."""
    return not np.any(v)


class ConjugateGradientSolver(IterativeSolver):
    """
    Conjugate Gradient solver for SPD linear systems.

    Key properties:
    - Generates T-conjugate search directions
    - Optimal in Krylov subspace at each iteration
    - At most n iterations, one operator application each
      (plus one per periodic residual recomputation)
    - Cooperative cancellation between iterations
    """

    def __init__(self,
                 precision: float = 0.0,
                 residual_update_frequency: int = RESIDUAL_UPDATE_FREQUENCY,
                 verbose: bool = False):
        """
        Initialize CG solver.

        Parameters
        ----------
        precision : float
            Stop once max|b - T x| <= precision
        residual_update_frequency : int
            Recompute the residual directly on iterations that are positive
            multiples of this value
        verbose : bool
            Print iteration progress
        """
        super().__init__(precision=precision, verbose=verbose)

        if int(residual_update_frequency) < 1:
            raise ValueError(f"Residual update frequency must be at least 1, "
                             f"got {residual_update_frequency}")

        self.residual_update_frequency = int(residual_update_frequency)
        self.name = "Conjugate Gradient"

    def _solve_impl(self,
                    op: LinearOperator,
                    b: np.ndarray,
                    cancel_signal: Any) -> Tuple[np.ndarray, List[float], int, str, int]:
        """
        Solve using Conjugate Gradient method.

        Algorithm:
        1. r = b, x = 0
        2. For i < n:
           a. stop if max|r| <= precision
           b. d = r on the first iteration, else
              d = r + (r^T r / r_old^T r_old) * d
           c. stop if d == 0
           d. α = (d^T r) / (d^T T d)
           e. x = x + α * d
           f. r = b - T x every k-th iteration, else r = r - α * T d
           g. stop if cancelled
        """
        n = op.dim
        residual = b.copy()
        solution = np.zeros(n)
        conj_vec = None
        last_residual_dot = 0.0

        residual_norm = greatest_value(residual)
        residual_history = [residual_norm]
        applications = 0
        termination = MAX_ITERATIONS
        iteration = 0

        # Zero denominators propagate as inf/nan into the solution
        with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
            while iteration < n:
                if self._check_convergence(residual_norm):
                    termination = CONVERGED
                    break

                if iteration == 0:
                    conj_vec = residual.copy()
                    last_residual_dot = np.dot(conj_vec, conj_vec)
                else:
                    residual_dot = np.dot(residual, residual)
                    beta = residual_dot / last_residual_dot
                    last_residual_dot = residual_dot
                    conj_vec *= beta
                    conj_vec += residual

                if all_zero(conj_vec):
                    termination = DEGENERATE
                    break

                t_conj = op.apply(conj_vec)
                applications += 1
                optimal_distance = np.dot(conj_vec, residual) / np.dot(conj_vec, t_conj)

                solution += optimal_distance * conj_vec

                if iteration != 0 and iteration % self.residual_update_frequency == 0:
                    residual = b - op.apply(solution)
                    applications += 1
                else:
                    residual -= optimal_distance * t_conj

                iteration += 1
                residual_norm = greatest_value(residual)
                residual_history.append(residual_norm)
                self._log(iteration, residual_norm)

                if is_cancelled(cancel_signal):
                    termination = CANCELLED
                    break

        # The residual can meet the precision on the last allowed iteration
        if termination == MAX_ITERATIONS and self._check_convergence(residual_norm):
            termination = CONVERGED

        return solution, residual_history, iteration, termination, applications


# =============================================================================
# FUNCTIONAL INTERFACE
# =============================================================================

def solve_stoppable(t: Any, b: Any, precision: float,
                    cancel_signal: Any = None) -> np.ndarray:
    """
    Solve T x = b for a symmetric positive definite operator T.

    Returns as soon as the largest absolute entry of the maintained residual
    b - T x is at most ``precision``. Setting ``cancel_signal`` (for example
    a ``threading.Event`` from another thread) stops the solve at the next
    iteration boundary and returns the approximate solution found so far.

    Parameters
    ----------
    t : LinearOperator or matrix-like
        System operator of dimension n
    b : array-like
        Right-hand side vector (n,)
    precision : float
        Bound on the residual error, non-negative
    cancel_signal : object, optional
        ``threading.Event``, future, or zero-argument callable

    Returns
    -------
    np.ndarray
        Newly allocated solution vector (n,)
    """
    op, b = prepare_system(t, b)
    check_cancel_signal(cancel_signal)
    solver = ConjugateGradientSolver(precision=precision)
    solution, _, _, _, _ = solver._solve_impl(op, b, cancel_signal)
    return solution


def solve_prec(t: Any, b: Any, precision: float) -> np.ndarray:
    """Like solve_stoppable, without the option to cancel the solve."""
    return solve_stoppable(t, b, precision, None)


def solve(t: Any, b: Any) -> np.ndarray:
    """Like solve_prec, computing as accurate a solution as possible."""
    return solve_prec(t, b, 0.0)
