"""
Conjugate Gradient for Implicit Operators
=========================================

This package solves the linear system

    T x = b

for a symmetric positive definite operator T that is only available through
its action on a vector (dense or sparse matrices, stencils, Hessian-vector
products).

Entry points:
- solve(T, b): as accurate as possible
- solve_prec(T, b, precision): stop once max|b - T x| <= precision
- solve_stoppable(T, b, precision, cancel_signal): cancellable from another thread
- ConjugateGradientSolver: same algorithm, returns a SolverResult with diagnostics
"""

from .operators import (
    LinearOperator,
    MatrixOperator,
    FunctionOperator,
    as_operator,
    poisson_1d,
    to_dense,
    verify_spd,
)
from .base import IterativeSolver, SolverResult
from .conjugate_gradient import (
    RESIDUAL_UPDATE_FREQUENCY,
    ConjugateGradientSolver,
    solve,
    solve_prec,
    solve_stoppable,
)

__all__ = [
    'LinearOperator',
    'MatrixOperator',
    'FunctionOperator',
    'as_operator',
    'poisson_1d',
    'to_dense',
    'verify_spd',
    'IterativeSolver',
    'SolverResult',
    'RESIDUAL_UPDATE_FREQUENCY',
    'ConjugateGradientSolver',
    'solve',
    'solve_prec',
    'solve_stoppable',
]
