import threading
from concurrent.futures import Future

import numpy as np
import pytest
import scipy.sparse
from scipy.linalg import cho_factor, cho_solve

from conjgrad import (ConjugateGradientSolver, FunctionOperator, MatrixOperator,
                      RESIDUAL_UPDATE_FREQUENCY, poisson_1d, solve, solve_prec,
                      solve_stoppable)
from conjgrad.conjugate_gradient import all_zero, greatest_value


def random_spd(n, low, high, seed=0):
    rng = np.random.default_rng(seed)
    Q, _ = np.linalg.qr(rng.standard_normal((n, n)))
    A = (Q * np.linspace(low, high, n)) @ Q.T
    return (A + A.T) / 2, rng.standard_normal(n)


def counting_operator(matrix, on_apply=None):
    calls = []
    matrix = np.asarray(matrix, dtype=np.float64)

    def apply(v):
        calls.append(1)
        if on_apply is not None:
            on_apply(len(calls))
        return matrix @ v

    return FunctionOperator(matrix.shape[0], apply), calls


def test_identity_solves_in_one_iteration():
    result = ConjugateGradientSolver().solve(np.eye(2), [3., 4.])

    np.testing.assert_array_equal(result.solution, [3., 4.])
    assert result.iterations == 1
    assert result.termination == 'converged'
    assert result.converged
    assert result.residual_history == [4.0, 0.0]


def test_diagonal_system():
    x = solve(np.diag([2., 4.]), [4., 8.])
    np.testing.assert_allclose(x, [2., 2.], atol=1e-12)


def test_three_by_three_matches_cholesky():
    A = np.array([[4., 1., 0.],
                  [1., 3., 1.],
                  [0., 1., 2.]])
    b = np.array([1., 2., 3.])

    x = solve(A, b)

    np.testing.assert_allclose(x, cho_solve(cho_factor(A), b), atol=1e-9)


@pytest.mark.parametrize('n', [5, 20, 40])
def test_exact_convergence(n):
    A, b = random_spd(n, 1., 4., seed=n)

    result = ConjugateGradientSolver().solve(A, b)

    assert result.iterations <= n
    assert np.max(np.abs(A @ result.solution - b)) <= 1e-10


def test_zero_right_hand_side():
    op, calls = counting_operator(np.diag([1., 2., 3.]))

    result = ConjugateGradientSolver().solve(op, np.zeros(3))

    np.testing.assert_array_equal(result.solution, np.zeros(3))
    assert result.iterations == 0
    assert result.termination == 'converged'
    assert result.operator_applications == 0


def test_precision_contract():
    n = 40
    A, b = random_spd(n, 1., 4., seed=1)
    precision = 1e-6

    result = ConjugateGradientSolver(precision=precision).solve(A, b)

    assert result.converged
    assert result.iterations < n
    assert result.residual_history[-1] <= precision
    assert result.residual_history[-2] > precision
    assert np.max(np.abs(A @ result.solution - b)) <= precision + 1e-12

    np.testing.assert_array_equal(solve_prec(A, b, precision), result.solution)


def test_huge_precision_returns_immediately():
    x = solve_prec(np.diag([1., 2.]), [1., 1.], 1e300)
    np.testing.assert_array_equal(x, [0., 0.])


def test_does_not_mutate_inputs():
    A, b = random_spd(10, 1., 10.)
    A_copy, b_copy = A.copy(), b.copy()

    x = solve(A, b)

    np.testing.assert_array_equal(A, A_copy)
    np.testing.assert_array_equal(b, b_copy)
    assert x is not b


def test_cancelled_before_first_iteration():
    A = np.diag(np.arange(1., 11.))
    b = np.ones(10)
    event = threading.Event()
    event.set()

    result = ConjugateGradientSolver().solve(A, b, cancel_signal=event)

    # One full step along b: alpha = b.b / b.Ab
    assert result.iterations == 1
    assert result.termination == 'cancelled'
    assert not result.converged
    np.testing.assert_allclose(result.solution, (10. / 55.) * b)
    np.testing.assert_allclose(solve_stoppable(A, b, 0.0, event), result.solution)


def test_cancelled_mid_solve():
    event = threading.Event()

    def on_apply(count):
        if count == 3:
            event.set()

    op, calls = counting_operator(np.diag(np.arange(1., 51.)), on_apply)

    result = ConjugateGradientSolver().solve(op, np.ones(50), cancel_signal=event)

    assert result.iterations == 3
    assert result.termination == 'cancelled'
    assert result.operator_applications == 3


def test_cancelled_from_other_thread():
    event = threading.Event()
    started = threading.Event()

    def apply(v):
        started.set()
        # Blocks until the other thread has requested cancellation
        event.wait(timeout=5)
        return poisson_1d(200).apply(v)

    op = FunctionOperator(200, apply)
    canceller = threading.Thread(target=lambda: (started.wait(timeout=5), event.set()))
    canceller.start()
    result = ConjugateGradientSolver().solve(op, np.ones(200), cancel_signal=event)
    canceller.join()

    assert result.termination == 'cancelled'
    assert result.iterations == 1


@pytest.mark.parametrize('make_signal', [
    lambda: (lambda: True),
    lambda: _finished_future(),
])
def test_alternative_cancel_signals(make_signal):
    result = ConjugateGradientSolver().solve(np.diag([1., 2., 3.]), np.ones(3),
                                             cancel_signal=make_signal())
    assert result.termination == 'cancelled'
    assert result.iterations == 1


def _finished_future():
    future = Future()
    future.set_result(None)
    return future


def test_unusable_cancel_signal():
    with pytest.raises(TypeError):
        solve_stoppable(np.eye(2), [1., 1.], 0.0, 5)


class DoneFlag:
    done = True


class SetFlag:
    is_set = False


@pytest.mark.parametrize('signal', [DoneFlag(), SetFlag()])
def test_signal_attribute_must_be_callable(signal):
    with pytest.raises(TypeError):
        solve_stoppable(np.eye(2), [1., 1.], 0.0, signal)
    with pytest.raises(TypeError):
        ConjugateGradientSolver().solve(np.eye(2), [1., 1.], cancel_signal=signal)


def test_never_fired_signal_runs_to_completion():
    event = threading.Event()
    x = solve_stoppable(np.diag([2., 4.]), [4., 8.], 0.0, event)
    np.testing.assert_allclose(x, [2., 2.], atol=1e-12)


def test_drift_correction_does_not_change_answer():
    A, b = random_spd(40, 1., 4., seed=7)
    reference = cho_solve(cho_factor(A), b)

    every = ConjugateGradientSolver(residual_update_frequency=1).solve(A, b)
    never = ConjugateGradientSolver(residual_update_frequency=10**9).solve(A, b)

    np.testing.assert_allclose(every.solution, reference, atol=1e-8)
    np.testing.assert_allclose(never.solution, reference, atol=1e-8)
    np.testing.assert_allclose(every.solution, never.solution, atol=1e-8)


def test_periodic_recomputation_costs_one_application():
    frequency = 5
    op, calls = counting_operator(np.diag(np.arange(1., 51.)))
    rng = np.random.default_rng(3)

    solver = ConjugateGradientSolver(residual_update_frequency=frequency)
    result = solver.solve(op, rng.standard_normal(50))

    recomputations = sum(1 for i in range(1, result.iterations) if i % frequency == 0)
    assert result.iterations > frequency
    assert result.operator_applications == result.iterations + recomputations
    # One more application for the true residual in SolverResult
    assert len(calls) == result.operator_applications + 1


def test_default_recomputation_frequency():
    assert RESIDUAL_UPDATE_FREQUENCY == 20
    assert ConjugateGradientSolver().residual_update_frequency == 20


def test_iteration_cap_is_dimension():
    n = 100
    op, calls = counting_operator(np.diag(np.logspace(0, 8, n)))

    result = ConjugateGradientSolver().solve(op, np.ones(n))

    assert result.iterations == n
    assert result.termination == 'max_iterations'
    assert not result.converged
    assert len(result.residual_history) == n + 1
    # One product per iteration plus recomputations at 20, 40, 60 and 80
    assert result.operator_applications == n + 4
    # solve() applies the operator once more for the true residual
    assert len(calls) == result.operator_applications + 1


def test_convergence_on_last_allowed_iteration():
    result = ConjugateGradientSolver().solve([[2.]], [4.])

    assert result.iterations == 1
    assert result.termination == 'converged'
    assert result.converged
    np.testing.assert_allclose(result.solution, [2.])

    result = ConjugateGradientSolver(precision=1e-8).solve(np.diag([1., 2., 3.]), np.ones(3))

    assert result.iterations == 3
    assert result.termination == 'converged'
    assert result.converged
    np.testing.assert_allclose(result.solution, [1., 0.5, 1. / 3.], atol=1e-8)


def test_zero_search_direction_stops():
    # Scripted black-box operator whose direct residual recomputation
    # yields r = -beta * d on the third iteration
    outputs = [np.array([1., 1., 0.]),
               np.array([1., 0., 0.]),
               np.array([1.5, -0.5, 0.])]

    def apply(v):
        return outputs.pop(0) if outputs else np.zeros(3)

    solver = ConjugateGradientSolver(residual_update_frequency=1)
    result = solver.solve(FunctionOperator(3, apply), [1., 0., 0.])

    assert result.termination == 'degenerate'
    assert result.converged
    assert result.iterations == 2
    np.testing.assert_array_equal(result.solution, [2., -1., 0.])


def test_zero_curvature_propagates_non_finite_values():
    x = solve(np.zeros((2, 2)), [1., 1.])
    assert not np.all(np.isfinite(x))


def test_sparse_and_implicit_operators_agree():
    n = 30
    b = np.random.default_rng(0).standard_normal(n)
    dense = 2 * np.eye(n) - np.eye(n, k=1) - np.eye(n, k=-1)
    reference = cho_solve(cho_factor(dense), b)

    for op in (dense, scipy.sparse.csr_matrix(dense), MatrixOperator(dense), poisson_1d(n)):
        np.testing.assert_allclose(solve(op, b), reference, atol=1e-8)


def test_verbose_prints_progress(capsys):
    ConjugateGradientSolver(verbose=True).solve(np.eye(2), [3., 4.])
    out = capsys.readouterr().out
    assert "Conjugate Gradient iter    1: max|r| = 0.000000e+00" in out


@pytest.mark.parametrize('b', [[1., 2., 3.], [[1., 2.]], 1.])
def test_right_hand_side_must_match_dimension(b):
    with pytest.raises(ValueError):
        solve(np.eye(2), b)


@pytest.mark.parametrize('precision', [-1e-3, float('nan')])
def test_invalid_precision(precision):
    with pytest.raises(ValueError):
        solve_prec(np.eye(2), [1., 1.], precision)


def test_invalid_update_frequency():
    with pytest.raises(ValueError):
        ConjugateGradientSolver(residual_update_frequency=0)


def test_result_diagnostics():
    A, b = random_spd(10, 1., 10.)
    result = ConjugateGradientSolver().solve(A, b)

    assert result.solver_name == "Conjugate Gradient"
    assert result.initial_residual_norm == pytest.approx(np.max(np.abs(b)))
    assert result.relative_residual == pytest.approx(
        result.final_residual_norm / result.initial_residual_norm)
    assert result.elapsed_time >= 0.0


def test_helpers():
    assert greatest_value(np.array([1., -5., 3.])) == 5.
    assert greatest_value(np.array([])) == 0.
    assert all_zero(np.zeros(4))
    assert not all_zero(np.array([0., 1e-300, 0.]))
