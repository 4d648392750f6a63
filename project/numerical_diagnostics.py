#!/usr/bin/env python3
"""
Numerical Diagnostics for Residual Drift Correction
===================================================

This script measures how the periodic direct recomputation of the residual
(r = b - T x every k iterations) affects the quality of Conjugate Gradient
solutions, independently of any application using the solver.

Metrics Computed:
    1. True Residual: max|b - Tx| after the solve, versus the residual the
       solver maintained incrementally (the gap is the accumulated drift)
    2. A-norm Error: ||x - x*||_A = sqrt((x-x*)^T A (x-x*))
       where x* is a Cholesky reference solution
    3. Iterations and operator applications
    4. Wall-clock Runtime: per-solve timing

Test problems are random dense SPD matrices with prescribed condition
numbers and the matrix-free 1-D Poisson stencil. Every problem is solved
once per residual update frequency; all metrics are reported as
distributions over problems.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Tuple, Optional
import os
import warnings
from scipy.linalg import cho_factor, cho_solve

from conjgrad import ConjugateGradientSolver, LinearOperator, MatrixOperator, poisson_1d, to_dense

warnings.filterwarnings('ignore')

# =============================================================================
# CONFIGURATION
# =============================================================================

# Solve to the best attainable accuracy so drift is not masked by early stopping
PRECISION = 0.0

# Problem sizes and spectra
DIMENSIONS = [50, 100, 200]
CONDITION_NUMBERS = [1e1, 1e3, 1e5]

# Residual update frequencies compared; NEVER disables direct recomputation
NEVER = 10**9
UPDATE_FREQUENCIES = [1, 5, 20, NEVER]

RANDOM_SEED = 0

# Data directory
DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'data')


def frequency_label(frequency: int) -> str:
    """Display label for a residual update frequency."""
    return 'never' if frequency >= NEVER else f'every_{frequency}'


# =============================================================================
# DATA CLASSES FOR DIAGNOSTICS
# =============================================================================

@dataclass
class SolverDiagnostics:
    """Container for detailed numerical diagnostics of a single solve."""
    # Basic info
    problem: str
    dimension: int
    residual_update_frequency: int

    # Convergence metrics
    converged: bool
    termination: str
    iterations: int
    operator_applications: int
    wall_clock_time: float

    # Residual metrics
    initial_residual_norm: float
    final_residual_norm: float
    maintained_residual_norm: float
    relative_residual: float
    residual_history: List[float]

    # Error metrics (relative to reference solution)
    a_norm_error: float  # ||x - x*||_A
    two_norm_error: float  # ||x - x*||_2
    relative_solution_error: float  # ||x - x*||_2 / ||x*||_2

    # Problem conditioning
    condition_number: float
    min_eigenvalue: float
    max_eigenvalue: float

    @property
    def residual_gap(self) -> float:
        """Difference between the true and the maintained residual."""
        return abs(self.final_residual_norm - self.maintained_residual_norm)


@dataclass
class SolverDiagnosticsCollection:
    """Collection of diagnostics across all problems for one update frequency."""
    label: str
    diagnostics: List[SolverDiagnostics] = field(default_factory=list)

    def to_dataframe(self) -> pd.DataFrame:
        """Convert to DataFrame for analysis."""
        records = []
        for d in self.diagnostics:
            records.append({
                'problem': d.problem,
                'dimension': d.dimension,
                'frequency': self.label,
                'residual_update_frequency': d.residual_update_frequency,
                'converged': d.converged,
                'termination': d.termination,
                'iterations': d.iterations,
                'operator_applications': d.operator_applications,
                'wall_clock_time_ms': d.wall_clock_time * 1000,
                'initial_residual_norm': d.initial_residual_norm,
                'final_residual_norm': d.final_residual_norm,
                'maintained_residual_norm': d.maintained_residual_norm,
                'residual_gap': d.residual_gap,
                'relative_residual': d.relative_residual,
                'a_norm_error': d.a_norm_error,
                'two_norm_error': d.two_norm_error,
                'relative_solution_error': d.relative_solution_error,
                'condition_number': d.condition_number,
                'min_eigenvalue': d.min_eigenvalue,
                'max_eigenvalue': d.max_eigenvalue,
            })
        return pd.DataFrame(records)

    def histories_dataframe(self) -> pd.DataFrame:
        """Residual histories in long format, one row per iteration."""
        records = []
        for d in self.diagnostics:
            for iteration, value in enumerate(d.residual_history):
                records.append({
                    'problem': d.problem,
                    'frequency': self.label,
                    'iteration': iteration,
                    'residual': value,
                })
        return pd.DataFrame(records, columns=['problem', 'frequency', 'iteration', 'residual'])

    def get_distribution_stats(self, metric: str) -> Dict[str, float]:
        """Compute distribution statistics for a given metric."""
        df = self.to_dataframe()
        values = df[metric].dropna()
        return {
            'mean': values.mean(),
            'std': values.std(),
            'min': values.min(),
            'q25': values.quantile(0.25),
            'median': values.median(),
            'q75': values.quantile(0.75),
            'max': values.max(),
        }


# =============================================================================
# TEST PROBLEMS
# =============================================================================

def random_spd_matrix(n: int, condition_number: float,
                      rng: np.random.Generator) -> np.ndarray:
    """
    Random dense SPD matrix with a prescribed condition number.

    A = Q diag(λ) Q^T with Q from the QR decomposition of a Gaussian matrix
    and λ log-spaced between 1 and condition_number.
    """
    Q, _ = np.linalg.qr(rng.standard_normal((n, n)))
    eigenvalues = np.logspace(0, np.log10(condition_number), n)
    A = (Q * eigenvalues) @ Q.T
    # Remove the asymmetry introduced by rounding
    return (A + A.T) / 2


def build_problems(dimensions: List[int] = DIMENSIONS,
                   condition_numbers: List[float] = CONDITION_NUMBERS,
                   seed: int = RANDOM_SEED) -> List[Tuple[str, LinearOperator, np.ndarray]]:
    """Build the list of (name, operator, right-hand side) test problems."""
    rng = np.random.default_rng(seed)
    problems = []

    for n in dimensions:
        for cond in condition_numbers:
            A = random_spd_matrix(n, cond, rng)
            b = rng.standard_normal(n)
            problems.append((f'dense_n{n}_k{cond:.0e}', MatrixOperator(A), b))

        b = rng.standard_normal(n)
        problems.append((f'poisson_n{n}', poisson_1d(n), b))

    return problems


# =============================================================================
# REFERENCE SOLUTIONS AND ERRORS
# =============================================================================

def compute_reference_solution(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Compute high-precision reference solution using a Cholesky factorization.

    Uses scipy's LAPACK-backed cho_factor / cho_solve.
    """
    return cho_solve(cho_factor(A), b)


def compute_a_norm_error(x: np.ndarray, x_ref: np.ndarray, A: np.ndarray) -> float:
    """
    Compute A-norm error: ||x - x*||_A = sqrt((x-x*)^T A (x-x*))

    The A-norm is the natural norm for the quadratic minimization problem.
    """
    diff = x - x_ref
    return float(np.sqrt(np.abs(diff @ A @ diff)))


# =============================================================================
# MAIN DIAGNOSTICS RUNNER
# =============================================================================

def run_diagnostics_for_problem(name: str,
                                op: LinearOperator,
                                b: np.ndarray,
                                frequencies: List[int] = UPDATE_FREQUENCIES,
                                precision: float = PRECISION) -> Dict[int, SolverDiagnostics]:
    """Solve one problem once per residual update frequency."""
    A = to_dense(op)

    # Compute problem conditioning
    eigenvalues = np.linalg.eigvalsh(A)
    min_eig = eigenvalues.min()
    max_eig = eigenvalues.max()
    cond_num = max_eig / min_eig

    # Compute high-precision reference solution
    x_ref = compute_reference_solution(A, b)
    ref_norm = np.linalg.norm(x_ref)

    results = {}

    for frequency in frequencies:
        solver = ConjugateGradientSolver(precision=precision,
                                         residual_update_frequency=frequency)
        result = solver.solve(op, b)
        x = result.solution

        two_norm_error = float(np.linalg.norm(x - x_ref))

        results[frequency] = SolverDiagnostics(
            problem=name,
            dimension=op.dim,
            residual_update_frequency=frequency,
            converged=result.converged,
            termination=result.termination,
            iterations=result.iterations,
            operator_applications=result.operator_applications,
            wall_clock_time=result.elapsed_time,
            initial_residual_norm=result.initial_residual_norm,
            final_residual_norm=result.final_residual_norm,
            maintained_residual_norm=result.residual_history[-1],
            relative_residual=result.relative_residual,
            residual_history=result.residual_history,
            a_norm_error=compute_a_norm_error(x, x_ref, A),
            two_norm_error=two_norm_error,
            relative_solution_error=two_norm_error / ref_norm if ref_norm > 0 else 0.0,
            condition_number=cond_num,
            min_eigenvalue=min_eig,
            max_eigenvalue=max_eig,
        )

    return results


def run_full_diagnostics(problems: Optional[List[Tuple[str, LinearOperator, np.ndarray]]] = None,
                         frequencies: List[int] = UPDATE_FREQUENCIES,
                         precision: float = PRECISION,
                         verbose: bool = True) -> Dict[str, SolverDiagnosticsCollection]:
    """Run diagnostics across all problems and update frequencies."""
    if problems is None:
        problems = build_problems()

    if verbose:
        print("="*80)
        print("RESIDUAL DRIFT DIAGNOSTICS FOR CONJUGATE GRADIENT")
        print("="*80)
        print(f"\nConfiguration:")
        print(f"  Precision: {precision:.2e}")
        print(f"  Update frequencies: {[frequency_label(k) for k in frequencies]}")
        print(f"  Number of problems: {len(problems)}")
        print(f"  Reference solution: Cholesky (LAPACK)")

    collections = {frequency_label(k): SolverDiagnosticsCollection(label=frequency_label(k))
                   for k in frequencies}

    if verbose:
        print("\n" + "-"*80)
        print("Running diagnostics for each problem...")
        print("-"*80)

    for idx, (name, op, b) in enumerate(problems):
        results = run_diagnostics_for_problem(name, op, b, frequencies, precision)

        for frequency, diag in results.items():
            collections[frequency_label(frequency)].diagnostics.append(diag)

        if verbose:
            cond = next(iter(results.values())).condition_number
            print(f"\n  [{idx+1}/{len(problems)}] {name}, κ(T) = {cond:.1e}")
            for frequency, d in results.items():
                status = "✓" if d.converged else "✗"
                print(f"    {frequency_label(frequency):10s}: {d.iterations:4d} iters, "
                      f"{d.operator_applications:4d} applies, "
                      f"max|b-Tx| = {d.final_residual_norm:.2e}, "
                      f"||x-x*||_A = {d.a_norm_error:.2e} [{status}]")

    return collections


def compute_distribution_tables(collections: Dict[str, SolverDiagnosticsCollection]) -> Dict[str, pd.DataFrame]:
    """Compute distribution statistics tables for all metrics."""

    metrics = [
        'iterations',
        'operator_applications',
        'wall_clock_time_ms',
        'final_residual_norm',
        'residual_gap',
        'relative_residual',
        'a_norm_error',
        'relative_solution_error',
    ]

    tables = {}

    for metric in metrics:
        rows = []
        for label, collection in collections.items():
            stats = collection.get_distribution_stats(metric)
            stats['frequency'] = label
            rows.append(stats)

        df = pd.DataFrame(rows)
        df = df[['frequency', 'mean', 'std', 'min', 'q25', 'median', 'q75', 'max']]
        tables[metric] = df

    return tables


def save_diagnostics(collections: Dict[str, SolverDiagnosticsCollection],
                     tables: Dict[str, pd.DataFrame],
                     output_dir: str) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Save all diagnostics to files."""

    os.makedirs(output_dir, exist_ok=True)

    all_diagnostics = []
    all_histories = []
    for label, collection in collections.items():
        df = collection.to_dataframe()
        all_diagnostics.append(df)
        all_histories.append(collection.histories_dataframe())

        df.to_csv(os.path.join(output_dir, f'diagnostics_{label}.csv'), index=False)

    combined = pd.concat(all_diagnostics, ignore_index=True)
    combined.to_csv(os.path.join(output_dir, 'all_diagnostics.csv'), index=False)

    histories = pd.concat(all_histories, ignore_index=True)
    histories.to_csv(os.path.join(output_dir, 'residual_histories.csv'), index=False)

    for metric, table in tables.items():
        table.to_csv(os.path.join(output_dir, f'distribution_{metric}.csv'), index=False)

    summary_rows = []
    for label, collection in collections.items():
        df = collection.to_dataframe()
        summary_rows.append({
            'frequency': label,
            'convergence_rate': df['converged'].mean(),
            'mean_iterations': df['iterations'].mean(),
            'mean_operator_applications': df['operator_applications'].mean(),
            'mean_time_ms': df['wall_clock_time_ms'].mean(),
            'max_final_residual': df['final_residual_norm'].max(),
            'max_residual_gap': df['residual_gap'].max(),
            'mean_a_norm_error': df['a_norm_error'].mean(),
            'max_relative_solution_error': df['relative_solution_error'].max(),
        })

    summary_df = pd.DataFrame(summary_rows)
    summary_df.to_csv(os.path.join(output_dir, 'summary.csv'), index=False)

    return combined, summary_df


def _format_scientific(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    for col in df.columns:
        if col != 'frequency':
            df[col] = df[col].apply(lambda x: f'{x:.2e}' if pd.notna(x) else 'N/A')
    return df


def print_distribution_report(tables: Dict[str, pd.DataFrame]):
    """Print formatted distribution report."""

    print("\n" + "="*80)
    print("DISTRIBUTION STATISTICS OVER ALL PROBLEMS")
    print("="*80)

    print("\n" + "-"*80)
    print("ITERATIONS DISTRIBUTION")
    print("-"*80)
    print(tables['iterations'].to_string(index=False, float_format='%.2f'))

    print("\n" + "-"*80)
    print("OPERATOR APPLICATIONS DISTRIBUTION")
    print("-"*80)
    print(tables['operator_applications'].to_string(index=False, float_format='%.2f'))

    print("\n" + "-"*80)
    print("WALL-CLOCK TIME (ms) DISTRIBUTION")
    print("-"*80)
    print(tables['wall_clock_time_ms'].to_string(index=False, float_format='%.4f'))

    print("\n" + "-"*80)
    print("TRUE RESIDUAL max|b-Tx| DISTRIBUTION")
    print("-"*80)
    print(_format_scientific(tables['final_residual_norm']).to_string(index=False))

    print("\n" + "-"*80)
    print("A-NORM ERROR ||x-x*||_A DISTRIBUTION")
    print("-"*80)
    print(_format_scientific(tables['a_norm_error']).to_string(index=False))


def print_drift_report(collections: Dict[str, SolverDiagnosticsCollection]):
    """Print the gap between maintained and true residuals per frequency."""

    print("\n" + "="*80)
    print("RESIDUAL DRIFT ANALYSIS")
    print("="*80)
    print(f"{'Frequency':<12} {'Converged':>10} {'Total':>8} {'Max gap':>12} {'Max rel err':>12}")
    print("-"*58)

    for label, collection in collections.items():
        df = collection.to_dataframe()
        converged = df['converged'].sum()
        total = len(df)
        print(f"{label:<12} {converged:>10} {total:>8} "
              f"{df['residual_gap'].max():>12.2e} "
              f"{df['relative_solution_error'].max():>12.2e}")


def main():
    """Main execution function."""

    collections = run_full_diagnostics(verbose=True)

    tables = compute_distribution_tables(collections)

    output_dir = os.path.join(DATA_DIR, 'numerical_diagnostics')
    save_diagnostics(collections, tables, output_dir)

    print_distribution_report(tables)
    print_drift_report(collections)

    print("\n" + "="*80)
    print(f"Diagnostics saved to: {output_dir}")
    print("="*80)

    return collections, tables


if __name__ == '__main__':
    collections, tables = main()
