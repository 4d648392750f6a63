#!/usr/bin/env python3
"""
Generate convergence figures from the residual drift diagnostics.
Run numerical_diagnostics.py first, then this script.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import os
from typing import Dict
import warnings
warnings.filterwarnings('ignore')

# Set style
plt.style.use('seaborn-v0_8-whitegrid')
sns.set_palette('husl')

# Custom color palette
FREQUENCY_COLORS = {
    'every_1': '#e74c3c',
    'every_5': '#9b59b6',
    'every_20': '#3498db',
    'never': '#f39c12',
}

DATA_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'data')


def load_diagnostics(data_dir: str = DATA_DIR) -> Dict[str, pd.DataFrame]:
    """Load the CSVs written by numerical_diagnostics.save_diagnostics."""
    diag_dir = os.path.join(data_dir, 'numerical_diagnostics')
    return {
        'diagnostics': pd.read_csv(os.path.join(diag_dir, 'all_diagnostics.csv')),
        'histories': pd.read_csv(os.path.join(diag_dir, 'residual_histories.csv')),
        'summary': pd.read_csv(os.path.join(diag_dir, 'summary.csv')),
    }


def plot_residual_histories(histories: pd.DataFrame, output_dir: str) -> str:
    """One panel per problem: maintained residual against iteration, per frequency."""
    problems = list(dict.fromkeys(histories['problem']))
    n_cols = min(3, len(problems))
    n_rows = int(np.ceil(len(problems) / n_cols))

    fig, axes = plt.subplots(n_rows, n_cols, figsize=(5 * n_cols, 4 * n_rows), squeeze=False)
    for ax, problem in zip(axes.flat, problems):
        subset = histories[histories['problem'] == problem]
        for label, group in subset.groupby('frequency', sort=False):
            # Exact zeros cannot be drawn on a log axis
            values = group['residual'].clip(lower=1e-300)
            ax.semilogy(group['iteration'], values, linewidth=1.5,
                        label=label, color=FREQUENCY_COLORS.get(label))
        ax.set_title(problem, fontsize=11)
        ax.set_xlabel('Iteration')
        ax.set_ylabel('max|r|')
        ax.legend(fontsize=8)
    for ax in list(axes.flat)[len(problems):]:
        ax.set_visible(False)

    plt.tight_layout()
    path = os.path.join(output_dir, 'residual_histories.png')
    plt.savefig(path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return path


def plot_drift_by_frequency(diagnostics: pd.DataFrame, output_dir: str) -> str:
    """True residual and residual gap, grouped by update frequency."""
    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    df = diagnostics.copy()
    df['final_residual_norm'] = df['final_residual_norm'].clip(lower=1e-300)
    df['residual_gap'] = df['residual_gap'].clip(lower=1e-300)
    palette = {label: FREQUENCY_COLORS.get(label, '#7f8c8d') for label in df['frequency'].unique()}

    sns.boxplot(data=df, x='frequency', y='final_residual_norm', ax=axes[0],
                palette=palette)
    axes[0].set_yscale('log')
    axes[0].set_title('True residual max|b - Tx|', fontsize=12, fontweight='bold')
    axes[0].set_xlabel('Residual update frequency')

    sns.boxplot(data=df, x='frequency', y='residual_gap', ax=axes[1],
                palette=palette)
    axes[1].set_yscale('log')
    axes[1].set_title('Gap between maintained and true residual', fontsize=12, fontweight='bold')
    axes[1].set_xlabel('Residual update frequency')

    plt.tight_layout()
    path = os.path.join(output_dir, 'drift_by_frequency.png')
    plt.savefig(path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return path


def plot_iterations_vs_condition(diagnostics: pd.DataFrame, output_dir: str) -> str:
    """Iterations against condition number, with the sqrt(κ) trend."""
    fig, ax = plt.subplots(figsize=(10, 6))

    for label, group in diagnostics.groupby('frequency', sort=False):
        ax.scatter(group['condition_number'], group['iterations'], alpha=0.7,
                   label=label, color=FREQUENCY_COLORS.get(label))

    kappa = np.sort(diagnostics['condition_number'].unique())
    if len(kappa) > 0:
        scale = diagnostics['iterations'].max() / np.sqrt(kappa.max())
        ax.plot(kappa, scale * np.sqrt(kappa), 'k--', linewidth=1, label='∝ sqrt(κ)')

    ax.set_xscale('log')
    ax.set_xlabel('Condition number κ(T)')
    ax.set_ylabel('Iterations')
    ax.set_title('CG iterations vs conditioning', fontsize=14, fontweight='bold')
    ax.legend()

    plt.tight_layout()
    path = os.path.join(output_dir, 'iterations_vs_condition.png')
    plt.savefig(path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return path


def main(data_dir: str = DATA_DIR):
    """Generate all figures."""
    figures_dir = os.path.join(data_dir, 'figures')
    os.makedirs(figures_dir, exist_ok=True)

    print("Loading data...")
    data = load_diagnostics(data_dir)

    print("Generating figures...")
    paths = [
        plot_residual_histories(data['histories'], figures_dir),
        plot_drift_by_frequency(data['diagnostics'], figures_dir),
        plot_iterations_vs_condition(data['diagnostics'], figures_dir),
    ]
    for path in paths:
        print(f"  ✓ {os.path.basename(path)}")

    print(f"\nAll figures saved to {figures_dir}/")
    return paths


if __name__ == '__main__':
    main()
