"""
Visualizations Module

Plotting functions for data exploration and dispersion diagnostics.

Requires: matplotlib, seaborn
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import numpy as np
from scipy import stats

from .dataset import Dataset
from .model_evaluation import DiagnosticsReport
from .model_training import FittedModel

logger = logging.getLogger(__name__)


# Lazy imports for optional dependencies
def _get_plt():
    import matplotlib.pyplot as plt
    return plt

def _get_sns():
    import seaborn as sns
    return sns


# =============================================================================
# Style Configuration
# =============================================================================

COLORS = {
    "home": "#2ecc71",      # Green
    "away": "#e74c3c",      # Red
    "poisson": "#3498db",   # Blue
    "nb": "#9b59b6",        # Purple
    "neutral": "#95a5a6",   # Gray
}

def set_style():
    """Set consistent plot style."""
    plt = _get_plt()
    sns = _get_sns()

    plt.style.use("seaborn-v0_8-whitegrid")
    sns.set_palette("husl")
    plt.rcParams["figure.figsize"] = (10, 6)
    plt.rcParams["font.size"] = 11
    plt.rcParams["axes.titlesize"] = 14
    plt.rcParams["axes.labelsize"] = 12


def _finish(fig, save_path: Optional[str], show: bool) -> None:
    plt = _get_plt()
    plt.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
    if show:
        plt.show()
    plt.close(fig)


def expected_frequencies(model: FittedModel, max_goals: int) -> np.ndarray:
    """
    Expected number of matches with 0..max_goals goals under ``model``.

    Sums the per-match probability mass of the fitted family.
    """
    k = np.arange(max_goals + 1)[:, None]
    mu = model.fitted_values[None, :]
    if model.family == "negative_binomial":
        theta = model.theta
        pmf = stats.nbinom.pmf(k, theta, theta / (theta + mu))
    else:
        pmf = stats.poisson.pmf(k, mu)
    return pmf.sum(axis=1)


# =============================================================================
# Data Exploration Plots
# =============================================================================

def plot_goals_distribution(
    dataset: Dataset,
    models: Optional[dict[str, list[FittedModel]]] = None,
    save_path: Optional[str] = None,
    show: bool = True,
) -> None:
    """
    Plot distribution of home and away goals.

    Observed frequencies are drawn as bars. When fitted models are given
    (keyed by response), their expected frequencies are overlaid so the
    Poisson and negative binomial fits can be compared with the data.
    """
    plt = _get_plt()
    set_style()

    df = dataset.frame.dropna(subset=["home_goals", "away_goals"])
    fig, axes = plt.subplots(1, 2, figsize=(12, 5))

    for ax, response, color, label in (
        (axes[0], "home_goals", COLORS["home"], "Home"),
        (axes[1], "away_goals", COLORS["away"], "Away"),
    ):
        goals = df[response].astype(int)
        counts = goals.value_counts().sort_index()
        ax.bar(counts.index.to_numpy(dtype=int), counts.to_numpy(dtype=int), color=color, alpha=0.8, edgecolor="white", label="Observed")

        max_goals = int(counts.index.max()) if len(counts) else 0
        for model in (models or {}).get(response, []):
            expected = expected_frequencies(model, max_goals)
            family_color = COLORS["nb"] if model.family == "negative_binomial" else COLORS["poisson"]
            ax.plot(
                np.arange(max_goals + 1), expected,
                marker="o", color=family_color, label=model.family.replace("_", " ").title(),
            )

        ax.set_xlabel("Goals")
        ax.set_ylabel("Matches")
        ax.set_title(
            f"{label} Goals Distribution\n"
            f"(Mean: {goals.mean():.2f}, Variance: {goals.var():.2f})"
        )
        ax.legend()

    _finish(fig, save_path, show)


# =============================================================================
# Diagnostics Plots
# =============================================================================

def plot_pearson_residuals(
    report: DiagnosticsReport,
    save_path: Optional[str] = None,
    show: bool = True,
) -> None:
    """
    Histogram of Pearson residuals against a standard normal density.

    Residual spread beyond the unit-variance curve is the visual signature
    of overdispersion.
    """
    plt = _get_plt()
    sns = _get_sns()
    set_style()

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.histplot(report.pearson_residuals, stat="density", bins=40, color=COLORS["neutral"], ax=ax)

    grid = np.linspace(report.pearson_residuals.min(), report.pearson_residuals.max(), 200)
    ax.plot(grid, stats.norm.pdf(grid), color=COLORS["poisson"], linewidth=2, label="N(0, 1)")

    ax.set_xlabel("Pearson residual")
    ax.set_ylabel("Density")
    ax.set_title(
        f"{report.response} ({report.family}): residual variance "
        f"{report.residual_variance:.3f}"
    )
    ax.legend()

    _finish(fig, save_path, show)


def plot_residuals_vs_fitted(
    model: FittedModel,
    report: DiagnosticsReport,
    save_path: Optional[str] = None,
    show: bool = True,
) -> None:
    """Scatter of Pearson residuals against fitted means."""
    plt = _get_plt()
    set_style()

    fig, ax = plt.subplots(figsize=(10, 6))
    ax.scatter(model.fitted_values, report.pearson_residuals, s=8, alpha=0.4, color=COLORS["neutral"])
    ax.axhline(0.0, color="black", linewidth=1)
    for bound in (-2.0, 2.0):
        ax.axhline(bound, color=COLORS["away"], linestyle="--", linewidth=1)

    ax.set_xlabel("Fitted mean")
    ax.set_ylabel("Pearson residual")
    ax.set_title(f"{model.response} ({model.family}): residuals vs fitted")

    _finish(fig, save_path, show)


def plot_coefficients(
    model: FittedModel,
    top_n: int = 20,
    save_path: Optional[str] = None,
    show: bool = True,
) -> None:
    """
    Largest team coefficients with 95% confidence intervals.

    Args:
        model: Fitted model.
        top_n: Number of coefficients (by absolute estimate) to show.
    """
    plt = _get_plt()
    set_style()

    table = model.coefficient_table()
    table = table[table["term"] != "Intercept"]
    table = table.reindex(table["estimate"].abs().sort_values(ascending=False).index).head(top_n)
    table = table.iloc[::-1]

    fig, ax = plt.subplots(figsize=(10, max(4, 0.35 * len(table))))
    ax.errorbar(
        table["estimate"], np.arange(len(table)),
        xerr=1.96 * table["std_error"],
        fmt="o", color=COLORS["poisson"], ecolor=COLORS["neutral"], capsize=3,
    )
    ax.axvline(0.0, color="black", linewidth=1)
    ax.set_yticks(np.arange(len(table)))
    ax.set_yticklabels(table["term"])
    ax.set_xlabel("Coefficient (log scale)")
    ax.set_title(f"{model.response} ({model.family}): top {len(table)} coefficients")

    _finish(fig, save_path, show)


# =============================================================================
# Summary Dashboard
# =============================================================================

def generate_all_plots(
    dataset: Dataset,
    outcomes: dict,
    output_dir: str = "plots",
    show: bool = False,
) -> list[str]:
    """
    Generate all visualization plots and save to directory.

    Args:
        dataset: Match dataset
        outcomes: Pipeline outcomes keyed by response
        output_dir: Directory to save plots
        show: Whether to display plots

    Returns:
        List of saved file paths
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    saved_files = []

    models = {}
    for response, outcome in outcomes.items():
        models[response] = [outcome.poisson]
        if outcome.negative_binomial is not None:
            models[response].append(outcome.negative_binomial)

    path = str(output_path / "01_goals_distribution.png")
    plot_goals_distribution(dataset, models, save_path=path, show=show)
    saved_files.append(path)

    for response, outcome in outcomes.items():
        fits = [(outcome.poisson, outcome.diagnostics)]
        if outcome.negative_binomial is not None:
            fits.append((outcome.negative_binomial, outcome.negative_binomial_diagnostics))

        for model, report in fits:
            tag = f"{response}_{model.family}"

            path = str(output_path / f"residuals_{tag}.png")
            plot_pearson_residuals(report, save_path=path, show=show)
            saved_files.append(path)

            path = str(output_path / f"residuals_vs_fitted_{tag}.png")
            plot_residuals_vs_fitted(model, report, save_path=path, show=show)
            saved_files.append(path)

            path = str(output_path / f"coefficients_{tag}.png")
            plot_coefficients(model, save_path=path, show=show)
            saved_files.append(path)

    for path in saved_files:
        logger.info("Saved plot: %s", path)
    return saved_files
