#!/usr/bin/env python3
"""
Run Demo Script

Complete pipeline: load matches, export the cleaned table, fit Poisson
models for home and away goals, test for overdispersion and refit with a
negative binomial family where needed.

Usage:
    python -m goal_glm.run_demo --database database.sqlite

Or with a previously exported CSV, or simulated data:
    python -m goal_glm.run_demo --csv matches_cleaned.csv
    python -m goal_glm.run_demo --theta 2.0
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from .data_loader import DEFAULT_CSV_NAME, MatchDataLoader
from .dataset import Dataset
from .exceptions import GoalModelError
from .model_training import FitConfig, ModelTrainer
from .pipeline import GoalModelPipeline
from .simulation import SimulationParams, simulate_matches


def create_sample_data(
    theta: Optional[float] = 2.0,
    n_teams: int = 12,
    seed: int = 42,
) -> Dataset:
    """
    Create simulated match data for demonstration.

    Eight seasons of a small league with negative binomial goals (or
    Poisson goals when ``theta`` is None). For real analyses, load the
    match table from a SQLite store instead.
    """
    params = SimulationParams(n_teams=n_teams, n_seasons=8, theta=theta)
    return simulate_matches(params, seed=seed).dataset


def run_pipeline(
    database: str | Path | None = None,
    csv: str | Path | None = None,
    output_dir: str | Path = "output",
    n_jobs: int = 1,
    plots: bool = False,
    theta: Optional[float] = 2.0,
    seed: int = 42,
    max_iter: int = 100,
) -> dict:
    """
    Run the complete modelling pipeline.

    Steps:
    1. Load (or simulate) data and export the cleaned CSV
    2. Fit Poisson models and diagnose dispersion
    3. Refit negative binomial models where overdispersed
    4. Report coefficients and diagnostics
    5. Generate plots (optional)

    Returns:
        Pipeline outcomes keyed by response.
    """
    output_dir = Path(output_dir)

    print("=" * 60)
    print("GOAL COUNT MODEL PIPELINE")
    print("=" * 60)

    # =========================================================================
    # Step 1: Load Data
    # =========================================================================
    print("\n[1/4] Loading Data...")

    loader = MatchDataLoader()
    if database:
        schema = loader.describe(database)
        for table, columns in schema.items():
            print(f"  Table: {table}")
            print(f"  Columns: {', '.join(columns)}")
        dataset = loader.load(database)
        print(f"  Loaded {len(dataset)} matches from {database}")
    elif csv:
        dataset = Dataset.from_csv(csv)
        print(f"  Loaded {len(dataset)} matches from {csv}")
    else:
        dataset = create_sample_data(theta=theta, seed=seed)
        print(f"  Simulated {len(dataset)} matches (theta={theta})")

    validation = loader.validate(dataset)
    for w in validation.warnings:
        print(f"  Warning: {w}")
    for e in validation.errors:
        print(f"  Data issue: {e}")

    csv_path = loader.export(dataset, output_dir / DEFAULT_CSV_NAME)
    print(f"  Teams: {len(dataset.teams())}")
    print(f"  Seasons: {dataset.seasons()}")
    print(f"  Cleaned table: {csv_path}")

    # =========================================================================
    # Steps 2-3: Fit, Diagnose, Refit
    # =========================================================================
    print("\n[2/4] Fitting Poisson models and diagnosing dispersion...")

    trainer = ModelTrainer(output_dir=output_dir / "models", config=FitConfig(max_iter=max_iter))
    pipeline = GoalModelPipeline(trainer, n_jobs=n_jobs, save_snapshots=True)
    outcomes = pipeline.run(dataset)

    print("\n[3/4] Diagnostics...")
    for response, outcome in outcomes.items():
        report = outcome.diagnostics
        print(f"\n  {response} (Poisson)")
        print(f"    Residual variance: {report.residual_variance:.4f}")
        print(f"    Chi-squared: {report.chi_squared:.2f} on {report.degrees_of_freedom} df")
        print(f"    p-value: {report.p_value:.4g}")
        print(f"    Overdispersion: {report.overdispersion}")
        print(f"    Outcome: {outcome.stage.value}")
        if outcome.negative_binomial is not None:
            nb_report = outcome.negative_binomial_diagnostics
            print(f"    Negative binomial theta: {outcome.negative_binomial.theta:.4f}")
            print(f"    NB residual variance: {nb_report.residual_variance:.4f}")
        for path in outcome.snapshots:
            print(f"    Saved: {path}")

    # =========================================================================
    # Step 4: Coefficients
    # =========================================================================
    print("\n[4/4] Coefficients (final models)...")
    for response, outcome in outcomes.items():
        model = outcome.final_model
        print(f"\n  {response} ({model.family}), reference levels {model.reference_levels}")
        print(model.coefficient_table().head(10).to_string(index=False))

    if plots:
        from .visualizations import generate_all_plots

        print("\nGenerating plots...")
        for path in generate_all_plots(dataset, outcomes, output_dir=str(output_dir / "plots")):
            print(f"  Saved: {path}")

    print("\n" + "=" * 60)
    print("PIPELINE COMPLETE")
    print("=" * 60)
    return outcomes


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Fit Poisson and negative binomial goal models"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--database", type=str, default=None, help="Path to SQLite match database")
    source.add_argument("--csv", type=str, default=None, help="Path to a cleaned matches CSV")
    parser.add_argument("--output-dir", type=str, default="output", help="Directory for CSV, snapshots and plots")
    parser.add_argument("--n-jobs", type=int, default=1, help="Parallel jobs for home/away pipelines")
    parser.add_argument("--max-iter", type=int, default=100, help="Maximum IRLS iterations")
    parser.add_argument("--plots", action="store_true", help="Save diagnostic plots")
    parser.add_argument(
        "--theta",
        type=float,
        default=2.0,
        help="Dispersion of simulated goals when no data source is given (0 for Poisson)",
    )
    parser.add_argument("--seed", type=int, default=42, help="Seed for simulated data")
    parser.add_argument("--log-level", type=str, default="WARNING", help="Logging level")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        run_pipeline(
            database=args.database,
            csv=args.csv,
            output_dir=args.output_dir,
            n_jobs=args.n_jobs,
            plots=args.plots,
            theta=args.theta or None,
            seed=args.seed,
            max_iter=args.max_iter,
        )
    except GoalModelError as exc:
        print(f"\nERROR ({type(exc).__name__}): {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
