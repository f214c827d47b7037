"""
Goal Count Models

Poisson and negative binomial regression of football goals on team identity,
with the dispersion diagnostics used to choose between them:

- Match data loading from SQLite and export to CSV
- Explicit categorical encoding of team identifiers
- Poisson GLM fits via IRLS (statsmodels)
- Pearson-residual overdispersion diagnostics
- Negative binomial refits with estimated dispersion theta
- Versioned model snapshots
"""

__version__ = "1.0.0"

from .data_loader import MatchDataLoader, ValidationResult, load_matches
from .dataset import Dataset, MatchRecord
from .design import CategoricalEncoding, DesignMatrix, build_design_matrix
from .exceptions import (
    ConvergenceFailure,
    DataSourceUnavailable,
    DispersionEstimationFailure,
    GoalModelError,
    InsufficientData,
    SchemaMismatch,
)
from .model_evaluation import DiagnosticsReport, ModelEvaluator, compute_diagnostics
from .model_training import FitConfig, FittedModel, ModelSpec, ModelTrainer
from .pipeline import GoalModelPipeline, ResponseOutcome, Stage
from .simulation import SimulationParams, simulate_matches

__all__ = [
    "MatchDataLoader",
    "ValidationResult",
    "load_matches",
    "Dataset",
    "MatchRecord",
    "CategoricalEncoding",
    "DesignMatrix",
    "build_design_matrix",
    "GoalModelError",
    "DataSourceUnavailable",
    "SchemaMismatch",
    "ConvergenceFailure",
    "InsufficientData",
    "DispersionEstimationFailure",
    "DiagnosticsReport",
    "ModelEvaluator",
    "compute_diagnostics",
    "FitConfig",
    "FittedModel",
    "ModelSpec",
    "ModelTrainer",
    "GoalModelPipeline",
    "ResponseOutcome",
    "Stage",
    "SimulationParams",
    "simulate_matches",
]
