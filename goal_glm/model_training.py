"""
Model Training Module

Fits count regression models for home and away goals against team identity.

Models supported:
- Poisson: GLM with log link, fitted by iteratively reweighted least squares
- Negative Binomial: same linear predictor with a dispersion parameter theta,
  estimated by alternating IRLS fits and profile-likelihood updates of theta

Both models use the statsmodels GLM implementation for the IRLS step.
Training includes:
- Explicit model specification validated against the dataset schema
- Explicit categorical encoding (see design.py)
- Model persistence with versioning
"""

from __future__ import annotations

import json
import logging
import warnings
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Literal, Optional

import joblib
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import special

from .dataset import GOAL_COLUMNS, Dataset
from .design import CategoricalEncoding, DesignMatrix, build_design_matrix
from .exceptions import (
    ConvergenceFailure,
    DispersionEstimationFailure,
    InsufficientData,
    SchemaMismatch,
)

logger = logging.getLogger(__name__)

FAMILIES = ("poisson", "negative_binomial")
LINKS = ("log",)
TEAM_PREDICTORS = ("home_team_id", "away_team_id")


@dataclass(frozen=True)
class ModelSpec:
    """What to fit: response column, predictors, family and link."""

    response: str
    predictors: tuple[str, ...] = TEAM_PREDICTORS
    family: Literal["poisson", "negative_binomial"] = "poisson"
    link: Literal["log"] = "log"

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ValueError(f"Unsupported family: {self.family}")
        if self.link not in LINKS:
            raise ValueError(f"Unsupported link: {self.link}")
        if not self.predictors:
            raise ValueError("At least one predictor is required")
        object.__setattr__(self, "predictors", tuple(self.predictors))

    @classmethod
    def home_goals(cls, family: str = "poisson") -> "ModelSpec":
        return cls(response="home_goals", family=family)

    @classmethod
    def away_goals(cls, family: str = "poisson") -> "ModelSpec":
        return cls(response="away_goals", family=family)

    def with_family(self, family: str) -> "ModelSpec":
        return replace(self, family=family)

    def validate(self, dataset: Dataset) -> None:
        """
        Check the specification against the dataset schema.

        Raises:
            SchemaMismatch: If a column is absent or the response isn't a goal count.
        """
        missing = [
            col for col in (self.response, *self.predictors)
            if col not in dataset.columns
        ]
        if missing:
            raise SchemaMismatch(
                f"Columns not in dataset: {missing}",
                response=self.response,
                stage="validate",
            )
        if self.response not in GOAL_COLUMNS:
            raise SchemaMismatch(
                f"Response must be one of {GOAL_COLUMNS}",
                response=self.response,
                stage="validate",
            )
        if self.response in self.predictors:
            raise SchemaMismatch(
                "Response cannot also be a predictor",
                response=self.response,
                stage="validate",
            )


@dataclass
class FitConfig:
    """Configuration for the iterative fitting procedures."""

    max_iter: int = 100  # IRLS iterations per GLM fit
    tol: float = 1e-8  # IRLS deviance tolerance
    max_outer_iter: int = 25  # Alternating rounds for the NB fit
    theta_tol: float = 1e-6  # Relative change in theta / log-likelihood
    theta_max_iter: int = 50  # Newton steps per theta update
    theta_max: float = 1e5  # Larger theta means no extra-Poisson variance


@dataclass(frozen=True)
class CoefficientRow:
    """One row of a coefficient table."""

    term: str
    estimate: float
    std_error: float
    z_value: float
    p_value: float


@dataclass(frozen=True, eq=False)
class FittedModel:
    """
    A fitted count regression.

    Arrays are stored read-only; the object is never modified after the
    trainer returns it.
    """

    spec: ModelSpec
    column_names: tuple[str, ...]
    encodings: tuple[CategoricalEncoding, ...]
    params: np.ndarray
    bse: np.ndarray
    z_values: np.ndarray
    p_values: np.ndarray
    fitted_values: np.ndarray
    observed: np.ndarray
    log_likelihood: float
    deviance: float
    aic: float
    iterations: int
    theta: Optional[float] = None
    fitted_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def __post_init__(self):
        for name in ("params", "bse", "z_values", "p_values", "fitted_values", "observed"):
            values = np.array(getattr(self, name), dtype=float)
            values.setflags(write=False)
            object.__setattr__(self, name, values)

    @property
    def response(self) -> str:
        return self.spec.response

    @property
    def family(self) -> str:
        return self.spec.family

    @property
    def link(self) -> str:
        return self.spec.link

    @property
    def n_records(self) -> int:
        return len(self.fitted_values)

    @property
    def n_parameters(self) -> int:
        return len(self.column_names)

    @property
    def degrees_of_freedom(self) -> int:
        return self.n_records - self.n_parameters

    @property
    def reference_levels(self) -> dict[str, object]:
        return {enc.column: enc.reference for enc in self.encodings}

    def variance(self, mu: np.ndarray) -> np.ndarray:
        """Variance function of the fitted family."""
        mu = np.asarray(mu, dtype=float)
        if self.family == "negative_binomial":
            return mu + mu ** 2 / self.theta
        return mu

    def coefficients(self) -> list[CoefficientRow]:
        return [
            CoefficientRow(
                term=name,
                estimate=float(est),
                std_error=float(se),
                z_value=float(z),
                p_value=float(p),
            )
            for name, est, se, z, p in zip(
                self.column_names, self.params, self.bse, self.z_values, self.p_values
            )
        ]

    def coefficient_table(self) -> pd.DataFrame:
        """Ordered coefficient table: term, estimate, std_error, z_value, p_value."""
        return pd.DataFrame([asdict(row) for row in self.coefficients()])

    def summary(self) -> dict:
        return {
            "response": self.response,
            "family": self.family,
            "link": self.link,
            "theta": self.theta,
            "n_records": self.n_records,
            "n_parameters": self.n_parameters,
            "degrees_of_freedom": self.degrees_of_freedom,
            "reference_levels": self.reference_levels,
            "log_likelihood": self.log_likelihood,
            "deviance": self.deviance,
            "aic": self.aic,
            "iterations": self.iterations,
            "fitted_at": self.fitted_at,
        }


# =============================================================================
# Negative binomial dispersion
# =============================================================================

def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, theta: float) -> float:
    """Negative binomial (NB2) log-likelihood with size ``theta``."""
    return float(np.sum(
        special.gammaln(theta + y)
        - special.gammaln(theta)
        - special.gammaln(y + 1)
        + theta * np.log(theta)
        + special.xlogy(y, mu)
        - (theta + y) * np.log(theta + mu)
    ))


def estimate_theta(
    y: np.ndarray,
    mu: np.ndarray,
    config: Optional[FitConfig] = None,
    response: Optional[str] = None,
) -> float:
    """
    Maximum-likelihood estimate of theta for fixed means.

    Newton-Raphson on the profile log-likelihood, starting from the moment
    estimate ``n / sum((y / mu - 1)^2)``.

    Args:
        y: Observed counts.
        mu: Fitted means.
        config: Fitting configuration (uses defaults if not provided).
        response: Response name, for error context.

    Returns:
        Estimated theta (> 0).

    Raises:
        DispersionEstimationFailure: If theta is not finite and positive
            or does not converge.

    Theta growing past ``config.theta_max`` means the counts show no
    extra-Poisson variance; the estimate is clamped at ``theta_max`` and a
    warning is logged.
    """
    if config is None:
        config = FitConfig()

    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    n = len(y)

    spread = np.sum((y / mu - 1.0) ** 2)
    theta = n / spread if spread > 0 else np.inf
    if not np.isfinite(theta):
        raise DispersionEstimationFailure(
            "Moment estimate of theta is not finite",
            response=response,
            stage="theta",
        )

    for _ in range(config.theta_max_iter):
        theta = abs(theta)
        score = np.sum(
            special.digamma(theta + y) - special.digamma(theta)
            + np.log(theta) + 1.0 - np.log(theta + mu)
            - (y + theta) / (mu + theta)
        )
        info = np.sum(
            -special.polygamma(1, theta + y) + special.polygamma(1, theta)
            - 1.0 / theta + 2.0 / (mu + theta)
            - (y + theta) / (mu + theta) ** 2
        )
        step = score / info
        theta = theta + step
        if not np.isfinite(theta):
            raise DispersionEstimationFailure(
                "Theta update is not finite",
                response=response,
                stage="theta",
            )
        if theta > config.theta_max:
            logger.warning(
                "Theta for %s exceeded %.4g (last value %.4g); clamping, counts show "
                "no extra-Poisson variance",
                response or "counts",
                config.theta_max,
                theta,
            )
            return float(config.theta_max)
        if abs(step) <= 1e-8 * abs(theta):
            break
    else:
        raise DispersionEstimationFailure(
            f"Theta did not converge in {config.theta_max_iter} iterations",
            response=response,
            stage="theta",
        )

    if theta <= 0:
        raise DispersionEstimationFailure(
            f"Theta converged to a non-positive value ({theta:.4g})",
            response=response,
            stage="theta",
        )
    return float(theta)


# =============================================================================
# Trainer
# =============================================================================

@dataclass
class TrainingResult:
    """Metadata stored next to a model snapshot."""

    response: str
    family: str
    link: str
    predictors: list[str]
    column_names: list[str]
    reference_levels: dict[str, object]
    n_records: int
    n_parameters: int
    degrees_of_freedom: int
    theta: Optional[float]
    log_likelihood: float
    aic: float
    fitted_at: str
    artifact_path: Optional[str] = None

    @classmethod
    def from_model(cls, model: FittedModel) -> "TrainingResult":
        return cls(
            response=model.response,
            family=model.family,
            link=model.link,
            predictors=list(model.spec.predictors),
            column_names=list(model.column_names),
            reference_levels={k: _jsonable(v) for k, v in model.reference_levels.items()},
            n_records=model.n_records,
            n_parameters=model.n_parameters,
            degrees_of_freedom=model.degrees_of_freedom,
            theta=model.theta,
            log_likelihood=model.log_likelihood,
            aic=model.aic,
            fitted_at=model.fitted_at,
        )


class ModelTrainer:
    """
    Fit Poisson and negative binomial goal models.

    This class provides:
    - Poisson GLM fits for a response column
    - Negative binomial refits with jointly estimated theta
    - Model persistence with metadata

    Example:
        >>> trainer = ModelTrainer(output_dir="models")
        >>> home = trainer.fit_poisson(dataset, ModelSpec.home_goals())
        >>> home.reference_levels
        {'home_team_id': 1601, 'away_team_id': 1601}
        >>> nb = trainer.fit_negative_binomial(dataset, ModelSpec.home_goals())
        >>> path = trainer.save(nb, name="home_goals_nb")
    """

    def __init__(
        self,
        output_dir: str | Path = "models",
        config: Optional[FitConfig] = None,
    ):
        """
        Initialize the model trainer.

        Args:
            output_dir: Directory to save model snapshots.
            config: Fitting configuration (uses defaults if not provided).
        """
        self.output_dir = Path(output_dir)
        self.config = config or FitConfig()

    def fit(self, dataset: Dataset, spec: ModelSpec) -> FittedModel:
        """Fit ``spec`` with the family it names."""
        if spec.family == "negative_binomial":
            return self.fit_negative_binomial(dataset, spec)
        return self.fit_poisson(dataset, spec)

    def fit_poisson(self, dataset: Dataset, spec: ModelSpec) -> FittedModel:
        """
        Fit a Poisson GLM with log link.

        Args:
            dataset: Cleaned match dataset.
            spec: Model specification (its family is ignored).

        Returns:
            FittedModel with family "poisson".

        Raises:
            SchemaMismatch: If columns are absent or goals are negative.
            InsufficientData: If modelled columns contain missing values.
            ConvergenceFailure: If IRLS does not converge.
        """
        spec = spec.with_family("poisson")
        y, design = self._prepare(dataset, spec)

        logger.info(
            "Fitting Poisson model for %s: %d records, %d parameters",
            spec.response, len(y), design.n_parameters,
        )
        results = self._fit_glm(y, design, sm.families.Poisson(), spec, stage="poisson")
        return self._to_model(spec, y, design, results)

    def fit_negative_binomial(self, dataset: Dataset, spec: ModelSpec) -> FittedModel:
        """
        Fit a negative binomial GLM with log link and estimated theta.

        Alternates between an IRLS fit with theta held fixed and a
        maximum-likelihood update of theta with the means held fixed,
        starting from a Poisson fit.

        Args:
            dataset: Cleaned match dataset.
            spec: Model specification (its family is ignored).

        Returns:
            FittedModel with family "negative_binomial" and ``theta`` set.

        Raises:
            ConvergenceFailure: If IRLS or the alternating loop does not converge.
            DispersionEstimationFailure: If theta cannot be estimated.
        """
        spec = spec.with_family("negative_binomial")
        y, design = self._prepare(dataset, spec)
        config = self.config

        logger.info(
            "Fitting negative binomial model for %s: %d records, %d parameters",
            spec.response, len(y), design.n_parameters,
        )

        start = self._fit_glm(y, design, sm.families.Poisson(), spec, stage="negative_binomial")
        theta = estimate_theta(y, start.mu, config, response=spec.response)
        ll_prev = nb_log_likelihood(y, start.mu, theta)
        params = start.params

        for outer in range(1, config.max_outer_iter + 1):
            family = sm.families.NegativeBinomial(
                link=sm.families.links.Log(), alpha=1.0 / theta
            )
            results = self._fit_glm(
                y, design, family, spec, stage="negative_binomial", start_params=params
            )
            params = results.params
            ll = nb_log_likelihood(y, results.mu, theta)
            theta_new = estimate_theta(y, results.mu, config, response=spec.response)

            ll_change = abs(ll - ll_prev) / (abs(ll) + 0.1)
            theta_change = abs(theta_new - theta) / theta
            logger.debug(
                "%s NB round %d: theta=%.6g loglik=%.6f", spec.response, outer, theta, ll
            )
            if ll_change < config.theta_tol and theta_change < config.theta_tol:
                logger.info(
                    "Negative binomial fit for %s converged in %d rounds (theta=%.4f)",
                    spec.response, outer, theta,
                )
                return self._to_model(spec, y, design, results, theta=theta)

            theta = theta_new
            ll_prev = ll

        raise ConvergenceFailure(
            f"Alternating theta/coefficient fit did not converge in "
            f"{config.max_outer_iter} rounds",
            response=spec.response,
            stage="negative_binomial",
        )

    def save(self, model: FittedModel, name: str = "model") -> str:
        """
        Save a fitted model snapshot and its metadata.

        Args:
            model: Fitted model.
            name: Base name for the model files.

        Returns:
            Path to saved model file.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # Find next version number
        existing = list(self.output_dir.glob(f"{name}_v*.joblib"))
        if existing:
            versions = [int(p.stem.split("_v")[-1]) for p in existing]
            next_version = max(versions) + 1
        else:
            next_version = 1

        model_path = self.output_dir / f"{name}_v{next_version:03d}.joblib"
        joblib.dump(model, model_path)

        result = TrainingResult.from_model(model)
        result.artifact_path = str(model_path)
        meta_path = self.output_dir / f"{name}_v{next_version:03d}.meta.json"
        with open(meta_path, "w") as f:
            json.dump(asdict(result), f, indent=2)

        logger.info("Model saved to %s", model_path)
        return str(model_path)

    def load(self, filepath: str | Path) -> tuple[FittedModel, dict]:
        """
        Load a saved model and its metadata.

        Args:
            filepath: Path to the .joblib model file.

        Returns:
            Tuple of (model, metadata dict).
        """
        filepath = Path(filepath)
        model = joblib.load(filepath)

        meta_path = filepath.with_suffix(".meta.json")
        if meta_path.exists():
            with open(meta_path) as f:
                metadata = json.load(f)
        else:
            metadata = {}

        logger.info("Model loaded from %s", filepath)
        return model, metadata

    def _prepare(self, dataset: Dataset, spec: ModelSpec) -> tuple[np.ndarray, DesignMatrix]:
        """Validate the spec and build the response vector and design matrix."""
        spec.validate(dataset)
        frame = dataset.frame.loc[:, [spec.response, *spec.predictors]]

        incomplete = frame.isna().any(axis=1)
        if incomplete.any():
            rows = frame.index[incomplete].tolist()
            raise InsufficientData(
                f"{len(rows)} records have missing values in modelled columns "
                f"(first rows: {rows[:5]})",
                response=spec.response,
                stage="prepare",
            )
        if len(frame) == 0:
            raise InsufficientData("Dataset is empty", response=spec.response, stage="prepare")

        y = frame[spec.response].to_numpy(dtype=float)
        if (y < 0).any():
            raise SchemaMismatch(
                "Goal counts cannot be negative",
                response=spec.response,
                stage="prepare",
            )

        design = build_design_matrix(frame, spec.predictors)
        if design.rank < design.n_parameters:
            logger.warning(
                "%s design has rank %d < %d parameters; aliased coefficients are not identified",
                spec.response, design.rank, design.n_parameters,
            )
        return y, design

    def _fit_glm(
        self,
        y: np.ndarray,
        design: DesignMatrix,
        family,
        spec: ModelSpec,
        stage: str,
        start_params: Optional[np.ndarray] = None,
    ):
        """Run one statsmodels IRLS fit and check convergence."""
        model = sm.GLM(y, design.matrix, family=family)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            results = model.fit(
                method="IRLS",
                maxiter=self.config.max_iter,
                tol=self.config.tol,
                start_params=start_params,
            )
        for warning in caught:
            logger.warning("%s %s fit: %s", spec.response, stage, warning.message)

        if not getattr(results, "converged", True):
            raise ConvergenceFailure(
                f"IRLS did not converge in {self.config.max_iter} iterations",
                response=spec.response,
                stage=stage,
            )
        return results

    def _to_model(
        self,
        spec: ModelSpec,
        y: np.ndarray,
        design: DesignMatrix,
        results,
        theta: Optional[float] = None,
    ) -> FittedModel:
        mu = np.asarray(results.mu, dtype=float)
        if theta is None:
            log_likelihood = float(results.llf)
            n_estimated = design.n_parameters
        else:
            log_likelihood = nb_log_likelihood(y, mu, theta)
            n_estimated = design.n_parameters + 1

        return FittedModel(
            spec=spec,
            column_names=design.column_names,
            encodings=design.encodings,
            params=results.params,
            bse=results.bse,
            z_values=results.tvalues,
            p_values=results.pvalues,
            fitted_values=mu,
            observed=y,
            log_likelihood=log_likelihood,
            deviance=float(results.deviance),
            aic=2.0 * n_estimated - 2.0 * log_likelihood,
            iterations=int(results.fit_history.get("iteration", 0)),
            theta=theta,
        )


def _jsonable(value):
    if isinstance(value, np.generic):
        return value.item()
    return value
