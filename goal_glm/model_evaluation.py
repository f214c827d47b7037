"""
Model Evaluation Module

Dispersion diagnostics for fitted count models.

Under a correctly specified Poisson model, Pearson residuals

    r_i = (y_i - mu_i) / sqrt(V(mu_i))

have roughly unit variance. Residual variance well above 1 indicates the
counts vary more than the mean allows (overdispersion), which motivates
refitting with a negative binomial family.

The Pearson chi-squared statistic sum(r_i^2) is compared with a chi-squared
distribution on n_records - n_parameters degrees of freedom.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from .exceptions import InsufficientData
from .model_training import FittedModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class DiagnosticsReport:
    """Dispersion diagnostics for one fitted model."""

    response: str
    family: str
    pearson_residuals: np.ndarray
    residual_variance: float
    chi_squared: float
    degrees_of_freedom: int
    p_value: float
    overdispersion: bool
    mean_squared_residual: float

    def __post_init__(self):
        residuals = np.array(self.pearson_residuals, dtype=float)
        residuals.setflags(write=False)
        object.__setattr__(self, "pearson_residuals", residuals)

    @property
    def dispersion_ratio(self) -> float:
        """Pearson chi-squared per residual degree of freedom."""
        return self.chi_squared / self.degrees_of_freedom

    def summary(self) -> dict[str, float]:
        return {
            "residual_variance": self.residual_variance,
            "chi_squared": self.chi_squared,
            "degrees_of_freedom": self.degrees_of_freedom,
            "p_value": self.p_value,
            "overdispersion": self.overdispersion,
        }


def pearson_residuals(model: FittedModel) -> np.ndarray:
    """
    Pearson residuals of a fitted model, one per record.

    Example:
        >>> r = pearson_residuals(model)
        >>> len(r) == model.n_records
        True
    """
    mu = model.fitted_values
    return (model.observed - mu) / np.sqrt(model.variance(mu))


def pearson_chi_squared(model: FittedModel) -> float:
    """Sum of squared Pearson residuals."""
    return float(np.sum(pearson_residuals(model) ** 2))


def compute_diagnostics(model: FittedModel) -> DiagnosticsReport:
    """
    Compute the dispersion diagnostics for ``model``.

    Args:
        model: Fitted Poisson or negative binomial model.

    Returns:
        DiagnosticsReport.

    Raises:
        InsufficientData: If the model has no residual degrees of freedom.
    """
    dof = model.degrees_of_freedom
    if dof <= 0:
        raise InsufficientData(
            f"{model.n_records} records cannot support {model.n_parameters} "
            f"parameters (degrees of freedom {dof})",
            response=model.response,
            stage="diagnostics",
        )

    residuals = pearson_residuals(model)
    chi_squared = float(np.sum(residuals ** 2))
    residual_variance = float(np.var(residuals, ddof=1))
    p_value = float(stats.chi2.sf(chi_squared, dof))

    report = DiagnosticsReport(
        response=model.response,
        family=model.family,
        pearson_residuals=residuals,
        residual_variance=residual_variance,
        chi_squared=chi_squared,
        degrees_of_freedom=dof,
        p_value=p_value,
        overdispersion=bool(residual_variance > 1.0),
        mean_squared_residual=float(np.mean(residuals ** 2)),
    )

    logger.info(
        "%s %s diagnostics: residual variance %.4f, chi2 %.2f on %d df (p=%.4g)%s",
        model.response,
        model.family,
        residual_variance,
        chi_squared,
        dof,
        p_value,
        " -> overdispersed" if report.overdispersion else "",
    )
    return report


class ModelEvaluator:
    """
    Diagnose and compare fitted goal models.

    Example:
        >>> evaluator = ModelEvaluator()
        >>> report = evaluator.diagnose(poisson_model)
        >>> if report.overdispersion:
        ...     nb_model = trainer.fit_negative_binomial(dataset, spec)
        >>> evaluator.compare({"poisson": poisson_model, "nb": nb_model})
    """

    def diagnose(self, model: FittedModel) -> DiagnosticsReport:
        return compute_diagnostics(model)

    def compare(self, models: dict[str, FittedModel]) -> pd.DataFrame:
        """
        Compare fitted models of the same response.

        Args:
            models: Dictionary mapping model names to fitted models.

        Returns:
            DataFrame sorted by AIC (lower is better).
        """
        responses = {model.response for model in models.values()}
        if len(responses) > 1:
            raise ValueError(f"Models explain different responses: {sorted(responses)}")

        rows = []
        for name, model in models.items():
            rows.append({
                "model": name,
                "family": model.family,
                "theta": model.theta,
                "log_likelihood": model.log_likelihood,
                "aic": model.aic,
                "degrees_of_freedom": model.degrees_of_freedom,
                "chi_squared": pearson_chi_squared(model),
            })

        return pd.DataFrame(rows).sort_values("aic").reset_index(drop=True)
