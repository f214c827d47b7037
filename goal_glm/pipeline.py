"""
Pipeline Module

Runs the per-response modelling workflow:

    Raw -> Cleaned -> PoissonFit -> Diagnosed -> NegativeBinomialFit | Accepted

Home and away goals go through the same steps independently. They can run
in parallel via joblib; ``n_jobs=1`` runs them one after the other with the
same results. A failure at any step is terminal for the whole run and is
raised with the response and stage attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from joblib import Parallel, delayed

from .dataset import GOAL_COLUMNS, Dataset
from .exceptions import GoalModelError, InsufficientData
from .model_evaluation import DiagnosticsReport, ModelEvaluator
from .model_training import FittedModel, ModelSpec, ModelTrainer

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    RAW = "raw"
    CLEANED = "cleaned"
    POISSON_FIT = "poisson_fit"
    DIAGNOSED = "diagnosed"
    ACCEPTED = "accepted"
    NEGATIVE_BINOMIAL_FIT = "negative_binomial_fit"


TERMINAL_STAGES = (Stage.ACCEPTED, Stage.NEGATIVE_BINOMIAL_FIT)


@dataclass(frozen=True)
class ResponseOutcome:
    """Everything produced for one response variable."""

    response: str
    stage: Stage
    poisson: FittedModel
    diagnostics: DiagnosticsReport
    negative_binomial: Optional[FittedModel] = None
    negative_binomial_diagnostics: Optional[DiagnosticsReport] = None
    snapshots: tuple[str, ...] = ()

    @property
    def final_model(self) -> FittedModel:
        if self.negative_binomial is not None:
            return self.negative_binomial
        return self.poisson


class GoalModelPipeline:
    """
    Fit, diagnose and (if needed) refit goal models.

    Example:
        >>> pipeline = GoalModelPipeline(ModelTrainer("models"), n_jobs=2)
        >>> outcomes = pipeline.run(dataset)
        >>> outcomes["home_goals"].stage
        <Stage.NEGATIVE_BINOMIAL_FIT: 'negative_binomial_fit'>
    """

    def __init__(
        self,
        trainer: Optional[ModelTrainer] = None,
        evaluator: Optional[ModelEvaluator] = None,
        n_jobs: int = 1,
        save_snapshots: bool = False,
    ):
        """
        Initialize the pipeline.

        Args:
            trainer: Model trainer (default output directory "models").
            evaluator: Diagnostics evaluator.
            n_jobs: Parallel jobs for the response pipelines.
            save_snapshots: Whether to save every fitted model.
        """
        self.trainer = trainer or ModelTrainer()
        self.evaluator = evaluator or ModelEvaluator()
        self.n_jobs = n_jobs
        self.save_snapshots = save_snapshots

    def run(
        self,
        dataset: Dataset,
        responses: Sequence[str] = GOAL_COLUMNS,
    ) -> dict[str, ResponseOutcome]:
        """
        Run every response pipeline.

        Args:
            dataset: Cleaned match dataset.
            responses: Response columns to model.

        Returns:
            Dictionary mapping response name to its outcome.
        """
        outcomes = Parallel(n_jobs=self.n_jobs)(
            delayed(self.run_response)(dataset, response) for response in responses
        )
        return {outcome.response: outcome for outcome in outcomes}

    def run_response(self, dataset: Dataset, response: str) -> ResponseOutcome:
        """Walk one response through the state machine."""
        stage = Stage.RAW
        snapshots = []
        try:
            if len(dataset) == 0:
                raise InsufficientData("Dataset is empty")
            stage = Stage.CLEANED

            spec = ModelSpec(response=response)
            poisson = self.trainer.fit_poisson(dataset, spec)
            if self.save_snapshots:
                snapshots.append(self.trainer.save(poisson, name=f"{response}_poisson"))
            stage = Stage.POISSON_FIT

            diagnostics = self.evaluator.diagnose(poisson)
            stage = Stage.DIAGNOSED

            if not diagnostics.overdispersion:
                logger.info("%s: Poisson model accepted", response)
                return ResponseOutcome(
                    response=response,
                    stage=Stage.ACCEPTED,
                    poisson=poisson,
                    diagnostics=diagnostics,
                    snapshots=tuple(snapshots),
                )

            logger.info("%s: overdispersion detected, refitting negative binomial", response)
            nb_model = self.trainer.fit_negative_binomial(dataset, spec)
            if self.save_snapshots:
                snapshots.append(self.trainer.save(nb_model, name=f"{response}_nb"))
            nb_diagnostics = self.evaluator.diagnose(nb_model)

        except GoalModelError as exc:
            raise exc.with_context(response=response, stage=stage.value) from exc

        return ResponseOutcome(
            response=response,
            stage=Stage.NEGATIVE_BINOMIAL_FIT,
            poisson=poisson,
            diagnostics=diagnostics,
            negative_binomial=nb_model,
            negative_binomial_diagnostics=nb_diagnostics,
            snapshots=tuple(snapshots),
        )
