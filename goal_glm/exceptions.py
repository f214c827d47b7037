"""
Errors Module

Error taxonomy for the goal modelling pipeline. Every error is terminal for
the response variable it concerns; the pipeline never retries.

Each error can carry the response column (``home_goals``/``away_goals``) and
the pipeline stage it was raised in, so a caller can report precisely which
model failed and where.
"""

from __future__ import annotations

from typing import Optional


class GoalModelError(Exception):
    """Base class for all pipeline errors."""

    def __init__(
        self,
        message: str,
        response: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.message = message
        self.response = response
        self.stage = stage
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.response:
            context.append(f"response={self.response}")
        if self.stage:
            context.append(f"stage={self.stage}")
        if context:
            return f"[{', '.join(context)}] {self.message}"
        return self.message

    def with_context(
        self,
        response: Optional[str] = None,
        stage: Optional[str] = None,
    ) -> "GoalModelError":
        """Return a copy of this error with missing context filled in."""
        return type(self)(
            self.message,
            response=self.response or response,
            stage=self.stage or stage,
        )

    def __reduce__(self):
        # Keep context when errors cross joblib worker boundaries
        return (type(self), (self.message, self.response, self.stage))


class DataSourceUnavailable(GoalModelError):
    """The relational store could not be opened or read."""


class SchemaMismatch(GoalModelError):
    """A required table or column is absent, or values have the wrong type."""


class ConvergenceFailure(GoalModelError):
    """Iterative fitting reached its iteration limit without converging."""


class InsufficientData(GoalModelError):
    """Too few usable records for the requested model or statistic."""


class DispersionEstimationFailure(GoalModelError):
    """The negative binomial dispersion parameter did not converge to a positive value."""
