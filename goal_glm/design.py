"""
Design Matrix Module

Explicit categorical (dummy) encoding of team identifiers.

Each predictor column is treated as an unordered factor. Its levels are
sorted, the smallest level becomes the reference (coefficient fixed at 0),
and every other level gets one indicator column named ``column[T.level]``.
The encoding is returned alongside the matrix so callers can inspect exactly
which level was dropped and which columns were generated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd

INTERCEPT = "Intercept"


@dataclass(frozen=True)
class CategoricalEncoding:
    """Levels of one categorical predictor and its reference level."""

    column: str
    levels: tuple

    @property
    def reference(self):
        return self.levels[0]

    @property
    def dummy_levels(self) -> tuple:
        return self.levels[1:]

    @property
    def dummy_names(self) -> tuple[str, ...]:
        return tuple(f"{self.column}[T.{level}]" for level in self.dummy_levels)

    def encode(self, values: Sequence) -> np.ndarray:
        """Indicator matrix (n_values x n_dummy_levels) for ``values``."""
        codes = pd.Index(list(self.levels)).get_indexer(values)
        if (codes < 0).any():
            unknown = sorted({v for v, c in zip(values, codes) if c < 0}, key=str)
            raise ValueError(f"Unknown levels for {self.column}: {unknown}")
        return (codes[:, None] == np.arange(1, len(self.levels))[None, :]).astype(float)


@dataclass(frozen=True, eq=False)
class DesignMatrix:
    """Model matrix with an intercept column followed by dummy columns."""

    matrix: np.ndarray
    column_names: tuple[str, ...]
    encodings: tuple[CategoricalEncoding, ...]

    @property
    def n_parameters(self) -> int:
        return len(self.column_names)

    @property
    def rank(self) -> int:
        return int(np.linalg.matrix_rank(self.matrix))

    @property
    def reference_levels(self) -> dict[str, object]:
        return {enc.column: enc.reference for enc in self.encodings}


def fit_encoding(values: Sequence, column: str) -> CategoricalEncoding:
    """Collect the sorted distinct levels of ``values``."""
    levels = pd.unique(pd.Series(values).dropna())
    if len(levels) == 0:
        raise ValueError(f"Predictor {column} has no levels")
    try:
        ordered = sorted(levels)
    except TypeError:
        ordered = sorted(levels, key=str)
    return CategoricalEncoding(column=column, levels=tuple(_as_python(v) for v in ordered))


def build_design_matrix(frame: pd.DataFrame, predictors: Sequence[str]) -> DesignMatrix:
    """
    Build the model matrix for ``predictors``.

    Args:
        frame: Table holding the predictor columns (no missing values).
        predictors: Columns to encode as categorical factors.

    Returns:
        DesignMatrix with ``1 + sum(n_levels - 1)`` columns.

    Example:
        >>> df = pd.DataFrame({"home_team_id": [1, 2, 1, 3]})
        >>> design = build_design_matrix(df, ["home_team_id"])
        >>> design.column_names
        ('Intercept', 'home_team_id[T.2]', 'home_team_id[T.3]')
        >>> design.reference_levels
        {'home_team_id': 1}
    """
    n = len(frame)
    blocks = [np.ones((n, 1))]
    names = [INTERCEPT]
    encodings = []

    for column in predictors:
        values = [_as_python(v) for v in frame[column].tolist()]
        encoding = fit_encoding(values, column)
        blocks.append(encoding.encode(values))
        names.extend(encoding.dummy_names)
        encodings.append(encoding)

    return DesignMatrix(
        matrix=np.hstack(blocks),
        column_names=tuple(names),
        encodings=tuple(encodings),
    )


def _as_python(value):
    """Unwrap numpy scalars so level labels print and pickle cleanly."""
    if isinstance(value, np.generic):
        return value.item()
    return value
