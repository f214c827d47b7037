"""
Dataset Module

The cleaned, read-only match table shared by every downstream stage.

Columns:
    - id: Unique match identifier
    - season: Season label (e.g., "2008/2009")
    - home_team_id: Home team identifier
    - away_team_id: Away team identifier
    - home_goals: Goals scored by the home team
    - away_goals: Goals scored by the away team

A Dataset is never modified in place. Filtering, reordering and dropping
incomplete rows all return a new Dataset.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional

import numpy as np
import pandas as pd

from .exceptions import SchemaMismatch

COLUMNS = (
    "id",
    "season",
    "home_team_id",
    "away_team_id",
    "home_goals",
    "away_goals",
)

GOAL_COLUMNS = ("home_goals", "away_goals")
TEAM_COLUMNS = ("home_team_id", "away_team_id")

# Nullable dtypes so missing values survive the CSV round-trip unchanged
DTYPES = {
    "id": "Int64",
    "season": "string",
    "home_team_id": "Int64",
    "away_team_id": "Int64",
    "home_goals": "Int64",
    "away_goals": "Int64",
}

# Missing values are written as NA so an empty season string stays distinct
NA_MARKER = "NA"


@dataclass(frozen=True)
class MatchRecord:
    """A single match result."""

    id: Optional[int]
    season: Optional[str]
    home_team_id: Optional[int]
    away_team_id: Optional[int]
    home_goals: Optional[int]
    away_goals: Optional[int]


def _coerce(frame: pd.DataFrame) -> pd.DataFrame:
    """Project onto the six columns and apply the canonical dtypes."""
    missing = [col for col in COLUMNS if col not in frame.columns]
    if missing:
        raise SchemaMismatch(f"Missing required columns: {missing}", stage="clean")

    frame = frame.loc[:, list(COLUMNS)].reset_index(drop=True)
    try:
        return frame.astype(DTYPES)
    except (TypeError, ValueError) as exc:
        raise SchemaMismatch(f"Column values have unexpected types: {exc}", stage="clean") from exc


class Dataset:
    """
    Immutable table of match records.

    Example:
        >>> ds = Dataset.from_records([
        ...     MatchRecord(1, "2008/2009", 10, 20, 2, 1),
        ...     MatchRecord(2, "2008/2009", 20, 10, 0, 3),
        ... ])
        >>> len(ds)
        2
        >>> ds.to_csv("matches_cleaned.csv")
    """

    def __init__(self, frame: pd.DataFrame):
        self._frame = _coerce(frame)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_records(cls, records: Iterable[MatchRecord]) -> "Dataset":
        rows = [
            {col: getattr(record, col) for col in COLUMNS}
            for record in records
        ]
        return cls(pd.DataFrame(rows, columns=list(COLUMNS)))

    @classmethod
    def from_csv(cls, filepath: str | Path) -> "Dataset":
        """
        Read a dataset previously written by :meth:`to_csv`.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            SchemaMismatch: If columns are missing or mistyped.
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Data file not found: {filepath}")

        frame = pd.read_csv(filepath, dtype=DTYPES, keep_default_na=False, na_values=[NA_MARKER])
        return cls(frame)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._frame)

    def __iter__(self) -> Iterator[MatchRecord]:
        return self.records()

    def __repr__(self) -> str:
        return f"Dataset(n_records={len(self)})"

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(self._frame.columns)

    @property
    def frame(self) -> pd.DataFrame:
        """A copy of the underlying table."""
        return self._frame.copy()

    def column(self, name: str) -> pd.Series:
        """A copy of one column."""
        if name not in self._frame.columns:
            raise SchemaMismatch(f"Unknown column: {name}")
        return self._frame[name].copy()

    def records(self) -> Iterator[MatchRecord]:
        for row in self._frame.itertuples(index=False):
            values = [None if pd.isna(value) else value for value in row]
            yield MatchRecord(
                id=None if values[0] is None else int(values[0]),
                season=values[1],
                home_team_id=None if values[2] is None else int(values[2]),
                away_team_id=None if values[3] is None else int(values[3]),
                home_goals=None if values[4] is None else int(values[4]),
                away_goals=None if values[5] is None else int(values[5]),
            )

    def missing_counts(self) -> dict[str, int]:
        """Number of null values per column."""
        return {col: int(n) for col, n in self._frame.isna().sum().items()}

    def teams(self) -> list[int]:
        """Sorted list of team ids seen in either role."""
        ids = pd.concat([self._frame["home_team_id"], self._frame["away_team_id"]])
        return sorted(int(team) for team in ids.dropna().unique())

    def seasons(self) -> list[str]:
        return sorted(str(season) for season in self._frame["season"].dropna().unique())

    # ------------------------------------------------------------------
    # Derivation (always returns a new Dataset)
    # ------------------------------------------------------------------

    def filter(self, mask: pd.Series | np.ndarray) -> "Dataset":
        mask = np.asarray(mask, dtype=bool)
        return Dataset(self._frame[mask])

    def drop_incomplete(self) -> "Dataset":
        """Rows with no missing values."""
        return Dataset(self._frame.dropna())

    def shuffled(self, seed: Optional[int] = None) -> "Dataset":
        """Same rows in a random order."""
        return Dataset(self._frame.sample(frac=1.0, random_state=seed))

    def equals(self, other: "Dataset") -> bool:
        return self._frame.equals(other._frame)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_csv(self, filepath: str | Path) -> str:
        """
        Write the dataset as a flat CSV file with a header row.

        Missing values are written as ``NA``.

        Raises:
            ValueError: If a season label collides with the missing-value marker.
        """
        if (self._frame["season"] == NA_MARKER).any():
            raise ValueError(f"Season label {NA_MARKER!r} is reserved for missing values")

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        self._frame.to_csv(filepath, index=False, na_rep=NA_MARKER)
        return str(filepath)
