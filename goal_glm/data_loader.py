"""
Data Loader Module

Handles loading of football match data from a SQLite store and its export
to a flat CSV file for reuse by downstream stages.

Expected source columns (table ``Match`` by default):
    - id: Match identifier
    - season: Season identifier (e.g., "2008/2009")
    - home_team_api_id: Home team identifier
    - away_team_api_id: Away team identifier
    - home_team_goal: Goals scored by home team
    - away_team_goal: Goals scored by away team

The canonical names (home_team_id, home_goals, ...) are accepted as well.
Every other column is dropped. Rows are not filtered: null team ids or goal
counts pass through and are reported by ``validate``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd

from .dataset import COLUMNS, GOAL_COLUMNS, TEAM_COLUMNS, Dataset
from .exceptions import DataSourceUnavailable, SchemaMismatch

logger = logging.getLogger(__name__)

# Accepted source names per canonical column, in order of preference
COLUMN_ALIASES = {
    "id": ("id",),
    "season": ("season",),
    "home_team_id": ("home_team_api_id", "home_team_id"),
    "away_team_id": ("away_team_api_id", "away_team_id"),
    "home_goals": ("home_team_goal", "home_goals"),
    "away_goals": ("away_team_goal", "away_goals"),
}

EXPECTED_SEASONS = 8
DEFAULT_CSV_NAME = "matches_cleaned.csv"


@dataclass
class ValidationResult:
    """Result of data validation."""

    is_valid: bool
    errors: list[str]
    warnings: list[str]


class MatchDataLoader:
    """
    Load match data from a SQLite store.

    This class provides methods to:
    - List the tables and columns of the store
    - Load the match table projected onto the six modelled columns
    - Validate the result without filtering it
    - Export the cleaned table to CSV

    Example:
        >>> loader = MatchDataLoader()
        >>> dataset = loader.load("database.sqlite")
        >>> validation = loader.validate(dataset)
        >>> loader.export(dataset, "matches_cleaned.csv")
    """

    def __init__(self, table: str = "Match", aliases: Optional[dict] = None):
        """
        Initialize the data loader.

        Args:
            table: Name of the match table.
            aliases: Override of the accepted source names per column.
        """
        self.table = table
        self.aliases = dict(COLUMN_ALIASES)
        if aliases:
            self.aliases.update({k: tuple(v) for k, v in aliases.items()})

    def connect(self, db_path: str | Path) -> sqlite3.Connection:
        """
        Open the store read-only.

        Raises:
            DataSourceUnavailable: If the file is missing or not a database.
        """
        db_path = Path(db_path)
        if not db_path.is_file():
            raise DataSourceUnavailable(f"Database not found: {db_path}", stage="load")

        try:
            conn = sqlite3.connect(f"file:{db_path.resolve().as_posix()}?mode=ro", uri=True)
            # sqlite opens lazily; touch the schema to surface corrupt files
            conn.execute("SELECT name FROM sqlite_master LIMIT 1").fetchall()
        except sqlite3.Error as exc:
            raise DataSourceUnavailable(
                f"Cannot open database {db_path}: {exc}", stage="load"
            ) from exc
        return conn

    def describe(self, db_path: str | Path) -> dict[str, list[str]]:
        """
        List every table in the store with its columns.

        Args:
            db_path: Path to the SQLite file.

        Returns:
            Mapping of table name to column names.
        """
        conn = self.connect(db_path)
        try:
            return self._describe(conn)
        finally:
            conn.close()

    def load(self, db_path: str | Path) -> Dataset:
        """
        Load all rows of the match table.

        Args:
            db_path: Path to the SQLite file.

        Returns:
            Dataset with exactly the six modelled columns.

        Raises:
            DataSourceUnavailable: If the store can't be opened or queried.
            SchemaMismatch: If the table or a required column is absent.
        """
        conn = self.connect(db_path)
        try:
            schema = self._describe(conn)
            if self.table not in schema:
                raise SchemaMismatch(
                    f"Table {self.table!r} not found (tables: {sorted(schema)})",
                    stage="load",
                )
            mapping = self.resolve_columns(schema[self.table])

            try:
                raw = pd.read_sql_query(f'SELECT * FROM "{self.table}"', conn)
            except (sqlite3.Error, pd.errors.DatabaseError) as exc:
                raise DataSourceUnavailable(
                    f"Query on {self.table!r} failed: {exc}", stage="load"
                ) from exc
        finally:
            conn.close()

        cleaned = raw.loc[:, list(mapping.values())]
        cleaned.columns = list(mapping.keys())
        dataset = Dataset(cleaned)

        logger.info(
            "Loaded %d matches from %s (%d source columns -> %d)",
            len(dataset), db_path, raw.shape[1], len(COLUMNS),
        )
        return dataset

    def resolve_columns(self, available: list[str]) -> dict[str, str]:
        """
        Map each canonical column to the source column that provides it.

        Raises:
            SchemaMismatch: If any canonical column has no source.
        """
        mapping = {}
        missing = []
        for column in COLUMNS:
            source = next((name for name in self.aliases[column] if name in available), None)
            if source is None:
                missing.append(column)
            else:
                mapping[column] = source

        if missing:
            raise SchemaMismatch(
                f"Missing required columns in {self.table!r}: {missing}", stage="load"
            )
        return mapping

    def validate(self, dataset: Dataset) -> ValidationResult:
        """
        Validate match data for model fitting.

        Checks:
        - No empty dataset
        - No missing team ids or goals
        - Non-negative goal values
        - No duplicate match ids
        - Expected number of seasons

        Args:
            dataset: Dataset to validate.

        Returns:
            ValidationResult with status and any errors/warnings.
        """
        errors = []
        warnings = []

        if len(dataset) == 0:
            errors.append("Dataset is empty")
            return ValidationResult(False, errors, warnings)

        df = dataset.frame

        missing = dataset.missing_counts()
        for column in (*TEAM_COLUMNS, *GOAL_COLUMNS):
            if missing[column]:
                errors.append(f"{column} has {missing[column]} missing values")

        for column in GOAL_COLUMNS:
            if (df[column].dropna() < 0).any():
                errors.append(f"{column} contains negative values")

        duplicates = df["id"].dropna().duplicated(keep=False)
        if duplicates.any():
            errors.append(f"Found {int(duplicates.sum())} rows with duplicate ids")

        n_seasons = df["season"].nunique()
        if n_seasons != EXPECTED_SEASONS:
            warnings.append(f"Found {n_seasons} seasons (expected {EXPECTED_SEASONS})")

        home_teams = set(df["home_team_id"].dropna())
        away_teams = set(df["away_team_id"].dropna())
        one_sided = home_teams ^ away_teams
        if one_sided:
            warnings.append(f"{len(one_sided)} teams appear only at home or only away")

        is_valid = len(errors) == 0
        return ValidationResult(is_valid, errors, warnings)

    def export(self, dataset: Dataset, csv_path: str | Path) -> str:
        """Write the cleaned table to ``csv_path``."""
        path = dataset.to_csv(csv_path)
        logger.info("Wrote %d matches to %s", len(dataset), path)
        return path

    def _describe(self, conn: sqlite3.Connection) -> dict[str, list[str]]:
        try:
            tables = [
                row[0]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
                )
            ]
            schema = {}
            for table in tables:
                cursor = conn.execute(f'SELECT * FROM "{table}" LIMIT 0')
                schema[table] = [col[0] for col in cursor.description]
        except sqlite3.Error as exc:
            raise DataSourceUnavailable(f"Cannot read schema: {exc}", stage="load") from exc

        for table, columns in schema.items():
            logger.info("Table: %s", table)
            logger.debug("Columns: %s", ", ".join(columns))
        return schema


# Utility function for quick loading
def load_matches(
    filepath: str | Path,
    csv_path: Optional[str | Path] = None,
) -> Dataset:
    """
    Load matches from a SQLite store or a previously exported CSV.

    Args:
        filepath: Path to a SQLite database or a ``.csv`` file.
        csv_path: Where to persist the cleaned table when loading from SQLite
            (defaults to ``matches_cleaned.csv`` next to the database).

    Returns:
        Dataset ready for model fitting.
    """
    filepath = Path(filepath)
    if filepath.suffix.lower() == ".csv":
        return Dataset.from_csv(filepath)

    loader = MatchDataLoader()
    dataset = loader.load(filepath)

    validation = loader.validate(dataset)
    for warning in validation.warnings:
        logger.warning(warning)
    for error in validation.errors:
        logger.warning("Data issue (not filtered): %s", error)

    if csv_path is None:
        csv_path = filepath.with_name(DEFAULT_CSV_NAME)
    loader.export(dataset, csv_path)
    return dataset
