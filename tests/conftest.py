import os
import sqlite3

import pandas as pd
import pytest

os.environ.setdefault("MPLBACKEND", "Agg")

from goal_glm.dataset import Dataset
from goal_glm.model_training import ModelTrainer
from goal_glm.simulation import SimulationParams, simulate_matches


def source_frame(n: int = 6) -> pd.DataFrame:
    """Match rows with source column names plus columns the loader drops."""
    return pd.DataFrame({
        "id": list(range(1, n + 1)),
        "country_id": [1] * n,
        "league_id": [1] * n,
        "season": ["2008/2009"] * (n // 2) + ["2009/2010"] * (n - n // 2),
        "stage": list(range(1, n + 1)),
        "date": ["2008-08-17 00:00:00"] * n,
        "match_api_id": [492473 + i for i in range(n)],
        "home_team_api_id": [9987, 10000, 9984, 9991, 7947, 8203][:n],
        "away_team_api_id": [9993, 9994, 8635, 9998, 9985, 8342][:n],
        "home_team_goal": [1, 0, 0, 5, 1, 1][:n],
        "away_team_goal": [1, 0, 3, 0, 3, 1][:n],
        "B365H": [1.73, 1.95, 2.38, 1.44, 5.0, 4.75][:n],
    })


def write_store(path, frames: dict) -> str:
    conn = sqlite3.connect(path)
    try:
        for table, frame in frames.items():
            frame.to_sql(table, conn, index=False)
    finally:
        conn.close()
    return str(path)


@pytest.fixture
def match_db(tmp_path):
    """SQLite store shaped like the European soccer database."""
    teams = pd.DataFrame({"id": [1, 2], "team_api_id": [9987, 9993], "team_long_name": ["A", "B"]})
    return write_store(tmp_path / "database.sqlite", {"Match": source_frame(), "Team": teams})


@pytest.fixture
def four_matches():
    return Dataset(pd.DataFrame({
        "id": [1, 2, 3, 4],
        "season": ["2008/2009"] * 4,
        "home_team_id": [1, 2, 1, 3],
        "away_team_id": [2, 1, 3, 1],
        "home_goals": [2, 0, 1, 4],
        "away_goals": [1, 3, 1, 0],
    }))


@pytest.fixture(scope="session")
def poisson_league():
    return simulate_matches(SimulationParams(n_teams=8, n_seasons=4), seed=7)


@pytest.fixture(scope="session")
def nb_league():
    return simulate_matches(SimulationParams(n_teams=8, n_seasons=8, theta=1.5), seed=11)


@pytest.fixture
def trainer(tmp_path):
    return ModelTrainer(output_dir=tmp_path / "models")
