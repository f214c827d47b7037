import pandas as pd
import pytest

from conftest import source_frame, write_store
from goal_glm.data_loader import DEFAULT_CSV_NAME, MatchDataLoader, load_matches
from goal_glm.dataset import COLUMNS, Dataset
from goal_glm.exceptions import DataSourceUnavailable, SchemaMismatch


def test_describe_lists_tables_and_columns(match_db):
    schema = MatchDataLoader().describe(match_db)

    assert set(schema) == {"Match", "Team"}
    assert "home_team_api_id" in schema["Match"]
    assert schema["Team"] == ["id", "team_api_id", "team_long_name"]


def test_load_selects_six_columns_and_keeps_rows(match_db):
    dataset = MatchDataLoader().load(match_db)

    assert dataset.columns == COLUMNS
    assert len(dataset) == len(source_frame())


def test_load_renames_source_columns(match_db):
    frame = MatchDataLoader().load(match_db).frame
    source = source_frame()

    assert frame["home_team_id"].tolist() == source["home_team_api_id"].tolist()
    assert frame["away_goals"].tolist() == source["away_team_goal"].tolist()
    assert frame["season"].tolist() == source["season"].tolist()


def test_load_accepts_canonical_names(tmp_path, four_matches):
    frame = pd.DataFrame({col: four_matches.column(col).tolist() for col in COLUMNS})
    path = write_store(tmp_path / "canonical.sqlite", {"Match": frame})

    assert MatchDataLoader().load(path).equals(four_matches)


def test_load_keeps_null_rows(tmp_path):
    frame = source_frame()
    frame.loc[2, "home_team_goal"] = None
    frame.loc[4, "away_team_api_id"] = None
    path = write_store(tmp_path / "nulls.sqlite", {"Match": frame})

    dataset = MatchDataLoader().load(path)

    assert len(dataset) == len(frame)
    assert dataset.missing_counts()["home_goals"] == 1
    assert dataset.missing_counts()["away_team_id"] == 1


def test_missing_database(tmp_path):
    with pytest.raises(DataSourceUnavailable):
        MatchDataLoader().load(tmp_path / "absent.sqlite")

    assert not (tmp_path / "absent.sqlite").exists()


def test_file_that_is_not_a_database(tmp_path):
    path = tmp_path / "notes.sqlite"
    path.write_text("this is not sqlite, just some text long enough to have a header" * 4)

    with pytest.raises(DataSourceUnavailable):
        MatchDataLoader().load(path)


def test_missing_table(tmp_path):
    path = write_store(tmp_path / "db.sqlite", {"Team": pd.DataFrame({"id": [1]})})

    with pytest.raises(SchemaMismatch, match="Match"):
        MatchDataLoader().load(path)


def test_missing_column(tmp_path):
    path = write_store(
        tmp_path / "db.sqlite",
        {"Match": source_frame().drop(columns=["away_team_goal"])},
    )

    with pytest.raises(SchemaMismatch, match="away_goals"):
        MatchDataLoader().load(path)


def test_custom_table_name(tmp_path):
    path = write_store(tmp_path / "db.sqlite", {"matches": source_frame()})

    assert len(MatchDataLoader(table="matches").load(path)) == 6


def test_export_round_trip(tmp_path, match_db):
    loader = MatchDataLoader()
    dataset = loader.load(match_db)

    csv_path = loader.export(dataset, tmp_path / "out" / "matches_cleaned.csv")

    assert Dataset.from_csv(csv_path).equals(dataset)


def test_validate_clean_data(four_matches):
    result = MatchDataLoader().validate(four_matches)

    assert result.is_valid
    assert any("seasons" in w for w in result.warnings)


def test_validate_reports_problems_without_filtering(tmp_path):
    frame = source_frame()
    frame.loc[1, "home_team_goal"] = -1
    frame.loc[2, "away_team_goal"] = None
    frame.loc[3, "id"] = 1
    dataset = MatchDataLoader().load(write_store(tmp_path / "db.sqlite", {"Match": frame}))

    result = MatchDataLoader().validate(dataset)

    assert not result.is_valid
    assert any("negative" in e for e in result.errors)
    assert any("missing" in e for e in result.errors)
    assert any("duplicate" in e for e in result.errors)
    assert len(dataset) == len(frame)


def test_validate_empty():
    result = MatchDataLoader().validate(Dataset(pd.DataFrame(columns=list(COLUMNS))))

    assert not result.is_valid
    assert result.errors == ["Dataset is empty"]


def test_load_matches_from_db_and_csv(tmp_path, match_db):
    csv_path = tmp_path / "matches_cleaned.csv"

    from_db = load_matches(match_db, csv_path=csv_path)
    from_csv = load_matches(csv_path)

    assert from_csv.equals(from_db)


def test_load_matches_persists_flat_file_beside_database(tmp_path, match_db):
    dataset = load_matches(match_db)

    written = tmp_path / DEFAULT_CSV_NAME
    assert written.exists()
    assert Dataset.from_csv(written).equals(dataset)
