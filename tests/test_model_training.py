import json
import logging

import numpy as np
import pandas as pd
import pytest

from goal_glm.dataset import Dataset, MatchRecord
from goal_glm.exceptions import (
    ConvergenceFailure,
    DispersionEstimationFailure,
    InsufficientData,
    SchemaMismatch,
)
from goal_glm.model_evaluation import pearson_chi_squared
from goal_glm.model_training import (
    FitConfig,
    ModelSpec,
    ModelTrainer,
    estimate_theta,
    nb_log_likelihood,
)
from goal_glm.simulation import SimulationParams, simulate_matches


# =============================================================================
# Specification
# =============================================================================

def test_spec_defaults():
    spec = ModelSpec.home_goals()

    assert spec.response == "home_goals"
    assert spec.predictors == ("home_team_id", "away_team_id")
    assert spec.family == "poisson"
    assert spec.link == "log"
    assert spec.with_family("negative_binomial").family == "negative_binomial"


@pytest.mark.parametrize("kwargs", [
    {"family": "gamma"},
    {"link": "identity"},
    {"predictors": ()},
])
def test_spec_rejects_unsupported(kwargs):
    with pytest.raises(ValueError):
        ModelSpec(response="home_goals", **kwargs)


def test_spec_validates_against_schema(four_matches):
    with pytest.raises(SchemaMismatch):
        ModelSpec(response="home_goals", predictors=("referee_id",)).validate(four_matches)
    with pytest.raises(SchemaMismatch):
        ModelSpec(response="season").validate(four_matches)


# =============================================================================
# Poisson
# =============================================================================

def test_four_match_scenario(trainer, four_matches):
    model = trainer.fit_poisson(four_matches, ModelSpec.home_goals())

    non_reference_levels = 2 + 2
    assert len(model.fitted_values) == 4
    assert model.n_parameters == 1 + non_reference_levels
    assert model.degrees_of_freedom == 4 - (1 + non_reference_levels)
    assert pearson_chi_squared(model) >= 0
    assert model.reference_levels == {"home_team_id": 1, "away_team_id": 1}


def test_poisson_fit_structure(trainer, poisson_league):
    model = trainer.fit_poisson(poisson_league.dataset, ModelSpec.away_goals())

    n = len(poisson_league.dataset)
    assert model.family == "poisson"
    assert model.theta is None
    assert model.n_records == n
    assert model.n_parameters == 1 + 7 + 7
    assert model.degrees_of_freedom == n - 15
    assert model.column_names[0] == "Intercept"
    assert model.column_names[1] == "home_team_id[T.1602]"
    assert np.all(model.fitted_values > 0)
    np.testing.assert_array_equal(model.observed, poisson_league.dataset.column("away_goals").to_numpy(dtype=float))


def test_poisson_score_equation_holds(trainer, poisson_league):
    # With an intercept and log link, fitted totals match observed totals
    model = trainer.fit_poisson(poisson_league.dataset, ModelSpec.home_goals())

    assert model.fitted_values.sum() == pytest.approx(model.observed.sum(), rel=1e-6)


def test_fitted_model_is_read_only(trainer, four_matches):
    model = trainer.fit_poisson(four_matches, ModelSpec.away_goals())

    with pytest.raises(ValueError):
        model.fitted_values[0] = 1.0
    with pytest.raises(AttributeError):
        model.theta = 2.0


def test_coefficient_table(trainer, poisson_league):
    model = trainer.fit_poisson(poisson_league.dataset, ModelSpec.home_goals())

    table = model.coefficient_table()

    assert list(table.columns) == ["term", "estimate", "std_error", "z_value", "p_value"]
    assert table["term"].tolist() == list(model.column_names)
    assert np.allclose(table["z_value"], table["estimate"] / table["std_error"])
    assert table["p_value"].between(0, 1).all()


def test_missing_values_are_insufficient_data(trainer):
    dataset = Dataset.from_records([
        MatchRecord(1, "2008/2009", 1, 2, 2, 1),
        MatchRecord(2, "2008/2009", 2, 1, None, 3),
        MatchRecord(3, "2008/2009", 1, 2, 1, 1),
    ])

    with pytest.raises(InsufficientData) as info:
        trainer.fit_poisson(dataset, ModelSpec.home_goals())
    assert info.value.response == "home_goals"


def test_negative_goals_are_schema_mismatch(trainer):
    dataset = Dataset.from_records([
        MatchRecord(1, "2008/2009", 1, 2, -1, 1),
        MatchRecord(2, "2008/2009", 2, 1, 0, 3),
    ])

    with pytest.raises(SchemaMismatch):
        trainer.fit_poisson(dataset, ModelSpec.home_goals())


def test_iteration_limit_is_convergence_failure(tmp_path, poisson_league):
    trainer = ModelTrainer(tmp_path, config=FitConfig(max_iter=1))

    with pytest.raises(ConvergenceFailure) as info:
        trainer.fit_poisson(poisson_league.dataset, ModelSpec.home_goals())
    assert info.value.stage == "poisson"


# =============================================================================
# Negative binomial
# =============================================================================

def test_nb_fit_structure(trainer, nb_league):
    model = trainer.fit_negative_binomial(nb_league.dataset, ModelSpec.home_goals())

    assert model.family == "negative_binomial"
    assert model.theta > 0
    assert model.n_parameters == 15
    assert len(model.fitted_values) == len(nb_league.dataset)
    np.testing.assert_allclose(
        model.variance(model.fitted_values),
        model.fitted_values + model.fitted_values ** 2 / model.theta,
    )


def test_nb_improves_likelihood_on_overdispersed_data(trainer, nb_league):
    spec = ModelSpec.home_goals()
    poisson = trainer.fit_poisson(nb_league.dataset, spec)
    nb = trainer.fit(nb_league.dataset, spec.with_family("negative_binomial"))

    assert nb.log_likelihood > poisson.log_likelihood
    assert nb.aic < poisson.aic


def test_nb_recovers_theta_and_coefficients(trainer):
    league = simulate_matches(
        SimulationParams(n_teams=8, n_seasons=30, theta=2.0, effect_scale=0.3),
        seed=2024,
    )

    model = trainer.fit_negative_binomial(league.dataset, ModelSpec.home_goals())

    truth = league.true_coefficients("home_goals")
    estimates = pd.Series(model.params, index=model.column_names)
    assert model.theta == pytest.approx(2.0, abs=0.8)
    assert (estimates - truth[estimates.index]).abs().max() < 0.4


def test_theta_recovered_for_away_goals_in_long_history(trainer):
    league = simulate_matches(
        SimulationParams(n_teams=6, n_seasons=64, theta=1.5), seed=99
    )

    model = trainer.fit_negative_binomial(league.dataset, ModelSpec.away_goals())

    assert model.theta == pytest.approx(1.5, abs=0.5)


def test_estimate_theta_matches_likelihood_maximum():
    rng = np.random.default_rng(5)
    mu = np.full(4000, 2.0)
    y = rng.poisson(rng.gamma(shape=3.0, scale=mu / 3.0))

    theta = estimate_theta(y, mu)

    assert theta == pytest.approx(3.0, rel=0.25)
    for other in (theta * 0.9, theta * 1.1):
        assert nb_log_likelihood(y, mu, theta) > nb_log_likelihood(y, mu, other)


def test_estimate_theta_fails_without_spread():
    y = np.array([1.0, 2.0, 3.0])

    with pytest.raises(DispersionEstimationFailure):
        estimate_theta(y, y.copy(), response="home_goals")


def test_estimate_theta_clamped_for_underdispersed_counts(caplog):
    y = np.array([2.0, 2.0, 2.0, 1.0, 3.0] * 20)
    mu = np.full(len(y), 2.0)
    config = FitConfig(theta_max=1e4)

    with caplog.at_level(logging.WARNING, logger="goal_glm.model_training"):
        theta = estimate_theta(y, mu, config, response="home_goals")

    assert theta == config.theta_max
    assert "clamping" in caplog.text


def test_estimate_theta_fails_when_newton_does_not_settle():
    rng = np.random.default_rng(0)
    mu = np.full(500, 1.5)
    y = rng.negative_binomial(2.0, 2.0 / (2.0 + mu)).astype(float)

    with pytest.raises(DispersionEstimationFailure) as info:
        estimate_theta(y, mu, FitConfig(theta_max_iter=1), response="away_goals")
    assert info.value.stage == "theta"
    assert info.value.response == "away_goals"


# =============================================================================
# Snapshots
# =============================================================================

def test_save_and_load_snapshot(trainer, poisson_league):
    model = trainer.fit_poisson(poisson_league.dataset, ModelSpec.home_goals())

    first = trainer.save(model, name="home_goals_poisson")
    second = trainer.save(model, name="home_goals_poisson")
    loaded, metadata = trainer.load(second)

    assert first.endswith("home_goals_poisson_v001.joblib")
    assert second.endswith("home_goals_poisson_v002.joblib")
    pd.testing.assert_frame_equal(loaded.coefficient_table(), model.coefficient_table())
    assert metadata["family"] == "poisson"
    assert metadata["reference_levels"] == {"home_team_id": 1601, "away_team_id": 1601}
    assert metadata["degrees_of_freedom"] == model.degrees_of_freedom
    assert metadata["artifact_path"] == second


def test_snapshot_metadata_is_json(trainer, nb_league):
    model = trainer.fit_negative_binomial(nb_league.dataset, ModelSpec.away_goals())

    path = trainer.save(model, name="away_goals_nb")

    with open(path.replace(".joblib", ".meta.json")) as f:
        metadata = json.load(f)
    assert metadata["theta"] == pytest.approx(model.theta)
    assert metadata["column_names"] == list(model.column_names)
