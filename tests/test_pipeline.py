from pathlib import Path

import numpy as np
import pytest

from goal_glm.dataset import Dataset
from goal_glm.exceptions import ConvergenceFailure, InsufficientData
from goal_glm.model_training import FitConfig, ModelTrainer
from goal_glm.pipeline import TERMINAL_STAGES, GoalModelPipeline, Stage
from goal_glm.simulation import SimulationParams, simulate_matches


@pytest.fixture(scope="module")
def underdispersed_dataset():
    # Binomial goals have variance below their mean
    league = simulate_matches(SimulationParams(n_teams=8, n_seasons=4), seed=3)
    frame = league.dataset.frame
    rng = np.random.default_rng(3)
    frame["home_goals"] = rng.binomial(4, 0.4, len(frame))
    frame["away_goals"] = rng.binomial(3, 0.4, len(frame))
    return Dataset(frame)


def test_overdispersed_league_is_refitted(trainer, nb_league):
    outcomes = GoalModelPipeline(trainer).run(nb_league.dataset)

    assert set(outcomes) == {"home_goals", "away_goals"}
    for response, outcome in outcomes.items():
        assert outcome.response == response
        assert outcome.stage == Stage.NEGATIVE_BINOMIAL_FIT
        assert outcome.diagnostics.overdispersion
        assert outcome.negative_binomial.theta > 0
        assert outcome.negative_binomial_diagnostics.family == "negative_binomial"
        assert outcome.final_model is outcome.negative_binomial
        assert outcome.stage in TERMINAL_STAGES


def test_underdispersed_league_is_accepted(trainer, underdispersed_dataset):
    outcomes = GoalModelPipeline(trainer).run(underdispersed_dataset)

    for outcome in outcomes.values():
        assert outcome.stage == Stage.ACCEPTED
        assert not outcome.diagnostics.overdispersion
        assert outcome.negative_binomial is None
        assert outcome.negative_binomial_diagnostics is None
        assert outcome.final_model is outcome.poisson


def test_poisson_leagues_always_reach_a_terminal_stage(trainer):
    # Some Poisson samples show residual variance just above 1; their refit
    # must still finish, with theta at most the configured ceiling
    theta_max = trainer.config.theta_max
    stages = []
    for seed in range(20):
        league = simulate_matches(SimulationParams(n_teams=6, n_seasons=40), seed=seed)
        outcome = GoalModelPipeline(trainer).run(league.dataset, responses=["home_goals"])["home_goals"]

        assert outcome.stage in TERMINAL_STAGES
        stages.append(outcome.stage)
        if outcome.stage == Stage.NEGATIVE_BINOMIAL_FIT:
            assert outcome.diagnostics.overdispersion
            assert 0 < outcome.negative_binomial.theta <= theta_max
        else:
            assert outcome.negative_binomial is None

    assert Stage.ACCEPTED in stages


def test_parallel_matches_sequential(trainer, nb_league):
    sequential = GoalModelPipeline(trainer, n_jobs=1).run(nb_league.dataset)
    parallel = GoalModelPipeline(trainer, n_jobs=2).run(nb_league.dataset)

    for response in sequential:
        a, b = sequential[response], parallel[response]
        assert a.stage == b.stage
        np.testing.assert_allclose(a.poisson.params, b.poisson.params, rtol=1e-10)
        np.testing.assert_allclose(a.final_model.params, b.final_model.params, rtol=1e-10)
        assert a.final_model.theta == pytest.approx(b.final_model.theta, rel=1e-10)
        assert a.diagnostics.residual_variance == pytest.approx(b.diagnostics.residual_variance, rel=1e-10)


def test_single_response(trainer, nb_league):
    outcomes = GoalModelPipeline(trainer).run(nb_league.dataset, responses=["away_goals"])

    assert list(outcomes) == ["away_goals"]


def test_snapshots_are_saved(trainer, nb_league):
    outcomes = GoalModelPipeline(trainer, save_snapshots=True).run(nb_league.dataset)

    for response, outcome in outcomes.items():
        names = [Path(p).name for p in outcome.snapshots]
        assert names == [f"{response}_poisson_v001.joblib", f"{response}_nb_v001.joblib"]
        assert all(Path(p).exists() for p in outcome.snapshots)

    model, metadata = trainer.load(outcomes["home_goals"].snapshots[1])
    assert metadata["family"] == "negative_binomial"
    assert model.theta == pytest.approx(outcomes["home_goals"].negative_binomial.theta)


def test_empty_dataset_fails_at_raw_stage(trainer, nb_league):
    empty = nb_league.dataset.filter(np.zeros(len(nb_league.dataset), dtype=bool))

    with pytest.raises(InsufficientData) as info:
        GoalModelPipeline(trainer).run(empty)
    assert info.value.response == "home_goals"
    assert info.value.stage == Stage.RAW.value


def test_degenerate_model_fails_loudly(trainer, four_matches):
    with pytest.raises(InsufficientData) as info:
        GoalModelPipeline(trainer).run(four_matches)
    assert info.value.stage == "diagnostics"
    assert "home_goals" in str(info.value)


def test_failure_context_survives_worker_processes(trainer, four_matches):
    with pytest.raises(InsufficientData) as info:
        GoalModelPipeline(trainer, n_jobs=2).run(four_matches)
    assert info.value.response in ("home_goals", "away_goals")
    assert info.value.stage == "diagnostics"


def test_convergence_failure_is_surfaced(tmp_path, nb_league):
    trainer = ModelTrainer(tmp_path, config=FitConfig(max_iter=1))

    with pytest.raises(ConvergenceFailure) as info:
        GoalModelPipeline(trainer).run(nb_league.dataset)
    assert info.value.response == "home_goals"
    assert info.value.stage == "poisson"
