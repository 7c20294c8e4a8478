import numpy as np
import pytest

import trialkit
from trialkit import Trial, TrialState
from trialkit.distributions import LogUniformDistribution, UniformDistribution
from trialkit.exceptions import DistributionConflictError
from trialkit.samplers import RandomSampler
from trialkit.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["inmemory", "sqlite"])
def study(request, tmp_path):
    """A fixture for a study on each storage backend."""
    if request.param == "inmemory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(str(tmp_path / "trial.db"))
    return trialkit.create_study(
        study_name="example",
        storage=storage,
        sampler=RandomSampler(seed=0),
        direction="minimize",
    )


@pytest.fixture
def trial(study):
    trial_id = study.storage.create_new_trial_id(study.study_id)
    return Trial(study, trial_id)


@pytest.mark.parametrize("suggest", [
    lambda t: t.suggest_uniform("x", -10, 10),
    lambda t: t.suggest_loguniform("x", 1e-5, 1e10),
    lambda t: t.suggest_discrete_uniform("x", -10, 10, 0.1),
    lambda t: t.suggest_int("x", -10, 10),
    lambda t: t.suggest_categorical("x", ["adam", "sgd", "rmsprop"]),
    lambda t: t.suggest_float("x", 1e-3, 1.0, log=True),
])
def test_repeated_suggest_returns_same_value(trial, suggest):
    first = suggest(trial)
    for _ in range(3):
        assert suggest(trial) == first
    assert trial.params == {"x": first}


@pytest.mark.parametrize("second", [
    lambda t: t.suggest_uniform("x", 0, 5),
    lambda t: t.suggest_uniform("x", -10, 11),
    lambda t: t.suggest_loguniform("x", 1, 10),
    lambda t: t.suggest_int("x", -10, 10),
    lambda t: t.suggest_discrete_uniform("x", -10, 10, 0.5),
    lambda t: t.suggest_categorical("x", ["a", "b"]),
])
def test_conflicting_distribution_raises(trial, second):
    trial.suggest_uniform("x", -10, 10)
    with pytest.raises(DistributionConflictError):
        second(trial)
    assert trial.distributions == {"x": UniformDistribution(-10, 10)}


def test_suggest_int_returns_int(trial):
    value = trial.suggest_int("n_layers", 1, 5)
    assert isinstance(value, int)
    assert 1 <= value <= 5


def test_suggest_discrete_uniform_on_grid(trial):
    for i in range(50):
        value = trial.suggest_discrete_uniform(f"x{i}", -10, 10, 0.1)
        assert -10 <= value <= 10
        steps = (value + 10) / 0.1
        assert steps == pytest.approx(round(steps), abs=1e-6)


def test_suggest_loguniform_within_bounds(trial):
    for i in range(50):
        value = trial.suggest_loguniform(f"x{i}", 1e-5, 1e10)
        assert 1e-5 <= value <= 1e10


def test_suggest_float_dispatch(trial):
    trial.suggest_float("lr", 1e-4, 1e-1, log=True)
    trial.suggest_float("dropout", 0.0, 0.5, step=0.1)
    trial.suggest_float("momentum", 0.0, 1.0)

    distributions = trial.distributions
    assert distributions["lr"] == LogUniformDistribution(1e-4, 1e-1)
    assert distributions["dropout"].q == 0.1
    assert distributions["momentum"] == UniformDistribution(0.0, 1.0)

    with pytest.raises(ValueError):
        trial.suggest_float("bad", 1e-4, 1e-1, step=0.1, log=True)


def test_handles_share_state_through_storage(study, trial):
    other = Trial(study, trial.trial_id)

    value = trial.suggest_uniform("x", -10, 10)
    assert other.suggest_uniform("x", -10, 10) == value
    with pytest.raises(DistributionConflictError):
        other.suggest_uniform("x", 0, 1)

    other.set_user_attr("note", "from other handle")
    assert trial.user_attrs == {"note": "from other handle"}


def test_user_attrs(trial):
    trial.set_user_attr("hello", "world")
    attrs = trial.user_attrs
    assert attrs["hello"] == "world"
    assert "hello" not in trial.system_attrs


def test_system_attrs(trial):
    trial.set_system_attr("hello", "world")
    attrs = trial.system_attrs
    assert attrs["hello"] == "world"
    assert "hello" not in trial.user_attrs


def test_number_and_start_time(study):
    first = Trial(study, study.storage.create_new_trial_id(study.study_id))
    second = Trial(study, study.storage.create_new_trial_id(study.study_id))
    assert (first.number, second.number) == (0, 1)
    assert first.datetime_start is not None


def test_report_records_intermediate_values(study, trial):
    trial.report(0.9, step=0)
    trial.report(0.7, step=1)

    stored = study.storage.get_trial(trial.trial_id)
    assert stored.intermediate_values == {0: 0.9, 1: 0.7}
    assert stored.state == TrialState.RUNNING

    with pytest.raises(TypeError):
        trial.report("high", step=2)
    with pytest.raises(ValueError):
        trial.report(0.5, step=-1)


def test_should_prune_consults_pruner(study, trial):
    calls = []

    class RecordingPruner:
        def should_prune(self, study, frozen_trial):
            calls.append(frozen_trial.trial_id)
            return frozen_trial.last_step is not None and frozen_trial.last_step >= 2

    assert not trial.should_prune()

    study.pruner = RecordingPruner()
    trial.report(1.0, step=1)
    assert not trial.should_prune()
    trial.report(1.0, step=2)
    assert trial.should_prune()
    assert calls == [trial.trial_id, trial.trial_id]


class FixedIndexSampler:
    """Always draws the same internal value."""

    def __init__(self, internal):
        self.internal = internal

    def sample(self, study, trial, param_name, distribution, history):
        return self.internal


def test_categorical_keeps_drawn_index_for_equal_choices(study, trial):
    study.sampler = FixedIndexSampler(1.0)

    first = trial.suggest_categorical("flag", [1, True])
    assert first is True
    assert trial.suggest_categorical("flag", [1, True]) is True
    assert trial.params["flag"] is True
    assert study.storage.get_trial(trial.trial_id).internal_params["flag"] == 1.0


def test_suggest_with_numpy_scalar_arguments(study, trial):
    n = trial.suggest_int("n", np.int64(1), np.int64(5))
    lr = trial.suggest_uniform("lr", np.float64(0.0), np.float64(1.0))
    act = trial.suggest_categorical("act", np.array(["relu", "tanh"]))

    assert isinstance(n, int)
    assert 1 <= n <= 5
    assert 0.0 <= lr <= 1.0
    assert act in ("relu", "tanh")
    assert trial.suggest_int("n", 1, 5) == n
