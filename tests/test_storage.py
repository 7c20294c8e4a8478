import math
import threading

import numpy as np
import pytest

from trialkit import StudyDirection, TrialState
from trialkit.distributions import (
    CategoricalDistribution,
    IntUniformDistribution,
    UniformDistribution,
)
from trialkit.exceptions import (
    DistributionConflictError,
    DuplicatedStudyError,
    NotFoundError,
    TrialAlreadyFinishedError,
)
from trialkit.storage import InMemoryStorage, SQLiteStorage, get_storage


@pytest.fixture(params=["inmemory", "sqlite"])
def storage(request, tmp_path):
    """Every storage backend must honour the same contract."""
    if request.param == "inmemory":
        return InMemoryStorage()
    return SQLiteStorage(str(tmp_path / "trialkit.db"))


@pytest.fixture
def study_id(storage):
    return storage.create_new_study(StudyDirection.MINIMIZE, "storage-test")


def test_create_and_lookup_study(storage):
    study_id = storage.create_new_study(StudyDirection.MAXIMIZE, "my-study")

    assert storage.get_study_id_from_name("my-study") == study_id
    assert storage.get_study_name_from_id(study_id) == "my-study"
    assert storage.get_study_direction(study_id) == StudyDirection.MAXIMIZE


def test_generated_study_names_are_unique(storage):
    first = storage.create_new_study(StudyDirection.MINIMIZE)
    second = storage.create_new_study(StudyDirection.MINIMIZE)
    assert storage.get_study_name_from_id(first) != storage.get_study_name_from_id(second)


def test_duplicated_study_name(storage):
    storage.create_new_study(StudyDirection.MINIMIZE, "dup")
    with pytest.raises(DuplicatedStudyError):
        storage.create_new_study(StudyDirection.MINIMIZE, "dup")


def test_unknown_ids_raise_not_found(storage, study_id):
    with pytest.raises(NotFoundError):
        storage.get_study_id_from_name("missing")
    with pytest.raises(NotFoundError):
        storage.get_study_direction(study_id + 100)
    with pytest.raises(NotFoundError):
        storage.create_new_trial_id(study_id + 100)
    with pytest.raises(NotFoundError):
        storage.get_trial(12345)
    with pytest.raises(NotFoundError):
        storage.set_trial_state(12345, TrialState.COMPLETE)
    with pytest.raises(NotFoundError):
        storage.set_trial_user_attr(12345, "key", "value")


def test_new_trial_is_running(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    trial = storage.get_trial(trial_id)

    assert trial.state == TrialState.RUNNING
    assert trial.study_id == study_id
    assert trial.number == 0
    assert trial.value is None
    assert trial.datetime_start is not None
    assert trial.datetime_complete is None


def test_trial_ids_increase_and_numbers_are_per_study(storage):
    study_a = storage.create_new_study(StudyDirection.MINIMIZE, "a")
    study_b = storage.create_new_study(StudyDirection.MINIMIZE, "b")

    a0 = storage.create_new_trial_id(study_a)
    b0 = storage.create_new_trial_id(study_b)
    a1 = storage.create_new_trial_id(study_a)

    assert a0 < b0 < a1
    assert storage.get_trial_number_from_id(a0) == 0
    assert storage.get_trial_number_from_id(a1) == 1
    assert storage.get_trial_number_from_id(b0) == 0


def test_concurrent_trial_id_allocation(storage, study_id):
    """
    Tests that racing callers never receive the same trial id.
    """
    n_threads, per_thread = 8, 25
    results = [[] for _ in range(n_threads)]
    barrier = threading.Barrier(n_threads)

    def allocate(index):
        barrier.wait()
        for _ in range(per_thread):
            results[index].append(storage.create_new_trial_id(study_id))

    threads = [threading.Thread(target=allocate, args=(i,)) for i in range(n_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    all_ids = [trial_id for ids in results for trial_id in ids]
    assert len(all_ids) == n_threads * per_thread
    assert len(set(all_ids)) == len(all_ids)
    for ids in results:
        assert ids == sorted(ids)

    trials = storage.get_all_trials(study_id)
    assert [t.trial_id for t in trials] == sorted(all_ids)
    assert sorted(t.number for t in trials) == list(range(len(all_ids)))


def test_state_and_value(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_value(trial_id, 0.5)
    storage.set_trial_state(trial_id, TrialState.COMPLETE)

    trial = storage.get_trial(trial_id)
    assert trial.state == TrialState.COMPLETE
    assert trial.value == 0.5
    assert trial.datetime_complete is not None


def test_finished_trial_cannot_be_updated(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_state(trial_id, TrialState.FAILED)

    with pytest.raises(TrialAlreadyFinishedError):
        storage.set_trial_state(trial_id, TrialState.COMPLETE)
    with pytest.raises(TrialAlreadyFinishedError):
        storage.set_trial_value(trial_id, 1.0)
    with pytest.raises(TrialAlreadyFinishedError):
        storage.set_trial_param(trial_id, "x", 0.0, UniformDistribution(-1, 1))

    # Attributes stay writable.
    storage.set_trial_system_attr(trial_id, "note", "post-mortem")
    assert storage.get_trial(trial_id).state == TrialState.FAILED


def test_set_trial_param(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    distribution = UniformDistribution(-10, 10)

    assert storage.set_trial_param(trial_id, "x", 1.5, distribution)
    # Same distribution: the stored value wins.
    assert not storage.set_trial_param(trial_id, "x", 7.0, distribution)
    assert storage.get_trial_params(trial_id) == {"x": 1.5}

    with pytest.raises(DistributionConflictError):
        storage.set_trial_param(trial_id, "x", 1.0, UniformDistribution(0, 5))
    with pytest.raises(DistributionConflictError):
        storage.set_trial_param(trial_id, "x", 1.0, IntUniformDistribution(-10, 10))


def test_set_trial_param_rejects_out_of_range_value(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    with pytest.raises(ValueError):
        storage.set_trial_param(trial_id, "x", 11.0, UniformDistribution(-10, 10))


def test_params_are_returned_in_external_form(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_param(trial_id, "optimizer", 1.0, CategoricalDistribution(("adam", "sgd")))
    storage.set_trial_param(trial_id, "layers", 3.0, IntUniformDistribution(1, 5))

    trial = storage.get_trial(trial_id)
    assert trial.params == {"optimizer": "sgd", "layers": 3}
    assert list(trial.params) == ["optimizer", "layers"]
    assert trial.internal_params == {"optimizer": 1.0, "layers": 3.0}
    assert trial.distributions["optimizer"] == CategoricalDistribution(("adam", "sgd"))


def test_attribute_namespaces_are_disjoint(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_user_attr(trial_id, "hello", "world")
    storage.set_trial_system_attr(trial_id, "seed", "42")
    storage.set_trial_user_attr(trial_id, "hello", "again")

    assert storage.get_trial_user_attrs(trial_id) == {"hello": "again"}
    assert storage.get_trial_system_attrs(trial_id) == {"seed": "42"}


def test_attribute_values_must_be_strings(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    with pytest.raises(TypeError):
        storage.set_trial_user_attr(trial_id, "count", 3)


def test_intermediate_values(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_intermediate_value(trial_id, 0, 1.0)
    storage.set_trial_intermediate_value(trial_id, 1, 0.5)
    storage.set_trial_intermediate_value(trial_id, 1, 0.25)

    trial = storage.get_trial(trial_id)
    assert trial.intermediate_values == {0: 1.0, 1: 0.25}
    assert trial.last_step == 1


def test_nan_intermediate_value(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_intermediate_value(trial_id, 0, float("nan"))
    storage.set_trial_intermediate_value(trial_id, 1, 0.5)

    values = storage.get_trial(trial_id).intermediate_values
    assert math.isnan(values[0])
    assert values[1] == 0.5


def test_numpy_scalar_bounds(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    assert storage.set_trial_param(trial_id, "n", 3.0, IntUniformDistribution(np.int64(1), np.int64(5)))
    assert storage.set_trial_param(trial_id, "lr", 0.5, UniformDistribution(np.float32(0), np.float64(1)))
    assert storage.set_trial_param(trial_id, "act", 1.0, CategoricalDistribution((np.str_("relu"), np.int64(2))))

    trial = storage.get_trial(trial_id)
    assert trial.params == {"n": 3, "lr": 0.5, "act": 2}
    assert trial.distributions["n"] == IntUniformDistribution(1, 5)
    assert not storage.set_trial_param(trial_id, "n", 3.0, IntUniformDistribution(1, 5))


def test_get_all_trials_returns_snapshots(storage, study_id):
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_param(trial_id, "x", 0.0, UniformDistribution(-1, 1))

    trials = storage.get_all_trials(study_id)
    trials[0].params["x"] = 99.0
    trials[0].state = TrialState.COMPLETE

    fresh = storage.get_trial(trial_id)
    assert fresh.params == {"x": 0.0}
    assert fresh.state == TrialState.RUNNING


@pytest.mark.parametrize("direction, expected", [
    (StudyDirection.MINIMIZE, 1.0),
    (StudyDirection.MAXIMIZE, 3.0),
])
def test_get_best_trial(storage, direction, expected):
    study_id = storage.create_new_study(direction, "best")
    with pytest.raises(ValueError):
        storage.get_best_trial(study_id)

    for value in (2.0, 1.0, 3.0):
        trial_id = storage.create_new_trial_id(study_id)
        storage.set_trial_value(trial_id, value)
        storage.set_trial_state(trial_id, TrialState.COMPLETE)
    failed = storage.create_new_trial_id(study_id)
    storage.set_trial_state(failed, TrialState.FAILED)

    assert storage.get_best_trial(study_id).value == expected


def test_study_user_attrs_and_summaries(storage, study_id):
    storage.set_study_user_attr(study_id, "dataset", "mnist")
    storage.set_study_system_attr(study_id, "dataset", "cifar10")
    trial_id = storage.create_new_trial_id(study_id)
    storage.set_trial_value(trial_id, 4.0)
    storage.set_trial_state(trial_id, TrialState.COMPLETE)

    assert storage.get_study_user_attrs(study_id) == {"dataset": "mnist"}
    assert storage.get_study_system_attrs(study_id) == {"dataset": "cifar10"}
    [summary] = storage.get_all_study_summaries()
    assert summary.study_name == "storage-test"
    assert summary.n_trials == 1
    assert summary.best_trial.value == 4.0
    assert summary.user_attrs == {"dataset": "mnist"}
    assert summary.system_attrs == {"dataset": "cifar10"}


def test_sqlite_storage_persists_across_instances(tmp_path):
    url = f"sqlite:///{tmp_path / 'persist.db'}"
    first = SQLiteStorage(url)
    study_id = first.create_new_study(StudyDirection.MINIMIZE, "persisted")
    trial_id = first.create_new_trial_id(study_id)
    first.set_trial_param(trial_id, "opt", 0.0, CategoricalDistribution(("adam", "sgd")))
    first.set_trial_value(trial_id, 0.1)
    first.set_trial_state(trial_id, TrialState.COMPLETE)

    second = SQLiteStorage(url)
    trial = second.get_trial(trial_id)
    assert second.get_study_id_from_name("persisted") == study_id
    assert trial.params == {"opt": "adam"}
    assert trial.state == TrialState.COMPLETE


def test_get_storage():
    assert isinstance(get_storage(None), InMemoryStorage)
    assert isinstance(get_storage(":memory:"), SQLiteStorage)
    storage = InMemoryStorage()
    assert get_storage(storage) is storage
