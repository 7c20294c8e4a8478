import copy
import datetime
import threading
import uuid
from typing import Any, Dict, List, Optional

from ..core.frozen import FrozenTrial, StudyDirection, StudySummary, TrialState
from ..distributions import BaseDistribution
from ..exceptions import (
    DistributionConflictError,
    DuplicatedStudyError,
    NotFoundError,
    TrialAlreadyFinishedError,
)
from ..log import get_logger
from .base import check_attr_value, check_param_value, select_best_trial

logger = get_logger(__name__)


class _StudyRecord:
    def __init__(self, study_id: int, name: str, direction: StudyDirection):
        self.study_id = study_id
        self.name = name
        self.direction = direction
        self.user_attrs: Dict[str, str] = {}
        self.system_attrs: Dict[str, str] = {}
        self.trial_ids: List[int] = []
        self.datetime_start = datetime.datetime.now()


class InMemoryStorage:
    """
    A non-persistent storage backend holding all records in process memory.

    Every operation runs under one re-entrant lock and reads return deep
    copies, so concurrent callers never observe a partially applied write.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._studies: Dict[int, _StudyRecord] = {}
        self._study_name_to_id: Dict[str, int] = {}
        self._trials: Dict[int, FrozenTrial] = {}
        self._next_study_id = 0
        self._next_trial_id = 0

    # Studies

    def create_new_study(self, direction: StudyDirection, study_name: Optional[str] = None) -> int:
        with self._lock:
            if study_name is None:
                study_name = f"no-name-{uuid.uuid4()}"
            if study_name in self._study_name_to_id:
                raise DuplicatedStudyError(f"Another study with name '{study_name}' already exists.")

            study_id = self._next_study_id
            self._next_study_id += 1
            self._studies[study_id] = _StudyRecord(study_id, study_name, StudyDirection.parse(direction))
            self._study_name_to_id[study_name] = study_id
            logger.debug("Created study '%s' with ID %d.", study_name, study_id)
            return study_id

    def get_study_id_from_name(self, study_name: str) -> int:
        with self._lock:
            if study_name not in self._study_name_to_id:
                raise NotFoundError(f"No such study {study_name}.")
            return self._study_name_to_id[study_name]

    def get_study_name_from_id(self, study_id: int) -> str:
        with self._lock:
            return self._get_study(study_id).name

    def get_study_direction(self, study_id: int) -> StudyDirection:
        with self._lock:
            return self._get_study(study_id).direction

    def set_study_user_attr(self, study_id: int, key: str, value: str) -> None:
        check_attr_value(key, value)
        with self._lock:
            self._get_study(study_id).user_attrs[key] = value

    def get_study_user_attrs(self, study_id: int) -> Dict[str, str]:
        with self._lock:
            return dict(self._get_study(study_id).user_attrs)

    def set_study_system_attr(self, study_id: int, key: str, value: str) -> None:
        check_attr_value(key, value)
        with self._lock:
            self._get_study(study_id).system_attrs[key] = value

    def get_study_system_attrs(self, study_id: int) -> Dict[str, str]:
        with self._lock:
            return dict(self._get_study(study_id).system_attrs)

    def get_all_study_summaries(self) -> List[StudySummary]:
        with self._lock:
            summaries = []
            for study in self._studies.values():
                trials = [self._trials[trial_id] for trial_id in study.trial_ids]
                try:
                    best_trial: Optional[FrozenTrial] = select_best_trial(trials, study.direction).copy()
                except ValueError:
                    best_trial = None
                summaries.append(StudySummary(
                    study_id=study.study_id,
                    study_name=study.name,
                    direction=study.direction,
                    n_trials=len(trials),
                    best_trial=best_trial,
                    user_attrs=dict(study.user_attrs),
                    system_attrs=dict(study.system_attrs),
                    datetime_start=study.datetime_start,
                ))
            return summaries

    # Trials

    def create_new_trial_id(self, study_id: int) -> int:
        with self._lock:
            study = self._get_study(study_id)
            trial_id = self._next_trial_id
            self._next_trial_id += 1
            self._trials[trial_id] = FrozenTrial(
                trial_id=trial_id,
                study_id=study_id,
                number=len(study.trial_ids),
                state=TrialState.RUNNING,
                datetime_start=datetime.datetime.now(),
            )
            study.trial_ids.append(trial_id)
            return trial_id

    def set_trial_state(self, trial_id: int, state: TrialState) -> None:
        with self._lock:
            trial = self._get_updatable_trial(trial_id)
            trial.state = state
            if state.is_finished():
                trial.datetime_complete = datetime.datetime.now()

    def set_trial_value(self, trial_id: int, value: float) -> None:
        with self._lock:
            self._get_updatable_trial(trial_id).value = value

    def set_trial_intermediate_value(self, trial_id: int, step: int, value: float) -> None:
        with self._lock:
            self._get_updatable_trial(trial_id).intermediate_values[step] = value

    def set_trial_param(
        self, trial_id: int, param_name: str, param_value_internal: float, distribution: BaseDistribution
    ) -> bool:
        with self._lock:
            trial = self._get_updatable_trial(trial_id)
            recorded = trial.distributions.get(param_name)
            if recorded is not None:
                if recorded != distribution:
                    raise DistributionConflictError(
                        f"Parameter `{param_name}` of trial {trial_id} is already recorded with "
                        f"{recorded}, cannot record it with {distribution}."
                    )
                return False

            check_param_value(param_name, param_value_internal, distribution)

            trial.internal_params[param_name] = param_value_internal
            trial.distributions[param_name] = distribution
            trial.params[param_name] = distribution.to_external_repr(param_value_internal)
            return True

    def get_trial_params(self, trial_id: int) -> Dict[str, Any]:
        with self._lock:
            return dict(self._get_trial(trial_id).params)

    def set_trial_user_attr(self, trial_id: int, key: str, value: str) -> None:
        check_attr_value(key, value)
        with self._lock:
            self._get_trial(trial_id).user_attrs[key] = value

    def get_trial_user_attrs(self, trial_id: int) -> Dict[str, str]:
        with self._lock:
            return dict(self._get_trial(trial_id).user_attrs)

    def set_trial_system_attr(self, trial_id: int, key: str, value: str) -> None:
        check_attr_value(key, value)
        with self._lock:
            self._get_trial(trial_id).system_attrs[key] = value

    def get_trial_system_attrs(self, trial_id: int) -> Dict[str, str]:
        with self._lock:
            return dict(self._get_trial(trial_id).system_attrs)

    def get_trial(self, trial_id: int) -> FrozenTrial:
        with self._lock:
            return self._get_trial(trial_id).copy()

    def get_trial_number_from_id(self, trial_id: int) -> int:
        with self._lock:
            return self._get_trial(trial_id).number

    def get_all_trials(self, study_id: int) -> List[FrozenTrial]:
        with self._lock:
            study = self._get_study(study_id)
            return copy.deepcopy([self._trials[trial_id] for trial_id in study.trial_ids])

    def get_best_trial(self, study_id: int) -> FrozenTrial:
        with self._lock:
            study = self._get_study(study_id)
            trials = [self._trials[trial_id] for trial_id in study.trial_ids]
            return select_best_trial(trials, study.direction).copy()

    def _get_study(self, study_id: int) -> _StudyRecord:
        if study_id not in self._studies:
            raise NotFoundError(f"No study with study_id {study_id} exists.")
        return self._studies[study_id]

    def _get_trial(self, trial_id: int) -> FrozenTrial:
        if trial_id not in self._trials:
            raise NotFoundError(f"No trial with trial_id {trial_id} exists.")
        return self._trials[trial_id]

    def _get_updatable_trial(self, trial_id: int) -> FrozenTrial:
        trial = self._get_trial(trial_id)
        if trial.state.is_finished():
            raise TrialAlreadyFinishedError(
                f"Trial {trial_id} has already finished with state {trial.state.name} and cannot be updated."
            )
        return trial
