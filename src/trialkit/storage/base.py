from typing import Any, Dict, List, Optional, Protocol

from ..core.frozen import FrozenTrial, StudyDirection, StudySummary, TrialState
from ..distributions import BaseDistribution


class BaseStorage(Protocol):
    """
    Interface for storage backends.

    A storage is the ledger of every study and trial record. All operations
    must be safe to call concurrently from several workers: trial ids are
    allocated atomically and reads never observe a half-applied write.
    Unknown study or trial ids raise ``NotFoundError``.
    """

    # Studies

    def create_new_study(self, direction: StudyDirection, study_name: Optional[str] = None) -> int:
        """
        Creates a new study in the backend.

        Args:
            direction: The optimization direction.
            study_name: The name of the study. A unique name is generated when omitted.

        Returns:
            The unique ID of the newly created study.

        Raises:
            DuplicatedStudyError: If a study with the same name already exists.
        """
        ...

    def get_study_id_from_name(self, study_name: str) -> int:
        ...

    def get_study_name_from_id(self, study_id: int) -> str:
        ...

    def get_study_direction(self, study_id: int) -> StudyDirection:
        ...

    def set_study_user_attr(self, study_id: int, key: str, value: str) -> None:
        ...

    def get_study_user_attrs(self, study_id: int) -> Dict[str, str]:
        ...

    def set_study_system_attr(self, study_id: int, key: str, value: str) -> None:
        ...

    def get_study_system_attrs(self, study_id: int) -> Dict[str, str]:
        ...

    def get_all_study_summaries(self) -> List[StudySummary]:
        ...

    # Trials

    def create_new_trial_id(self, study_id: int) -> int:
        """
        Atomically allocates the next trial id of a study.

        The new trial is RUNNING. Ids are unique and strictly increasing
        even when several callers race.
        """
        ...

    def set_trial_state(self, trial_id: int, state: TrialState) -> None:
        ...

    def set_trial_value(self, trial_id: int, value: float) -> None:
        ...

    def set_trial_intermediate_value(self, trial_id: int, step: int, value: float) -> None:
        ...

    def set_trial_param(
        self, trial_id: int, param_name: str, param_value_internal: float, distribution: BaseDistribution
    ) -> bool:
        """
        Records a parameter of a trial.

        Returns:
            ``True`` if the parameter was written, ``False`` if it was already
            recorded with an identical distribution. In that case the stored
            value is left unchanged.

        Raises:
            DistributionConflictError: If the parameter is already recorded
                with a different distribution.
        """
        ...

    def get_trial_params(self, trial_id: int) -> Dict[str, Any]:
        """Returns the parameters of a trial in their external representation."""
        ...

    def set_trial_user_attr(self, trial_id: int, key: str, value: str) -> None:
        ...

    def get_trial_user_attrs(self, trial_id: int) -> Dict[str, str]:
        ...

    def set_trial_system_attr(self, trial_id: int, key: str, value: str) -> None:
        ...

    def get_trial_system_attrs(self, trial_id: int) -> Dict[str, str]:
        ...

    def get_trial(self, trial_id: int) -> FrozenTrial:
        ...

    def get_trial_number_from_id(self, trial_id: int) -> int:
        ...

    def get_all_trials(self, study_id: int) -> List[FrozenTrial]:
        """
        Retrieves all trials associated with a study, ordered by trial id.

        The returned records are snapshots; mutating them does not affect
        the storage.
        """
        ...

    def get_best_trial(self, study_id: int) -> FrozenTrial:
        """
        Returns the best COMPLETE trial according to the study direction.

        Raises:
            ValueError: If no trial has completed yet.
        """
        ...


def check_attr_value(key: str, value: str) -> None:
    if not isinstance(key, str) or not isinstance(value, str):
        raise TypeError(f"Attribute keys and values must be strings, got {key!r}: {value!r}.")


def select_best_trial(trials: List[FrozenTrial], direction: StudyDirection) -> FrozenTrial:
    complete_trials = [t for t in trials if t.state == TrialState.COMPLETE]
    if not complete_trials:
        raise ValueError("No trials are completed yet.")

    if direction == StudyDirection.MAXIMIZE:
        return max(complete_trials, key=lambda t: t.value)
    return min(complete_trials, key=lambda t: t.value)


def check_param_value(param_name: str, param_value_internal: float, distribution: BaseDistribution) -> None:
    if not distribution.contains(param_value_internal):
        raise ValueError(
            f"The value {param_value_internal} of parameter `{param_name}` is outside of {distribution}."
        )
