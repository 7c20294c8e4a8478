import copy
import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from ..distributions import BaseDistribution


class TrialState(Enum):
    """
    Represents the state of a trial.

    A trial starts as RUNNING and moves exactly once to one of the terminal
    states.
    """
    RUNNING = "RUNNING"
    COMPLETE = "COMPLETE"
    PRUNED = "PRUNED"
    FAILED = "FAILED"

    def is_finished(self) -> bool:
        return self != TrialState.RUNNING


class StudyDirection(Enum):
    """The optimization direction of a study."""
    MINIMIZE = "minimize"
    MAXIMIZE = "maximize"

    @classmethod
    def parse(cls, direction: Union[str, "StudyDirection"]) -> "StudyDirection":
        if isinstance(direction, StudyDirection):
            return direction
        try:
            return cls(str(direction).lower())
        except ValueError as e:
            raise ValueError(
                f"Please set either 'minimize' or 'maximize' to direction, got {direction!r}."
            ) from e


@dataclass
class FrozenTrial:
    """
    A snapshot of a trial record as held by storage.

    Attributes:
        trial_id: The unique identifier for the trial.
        study_id: The ID of the study this trial belongs to.
        number: The 0-based position of the trial within its study.
        state: The current state of the trial (e.g., RUNNING, COMPLETE).
        value: The objective value obtained by the trial.
        datetime_start: The time when the trial started.
        datetime_complete: The time when the trial reached a terminal state.
        params: Suggested values in their external representation.
        distributions: The distribution each parameter was suggested from.
        internal_params: Suggested values in their internal representation.
        user_attrs: String attributes set by the objective function.
        system_attrs: String attributes set by the framework.
        intermediate_values: Values reported with ``Trial.report`` keyed by step.
    """
    trial_id: int
    study_id: int
    number: int
    state: TrialState
    value: Optional[float] = None
    datetime_start: Optional[datetime.datetime] = None
    datetime_complete: Optional[datetime.datetime] = None
    params: Dict[str, Any] = field(default_factory=dict)
    distributions: Dict[str, BaseDistribution] = field(default_factory=dict)
    internal_params: Dict[str, float] = field(default_factory=dict)
    user_attrs: Dict[str, str] = field(default_factory=dict)
    system_attrs: Dict[str, str] = field(default_factory=dict)
    intermediate_values: Dict[int, float] = field(default_factory=dict)

    @property
    def last_step(self) -> Optional[int]:
        if not self.intermediate_values:
            return None
        return max(self.intermediate_values)

    @property
    def duration(self) -> Optional[datetime.timedelta]:
        if self.datetime_start is None or self.datetime_complete is None:
            return None
        return self.datetime_complete - self.datetime_start

    def copy(self) -> "FrozenTrial":
        return copy.deepcopy(self)


@dataclass
class StudySummary:
    """Basic attributes and aggregated results of a study."""
    study_id: int
    study_name: str
    direction: StudyDirection
    n_trials: int
    best_trial: Optional[FrozenTrial] = None
    user_attrs: Dict[str, str] = field(default_factory=dict)
    system_attrs: Dict[str, str] = field(default_factory=dict)
    datetime_start: Optional[datetime.datetime] = None
