from typing import TYPE_CHECKING, Protocol

import numpy as np

from .core.frozen import FrozenTrial, StudyDirection, TrialState

if TYPE_CHECKING:
    from .core.study import Study


class BasePruner(Protocol):
    """
    Interface for pruning strategies.

    The objective function consults the pruner through
    ``Trial.should_prune()``, usually right after ``Trial.report()``, and
    raises ``TrialPruned`` when it answers ``True``.
    """

    def should_prune(self, study: "Study", trial: FrozenTrial) -> bool:
        ...


class NopPruner:
    """A pruner that never prunes."""

    def should_prune(self, study: "Study", trial: FrozenTrial) -> bool:
        return False


class MedianPruner:
    """
    A pruner that stops trials performing worse than the median of previous trials.

    This pruner compares the latest intermediate value of a trial against the
    median of the values completed trials reported at the same step, and
    prunes if the current trial's value is worse.

    Attributes:
        n_startup_trials (int): Number of trials to complete before pruning is active.
        n_warmup_steps (int): Minimum step before a trial can be pruned.
    """
    def __init__(self, n_startup_trials: int = 5, n_warmup_steps: int = 0):
        if n_startup_trials < 0:
            raise ValueError(f"Number of startup trials cannot be negative but got {n_startup_trials}.")
        if n_warmup_steps < 0:
            raise ValueError(f"Number of warmup steps cannot be negative but got {n_warmup_steps}.")
        self.n_startup_trials = n_startup_trials
        self.n_warmup_steps = n_warmup_steps

    def should_prune(self, study: "Study", trial: FrozenTrial) -> bool:
        step = trial.last_step
        if step is None or step < self.n_warmup_steps:
            return False

        completed_trials = study.get_trials(states=(TrialState.COMPLETE,))
        if len(completed_trials) < self.n_startup_trials or not completed_trials:
            return False

        step_values = [
            t.intermediate_values[step] for t in completed_trials if step in t.intermediate_values
        ]
        if not step_values:
            return False

        median_value = float(np.median(step_values))
        value = trial.intermediate_values[step]
        if np.isnan(value):
            return True
        if study.direction == StudyDirection.MAXIMIZE:
            return value < median_value
        return value > median_value
