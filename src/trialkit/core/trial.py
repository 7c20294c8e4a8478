import datetime
import math
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from ..distributions import (
    BaseDistribution,
    CategoricalChoiceType,
    CategoricalDistribution,
    DiscreteUniformDistribution,
    IntUniformDistribution,
    LogUniformDistribution,
    UniformDistribution,
)
from ..exceptions import DistributionConflictError
from ..log import get_logger

if TYPE_CHECKING:
    from .study import Study

logger = get_logger(__name__)


class Trial:
    """
    An object passed to the objective function, providing an interface for the trial.

    This object allows the objective function to suggest hyperparameter values,
    report intermediate results for pruning, and attach attributes. It holds
    only the study and the trial id: every read and write goes through the
    study's storage, so two handles for the same trial always agree.

    Args:
        study: The study the trial belongs to.
        trial_id: The storage id of the trial.
    """
    def __init__(self, study: "Study", trial_id: int):
        self.study = study
        self._trial_id = trial_id

    @property
    def trial_id(self) -> int:
        return self._trial_id

    @property
    def number(self) -> int:
        """The 0-based position of the trial within its study."""
        return self.study.storage.get_trial_number_from_id(self._trial_id)

    def suggest_uniform(self, name: str, low: float, high: float) -> float:
        """
        Suggests a value from a uniform distribution over ``[low, high]``.

        Raises:
            DistributionConflictError: If ``name`` was already suggested in
                this trial with different bounds or a different kind.
        """
        return self._suggest(name, UniformDistribution(low=low, high=high))

    def suggest_loguniform(self, name: str, low: float, high: float) -> float:
        """Suggests a value whose logarithm is uniform over ``[ln(low), ln(high)]``."""
        return self._suggest(name, LogUniformDistribution(low=low, high=high))

    def suggest_discrete_uniform(self, name: str, low: float, high: float, q: float) -> float:
        """Suggests a value from ``low, low + q, low + 2q, ...`` not exceeding ``high``."""
        return self._suggest(name, DiscreteUniformDistribution(low=low, high=high, q=q))

    def suggest_int(self, name: str, low: int, high: int) -> int:
        """Suggests an integer in ``[low, high]``, both ends included."""
        return self._suggest(name, IntUniformDistribution(low=low, high=high))

    def suggest_categorical(self, name: str, choices: Sequence[CategoricalChoiceType]) -> CategoricalChoiceType:
        """Suggests one element of ``choices``."""
        return self._suggest(name, CategoricalDistribution(choices=tuple(choices)))

    def suggest_float(
        self, name: str, low: float, high: float, *, step: Optional[float] = None, log: bool = False
    ) -> float:
        """
        Suggests a floating point value.

        Dispatches to ``suggest_discrete_uniform`` when ``step`` is given,
        ``suggest_loguniform`` when ``log`` is set, and ``suggest_uniform``
        otherwise.
        """
        if step is not None:
            if log:
                raise ValueError("The parameters `step` and `log` cannot be used at the same time.")
            return self.suggest_discrete_uniform(name, low, high, step)
        if log:
            return self.suggest_loguniform(name, low, high)
        return self.suggest_uniform(name, low, high)

    def _suggest(self, name: str, distribution: BaseDistribution) -> Any:
        storage = self.study.storage
        trial = storage.get_trial(self._trial_id)

        recorded = trial.distributions.get(name)
        if recorded is not None:
            if recorded != distribution:
                raise DistributionConflictError(
                    f"Parameter `{name}` was already suggested in trial {trial.number} from "
                    f"{recorded}, but is now requested from {distribution}."
                )
            return trial.params[name]

        history = storage.get_all_trials(self.study.study_id)
        internal = self.study.sampler.sample(self.study, trial, name, distribution, history)
        external = distribution.to_external_repr(internal)
        if isinstance(distribution, CategoricalDistribution):
            # Choices may compare equal (1 and True), so the index is kept as drawn.
            internal = float(int(internal))
        else:
            internal = distribution.to_internal_repr(external)

        if not storage.set_trial_param(self._trial_id, name, internal, distribution):
            # Another handle recorded the same parameter first.
            return storage.get_trial_params(self._trial_id)[name]
        return external

    def report(self, value: float, step: int) -> None:
        """
        Reports an intermediate objective value for the trial.

        This allows the pruner to evaluate the trial's performance at
        intermediate steps and decide whether to stop it early. A later
        report for the same step overwrites the earlier one.
        """
        try:
            value = float(value)
        except (TypeError, ValueError) as e:
            raise TypeError(f"The `value` argument must be a float, got {value!r}.") from e
        if step < 0:
            raise ValueError(f"The `step` argument must be non-negative, got {step}.")
        if math.isnan(value):
            logger.warning("Trial %d reported NaN at step %d.", self._trial_id, step)
        self.study.storage.set_trial_intermediate_value(self._trial_id, int(step), value)

    def should_prune(self) -> bool:
        """Asks the study's pruner if the trial should be pruned."""
        if self.study.pruner is None:
            return False
        trial = self.study.storage.get_trial(self._trial_id)
        return bool(self.study.pruner.should_prune(self.study, trial))

    def set_user_attr(self, key: str, value: str) -> None:
        self.study.storage.set_trial_user_attr(self._trial_id, key, value)

    def set_system_attr(self, key: str, value: str) -> None:
        self.study.storage.set_trial_system_attr(self._trial_id, key, value)

    @property
    def user_attrs(self) -> Dict[str, str]:
        return self.study.storage.get_trial_user_attrs(self._trial_id)

    @property
    def system_attrs(self) -> Dict[str, str]:
        return self.study.storage.get_trial_system_attrs(self._trial_id)

    @property
    def params(self) -> Dict[str, Any]:
        """Returns the dictionary of hyperparameters suggested so far."""
        return self.study.storage.get_trial_params(self._trial_id)

    @property
    def distributions(self) -> Dict[str, BaseDistribution]:
        return self.study.storage.get_trial(self._trial_id).distributions

    @property
    def datetime_start(self) -> Optional[datetime.datetime]:
        return self.study.storage.get_trial(self._trial_id).datetime_start

    def __repr__(self) -> str:
        return f"Trial(study_id={self.study.study_id}, trial_id={self._trial_id})"
