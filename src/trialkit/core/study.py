import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

import pandas as pd

from ..exceptions import (
    DuplicatedStudyError,
    OptimizationAbortedError,
    StorageError,
    TrialPruned,
)
from ..log import get_logger
from ..pruners import BasePruner
from ..samplers import BaseSampler, RandomSampler
from ..storage import BaseStorage, get_storage
from .frozen import FrozenTrial, StudyDirection, StudySummary, TrialState
from .trial import Trial

logger = get_logger(__name__)

ObjectiveFuncType = Callable[[Trial], float]
CallbackFuncType = Callable[["Study", FrozenTrial], None]

FAIL_REASON_KEY = "fail_reason"

DEFAULT_SEED = 0

_CREATE_TRIAL_ATTEMPTS = 3
_CREATE_TRIAL_BACKOFF_SECONDS = 0.1


class _OptimizeRun:
    """Bookkeeping shared by the workers of one ``Study.optimize`` call."""

    def __init__(
        self,
        n_trials: int,
        timeout: Optional[float],
        max_failures: Optional[int],
        max_consecutive_failures: Optional[int],
    ):
        self.lock = threading.Lock()
        self.remaining = n_trials
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.max_failures = max_failures
        self.max_consecutive_failures = max_consecutive_failures
        self.n_failures = 0
        self.n_consecutive_failures = 0
        self.aborted = False
        self.fatal_error: Optional[BaseException] = None

    def claim(self, stop_event: threading.Event) -> bool:
        with self.lock:
            if self.aborted or self.remaining <= 0 or stop_event.is_set():
                return False
            if self.deadline is not None and time.monotonic() >= self.deadline:
                logger.info("Timeout reached, no further trials are scheduled.")
                return False
            self.remaining -= 1
            return True

    def abort(self, error: BaseException) -> None:
        with self.lock:
            self.aborted = True
            if self.fatal_error is None:
                self.fatal_error = error

    def record(self, state: TrialState) -> Optional[str]:
        """Counts a finished trial, returning a message if a failure threshold is exceeded."""
        with self.lock:
            if state != TrialState.FAILED:
                self.n_consecutive_failures = 0
                return None
            self.n_failures += 1
            self.n_consecutive_failures += 1
            if self.max_failures is not None and self.n_failures > self.max_failures:
                return f"{self.n_failures} trials failed, more than max_failures={self.max_failures}."
            if (
                self.max_consecutive_failures is not None
                and self.n_consecutive_failures > self.max_consecutive_failures
            ):
                return (
                    f"{self.n_consecutive_failures} consecutive trials failed, more than "
                    f"max_consecutive_failures={self.max_consecutive_failures}."
                )
            return None


class Study:
    """
    Manages the hyperparameter optimization process.

    A study orchestrates the optimization, running multiple trials to find the
    best hyperparameters for a given objective function. Trial records live in
    the storage; the study itself only keeps the sampler and pruner.

    Use ``create_study`` or ``load_study`` rather than instantiating directly.

    Args:
        study_name: The name of the study.
        storage: A storage backend instance or a URL to a database file.
        sampler: The hyperparameter sampling algorithm to use.
        pruner: The trial pruning algorithm to use.
    """
    def __init__(self,
                 study_name: str,
                 storage: Union[str, BaseStorage],
                 sampler: Optional[BaseSampler] = None,
                 pruner: Optional[BasePruner] = None):

        self.study_name = study_name
        self.storage = get_storage(storage)
        self.sampler = sampler if sampler is not None else RandomSampler(seed=DEFAULT_SEED)
        self.pruner = pruner
        self.study_id = self.storage.get_study_id_from_name(study_name)
        self._stop_event = threading.Event()

    @property
    def direction(self) -> StudyDirection:
        return self.storage.get_study_direction(self.study_id)

    @property
    def trials(self) -> List[FrozenTrial]:
        """All trials of the study ordered by trial id."""
        return self.storage.get_all_trials(self.study_id)

    def get_trials(self, states: Optional[Iterable[TrialState]] = None) -> List[FrozenTrial]:
        trials = self.storage.get_all_trials(self.study_id)
        if states is None:
            return trials
        states = tuple(states)
        return [t for t in trials if t.state in states]

    @property
    def best_trial(self) -> FrozenTrial:
        """
        Retrieves the best trial from the study so far.

        Raises:
            ValueError: If no trial has completed yet.
        """
        return self.storage.get_best_trial(self.study_id)

    @property
    def best_value(self) -> float:
        return self.best_trial.value

    @property
    def best_params(self) -> Dict[str, Any]:
        return self.best_trial.params

    @property
    def user_attrs(self) -> Dict[str, str]:
        return self.storage.get_study_user_attrs(self.study_id)

    def set_user_attr(self, key: str, value: str) -> None:
        self.storage.set_study_user_attr(self.study_id, key, value)

    @property
    def system_attrs(self) -> Dict[str, str]:
        return self.storage.get_study_system_attrs(self.study_id)

    def set_system_attr(self, key: str, value: str) -> None:
        self.storage.set_study_system_attr(self.study_id, key, value)

    def stop(self) -> None:
        """
        Asks a running ``optimize`` call to stop scheduling new trials.

        Trials already running are allowed to finish. Safe to call from the
        objective function or from another thread.
        """
        self._stop_event.set()

    def optimize(self,
                 objective: ObjectiveFuncType,
                 n_trials: int,
                 n_jobs: int = 1,
                 timeout: Optional[float] = None,
                 callbacks: Optional[Sequence[CallbackFuncType]] = None,
                 max_failures: Optional[int] = None,
                 max_consecutive_failures: Optional[int] = None) -> None:
        """
        Runs ``n_trials`` trials of the objective function.

        A failing objective only fails its own trial: the exception message
        is stored in the ``fail_reason`` system attribute and the run goes
        on.

        Args:
            objective: A callable taking a ``Trial`` and returning a float.
                Raising ``TrialPruned`` marks the trial as pruned.
            n_trials: The number of trials to run.
            n_jobs: The number of worker threads. ``1`` runs the trials in
                the calling thread.
            timeout: Stop scheduling new trials after this many seconds.
            callbacks: Called as ``callback(study, frozen_trial)`` after each
                trial is finalized.
            max_failures: Abort once more than this many trials have failed.
            max_consecutive_failures: Abort once more than this many trials
                in a row have failed.

        Raises:
            OptimizationAbortedError: If a failure threshold was exceeded or
                new trials could not be created. Running trials are finished
                first.
        """
        if n_trials < 0:
            raise ValueError(f"n_trials must be non-negative, got {n_trials}.")
        if n_jobs < 1:
            raise ValueError(f"n_jobs must be at least 1, got {n_jobs}.")

        self._stop_event.clear()
        run = _OptimizeRun(n_trials, timeout, max_failures, max_consecutive_failures)
        callbacks = list(callbacks or [])
        logger.info(
            "Starting optimization of study '%s' with %d trials on %d worker(s).",
            self.study_name, n_trials, n_jobs,
        )

        if n_jobs == 1:
            self._worker(objective, run, callbacks)
        else:
            with ThreadPoolExecutor(max_workers=n_jobs, thread_name_prefix="trialkit-worker") as executor:
                futures = [executor.submit(self._worker, objective, run, callbacks) for _ in range(n_jobs)]
                for future in futures:
                    future.result()

        if run.fatal_error is not None:
            raise run.fatal_error

    def _worker(self, objective: ObjectiveFuncType, run: _OptimizeRun, callbacks: List[CallbackFuncType]) -> None:
        while run.claim(self._stop_event):
            try:
                self._run_trial(objective, run, callbacks)
            except OptimizationAbortedError as e:
                logger.error("Optimization aborted: %s", e)
                run.abort(e)
            except BaseException as e:
                # Unexpected errors (storage, callbacks, KeyboardInterrupt)
                # stop the other workers before propagating.
                run.abort(e)
                raise

    def _run_trial(self, objective: ObjectiveFuncType, run: _OptimizeRun, callbacks: List[CallbackFuncType]) -> None:
        trial_id = self._create_trial_id()
        trial = Trial(self, trial_id)

        value: Optional[float] = None
        fail_reason: Optional[str] = None
        try:
            result = objective(trial)
        except TrialPruned as e:
            state = TrialState.PRUNED
            logger.debug("Trial %d pruned: %s", trial_id, e)
        except Exception as e:
            state = TrialState.FAILED
            fail_reason = f"{type(e).__name__}: {e}"
        except BaseException as e:
            self._finalize(trial_id, TrialState.FAILED, None, f"{type(e).__name__}: {e}")
            raise
        else:
            value, fail_reason = _check_value(result)
            state = TrialState.COMPLETE if fail_reason is None else TrialState.FAILED

        frozen_trial = self._finalize(trial_id, state, value, fail_reason)
        self._log_trial(frozen_trial)

        threshold_message = run.record(frozen_trial.state)
        for callback in callbacks:
            callback(self, frozen_trial)
        if threshold_message is not None:
            raise OptimizationAbortedError(threshold_message)

    def _create_trial_id(self) -> int:
        last_error: Optional[StorageError] = None
        for attempt in range(1, _CREATE_TRIAL_ATTEMPTS + 1):
            try:
                return self.storage.create_new_trial_id(self.study_id)
            except StorageError as e:
                last_error = e
                logger.warning(
                    "Failed to create a new trial (attempt %d/%d): %s", attempt, _CREATE_TRIAL_ATTEMPTS, e
                )
                if attempt < _CREATE_TRIAL_ATTEMPTS:
                    time.sleep(_CREATE_TRIAL_BACKOFF_SECONDS * attempt)
        raise OptimizationAbortedError(
            f"Could not create a new trial after {_CREATE_TRIAL_ATTEMPTS} attempts."
        ) from last_error

    def _finalize(
        self, trial_id: int, state: TrialState, value: Optional[float], fail_reason: Optional[str]
    ) -> FrozenTrial:
        current = self.storage.get_trial(trial_id)
        if current.state.is_finished():
            logger.warning(
                "Trial %d already finished with state %s, keeping it.", current.number, current.state.name
            )
            return current

        if fail_reason is not None:
            self.storage.set_trial_system_attr(trial_id, FAIL_REASON_KEY, fail_reason)
        if value is not None:
            self.storage.set_trial_value(trial_id, value)
        self.storage.set_trial_state(trial_id, state)
        return self.storage.get_trial(trial_id)

    def _log_trial(self, trial: FrozenTrial) -> None:
        if trial.state == TrialState.COMPLETE:
            best = self.best_trial
            logger.info(
                "Trial %d finished with value: %s and parameters: %s. Best is trial %d with value: %s.",
                trial.number, trial.value, trial.params, best.number, best.value,
            )
        elif trial.state == TrialState.PRUNED:
            logger.info("Trial %d pruned.", trial.number)
        else:
            logger.warning(
                "Trial %d failed because of the following error: %s",
                trial.number, trial.system_attrs.get(FAIL_REASON_KEY),
            )

    def get_trials_dataframe(self) -> pd.DataFrame:
        """
        Returns the trial results as a pandas DataFrame.

        One row per trial with the columns ``number``, ``value``, ``state``,
        ``datetime_start``, ``datetime_complete``, followed by ``params_<name>``,
        ``user_attrs_<key>`` and ``system_attrs_<key>`` columns.
        """
        all_trials = self.trials
        if not all_trials:
            return pd.DataFrame()

        data = []
        for trial in all_trials:
            row = {
                'number': trial.number,
                'value': trial.value,
                'state': trial.state.value,
                'datetime_start': trial.datetime_start,
                'datetime_complete': trial.datetime_complete,
            }
            row.update({f'params_{k}': v for k, v in trial.params.items()})
            row.update({f'user_attrs_{k}': v for k, v in trial.user_attrs.items()})
            row.update({f'system_attrs_{k}': v for k, v in trial.system_attrs.items()})
            data.append(row)

        return pd.DataFrame(data)


def _check_value(result: Any):
    try:
        value = float(result)
    except Exception as e:
        return None, (
            f"The objective function returned a value of type {type(result).__name__}, "
            f"which cannot be cast to float ({type(e).__name__}: {e})."
        )
    if math.isnan(value):
        return None, "The objective function returned NaN."
    return value, None


def create_study(study_name: Optional[str] = None,
                 storage: Optional[Union[str, BaseStorage]] = None,
                 sampler: Optional[BaseSampler] = None,
                 pruner: Optional[BasePruner] = None,
                 direction: Union[str, StudyDirection] = StudyDirection.MINIMIZE,
                 load_if_exists: bool = False) -> Study:
    """
    Creates a new study.

    Args:
        study_name: The name of the study. A unique name is generated when omitted.
        storage: A storage backend, a SQLite URL, or ``None`` for in-memory storage.
        sampler: Defaults to a ``RandomSampler`` seeded with ``DEFAULT_SEED``.
        pruner: Defaults to no pruning.
        direction: ``"minimize"`` or ``"maximize"``.
        load_if_exists: Load the existing study of the same name instead of
            raising ``DuplicatedStudyError``.
    """
    storage = get_storage(storage)
    direction = StudyDirection.parse(direction)
    try:
        study_id = storage.create_new_study(direction, study_name)
    except DuplicatedStudyError:
        if not load_if_exists:
            raise
        logger.info("Using an existing study with name '%s' instead of creating a new one.", study_name)
        study_id = storage.get_study_id_from_name(study_name)
    else:
        logger.info("Created new study '%s' with ID %d.", storage.get_study_name_from_id(study_id), study_id)

    return Study(
        study_name=storage.get_study_name_from_id(study_id),
        storage=storage,
        sampler=sampler,
        pruner=pruner,
    )


def load_study(study_name: str,
               storage: Union[str, BaseStorage],
               sampler: Optional[BaseSampler] = None,
               pruner: Optional[BasePruner] = None) -> Study:
    """
    Loads an existing study.

    Raises:
        NotFoundError: If no study with ``study_name`` exists in ``storage``.
    """
    return Study(study_name=study_name, storage=storage, sampler=sampler, pruner=pruner)


def get_all_study_summaries(storage: Union[str, BaseStorage]) -> List[StudySummary]:
    return get_storage(storage).get_all_study_summaries()
