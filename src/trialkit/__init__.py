# trialkit/__init__.py

__version__ = "0.1.0"

from . import distributions, exceptions, log, pruners, samplers, storage
from .core.frozen import FrozenTrial, StudyDirection, StudySummary, TrialState
from .core.study import Study, create_study, get_all_study_summaries, load_study
from .core.trial import Trial
from .exceptions import TrialPruned

__all__ = [
    "FrozenTrial",
    "Study",
    "StudyDirection",
    "StudySummary",
    "Trial",
    "TrialPruned",
    "TrialState",
    "create_study",
    "distributions",
    "exceptions",
    "get_all_study_summaries",
    "load_study",
    "log",
    "pruners",
    "samplers",
    "storage",
]
