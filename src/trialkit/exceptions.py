class TrialkitError(Exception):
    """Base class for all errors raised by trialkit."""
    pass


class NotFoundError(TrialkitError):
    """Raised when a study id, trial id or study name is unknown to the storage."""
    pass


class DuplicatedStudyError(TrialkitError):
    """Raised when a study is created with a name that is already taken."""
    pass


class DistributionConflictError(TrialkitError, ValueError):
    """
    Raised when a parameter is re-suggested within one trial with a
    distribution that differs from the one already on record.
    """
    pass


class TrialAlreadyFinishedError(TrialkitError):
    """Raised when a finished trial's state, value or params would be modified."""
    pass


class StorageError(TrialkitError):
    """Transient storage failure, e.g. a locked or unreachable database."""
    pass


class TrialPruned(TrialkitError):
    """Exception to indicate that a trial was pruned."""
    pass


class OptimizationAbortedError(TrialkitError):
    """
    Run-level fatal error raised by ``Study.optimize``.

    Raised when a failure threshold is exceeded or when no further trials
    can be created because storage is unavailable.
    """
    pass
