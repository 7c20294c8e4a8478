"""
Package-wide logging setup.

Every module obtains its logger with ``get_logger(__name__)``. A single
stream handler is attached to the ``trialkit`` root logger the first time
one is requested.
"""
import logging
import threading
from typing import Optional

_lock = threading.Lock()
_default_handler: Optional[logging.Handler] = None

_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _root_logger_name() -> str:
    return __name__.split(".")[0]


def _configure_root_logger() -> None:
    global _default_handler

    with _lock:
        if _default_handler is not None:
            return
        _default_handler = logging.StreamHandler()
        _default_handler.setFormatter(logging.Formatter(_FORMAT))

        root = logging.getLogger(_root_logger_name())
        root.addHandler(_default_handler)
        root.setLevel(logging.INFO)
        root.propagate = False


def get_logger(name: str) -> logging.Logger:
    """Returns a logger that is a child of the package root logger."""
    _configure_root_logger()
    return logging.getLogger(name)


def get_verbosity() -> int:
    _configure_root_logger()
    return logging.getLogger(_root_logger_name()).getEffectiveLevel()


def set_verbosity(verbosity: int) -> None:
    """
    Sets the level of the package root logger.

    Args:
        verbosity: A ``logging`` level such as ``logging.WARNING``.
    """
    _configure_root_logger()
    logging.getLogger(_root_logger_name()).setLevel(verbosity)


def disable_default_handler() -> None:
    """Detaches the default stream handler, e.g. to route records elsewhere."""
    _configure_root_logger()
    assert _default_handler is not None
    logging.getLogger(_root_logger_name()).removeHandler(_default_handler)


def enable_default_handler() -> None:
    _configure_root_logger()
    assert _default_handler is not None
    logging.getLogger(_root_logger_name()).addHandler(_default_handler)


def enable_propagation() -> None:
    """Lets records reach handlers installed on the global root logger."""
    _configure_root_logger()
    logging.getLogger(_root_logger_name()).propagate = True


def disable_propagation() -> None:
    _configure_root_logger()
    logging.getLogger(_root_logger_name()).propagate = False
