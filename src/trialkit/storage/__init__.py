from typing import Optional, Union

from .base import BaseStorage
from .in_memory import InMemoryStorage
from .sqlite import SQLiteStorage


def get_storage(storage: Optional[Union[str, BaseStorage]]) -> BaseStorage:
    """
    Resolves the ``storage`` argument accepted by ``create_study``.

    ``None`` gives a fresh in-memory storage and a string is treated as a
    SQLite database URL.
    """
    if storage is None:
        return InMemoryStorage()
    if isinstance(storage, str):
        return SQLiteStorage(storage)
    return storage


__all__ = [
    "BaseStorage",
    "InMemoryStorage",
    "SQLiteStorage",
    "get_storage",
]
