"""
Storage layer: repositories and units of work over pluggable backends.

    >>> from orderflow.storage import create_store
    >>> store = create_store("sqlite:///orders.db")
"""

from orderflow.storage.base import OrderStore, OutboxStorage, UnitOfWork
from orderflow.storage.errors import (
    ConcurrencyError,
    DuplicateKeyError,
    NotFoundError,
    SerializationError,
    StorageError,
    TransactionError,
)
from orderflow.storage.factory import create_store
from orderflow.storage.memory import InMemoryOrderStore
from orderflow.storage.sqlite import SQLiteOrderStore

__all__ = [
    "ConcurrencyError",
    "DuplicateKeyError",
    "InMemoryOrderStore",
    "NotFoundError",
    "OrderStore",
    "OutboxStorage",
    "SQLiteOrderStore",
    "SerializationError",
    "StorageError",
    "TransactionError",
    "UnitOfWork",
    "create_store",
]
