"""
Storage Factory - build an OrderStore from a storage URL.

Supported URLs:
    memory://                 in-process dicts (tests, development)
    sqlite:///path/orders.db  SQLite file
    sqlite://:memory:         private in-memory SQLite database
"""

from orderflow.storage.base import OrderStore
from orderflow.storage.errors import ConnectionError
from orderflow.storage.memory import InMemoryOrderStore
from orderflow.storage.sqlite import SQLiteOrderStore


def _create_sqlite_store(url: str) -> OrderStore:
    path = url.removeprefix("sqlite://")
    if path.startswith("/"):
        path = path[1:] or ":memory:"
    return SQLiteOrderStore(path or ":memory:")


# Storage registry mapping URL schemes to factory functions
_STORE_REGISTRY = {
    "memory": lambda url: InMemoryOrderStore(),
    "sqlite": _create_sqlite_store,
}


def create_store(url: str = "memory://") -> OrderStore:
    """
    Create a store for ``url``.

    Raises:
        ConnectionError: If the scheme is unknown
    """
    scheme = url.split("://", 1)[0].lower() if "://" in url else url.lower()
    factory = _STORE_REGISTRY.get(scheme)
    if factory is None:
        msg = f"Unknown storage backend '{scheme}'. Available: {', '.join(sorted(_STORE_REGISTRY))}"
        raise ConnectionError(msg, backend=scheme, url=url)
    return factory(url)
