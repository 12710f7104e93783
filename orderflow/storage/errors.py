"""
Storage errors.

Backends raise these instead of driver exceptions, so the saga layer reacts
to a stale version token or a taken idempotency key the same way whichever
store is configured.
"""


class StorageError(Exception):
    """Base class of everything a store raises."""


class ConnectionError(StorageError):
    """The backend could not be opened or stopped answering, or the URL names no backend."""

    def __init__(self, message: str, backend: str | None = None, url: str | None = None):
        super().__init__(message)
        self.backend = backend
        self.url = url


class NotFoundError(StorageError):
    """A row the operation depends on is missing."""

    def __init__(self, message: str, item_type: str | None = None, item_id: str | None = None):
        super().__init__(message)
        self.item_type = item_type
        self.item_id = item_id


class SerializationError(StorageError):
    """A stored JSON document could not be written or read back."""


class TransactionError(StorageError):
    """Commit failed, or a unit of work was used after it closed."""

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class ConcurrencyError(StorageError):
    """An update carried a version token that no longer matches the stored row."""

    def __init__(
        self,
        message: str = "Concurrent modification detected",
        item_type: str | None = None,
        item_id: str | None = None,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        super().__init__(message)
        self.item_type = item_type
        self.item_id = item_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DuplicateKeyError(StorageError):
    """A unique key, such as an order's idempotency key, is already taken."""

    def __init__(self, message: str | None = None, item_type: str | None = None, key: str | None = None):
        super().__init__(message or f"Duplicate {item_type or 'row'} key {key}")
        self.item_type = item_type
        self.key = key
