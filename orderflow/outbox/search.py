"""
Search Index Port - where the outbox relay applies document changes.

The real index lives outside orderflow; the relay only needs the two
operations below.
"""

import copy
from abc import ABC, abstractmethod
from typing import Any

from orderflow.outbox.types import OutboxError


class SearchIndexError(OutboxError):
    """Base exception for search index errors."""


class SearchIndex(ABC):
    """
    Interface the outbox relay publishes to.

    Implementations must be idempotent: the relay delivers at least once,
    so the same document may be indexed or deleted more than once.
    """

    @abstractmethod
    async def index_document(self, entity_type: str, entity_id: str, document: dict[str, Any]) -> None:
        """
        Insert or replace a document.

        Raises:
            SearchIndexError: If the index rejected the change or is unreachable
        """

    @abstractmethod
    async def delete_document(self, entity_type: str, entity_id: str) -> None:
        """
        Remove a document; removing a missing document is not an error.

        Raises:
            SearchIndexError: If the index is unreachable
        """


class InMemorySearchIndex(SearchIndex):
    """
    Dict-backed index for testing and development.

    Usage:
        >>> index = InMemorySearchIndex()
        >>> await index.index_document("product", "v-1", {"available": 3})
        >>> index.get("product", "v-1")
        {'available': 3}
        >>>
        >>> index.fail_next(2)  # next two calls raise SearchIndexError
    """

    def __init__(self):
        self._documents: dict[str, dict[str, dict[str, Any]]] = {}
        self.operations: list[tuple[str, str, str]] = []
        self._failures_remaining = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` operations raise (for testing)."""
        self._failures_remaining = count

    def _maybe_fail(self) -> None:
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            msg = "Search index unavailable"
            raise SearchIndexError(msg)

    async def index_document(self, entity_type: str, entity_id: str, document: dict[str, Any]) -> None:
        self._maybe_fail()
        self._documents.setdefault(entity_type, {})[entity_id] = copy.deepcopy(document)
        self.operations.append(("index", entity_type, entity_id))

    async def delete_document(self, entity_type: str, entity_id: str) -> None:
        self._maybe_fail()
        self._documents.get(entity_type, {}).pop(entity_id, None)
        self.operations.append(("delete", entity_type, entity_id))

    def get(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        return self._documents.get(entity_type, {}).get(entity_id)

    def count(self, entity_type: str) -> int:
        return len(self._documents.get(entity_type, {}))

    def clear(self) -> None:
        """Clear all documents (for testing)."""
        self._documents.clear()
        self.operations.clear()
