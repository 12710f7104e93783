"""
Transactional outbox for search-index propagation.

The relay lives in :mod:`orderflow.outbox.relay`; it is not imported here
because the storage layer depends on this package's types.
"""

from orderflow.outbox.search import InMemorySearchIndex, SearchIndex, SearchIndexError
from orderflow.outbox.state_machine import InvalidStateTransitionError, OutboxStateMachine
from orderflow.outbox.types import (
    ChangeType,
    OutboxConfig,
    OutboxError,
    OutboxMessage,
    OutboxStatus,
)

__all__ = [
    "ChangeType",
    "InMemorySearchIndex",
    "InvalidStateTransitionError",
    "OutboxConfig",
    "OutboxError",
    "OutboxMessage",
    "OutboxStateMachine",
    "OutboxStatus",
    "SearchIndex",
    "SearchIndexError",
]
