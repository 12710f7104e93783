"""
Transactional outbox for search-index propagation.

Any order or stock change that the search index must learn about is written
as an :class:`OutboxMessage` inside the same unit of work as the change
itself. The :class:`orderflow.outbox.relay.OutboxRelay` later applies the
messages to the index, at least once, in creation order.

Quick Start:
    >>> message = OutboxMessage.index("product", variant.id, variant.search_document())
    >>> await uow.outbox.insert(message)
    >>> await uow.commit()
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from orderflow.core.config import OrderflowConfig


class OutboxStatus(Enum):
    """
    Status of an outbox message in its lifecycle.

    State transitions:
        PENDING → CLAIMED → SENT
                ↓         ↓
              FAILED → DEAD_LETTER
    """

    PENDING = "pending"
    """Message is waiting to be relayed"""

    CLAIMED = "claimed"
    """Message has been claimed by a relay worker"""

    SENT = "sent"
    """Message was applied to the search index"""

    FAILED = "failed"
    """Applying the message failed (will retry)"""

    DEAD_LETTER = "dead_letter"
    """Message exceeded max retries, parked for manual handling"""


class ChangeType(Enum):
    INDEX = "index"
    DELETE = "delete"


@dataclass
class OutboxMessage:
    """
    A pending search-index change.

    Attributes:
        entity_type: Index the document belongs to (``product``, ``order``)
        entity_id: Document id within that index
        change_type: Upsert (``index``) or removal (``delete``)
        document: Document body for ``index`` changes
        retry_count: Number of failed relay attempts
        last_error: Error from the last failed attempt
        version: Optimistic concurrency token
    """

    entity_type: str
    entity_id: str
    change_type: ChangeType = ChangeType.INDEX
    document: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OutboxStatus = OutboxStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    claimed_at: datetime | None = None
    processed_at: datetime | None = None
    retry_count: int = 0
    last_error: str | None = None
    worker_id: str | None = None
    version: int = 0

    @classmethod
    def index(cls, entity_type: str, entity_id: str, document: dict[str, Any]) -> "OutboxMessage":
        return cls(entity_type=entity_type, entity_id=entity_id, document=document)

    @classmethod
    def delete(cls, entity_type: str, entity_id: str) -> "OutboxMessage":
        return cls(entity_type=entity_type, entity_id=entity_id, change_type=ChangeType.DELETE)

    def to_dict(self) -> dict[str, Any]:
        """Convert message to dictionary for serialization."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "change_type": self.change_type.value,
            "document": self.document,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "worker_id": self.worker_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutboxMessage":
        """Create message from dictionary."""
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            change_type=ChangeType(data.get("change_type", "index")),
            document=data.get("document") or {},
            status=OutboxStatus(data.get("status", "pending")),
            created_at=cls._parse_datetime(data.get("created_at")) or datetime.now(UTC),
            claimed_at=cls._parse_datetime(data.get("claimed_at")),
            processed_at=cls._parse_datetime(data.get("processed_at")),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
            worker_id=data.get("worker_id"),
            version=data.get("version", 0),
        )

    @staticmethod
    def _parse_datetime(value: str | datetime | None) -> datetime | None:
        if isinstance(value, str):
            return datetime.fromisoformat(value)
        return value


@dataclass
class OutboxConfig:
    """
    Relay configuration.

    Attributes:
        batch_size: Number of messages to claim per batch
        poll_interval_seconds: Seconds between polls when idle
        claim_timeout_seconds: Seconds before a claimed message counts as stuck
        max_retries: Failed attempts before a message is dead-lettered
    """

    batch_size: int = 100
    poll_interval_seconds: float = 1.0
    claim_timeout_seconds: float = 300.0
    max_retries: int = 5

    @classmethod
    def from_config(cls, config: OrderflowConfig) -> "OutboxConfig":
        return cls(
            batch_size=config.outbox_batch_size,
            poll_interval_seconds=config.outbox_poll_interval_seconds,
            claim_timeout_seconds=float(config.outbox_claim_timeout_seconds),
            max_retries=config.outbox_max_retries,
        )


class OutboxError(Exception):
    """Base exception for outbox errors."""

