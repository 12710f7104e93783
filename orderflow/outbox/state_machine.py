"""
Outbox State Machine - manages outbox message lifecycle transitions.

State Diagram:

    ┌─────────┐
    │ PENDING │ ←────────────────────┐
    └────┬────┘                      │
         │ claim()                   │ retry (if retries < max)
         ▼                           │
    ┌─────────┐                      │
    │ CLAIMED │ ─────────────────────┤ release (stuck claim)
    └────┬────┘                      │
    ┌────┴────┐                      │
    ▼         ▼                      │
┌──────┐  ┌────────┐                 │
│ SENT │  │ FAILED │ ────────────────┘
└──────┘  └────┬───┘
               │ retries exhausted
               ▼
         ┌─────────────┐
         │ DEAD_LETTER │ ── requeue() ──▶ PENDING
         └─────────────┘
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from orderflow.outbox.types import OutboxMessage, OutboxStatus


class InvalidStateTransitionError(Exception):
    """Raised when an invalid outbox state transition is attempted."""

    def __init__(self, message_id: str, from_status: OutboxStatus, to_status: OutboxStatus):
        self.message_id = message_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition for outbox message {message_id}: "
            f"{from_status.value} → {to_status.value}"
        )


class OutboxStateMachine:
    """
    State machine for outbox message lifecycle.

    Usage:
        >>> sm = OutboxStateMachine(max_retries=5)
        >>> message = sm.claim(message, worker_id="relay-1")
        >>> try:
        ...     await index.index_document(...)
        ...     message = sm.mark_sent(message)
        ... except SearchIndexError as e:
        ...     message = sm.mark_failed(message, str(e))
        ...     message = sm.move_to_dead_letter(message) if sm.should_dead_letter(message) else sm.retry(message)
    """

    # Valid transitions: from_status -> [to_status, ...]
    VALID_TRANSITIONS = {
        OutboxStatus.PENDING: [OutboxStatus.CLAIMED],
        OutboxStatus.CLAIMED: [OutboxStatus.SENT, OutboxStatus.FAILED, OutboxStatus.PENDING],
        OutboxStatus.FAILED: [OutboxStatus.PENDING, OutboxStatus.DEAD_LETTER],
        OutboxStatus.SENT: [],
        OutboxStatus.DEAD_LETTER: [OutboxStatus.PENDING],
    }

    def __init__(
        self,
        max_retries: int = 5,
        on_transition: Callable[[OutboxMessage, OutboxStatus, OutboxStatus], Any] | None = None,
    ):
        """
        Args:
            max_retries: Failed attempts allowed before dead-lettering
            on_transition: Optional callback for state transitions
        """
        self.max_retries = max_retries
        self._on_transition = on_transition

    def _transition(self, message: OutboxMessage, target_status: OutboxStatus) -> OutboxMessage:
        old_status = message.status
        if target_status not in self.VALID_TRANSITIONS.get(old_status, []):
            raise InvalidStateTransitionError(message.id, old_status, target_status)

        message.status = target_status

        if self._on_transition:
            self._on_transition(message, old_status, target_status)

        return message

    def claim(self, message: OutboxMessage, worker_id: str) -> OutboxMessage:
        """PENDING → CLAIMED, recording the worker and claim time."""
        message = self._transition(message, OutboxStatus.CLAIMED)
        message.worker_id = worker_id
        message.claimed_at = datetime.now(UTC)
        return message

    def mark_sent(self, message: OutboxMessage) -> OutboxMessage:
        """CLAIMED → SENT."""
        message = self._transition(message, OutboxStatus.SENT)
        message.processed_at = datetime.now(UTC)
        return message

    def mark_failed(self, message: OutboxMessage, error_message: str) -> OutboxMessage:
        """CLAIMED → FAILED, counting the attempt and keeping the error."""
        message = self._transition(message, OutboxStatus.FAILED)
        message.retry_count += 1
        message.last_error = error_message
        return message

    def retry(self, message: OutboxMessage) -> OutboxMessage:
        """
        FAILED → PENDING.

        Raises:
            InvalidStateTransitionError: If the message is not FAILED
            ValueError: If max retries were exhausted
        """
        if message.retry_count >= self.max_retries:
            msg = (
                f"Outbox message {message.id} has exceeded max retries "
                f"({message.retry_count}/{self.max_retries})"
            )
            raise ValueError(msg)

        message = self._transition(message, OutboxStatus.PENDING)
        message.worker_id = None
        message.claimed_at = None
        return message

    def release(self, message: OutboxMessage) -> OutboxMessage:
        """CLAIMED → PENDING for a claim whose worker went away."""
        message = self._transition(message, OutboxStatus.PENDING)
        message.worker_id = None
        message.claimed_at = None
        return message

    def move_to_dead_letter(self, message: OutboxMessage) -> OutboxMessage:
        """FAILED → DEAD_LETTER."""
        message = self._transition(message, OutboxStatus.DEAD_LETTER)
        message.processed_at = datetime.now(UTC)
        return message

    def requeue(self, message: OutboxMessage) -> OutboxMessage:
        """DEAD_LETTER → PENDING with a fresh retry budget (manual handling)."""
        message = self._transition(message, OutboxStatus.PENDING)
        message.retry_count = 0
        message.worker_id = None
        message.claimed_at = None
        message.processed_at = None
        return message

    def can_retry(self, message: OutboxMessage) -> bool:
        return message.status == OutboxStatus.FAILED and message.retry_count < self.max_retries

    def should_dead_letter(self, message: OutboxMessage) -> bool:
        return message.status == OutboxStatus.FAILED and message.retry_count >= self.max_retries
