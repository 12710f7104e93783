"""
Tests for the outbox message lifecycle.
"""

import pytest

from orderflow.outbox.state_machine import InvalidStateTransitionError, OutboxStateMachine
from orderflow.outbox.types import OutboxMessage, OutboxStatus


@pytest.fixture
def sm():
    return OutboxStateMachine(max_retries=2)


def claimed(sm) -> OutboxMessage:
    return sm.claim(OutboxMessage.index("order", "o-1", {}), worker_id="relay-1")


class TestOutboxStateMachine:
    def test_claim_records_worker(self, sm):
        message = claimed(sm)
        assert message.status == OutboxStatus.CLAIMED
        assert message.worker_id == "relay-1"
        assert message.claimed_at is not None

    def test_sent_is_final(self, sm):
        message = sm.mark_sent(claimed(sm))
        assert message.processed_at is not None
        with pytest.raises(InvalidStateTransitionError):
            sm.release(message)

    def test_failed_then_retry(self, sm):
        """A failed message goes back to PENDING with its claim cleared."""
        message = sm.mark_failed(claimed(sm), "index down")
        assert message.retry_count == 1
        assert sm.can_retry(message)

        sm.retry(message)
        assert message.status == OutboxStatus.PENDING
        assert message.worker_id is None

    def test_retry_refused_when_exhausted(self, sm):
        message = claimed(sm)
        message.retry_count = 1
        sm.mark_failed(message, "index down")

        assert sm.should_dead_letter(message)
        with pytest.raises(ValueError):
            sm.retry(message)

        sm.move_to_dead_letter(message)
        assert message.status == OutboxStatus.DEAD_LETTER

    def test_requeue_resets_budget(self, sm):
        message = claimed(sm)
        message.retry_count = 1
        sm.move_to_dead_letter(sm.mark_failed(message, "index down"))

        sm.requeue(message)
        assert message.status == OutboxStatus.PENDING
        assert message.retry_count == 0
        assert message.processed_at is None

    def test_pending_cannot_be_sent(self, sm):
        """Only claimed messages can be marked sent."""
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            sm.mark_sent(OutboxMessage.index("order", "o-1", {}))
        assert exc_info.value.from_status == OutboxStatus.PENDING

    def test_on_transition_callback(self):
        seen = []
        sm = OutboxStateMachine(on_transition=lambda m, old, new: seen.append((old, new)))
        sm.mark_sent(claimed(sm))
        assert seen == [
            (OutboxStatus.PENDING, OutboxStatus.CLAIMED),
            (OutboxStatus.CLAIMED, OutboxStatus.SENT),
        ]


class TestOutboxMessage:
    def test_dict_round_trip(self):
        message = OutboxMessage.index("product", "v-1", {"available": 3})
        message.retry_count = 2
        restored = OutboxMessage.from_dict(message.to_dict())
        assert restored.document == {"available": 3}
        assert restored.retry_count == 2
        assert restored.created_at == message.created_at
