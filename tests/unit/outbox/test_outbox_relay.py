"""
Tests for OutboxRelay against the in-memory store and search index.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from orderflow.core.config import OrderflowConfig
from orderflow.outbox.relay import OutboxRelay
from orderflow.outbox.search import InMemorySearchIndex, SearchIndexError
from orderflow.outbox.types import ChangeType, OutboxConfig, OutboxMessage, OutboxStatus


@pytest.fixture
def index():
    return InMemorySearchIndex()


@pytest.fixture
def relay(store, index, metrics):
    return OutboxRelay(
        store.outbox,
        index,
        config=OutboxConfig(batch_size=10, max_retries=3, claim_timeout_seconds=60),
        worker_id="relay-test",
        metrics=metrics,
    )


async def enqueue(store, *messages: OutboxMessage) -> None:
    base = datetime.now(UTC)
    async with store.unit_of_work() as uow:
        for offset, message in enumerate(messages):
            message.created_at = base + timedelta(milliseconds=offset)
            await uow.outbox.insert(message)
        await uow.commit()


class TestProcessBatch:
    """Tests for claiming and applying batches."""

    @pytest.mark.asyncio
    async def test_empty_outbox(self, relay):
        assert await relay.process_batch() == 0

    @pytest.mark.asyncio
    async def test_messages_applied_and_sent(self, relay, store, index, metrics):
        """Applied messages end up SENT and visible in the index."""
        first = OutboxMessage.index("product", "v-1", {"available": 5})
        second = OutboxMessage.index("order", "o-1", {"status": "pending"})
        await enqueue(store, first, second)

        assert await relay.process_batch() == 2

        assert index.get("product", "v-1") == {"available": 5}
        assert index.get("order", "o-1") == {"status": "pending"}
        for message in await store.outbox.list_all():
            assert message.status == OutboxStatus.SENT
            assert message.processed_at is not None
        assert metrics.sample("outbox_messages_total", {"outcome": "sent"}) == 2

    @pytest.mark.asyncio
    async def test_later_document_wins(self, relay, store, index):
        """Messages for one entity are applied in creation order."""
        await enqueue(
            store,
            OutboxMessage.index("product", "v-1", {"available": 5}),
            OutboxMessage.index("product", "v-1", {"available": 3}),
        )
        await relay.process_batch()
        assert index.get("product", "v-1") == {"available": 3}

    @pytest.mark.asyncio
    async def test_delete_message(self, relay, store, index):
        await index.index_document("product", "v-1", {"available": 1})
        await enqueue(store, OutboxMessage("product", "v-1", change_type=ChangeType.DELETE))

        await relay.process_batch()

        assert index.get("product", "v-1") is None
        assert index.operations[-1] == ("delete", "product", "v-1")


class TestFailures:
    """Tests for retry, dead-lettering and per-entity ordering."""

    @pytest.mark.asyncio
    async def test_failure_returns_message_to_pending(self, relay, store, index, metrics):
        """A failed apply is counted and retried on the next pass."""
        message = OutboxMessage.index("product", "v-1", {"available": 5})
        await enqueue(store, message)
        index.fail_next(1)

        await relay.process_batch()

        stored = await store.outbox.get_by_id(message.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.retry_count == 1
        assert stored.last_error == "Search index unavailable"
        assert metrics.sample("outbox_messages_total", {"outcome": "failed"}) == 1

        await relay.process_batch()
        assert (await store.outbox.get_by_id(message.id)).status == OutboxStatus.SENT

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_retries(self, relay, store, index, metrics):
        """Exhausting the retry budget parks the message."""
        message = OutboxMessage.index("product", "v-1", {})
        await enqueue(store, message)
        index.fail_next(3)

        for _ in range(3):
            await relay.process_batch()

        stored = await store.outbox.get_by_id(message.id)
        assert stored.status == OutboxStatus.DEAD_LETTER
        assert stored.retry_count == 3
        assert metrics.sample("outbox_messages_total", {"outcome": "dead_lettered"}) == 1
        assert relay.get_stats()["messages_dead_lettered"] == 1
        assert await relay.process_batch() == 0

    @pytest.mark.asyncio
    async def test_failure_blocks_later_messages_for_same_entity(self, relay, store, index):
        """A newer document is not applied ahead of an older failed one."""
        older = OutboxMessage.index("product", "v-1", {"available": 5})
        newer = OutboxMessage.index("product", "v-1", {"available": 3})
        other = OutboxMessage.index("product", "v-2", {"available": 9})
        await enqueue(store, older, newer, other)
        index.fail_next(1)

        await relay.process_batch()

        assert index.get("product", "v-1") is None
        assert index.get("product", "v-2") == {"available": 9}
        assert (await store.outbox.get_by_id(newer.id)).status == OutboxStatus.PENDING
        assert (await store.outbox.get_by_id(newer.id)).retry_count == 0

        await relay.process_batch()
        assert index.get("product", "v-1") == {"available": 3}

    @pytest.mark.asyncio
    async def test_on_message_failed_callback(self, store, index, metrics):
        callback = AsyncMock()
        relay = OutboxRelay(store.outbox, index, metrics=metrics, on_message_failed=callback)
        message = OutboxMessage.index("product", "v-1", {})
        await enqueue(store, message)
        index.fail_next(1)

        await relay.process_batch()

        callback.assert_awaited_once()
        failed_message, error = callback.await_args.args
        assert failed_message.id == message.id
        assert isinstance(error, SearchIndexError)


class TestRecovery:
    """Tests for stuck claims and dead-letter requeueing."""

    @pytest.mark.asyncio
    async def test_recover_stuck_releases_old_claims(self, relay, store):
        """Claims older than the timeout go back to PENDING."""
        message = OutboxMessage.index("product", "v-1", {})
        await enqueue(store, message)
        [claimed] = await store.outbox.claim_batch("crashed-relay")
        claimed.claimed_at = datetime.now(UTC) - timedelta(minutes=5)
        await store.outbox.update(claimed)

        assert await relay.recover_stuck() == 1

        stored = await store.outbox.get_by_id(message.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.worker_id is None

    @pytest.mark.asyncio
    async def test_recent_claims_are_left_alone(self, relay, store):
        await enqueue(store, OutboxMessage.index("product", "v-1", {}))
        await store.outbox.claim_batch("busy-relay")

        assert await relay.recover_stuck() == 0

    @pytest.mark.asyncio
    async def test_requeue_dead_letters(self, relay, store, index):
        """Requeued messages get a fresh retry budget and are applied."""
        message = OutboxMessage.index("product", "v-1", {"available": 1})
        await enqueue(store, message)
        index.fail_next(3)
        for _ in range(3):
            await relay.process_batch()

        assert await relay.requeue_dead_letters() == 1
        stored = await store.outbox.get_by_id(message.id)
        assert stored.status == OutboxStatus.PENDING
        assert stored.retry_count == 0

        await relay.process_batch()
        assert index.get("product", "v-1") == {"available": 1}


class TestStorageFailure:
    """Claims must not outlive a storage error in the middle of a batch."""

    @pytest.mark.asyncio
    async def test_unfinished_claims_released(self, store, index, metrics, monkeypatch):
        relay = OutboxRelay(
            store.outbox,
            index,
            config=OutboxConfig(poll_interval_seconds=0.01),
            worker_id="relay-test",
            metrics=metrics,
        )
        await enqueue(store, *(OutboxMessage.index("product", f"v-{n}", {"available": n}) for n in range(3)))

        update = store.outbox.update
        calls = 0

        async def flaky_update(message):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("database went away")
            await update(message)

        monkeypatch.setattr(store.outbox, "update", flaky_update)

        with pytest.raises(ConnectionError):
            await relay.process_batch()

        statuses = [message.status for message in await store.outbox.list_all()]
        assert statuses == [OutboxStatus.PENDING] * 3

        for _ in range(5):
            await relay._process_iteration()

        statuses = [message.status for message in await store.outbox.list_all()]
        assert statuses == [OutboxStatus.SENT] * 3
        assert index.get("product", "v-2") == {"available": 2}

    @pytest.mark.asyncio
    async def test_running_loop_recovers_stale_claims(self, store, index, metrics):
        """Claims of a crashed relay are released without a restart."""
        relay = OutboxRelay(
            store.outbox,
            index,
            config=OutboxConfig(poll_interval_seconds=0.01, claim_timeout_seconds=0.05),
            metrics=metrics,
        )
        await relay._process_iteration()

        message = OutboxMessage.index("product", "v-1", {"available": 1})
        await enqueue(store, message)
        await store.outbox.claim_batch("crashed-relay")
        await asyncio.sleep(0.1)

        await relay._process_iteration()

        assert (await store.outbox.get_by_id(message.id)).status == OutboxStatus.SENT
        assert index.get("product", "v-1") == {"available": 1}


class TestLifecycle:
    """Tests for start/stop and stats."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, index, metrics):
        """The loop drains the outbox and exits on stop()."""
        relay = OutboxRelay(
            store.outbox, index, config=OutboxConfig(poll_interval_seconds=0.01), metrics=metrics
        )
        await enqueue(store, OutboxMessage.index("product", "v-1", {"available": 2}))

        task = asyncio.create_task(relay.start())
        for _ in range(100):
            if index.get("product", "v-1") is not None:
                break
            await asyncio.sleep(0.01)
        await relay.stop()
        await asyncio.wait_for(task, timeout=1)

        assert index.get("product", "v-1") == {"available": 2}
        assert relay.get_stats()["running"] is False
        assert metrics.sample("outbox_pending") is not None

    def test_default_worker_id(self, store, index, metrics):
        relay = OutboxRelay(store.outbox, index, metrics=metrics)
        assert relay.worker_id.startswith("relay-")
        assert relay.get_stats()["messages_sent"] == 0

    def test_config_from_settings(self):
        config = OutboxConfig.from_config(OrderflowConfig(outbox_batch_size=7, outbox_max_retries=2))
        assert config.batch_size == 7
        assert config.max_retries == 2


class TestSqliteRelay:
    """The relay against the SQLite store."""

    @pytest.mark.asyncio
    async def test_sent_and_retried(self, sqlite_store, index, metrics):
        relay = OutboxRelay(sqlite_store.outbox, index, config=OutboxConfig(max_retries=2), metrics=metrics)
        ok = OutboxMessage.index("product", "v-1", {"available": 4})
        flaky = OutboxMessage.index("product", "v-2", {"available": 8})
        await enqueue(sqlite_store, flaky, ok)
        index.fail_next(1)

        await relay.process_batch()

        assert (await sqlite_store.outbox.get_by_id(ok.id)).status == OutboxStatus.SENT
        assert (await sqlite_store.outbox.get_by_id(flaky.id)).status == OutboxStatus.PENDING
        assert await sqlite_store.outbox.get_pending_count() == 1
