"""
Outbox Relay - background applier of outbox messages to the search index.

Polls the outbox for pending messages and applies them to the
:class:`~orderflow.outbox.search.SearchIndex`. Handles retries, the
dead-letter queue, stuck-claim recovery and graceful shutdown.

Usage:
    >>> relay = OutboxRelay(store.outbox, InMemorySearchIndex())
    >>> await relay.start()  # Runs until stopped
    >>> # or
    >>> await relay.process_batch()  # Process one batch
"""

import asyncio
import signal
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from orderflow.core.logger import get_logger
from orderflow.monitoring.metrics import OrderflowMetrics, get_metrics
from orderflow.monitoring.tracing import OrderflowTracer
from orderflow.outbox.search import SearchIndex
from orderflow.outbox.state_machine import OutboxStateMachine
from orderflow.outbox.types import ChangeType, OutboxConfig, OutboxMessage, OutboxStatus
from orderflow.storage.base import OutboxStorage
from orderflow.storage.errors import ConcurrencyError

logger = get_logger(__name__)


class OutboxRelay:
    """
    Background relay that applies outbox messages to the search index.

    Lifecycle:
        1. Claim a batch of PENDING messages, oldest first
        2. Apply each message to the index, sequentially
        3. Mark applied messages as SENT
        4. Mark failed messages as FAILED, then back to PENDING for the next pass
        5. Move messages that exhausted their retries to DEAD_LETTER
        6. Sleep and repeat

    Stale claims, including those of crashed relays, are released every
    ``claim_timeout_seconds`` while the loop runs.

    Once a message for an entity fails, later messages for the same entity
    in that batch are released unapplied, so a newer document is never
    overwritten by an older one on the next pass.
    """

    def __init__(
        self,
        storage: OutboxStorage,
        index: SearchIndex,
        config: OutboxConfig | None = None,
        worker_id: str | None = None,
        metrics: OrderflowMetrics | None = None,
        on_message_failed: Callable[[OutboxMessage, Exception], Awaitable[None]] | None = None,
    ):
        """
        Args:
            storage: Relay-side outbox storage (``store.outbox``)
            index: Search index to apply messages to
            config: Relay configuration
            worker_id: Unique ID for this relay (auto-generated if not provided)
            metrics: Prometheus collectors (shared default if not provided)
            on_message_failed: Callback when a message fails to apply
        """
        self.storage = storage
        self.index = index
        self.config = config or OutboxConfig()
        self.worker_id = worker_id or f"relay-{uuid.uuid4().hex[:8]}"
        self.metrics = metrics or get_metrics()
        self.tracer = OrderflowTracer()

        self._state_machine = OutboxStateMachine(max_retries=self.config.max_retries)
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._next_recovery = 0.0
        self._on_message_failed = on_message_failed

        self._messages_sent = 0
        self._messages_failed = 0
        self._messages_dead_lettered = 0

    async def start(self) -> None:
        """
        Start the relay loop.

        Runs continuously until stop() is called or a shutdown signal is received.
        """
        self._running = True
        self._shutdown_event.clear()

        logger.info(f"Outbox relay {self.worker_id} starting")
        self._setup_signal_handlers()

        try:
            while self._running:
                await self._process_iteration()
        finally:
            self._running = False
            logger.info(f"Outbox relay {self.worker_id} stopped")

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:  # pragma: no cover
                pass  # Windows doesn't support add_signal_handler

    async def _process_iteration(self) -> None:
        try:
            await self._recover_if_due()
            self.metrics.outbox_pending(await self.storage.get_pending_count())
            processed = await self.process_batch()
            if processed == 0:
                await self._wait_for_next_poll()
        except TimeoutError:
            pass  # Normal poll timeout
        except Exception as e:
            logger.error(f"Relay {self.worker_id} error: {e}")
            await self._wait_for_next_poll_quietly()

    async def _recover_if_due(self) -> None:
        now = time.monotonic()
        if now < self._next_recovery:
            return
        self._next_recovery = now + self.config.claim_timeout_seconds
        await self.recover_stuck()

    async def _wait_for_next_poll(self) -> None:
        """Wait for shutdown or poll interval."""
        await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.config.poll_interval_seconds)

    async def _wait_for_next_poll_quietly(self) -> None:
        try:
            await self._wait_for_next_poll()
        except TimeoutError:
            pass

    async def stop(self) -> None:
        """Stop the relay gracefully."""
        logger.info(f"Stopping relay {self.worker_id}")
        self._running = False
        self._shutdown_event.set()

    def _handle_shutdown(self) -> None:
        logger.info(f"Shutdown signal received for relay {self.worker_id}")
        self._shutdown_task = asyncio.create_task(self.stop())

    async def process_batch(self) -> int:
        """
        Claim and apply a single batch of messages.

        Returns:
            Number of messages claimed
        """
        messages = await self.storage.claim_batch(
            worker_id=self.worker_id,
            batch_size=self.config.batch_size,
        )
        if not messages:
            return 0

        logger.debug(f"Relay {self.worker_id} claimed {len(messages)} messages")

        unfinished = {message.id for message in messages}
        with self.tracer.span("outbox.batch", worker_id=self.worker_id, size=len(messages)):
            blocked: set[tuple[str, str]] = set()
            try:
                for message in messages:
                    key = (message.entity_type, message.entity_id)
                    if key in blocked:
                        await self._release(message)
                    elif not await self._process_message(message):
                        blocked.add(key)
                    unfinished.discard(message.id)
            finally:
                if unfinished:
                    await self._release_unfinished(unfinished)

        logger.info(f"Relay {self.worker_id} processed batch of {len(messages)} messages")
        return len(messages)

    async def _apply(self, message: OutboxMessage) -> None:
        if message.change_type == ChangeType.DELETE:
            await self.index.delete_document(message.entity_type, message.entity_id)
        else:
            await self.index.index_document(message.entity_type, message.entity_id, message.document)

    async def _process_message(self, message: OutboxMessage) -> bool:
        """Apply one message; returns False when it failed."""
        try:
            await self._apply(message)
        except Exception as e:
            await self._handle_failure(message, e)
            return False

        self._state_machine.mark_sent(message)
        await self.storage.update(message)
        self._messages_sent += 1
        self.metrics.outbox_message("sent")
        logger.debug(f"Outbox message {message.id} applied ({message.entity_type}/{message.entity_id})")
        return True

    async def _handle_failure(self, message: OutboxMessage, error: Exception) -> None:
        error_message = str(error) or type(error).__name__

        logger.warning(
            f"Outbox message {message.id} failed to apply: {error_message} "
            f"(attempt {message.retry_count + 1}/{self.config.max_retries})"
        )

        self._state_machine.mark_failed(message, error_message)
        self._messages_failed += 1
        self.metrics.outbox_message("failed")

        if self._on_message_failed:
            await self._on_message_failed(message, error)

        if self._state_machine.should_dead_letter(message):
            self._state_machine.move_to_dead_letter(message)
            self._messages_dead_lettered += 1
            self.metrics.outbox_message("dead_lettered")
            logger.error(
                f"Outbox message {message.id} moved to dead letter queue "
                f"after {message.retry_count} attempts. Last error: {message.last_error}"
            )
        else:
            self._state_machine.retry(message)

        await self.storage.update(message)

    async def _release(self, message: OutboxMessage) -> None:
        self._state_machine.release(message)
        await self.storage.update(message)

    async def _release_unfinished(self, message_ids: set[str]) -> None:
        """
        Hand back claims left open when storage failed mid-batch.

        Stored copies are re-read because the in-flight objects may already
        carry a transition that was never persisted. Whatever cannot be
        released here is picked up by :meth:`recover_stuck` later.
        """
        released = 0
        for message_id in message_ids:
            try:
                stored = await self.storage.get_by_id(message_id)
                if stored is None or stored.status != OutboxStatus.CLAIMED or stored.worker_id != self.worker_id:
                    continue
                await self._release(stored)
                released += 1
            except Exception as e:
                logger.warning(f"Relay {self.worker_id} could not release outbox message {message_id}: {e}")
        if released:
            logger.warning(f"Relay {self.worker_id} released {released} unfinished outbox messages")

    async def recover_stuck(self) -> int:
        """
        Release messages whose claim is older than the claim timeout.

        Call periodically to pick up messages claimed by crashed relays.

        Returns:
            Number of messages released
        """
        cutoff = datetime.now(UTC) - timedelta(seconds=self.config.claim_timeout_seconds)
        count = 0
        for message in await self.storage.get_stuck(cutoff):
            try:
                await self._release(message)
                count += 1
            except ConcurrencyError:
                logger.debug(f"Outbox message {message.id} changed while recovering, skipping")

        if count > 0:
            logger.info(f"Recovered {count} stuck outbox messages")
        return count

    async def requeue_dead_letters(self, limit: int = 100) -> int:
        """Move parked messages back to PENDING with a fresh retry budget."""
        count = 0
        for message in await self.storage.get_dead_letters(limit):
            self._state_machine.requeue(message)
            await self.storage.update(message)
            count += 1

        if count > 0:
            logger.info(f"Requeued {count} dead-lettered outbox messages")
        return count

    def get_stats(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "running": self._running,
            "messages_sent": self._messages_sent,
            "messages_failed": self._messages_failed,
            "messages_dead_lettered": self._messages_dead_lettered,
        }
