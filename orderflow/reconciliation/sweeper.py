"""
Payment Reconciliation Sweeper - resolves payments nobody came back for.

Each sweep:
    1. Re-verifies payments stuck in Pending / VerificationInProgress for
       longer than ``verification_timeout_seconds``; settled payments are
       processed exactly like a successful gateway callback.
    2. Expires orders still awaiting payment after
       ``payment_window_seconds``, releasing their reservations through the
       same compensation path the checkout surface uses.

Usage:
    >>> sweeper = PaymentReconciliationSweeper(store, orchestrator)
    >>> await sweeper.start()  # Runs until stopped
    >>> # or
    >>> report = await sweeper.run_once()
"""

import asyncio
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from orderflow.checkout.memory import LoggingAlertSink
from orderflow.checkout.orchestrator import CheckoutOrchestrator
from orderflow.checkout.ports import AlertSink
from orderflow.core.config import OrderflowConfig
from orderflow.core.exceptions import ConcurrencyConflictError, OrderflowError, PaymentGatewayError
from orderflow.core.logger import get_logger
from orderflow.monitoring.logging import order_context
from orderflow.monitoring.metrics import OrderflowMetrics
from orderflow.monitoring.tracing import OrderflowTracer
from orderflow.orders.state_machine import AWAITING_PAYMENT_STATUSES
from orderflow.orders.types import Order, OrderTrigger, PaymentStatus
from orderflow.storage.base import OrderStore
from orderflow.storage.errors import ConcurrencyError

logger = get_logger(__name__)

T = TypeVar("T")

STUCK_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.VERIFICATION_IN_PROGRESS})
EXPIRY_REASON = "payment window elapsed"


@dataclass
class SweepReport:
    verified: int = 0
    failed_verification: int = 0
    expired: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.verified + self.failed_verification + self.expired + self.errors


class PaymentReconciliationSweeper:
    """
    Periodic background task that drives abandoned checkouts to a final state.

    A failing sweep (storage down, for example) is retried with exponential
    backoff; after ``sweep_alert_threshold`` consecutive failures an
    operator alert is raised. Concurrency conflicts on individual orders
    are retried automatically since no client is waiting.
    """

    def __init__(
        self,
        store: OrderStore,
        orchestrator: CheckoutOrchestrator,
        config: OrderflowConfig | None = None,
        alerts: AlertSink | None = None,
        metrics: OrderflowMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            store: Storage backend
            orchestrator: Checkout surface used for verification and compensation
            config: Settings (orchestrator's config if not provided)
            alerts: Operator alerts (logs if not provided)
            metrics: Prometheus collectors (orchestrator's if not provided)
            clock: Source of "now" (orchestrator's clock if not provided)
        """
        self.store = store
        self.orchestrator = orchestrator
        self.config = config or orchestrator.config
        self.alerts = alerts or LoggingAlertSink()
        self.metrics = metrics or orchestrator.metrics
        self.clock = clock or orchestrator.clock
        self.tracer = OrderflowTracer()

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    # ============================================
    # SWEEP
    # ============================================

    async def run_once(self) -> SweepReport:
        """Run one sweep; per-order failures are counted in the report, not raised."""
        report = SweepReport()
        now = self.clock()
        with self.tracer.span("sweep") as span:
            checked = await self._reverify_stuck_payments(now, report)
            await self._expire_abandoned_orders(now, report, checked)
            span.set_attributes(
                {
                    "orderflow.sweep.verified": report.verified,
                    "orderflow.sweep.expired": report.expired,
                    "orderflow.sweep.errors": report.errors,
                }
            )

        if report.total:
            logger.info(
                f"Sweep finished: {report.verified} verified, {report.failed_verification} unsettled, "
                f"{report.expired} expired, {report.errors} errors"
            )
        return report

    async def _reverify_stuck_payments(self, now: datetime, report: SweepReport) -> set[str]:
        async with self.store.unit_of_work() as uow:
            stuck = await uow.payments.find_stuck(
                set(STUCK_PAYMENT_STATUSES),
                now - self.config.verification_timeout,
                self.config.sweep_batch_size,
            )

        checked: set[str] = set()
        for payment in stuck:
            if payment.authority is None:
                continue
            checked.add(payment.order_id)
            await self._recheck(payment.order_id, report)
        return checked

    async def _recheck(self, order_id: str, report: SweepReport) -> bool:
        """Re-verify one order's payment; True when it is now settled."""
        logger.info(f"Retrying verification for order {order_id}")
        try:
            result = await self._retry_conflicts(lambda: self.orchestrator.recheck_payment(order_id))
        except PaymentGatewayError as e:
            report.errors += 1
            logger.warning(f"Re-verification of order {order_id} failed: {e}")
            return False
        except OrderflowError as e:
            report.errors += 1
            logger.error(f"Error re-verifying order {order_id}: {e}")
            return False

        if result.verified or result.refund_required:
            report.verified += 1
            return True
        report.failed_verification += 1
        return False

    async def _expire_abandoned_orders(self, now: datetime, report: SweepReport, checked: set[str]) -> None:
        async with self.store.unit_of_work() as uow:
            abandoned = await uow.orders.find_created_before(
                set(AWAITING_PAYMENT_STATUSES),
                now - self.config.payment_window,
                self.config.sweep_batch_size,
            )

        for order in abandoned:
            # One last look at the gateway so an out-of-band payment is not expired.
            if order.id not in checked and await self._has_open_authority(order):
                if await self._recheck(order.id, report):
                    continue

            try:
                expired = await self._retry_conflicts(lambda order=order: self._expire(order.id))
            except OrderflowError as e:
                report.errors += 1
                logger.error(f"Error expiring order {order.id}: {e}")
                continue
            if expired:
                report.expired += 1

    async def _has_open_authority(self, order: Order) -> bool:
        async with self.store.unit_of_work() as uow:
            payment = await uow.payments.get_latest_for_order(order.id)
        return payment is not None and payment.authority is not None and not payment.is_final

    async def _expire(self, order_id: str) -> bool:
        with order_context(order_id=order_id, component="reconciliation"):
            try:
                async with self.store.unit_of_work() as uow:
                    order = await uow.orders.get(order_id)
                    if order is None or order.status not in AWAITING_PAYMENT_STATUSES:
                        return False
                    payment = await uow.payments.get_latest_for_order(order.id)
                    await self.orchestrator.compensator.compensate(
                        uow, order, OrderTrigger.EXPIRE, EXPIRY_REASON, payment
                    )
                    await uow.commit()
            except ConcurrencyError as e:
                raise ConcurrencyConflictError(
                    e.item_type or "order", e.item_id or order_id, e.expected_version, e.actual_version
                ) from e

        self.metrics.order_expired()
        logger.info(f"Order {order_id} expired, reservations released")
        return True

    async def _retry_conflicts(self, operation: Callable[[], Awaitable[T]]) -> T:
        retries = self.config.sweep_conflict_retries
        attempt = 0
        while True:
            try:
                return await operation()
            except ConcurrencyConflictError:
                if attempt >= retries:
                    raise
                attempt += 1
                logger.info(f"Concurrency conflict, retrying ({attempt}/{retries})")

    # ============================================
    # LOOP
    # ============================================

    def backoff_delay(self) -> float:
        """Delay before the next attempt after ``consecutive_failures`` failed sweeps."""
        if self._consecutive_failures == 0:
            return self.config.sweep_interval_seconds
        delay = self.config.sweep_backoff_base_seconds * 2 ** (self._consecutive_failures - 1)
        return min(self.config.sweep_backoff_max_seconds, delay)

    async def run_cycle(self) -> float:
        """
        Run one sweep with failure accounting.

        Returns:
            Seconds to wait before the next cycle
        """
        try:
            await self.run_once()
        except Exception as e:
            self._consecutive_failures += 1
            self.metrics.sweep_finished("failed", self._consecutive_failures)
            logger.error(f"Sweep failed ({self._consecutive_failures} in a row): {e}")

            threshold = self.config.sweep_alert_threshold
            if self._consecutive_failures % threshold == 0:
                await self.alerts.alert(
                    "Payment reconciliation sweeper is failing",
                    {"consecutive_failures": self._consecutive_failures, "error": str(e)},
                )
            return self.backoff_delay()

        self._consecutive_failures = 0
        self.metrics.sweep_finished("succeeded", 0)
        return self.config.sweep_interval_seconds

    async def start(self) -> None:
        """
        Start the sweep loop.

        Runs continuously until stop() is called or a shutdown signal is received.
        """
        self._running = True
        self._shutdown_event.clear()

        logger.info("Payment reconciliation sweeper starting")
        self._setup_signal_handlers()

        try:
            while self._running:
                delay = await self.run_cycle()
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
                except TimeoutError:
                    pass  # Normal interval timeout
        finally:
            self._running = False
            logger.info("Payment reconciliation sweeper stopped")

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:  # pragma: no cover
                pass  # Windows doesn't support add_signal_handler

    async def stop(self) -> None:
        """Stop the sweeper gracefully."""
        logger.info("Stopping payment reconciliation sweeper")
        self._running = False
        self._shutdown_event.set()

    def _handle_shutdown(self) -> None:
        logger.info("Shutdown signal received for reconciliation sweeper")
        self._shutdown_task = asyncio.create_task(self.stop())
