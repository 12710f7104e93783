"""
Checkout Orchestrator - drives the checkout saga.

A checkout runs as a single unit of work: validate the cart against the
client's view, snapshot prices into a new order, reserve stock, open a
payment with the gateway, commit. The gateway call is the only suspension
point inside it and is bounded by ``gateway_timeout_seconds``:

- gateway error: nothing is persisted
- gateway timeout: the order is committed as Pending with its reservations
  and left for the reconciliation sweeper, since the payment may still
  complete out-of-band

Payment callbacks, cancellations and administrative status changes also
live here. Every rollback goes through
:class:`~orderflow.checkout.compensation.OrderCompensator`.

Usage:
    >>> orchestrator = CheckoutOrchestrator(store, InMemoryPaymentGateway())
    >>> result = await orchestrator.checkout_from_cart(request)
    >>> # later, from the gateway callback
    >>> await orchestrator.verify_and_process_payment(result.order_id, result.authority, "OK")
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from orderflow.checkout.compensation import ORDER_INDEX, OrderCompensator
from orderflow.checkout.memory import FlatRateShippingEvaluator, LoggingAlertSink, StaticDiscountEvaluator
from orderflow.checkout.ports import (
    AlertSink,
    AuditSink,
    DiscountEvaluator,
    NotificationSink,
    PaymentGateway,
    PaymentVerification,
    ShippingEvaluator,
)
from orderflow.checkout.refunds import PaymentRefunder, RefundOutcome
from orderflow.checkout.types import (
    Cart,
    CheckoutRequest,
    CheckoutResult,
    OrderFilters,
    OrderPage,
    Paging,
    PaymentVerificationResult,
    UserAddress,
)
from orderflow.core.config import OrderflowConfig, get_config
from orderflow.core.exceptions import (
    CheckoutValidationError,
    ConcurrencyConflictError,
    ConflictError,
    DiscountRejectedError,
    DuplicateSubmissionError,
    EmptyCartError,
    ExpectedItemsMismatchError,
    IdempotencyKeyRequiredError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidTransitionError,
    OrderAccessDeniedError,
    OrderNotFoundError,
    PaymentGatewayTimeoutError,
    PaymentMismatchError,
    PriceChangedError,
    ShippingUnavailableError,
    StorageUnavailableError,
    VariantUnavailableError,
)
from orderflow.core.logger import get_logger
from orderflow.inventory.service import InventoryService
from orderflow.inventory.types import VariantStock
from orderflow.monitoring.logging import order_context
from orderflow.monitoring.metrics import OrderflowMetrics, get_metrics
from orderflow.monitoring.tracing import OrderflowTracer
from orderflow.orders.state_machine import AWAITING_PAYMENT_STATUSES, OrderStateMachine
from orderflow.orders.types import (
    ZERO,
    AddressSnapshot,
    Order,
    OrderItem,
    OrderProcessState,
    OrderStatus,
    OrderTrigger,
    PaymentTransaction,
    ProcessStep,
    money,
    utcnow,
)
from orderflow.outbox.types import OutboxMessage
from orderflow.storage.base import OrderStore, UnitOfWork
from orderflow.storage.errors import ConcurrencyError, DuplicateKeyError
from orderflow.storage.errors import ConnectionError as StorageConnectionError

logger = get_logger(__name__)

CALLBACK_OK_STATUSES = frozenset({"OK", "SUCCESS"})

ADMIN_TRIGGERS = frozenset(
    {
        OrderTrigger.START_PROCESSING,
        OrderTrigger.SHIP,
        OrderTrigger.DELIVER,
        OrderTrigger.MARK_RETURNED,
        OrderTrigger.REQUEST_REFUND,
    }
)

# Administrative transitions that put committed stock back on hand.
_RESTOCKING_TRIGGERS = frozenset({OrderTrigger.MARK_RETURNED, OrderTrigger.REQUEST_REFUND})


def _conflict(error: ConcurrencyError) -> ConcurrencyConflictError:
    return ConcurrencyConflictError(
        error.item_type or "entity",
        error.item_id or "?",
        error.expected_version,
        error.actual_version,
    )


def _unavailable(error: StorageConnectionError) -> StorageUnavailableError:
    return StorageUnavailableError(f"Order storage unavailable: {error}")


class CheckoutOrchestrator:
    """
    Exposed checkout surface: checkout, payment verification, cancellation,
    order queries and administrative status changes.

    Concurrency conflicts are never retried here; they surface as
    :class:`ConcurrencyConflictError` so the client can refresh. A store
    that cannot be reached surfaces as :class:`StorageUnavailableError`.
    """

    def __init__(
        self,
        store: OrderStore,
        gateway: PaymentGateway,
        discounts: DiscountEvaluator | None = None,
        shipping: ShippingEvaluator | None = None,
        notifications: NotificationSink | None = None,
        audit: AuditSink | None = None,
        alerts: AlertSink | None = None,
        config: OrderflowConfig | None = None,
        metrics: OrderflowMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            store: Storage backend
            gateway: Payment gateway
            discounts: Discount evaluator (no codes accepted if not provided)
            shipping: Shipping evaluator (free ``standard`` method if not provided)
            notifications: User notification sink (best effort, optional)
            audit: Audit sink (best effort, optional)
            alerts: Operator alerts for compensation failures (logs if not provided)
            config: Settings (global config if not provided)
            metrics: Prometheus collectors (shared default if not provided)
            clock: Source of "now" for order timestamps and the duplicate window
        """
        self.store = store
        self.gateway = gateway
        self.discounts = discounts or StaticDiscountEvaluator()
        self.shipping = shipping or FlatRateShippingEvaluator()
        self.notifications = notifications
        self.audit = audit
        self.alerts = alerts or LoggingAlertSink()
        self.config = config or get_config()
        self.metrics = metrics or get_metrics()
        self.clock = clock or utcnow

        self.state_machine = OrderStateMachine(clock=self.clock)
        self.inventory = InventoryService(store)
        self.compensator = OrderCompensator(self.inventory, self.state_machine, self.alerts, self.metrics)
        self.refunder = PaymentRefunder(gateway, self.config.gateway_timeout_seconds, self.clock)
        self.tracer = OrderflowTracer()

    # ============================================
    # CHECKOUT
    # ============================================

    async def checkout_from_cart(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Turn the user's cart into a pending order with an open payment.

        Replaying a request with the same idempotency key returns the first
        result and creates nothing.

        Raises:
            IdempotencyKeyRequiredError: No idempotency key given
            CheckoutValidationError: Empty cart, stale item set, bad address,
                unavailable shipping, rejected discount, duplicate submission
            ConflictError: Stock, price or version changed; refresh and retry
            PaymentGatewayError: The gateway refused; nothing was persisted
            PaymentGatewayTimeoutError: Outcome unknown; ``order_id`` names the
                order left pending for the reconciliation sweeper
            StorageUnavailableError: The store could not be reached
        """
        if not request.idempotency_key:
            raise IdempotencyKeyRequiredError()

        started = time.perf_counter()
        outcome = "error"
        with (
            order_context(correlation_id=request.idempotency_key, component="checkout"),
            self.tracer.span("checkout", user_id=request.user_id),
        ):
            try:
                try:
                    result = await self._checkout(request)
                except DuplicateKeyError:
                    logger.info(f"Idempotency key {request.idempotency_key} was taken concurrently, replaying")
                    result = await self._replay_by_key(request)
                outcome = "replayed" if result.replayed else "succeeded"
                return result
            except ConcurrencyError as e:
                outcome = "conflict"
                raise _conflict(e) from e
            except StorageConnectionError as e:
                outcome = "unavailable"
                raise _unavailable(e) from e
            except PaymentGatewayTimeoutError:
                outcome = "timeout"
                raise
            except CheckoutValidationError:
                outcome = "rejected"
                raise
            except ConflictError:
                outcome = "conflict"
                raise
            finally:
                self.metrics.checkout_finished(outcome, time.perf_counter() - started)

    async def _checkout(self, request: CheckoutRequest) -> CheckoutResult:
        now = self.clock()

        async with self.store.unit_of_work() as uow:
            existing = await uow.orders.get_by_idempotency_key(request.idempotency_key)
            if existing is not None:
                return await self._replay(uow, existing, request.user_id)

            await self._check_duplicate_submission(uow, request.user_id, now)

            cart = await uow.carts.get(request.user_id)
            if cart is None or cart.is_empty:
                raise EmptyCartError(request.user_id)

            expected_ids = set(request.expected_prices)
            if expected_ids != cart.variant_ids:
                raise ExpectedItemsMismatchError(
                    missing=cart.variant_ids - expected_ids,
                    unexpected=expected_ids - cart.variant_ids,
                )

            address = await self._resolve_address(uow, request)

            locked = await uow.variants.get_many_for_update(sorted(cart.variant_ids))
            variants = {variant.id: variant for variant in locked}
            self._validate_lines(cart, variants, request)

            order = await self._build_order(request, cart, variants, address, now)
            process = OrderProcessState(order_id=order.id, correlation_id=request.idempotency_key)

            await uow.orders.add(order)
            await uow.carts.clear(request.user_id)

            process.transition_to(ProcessStep.INVENTORY_RESERVING)
            await self.inventory.reserve_items(uow, order.items, variants, user_id=request.user_id)
            self.state_machine.apply(order, OrderTrigger.RESERVE_STOCK)
            process.transition_to(ProcessStep.INVENTORY_RESERVED)

            # Zero-amount orders cannot open a payment; fail before calling out.
            self.state_machine.transition(order, OrderTrigger.INITIATE_PAYMENT)

            payment = PaymentTransaction(
                order_id=order.id, amount=order.final_amount, gateway=self.gateway.name, created_at=now
            )
            try:
                opened = await asyncio.wait_for(
                    self.gateway.request_payment(
                        order.final_amount,
                        request.description or f"Order {order.receipt_number}",
                        f"{self.config.callback_url}?order_id={order.id}",
                        request.contact,
                    ),
                    timeout=self.config.gateway_timeout_seconds,
                )
            except (TimeoutError, PaymentGatewayTimeoutError):
                payment.last_error = "payment initiation timed out"
                await self._save_new_order(uow, order, process, payment)
                await uow.commit()
                logger.warning(
                    f"Payment initiation for order {order.id} timed out; "
                    f"left pending for reconciliation"
                )
                msg = f"Payment gateway timed out while opening payment for order {order.id}"
                raise PaymentGatewayTimeoutError(msg, order_id=order.id) from None

            payment.authority = opened.authority
            payment.redirect_url = opened.redirect_url
            await self._save_new_order(uow, order, process, payment)
            await uow.commit()

        logger.info(
            f"Order {order.id} placed for user {order.user_id}: "
            f"{len(order.items)} items, final amount {order.final_amount}"
        )
        await self._audit("order_created", {"order_id": order.id, "user_id": order.user_id})
        await self._notify("order_created", {"order_id": order.id, "user_id": order.user_id})
        return CheckoutResult(order_id=order.id, payment_url=opened.redirect_url, authority=opened.authority)

    async def _save_new_order(
        self,
        uow: UnitOfWork,
        order: Order,
        process: OrderProcessState,
        payment: PaymentTransaction,
    ) -> None:
        self.state_machine.apply(order, OrderTrigger.INITIATE_PAYMENT)
        process.transition_to(ProcessStep.PAYMENT_PENDING)

        await uow.orders.update(order)
        await uow.process_states.add(process)
        await uow.payments.add(payment)
        await uow.outbox.insert(OutboxMessage.index(ORDER_INDEX, order.id, order.search_document()))

    async def _replay(self, uow: UnitOfWork, order: Order, user_id: str) -> CheckoutResult:
        if order.user_id != user_id:
            raise OrderAccessDeniedError(order.id, user_id)
        payment = await uow.payments.get_latest_for_order(order.id)
        logger.info(f"Replaying checkout for order {order.id}")
        return CheckoutResult(
            order_id=order.id,
            payment_url=payment.redirect_url if payment else None,
            authority=payment.authority if payment else None,
            replayed=True,
        )

    async def _replay_by_key(self, request: CheckoutRequest) -> CheckoutResult:
        async with self.store.unit_of_work() as uow:
            order = await uow.orders.get_by_idempotency_key(request.idempotency_key)
            if order is None:
                raise DuplicateKeyError(item_type="order", key=request.idempotency_key)
            return await self._replay(uow, order, request.user_id)

    async def _check_duplicate_submission(self, uow: UnitOfWork, user_id: str, now: datetime) -> None:
        recent = await uow.orders.find_recent_for_user(user_id, now - self.config.duplicate_window)
        for order in recent:
            if order.status in AWAITING_PAYMENT_STATUSES:
                raise DuplicateSubmissionError(user_id, order.id)

    async def _resolve_address(self, uow: UnitOfWork, request: CheckoutRequest) -> AddressSnapshot:
        selection = request.shipping
        if selection.address_id:
            saved = await uow.addresses.get(selection.address_id)
            if saved is None or saved.user_id != request.user_id:
                msg = f"Address {selection.address_id} not found for user {request.user_id}"
                raise InvalidAddressError(msg)
            return saved.address

        if selection.new_address is not None:
            snapshot = selection.new_address.validate()
            if selection.new_address.save_to_profile:
                await uow.addresses.add(UserAddress(user_id=request.user_id, address=snapshot))
            return snapshot

        msg = "A delivery address is required"
        raise InvalidAddressError(msg)

    def _validate_lines(self, cart: Cart, variants: dict[str, VariantStock], request: CheckoutRequest) -> None:
        demanded: dict[str, int] = {}
        for line in cart.lines:
            variant = variants.get(line.variant_id)
            if variant is None or not variant.is_sellable:
                raise VariantUnavailableError(line.variant_id)

            demanded[variant.id] = demanded.get(variant.id, 0) + line.quantity
            if not variant.unlimited and variant.available < demanded[variant.id]:
                raise InsufficientStockError(variant.id, variant.available, demanded[variant.id])

            expected = money(request.expected_prices[variant.id])
            if expected != variant.selling_price:
                raise PriceChangedError(variant.id, expected, variant.selling_price)

    async def _build_order(
        self,
        request: CheckoutRequest,
        cart: Cart,
        variants: dict[str, VariantStock],
        address: AddressSnapshot,
        now: datetime,
    ) -> Order:
        order = Order(
            user_id=request.user_id,
            idempotency_key=request.idempotency_key,
            address=address,
            shipping_method_id=request.shipping.method_id,
            created_at=now,
        )
        for line in cart.lines:
            variant = variants[line.variant_id]
            order.items.append(
                OrderItem.create(
                    order_id=order.id,
                    variant_id=variant.id,
                    product_id=variant.product_id,
                    product_name=variant.product_name,
                    variant_name=variant.variant_name,
                    quantity=line.quantity,
                    purchase_price=variant.purchase_price,
                    selling_price=variant.selling_price,
                    original_price=variant.original_price,
                )
            )
        order.recalculate_totals()

        discount = ZERO
        if request.discount_code:
            applied = await self.discounts.validate_and_apply(request.discount_code, order.subtotal, request.user_id)
            discount = applied.discount_amount
            order.discount_code_id = applied.discount_id

        method_id = request.shipping.method_id
        if not await self.shipping.is_available(method_id, order.subtotal - discount):
            raise ShippingUnavailableError(method_id)
        shipping_cost = await self.shipping.get_cost(method_id, cart.lines)

        order.recalculate_totals(shipping_cost=shipping_cost, discount_amount=discount)
        if request.discount_code and order.final_amount <= ZERO:
            raise DiscountRejectedError(request.discount_code, "it covers the whole order, nothing left to pay")
        return order

    # ============================================
    # PAYMENT VERIFICATION
    # ============================================

    async def verify_and_process_payment(
        self, order_id: str, authority: str | None, status: str
    ) -> PaymentVerificationResult:
        """
        Settle a payment callback (or a sweeper retry).

        Args:
            order_id: Order the payment belongs to
            authority: Gateway authority from the callback (None = the
                order's latest payment)
            status: Callback status; only ``OK``/``SUCCESS`` is verified

        Raises:
            OrderNotFoundError: Unknown or deleted order
            PaymentMismatchError: ``authority`` is not the order's payment
            PaymentGatewayTimeoutError: Verification timed out; the payment
                is left in verification for the sweeper
            ConcurrencyConflictError: The order changed concurrently
            StorageUnavailableError: The store could not be reached
        """
        with (
            order_context(order_id=order_id, component="payment"),
            self.tracer.span("verify_payment", order_id=order_id),
        ):
            try:
                return await self._verify(order_id, authority, status)
            except ConcurrencyError as e:
                raise _conflict(e) from e
            except StorageConnectionError as e:
                raise _unavailable(e) from e

    async def recheck_payment(self, order_id: str) -> PaymentVerificationResult:
        """
        Ask the gateway again about the order's latest payment (reconciliation).

        A verified payment is processed exactly like a successful callback.
        An unverified one is left untouched, since the payer may still be on
        the gateway page; expiry is the sweeper's decision.

        Raises:
            OrderNotFoundError: Unknown or deleted order
            PaymentMismatchError: The order has no payment authority to verify
            PaymentGatewayTimeoutError: Verification timed out
            ConcurrencyConflictError: The order changed concurrently
            StorageUnavailableError: The store could not be reached
        """
        with (
            order_context(order_id=order_id, component="reconciliation"),
            self.tracer.span("recheck_payment", order_id=order_id),
        ):
            try:
                return await self._verify(order_id, None, "OK", fail_unverified=False)
            except ConcurrencyError as e:
                raise _conflict(e) from e
            except StorageConnectionError as e:
                raise _unavailable(e) from e

    async def _verify(
        self, order_id: str, authority: str | None, status: str, fail_unverified: bool = True
    ) -> PaymentVerificationResult:
        async with self.store.unit_of_work() as uow:
            order = await self._load_order(uow, order_id)
            payment = await uow.payments.get_latest_for_order(order.id)

            if order.is_paid:
                self.metrics.payment_verified("already_paid")
                return PaymentVerificationResult(
                    order.id,
                    verified=True,
                    status=order.status,
                    reference_id=payment.reference_id if payment else None,
                    message="already paid",
                )

            if payment is None or (authority is not None and payment.authority != authority):
                raise PaymentMismatchError(order.id, authority)

            payable = order.status == OrderStatus.PENDING

            if (status or "").strip().upper() not in CALLBACK_OK_STATUSES:
                reason = f"payment not completed (gateway status {status})"
                if payable:
                    await self.compensator.compensate(uow, order, OrderTrigger.FAIL_PAYMENT, reason, payment)
                elif not payment.is_final:
                    payment.mark_failed(reason)
                    await uow.payments.update(payment)
                await uow.commit()
                return await self._payment_failed(order, reason)

            # Initiation timed out before the gateway handed out an authority.
            if payment.authority is None:
                raise PaymentMismatchError(order.id, authority)

            verification = await self._verify_with_gateway(uow, order, payment)

            if not verification.verified:
                if not fail_unverified:
                    self.metrics.payment_verified("unsettled")
                    return PaymentVerificationResult(
                        order.id, verified=False, status=order.status, message="payment not settled yet"
                    )
                reason = f"payment verification failed (code {verification.code})"
                if payable:
                    await self.compensator.compensate(uow, order, OrderTrigger.FAIL_PAYMENT, reason, payment)
                elif not payment.is_final:
                    payment.mark_failed(reason)
                    await uow.payments.update(payment)
                await uow.commit()
                return await self._payment_failed(order, reason)

            payment.mark_success(verification.reference_id, verification.card_mask, verification.fee)
            await uow.payments.update(payment)

            if not payable:
                await uow.commit()
                return await self._late_payment(order, payment)

            process = await uow.process_states.get_by_order(order.id)
            if process is not None and not process.is_closed:
                process.transition_to(ProcessStep.PAYMENT_SUCCEEDED)

            await self.inventory.confirm_items(uow, order.items, user_id=order.user_id)
            self.state_machine.apply(order, OrderTrigger.CONFIRM_PAYMENT)
            await uow.orders.update(order)
            await uow.outbox.insert(OutboxMessage.index(ORDER_INDEX, order.id, order.search_document()))

            if process is not None and not process.is_closed:
                process.mark_completed()
                await uow.process_states.update(process)

            await uow.commit()

        self.metrics.payment_verified("verified")
        logger.info(f"Payment for order {order.id} verified (reference {payment.reference_id})")
        payload = {"order_id": order.id, "user_id": order.user_id, "reference_id": payment.reference_id}
        await self._audit("payment_verified", payload)
        await self._notify("payment_succeeded", payload)
        return PaymentVerificationResult(order.id, verified=True, status=order.status, reference_id=payment.reference_id)

    async def _verify_with_gateway(
        self, uow: UnitOfWork, order: Order, payment: PaymentTransaction
    ) -> PaymentVerification:
        try:
            return await asyncio.wait_for(
                self.gateway.verify_payment(payment.amount, payment.authority),
                timeout=self.config.gateway_timeout_seconds,
            )
        except (TimeoutError, PaymentGatewayTimeoutError):
            payment.mark_verification_in_progress()
            payment.last_error = "verification timed out"
            await uow.payments.update(payment)

            process = await uow.process_states.get_by_order(order.id)
            if process is not None and not process.is_closed:
                process.increment_retry()
                await uow.process_states.update(process)

            await uow.commit()
            self.metrics.payment_verified("timeout")
            logger.warning(f"Verification of payment {payment.id} for order {order.id} timed out")
            msg = f"Payment gateway timed out while verifying order {order.id}"
            raise PaymentGatewayTimeoutError(msg, order_id=order.id) from None

    async def _payment_failed(self, order: Order, reason: str) -> PaymentVerificationResult:
        self.metrics.payment_verified("failed")
        logger.info(f"Payment for order {order.id} failed: {reason}")
        await self._notify("payment_failed", {"order_id": order.id, "user_id": order.user_id, "reason": reason})
        return PaymentVerificationResult(order.id, verified=False, status=order.status, message=reason)

    async def _late_payment(self, order: Order, payment: PaymentTransaction) -> PaymentVerificationResult:
        self.metrics.payment_verified("refund_required")
        logger.error(
            f"Payment {payment.id} for order {order.id} settled after the order became "
            f"{order.status.value}; refund required (reference {payment.reference_id})"
        )
        details = {
            "order_id": order.id,
            "payment_id": payment.id,
            "amount": str(payment.amount),
            "reference_id": payment.reference_id,
            "order_status": order.status.value,
        }
        await self._audit("refund_required", details)
        await self._alert("Refund required for late payment", details)
        return PaymentVerificationResult(
            order.id,
            verified=False,
            status=order.status,
            reference_id=payment.reference_id,
            message=f"order is {order.status.value}; payment must be refunded",
            refund_required=True,
        )

    # ============================================
    # CANCELLATION / ADMINISTRATION
    # ============================================

    async def cancel_order(self, order_id: str, user_id: str, reason: str = "cancelled by customer") -> Order:
        """
        Cancel an order on behalf of its owner.

        Unpaid orders release their reservations. Paid orders that have not
        shipped return their committed stock and are refunded in full, in
        the same unit of work.

        Raises:
            OrderNotFoundError: Unknown or deleted order
            OrderAccessDeniedError: The order belongs to another user
            InvalidTransitionError: The order is no longer cancellable
            RefundRejectedError: A paid order has no settled payment to refund
            PaymentGatewayError: The gateway refused the refund; nothing changed
            CompensationError: Stock could not be released
            StorageUnavailableError: The store could not be reached
        """
        refund: RefundOutcome | None = None
        with (
            order_context(order_id=order_id, component="checkout"),
            self.tracer.span("cancel_order", order_id=order_id),
        ):
            try:
                async with self.store.unit_of_work() as uow:
                    order = await self._load_order(uow, order_id, user_id)
                    self.state_machine.transition(order, OrderTrigger.CANCEL)
                    if order.is_paid:
                        refund = await self.refunder.refund(uow, order, reason)
                        payment = None
                    else:
                        payment = await uow.payments.get_latest_for_order(order.id)
                    await self.compensator.compensate(
                        uow, order, OrderTrigger.CANCEL, reason, payment, user_id=user_id
                    )
                    await uow.commit()
            except ConcurrencyError as e:
                raise _conflict(e) from e
            except StorageConnectionError as e:
                raise _unavailable(e) from e

        await self._audit("order_cancelled", {"order_id": order.id, "user_id": user_id, "reason": reason})
        await self._notify("order_cancelled", {"order_id": order.id, "user_id": user_id})
        if refund is not None:
            await self._announce_refund(order, refund)
        return order

    async def transition_order_status(
        self,
        order_id: str,
        trigger: OrderTrigger,
        expected_version: int,
        actor: str,
        refund_amount: Decimal | None = None,
    ) -> Order:
        """
        Fulfilment-side status change (processing, shipping, delivery, returns, refunds).

        Returns and refunds put committed stock back on hand. A refund is
        recorded on the order's settled payment; ``refund_amount`` defaults
        to the full payment and may be less for a partial refund.

        Raises:
            ConcurrencyConflictError: ``expected_version`` is stale
            InvalidTransitionError: Not an administrative trigger, or not
                permitted from the current status
            RefundRejectedError: No settled payment, or a bad ``refund_amount``
            PaymentGatewayError: The gateway refused the refund; nothing changed
            StorageUnavailableError: The store could not be reached
        """
        refund: RefundOutcome | None = None
        try:
            async with self.store.unit_of_work() as uow:
                order = await self._load_order(uow, order_id)
                if order.version != expected_version:
                    raise ConcurrencyConflictError("order", order.id, expected_version, order.version)
                if trigger not in ADMIN_TRIGGERS:
                    raise InvalidTransitionError(
                        order.id, order.status.value, trigger.value, reason="not an administrative trigger"
                    )

                self.state_machine.transition(order, trigger)
                if trigger == OrderTrigger.REQUEST_REFUND:
                    refund = await self.refunder.refund(
                        uow, order, f"refund requested by {actor}", amount=refund_amount
                    )
                if trigger in _RESTOCKING_TRIGGERS:
                    await self.inventory.return_items(uow, order.items, reason=f"order {trigger.value}", user_id=actor)

                self.state_machine.apply(order, trigger)
                await uow.orders.update(order)
                await uow.outbox.insert(OutboxMessage.index(ORDER_INDEX, order.id, order.search_document()))
                await uow.commit()
        except ConcurrencyError as e:
            raise _conflict(e) from e
        except StorageConnectionError as e:
            raise _unavailable(e) from e

        logger.info(f"Order {order.id} moved to {order.status.value} by {actor}")
        await self._audit(f"order_{trigger.value}", {"order_id": order.id, "actor": actor})
        if refund is not None:
            await self._announce_refund(order, refund)
        return order

    async def _announce_refund(self, order: Order, refund: RefundOutcome) -> None:
        payload = {**refund.to_payload(), "user_id": order.user_id}
        self.metrics.refund("manual" if refund.manual else "gateway")
        if refund.manual:
            await self._audit("refund_required", payload)
            await self._alert("Manual refund required", payload)
        else:
            await self._audit("payment_refunded", payload)
        await self._notify("payment_refunded", payload)

    # ============================================
    # QUERIES
    # ============================================

    async def _load_order(self, uow: UnitOfWork, order_id: str, user_id: str | None = None) -> Order:
        order = await uow.orders.get(order_id)
        if order is None or order.is_deleted:
            raise OrderNotFoundError(order_id)
        if user_id is not None and order.user_id != user_id:
            raise OrderAccessDeniedError(order_id, user_id)
        return order

    async def get_order(self, order_id: str, user_id: str | None = None) -> Order:
        """
        Raises:
            OrderNotFoundError: Unknown or deleted order
            OrderAccessDeniedError: ``user_id`` given and not the owner
            StorageUnavailableError: The store could not be reached
        """
        try:
            async with self.store.unit_of_work() as uow:
                return await self._load_order(uow, order_id, user_id)
        except StorageConnectionError as e:
            raise _unavailable(e) from e

    async def get_orders(self, filters: OrderFilters, paging: Paging | None = None) -> OrderPage:
        paging = paging or Paging()
        try:
            async with self.store.unit_of_work() as uow:
                items, total = await uow.orders.query(filters, paging)
        except StorageConnectionError as e:
            raise _unavailable(e) from e
        return OrderPage(items=items, total=total, page=paging.page, page_size=paging.page_size)

    # ============================================
    # BEST-EFFORT SINKS
    # ============================================

    async def _notify(self, event: str, payload: dict[str, Any]) -> None:
        if self.notifications is None:
            return
        try:
            await self.notifications.notify(event, payload)
        except Exception as e:
            logger.warning(f"Notification {event} failed: {e}")

    async def _audit(self, action: str, payload: dict[str, Any]) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.record(action, payload)
        except Exception as e:
            logger.warning(f"Audit record {action} failed: {e}")

    async def _alert(self, title: str, details: dict[str, Any]) -> None:
        try:
            await self.alerts.alert(title, details)
        except Exception as e:
            logger.warning(f"Alert {title!r} failed: {e}")
