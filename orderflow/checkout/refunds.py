"""
Refunds for settled payments.

A refund is recorded on the order's verified payment inside the caller's
unit of work, so the payment, the stock movements and the order status are
committed together. Gateways with a refund API are called before anything
is written; a refusal or a timeout leaves the order untouched. For gateways
without one the refund is recorded as manual and has to be paid out by an
operator.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from orderflow.checkout.ports import PaymentGateway
from orderflow.core.exceptions import PaymentGatewayError, PaymentGatewayTimeoutError, RefundRejectedError
from orderflow.core.logger import get_logger
from orderflow.orders.types import ZERO, Order, PaymentStatus, PaymentTransaction, money
from orderflow.storage.base import UnitOfWork

logger = get_logger(__name__)


@dataclass
class RefundOutcome:
    order_id: str
    payment_id: str
    amount: Decimal
    reference_id: str | None
    manual: bool

    def to_payload(self) -> dict:
        return {
            "order_id": self.order_id,
            "payment_id": self.payment_id,
            "amount": str(self.amount),
            "reference_id": self.reference_id,
            "method": "manual" if self.manual else "gateway",
        }


class PaymentRefunder:
    """
    Validates and records refunds against an order's settled payment.

    Usage:
        >>> async with store.unit_of_work() as uow:
        ...     outcome = await refunder.refund(uow, order, "customer returned the parcel")
        ...     ...  # stock movements and the status change
        ...     await uow.commit()
    """

    def __init__(self, gateway: PaymentGateway, timeout_seconds: float, clock: Callable[[], datetime]):
        self.gateway = gateway
        self.timeout_seconds = timeout_seconds
        self.clock = clock

    async def refund(
        self, uow: UnitOfWork, order: Order, reason: str, amount: Decimal | None = None
    ) -> RefundOutcome:
        """
        Refund ``amount`` (the full payment if not provided) of the order's payment.

        Raises:
            RefundRejectedError: No settled payment, or the amount is not in
                ``(0, payment.amount]``
            PaymentGatewayError: The gateway refused the refund
            PaymentGatewayTimeoutError: The gateway did not answer in time
        """
        payment = await uow.payments.get_latest_for_order(order.id)
        if payment is None or payment.status != PaymentStatus.SUCCESS:
            raise RefundRejectedError(order.id, "order has no settled payment")

        amount = payment.amount if amount is None else money(amount)
        if amount <= ZERO or amount > payment.amount:
            raise RefundRejectedError(order.id, f"amount {amount} must be above 0 and at most {payment.amount}")

        manual = not self.gateway.supports_refunds or payment.gateway != self.gateway.name
        reference = None if manual else await self._refund_with_gateway(order, payment, amount, reason)

        payment.mark_refunded(amount, reference, now=self.clock())
        await uow.payments.update(payment)

        if manual:
            logger.warning(
                f"Gateway {payment.gateway} cannot refund payment {payment.id}; "
                f"manual refund of {amount} required for order {order.id}"
            )
        else:
            logger.info(f"Refunded {amount} of payment {payment.id} for order {order.id} (reference {reference})")
        return RefundOutcome(order.id, payment.id, amount, reference, manual)

    async def _refund_with_gateway(
        self, order: Order, payment: PaymentTransaction, amount: Decimal, reason: str
    ) -> str | None:
        if payment.reference_id is None:
            raise RefundRejectedError(order.id, "settled payment has no gateway reference")
        try:
            result = await asyncio.wait_for(
                self.gateway.refund_payment(payment.reference_id, amount, reason),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            msg = f"Payment gateway timed out while refunding order {order.id}"
            raise PaymentGatewayTimeoutError(msg, order_id=order.id) from None

        if not result.refunded:
            logger.error(f"Gateway refused refund for order {order.id}: {result.message}")
            msg = f"Refund for order {order.id} refused: {result.message}"
            raise PaymentGatewayError(msg)
        return result.reference_id
