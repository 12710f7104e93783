"""
Collaborators the checkout saga consumes.

Each port is an ABC; in-memory implementations for tests and development
live in :mod:`orderflow.checkout.memory` and :mod:`orderflow.payments`.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from orderflow.checkout.types import CartLine, PayerContact


@dataclass
class PaymentRequestResult:
    redirect_url: str
    authority: str


@dataclass
class PaymentVerification:
    """
    Gateway verdict on a payment.

    Attributes:
        verified: True when the gateway confirmed the money moved
        reference_id: Gateway reference for the settled payment
        card_mask: Masked payer card number
        fee: Gateway fee charged on the payment
        code: Raw gateway status code, for logging
    """

    verified: bool
    reference_id: str | None = None
    card_mask: str | None = None
    fee: Decimal | None = None
    code: int | None = None


@dataclass
class RefundResult:
    refunded: bool
    reference_id: str | None = None
    message: str | None = None


class PaymentGateway(ABC):
    """
    Payment provider.

    Gateway calls are network I/O; the orchestrator bounds them with a timeout
    and treats a timeout as an unknown outcome. Gateways without a refund API
    leave ``supports_refunds`` false and refunds are paid out by an operator.
    """

    name: str = "gateway"
    supports_refunds: bool = False

    @abstractmethod
    async def request_payment(
        self,
        amount: Decimal,
        description: str,
        callback_url: str,
        contact: PayerContact,
    ) -> PaymentRequestResult:
        """
        Open a payment and return where to send the payer.

        Raises:
            PaymentGatewayError: If the gateway rejected the request
            PaymentGatewayTimeoutError: If the gateway did not answer in time
        """

    @abstractmethod
    async def verify_payment(self, amount: Decimal, authority: str) -> PaymentVerification:
        """
        Ask the gateway whether the payment for ``authority`` settled.

        Raises:
            PaymentGatewayError: If the gateway could not be queried
            PaymentGatewayTimeoutError: If the gateway did not answer in time
        """

    async def refund_payment(self, reference_id: str, amount: Decimal, reason: str) -> RefundResult:
        """
        Return ``amount`` of the settled payment ``reference_id`` to the payer.

        Only called when ``supports_refunds`` is true.

        Raises:
            PaymentGatewayError: If the gateway could not be reached
            PaymentGatewayTimeoutError: If the gateway did not answer in time
        """
        msg = f"{self.name} gateway has no refund API"
        raise NotImplementedError(msg)


@dataclass
class DiscountResult:
    discount_amount: Decimal
    discount_id: str


class DiscountEvaluator(ABC):
    @abstractmethod
    async def validate_and_apply(self, code: str, order_total: Decimal, user_id: str) -> DiscountResult:
        """
        Raises:
            DiscountRejectedError: If the code is unknown, expired or not applicable
        """


class ShippingEvaluator(ABC):
    @abstractmethod
    async def is_available(self, method_id: str, order_total: Decimal) -> bool: ...

    @abstractmethod
    async def get_cost(self, method_id: str, lines: list[CartLine]) -> Decimal: ...


class NotificationSink(ABC):
    """Fire-and-forget user notifications; failures never fail the caller."""

    @abstractmethod
    async def notify(self, event: str, payload: dict[str, Any]) -> None: ...


class AuditSink(ABC):
    """Structured order lifecycle log; best effort."""

    @abstractmethod
    async def record(self, action: str, payload: dict[str, Any]) -> None: ...


class AlertSink(ABC):
    """Operator-facing alerts (compensation failures, a failing sweeper)."""

    @abstractmethod
    async def alert(self, title: str, details: dict[str, Any]) -> None: ...
