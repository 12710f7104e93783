"""
In-Memory Payment Gateway - For testing and development.
"""

import asyncio
import uuid
from decimal import Decimal

from orderflow.checkout.ports import PaymentGateway, PaymentRequestResult, PaymentVerification, RefundResult
from orderflow.checkout.types import PayerContact


class InMemoryPaymentGateway(PaymentGateway):
    """
    Scriptable gateway: every payment verifies unless told otherwise.

    Usage:
        >>> gateway = InMemoryPaymentGateway()
        >>> opened = await gateway.request_payment(Decimal("200"), "Order", "http://cb", PayerContact())
        >>> gateway.decline(opened.authority)
        >>> (await gateway.verify_payment(Decimal("200"), opened.authority)).verified
        False
        >>>
        >>> gateway.request_delay = 5.0  # slower than the orchestrator's timeout

    Refunds are only offered when built with ``supports_refunds=True``;
    otherwise the gateway behaves like one without a refund API.
    """

    name = "memory"

    def __init__(self, start_url: str = "https://pay.example.test/start", supports_refunds: bool = False):
        self.start_url = start_url.rstrip("/")
        self.supports_refunds = supports_refunds
        self.refunds: list[tuple[str, Decimal]] = []
        self.refund_error: Exception | None = None
        self.refuse_refunds = False
        self.payments: dict[str, Decimal] = {}
        self.verify_calls: list[str] = []
        self.request_error: Exception | None = None
        self.verify_error: Exception | None = None
        self.request_delay = 0.0
        self.verify_delay = 0.0
        self._declined: set[str] = set()

    def decline(self, authority: str) -> None:
        """Make verification of ``authority`` fail."""
        self._declined.add(authority)

    async def request_payment(
        self,
        amount: Decimal,
        description: str,
        callback_url: str,
        contact: PayerContact,
    ) -> PaymentRequestResult:
        if self.request_delay:
            await asyncio.sleep(self.request_delay)
        if self.request_error is not None:
            raise self.request_error

        authority = f"A{uuid.uuid4().hex[:20].upper()}"
        self.payments[authority] = amount
        return PaymentRequestResult(redirect_url=f"{self.start_url}/{authority}", authority=authority)

    async def verify_payment(self, amount: Decimal, authority: str) -> PaymentVerification:
        self.verify_calls.append(authority)
        if self.verify_delay:
            await asyncio.sleep(self.verify_delay)
        if self.verify_error is not None:
            raise self.verify_error

        if authority in self._declined or self.payments.get(authority) != amount:
            return PaymentVerification(verified=False, code=-51)
        return PaymentVerification(
            verified=True,
            reference_id=f"REF-{authority[-8:]}",
            card_mask="6037****1234",
            fee=Decimal("0"),
            code=100,
        )

    async def refund_payment(self, reference_id: str, amount: Decimal, reason: str) -> RefundResult:
        if self.refund_error is not None:
            raise self.refund_error
        if self.refuse_refunds:
            return RefundResult(refunded=False, message="refund window closed")

        self.refunds.append((reference_id, amount))
        return RefundResult(refunded=True, reference_id=f"RF-{reference_id}-{len(self.refunds)}")
