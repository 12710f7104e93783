"""
Order aggregate types.

An order is plain data: the aggregate root, its item price snapshots, the
saga process record that tracks how far a checkout got, and the payment
attempts made against it. Status changes go through
:class:`orderflow.orders.state_machine.OrderStateMachine`, never by
assigning ``Order.status`` directly.
"""

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from orderflow.core.exceptions import InvalidPriceError, InvariantViolationError

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Any) -> Decimal:
    """Coerce ``value`` to a 2-place Decimal (half-up)."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class OrderStatus(Enum):
    """
    Customer-facing order status.

    Happy path:
        CREATED → RESERVED → PENDING → PAID → PROCESSING → SHIPPED → DELIVERED
    """

    CREATED = "created"
    """Order row exists, stock not yet held"""

    RESERVED = "reserved"
    """Stock reserved for every item"""

    PENDING = "pending"
    """Payment initiated, waiting for the gateway"""

    PAID = "paid"
    """Payment verified, stock committed"""

    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    FAILED = "failed"
    """Payment failed, reservations released"""

    EXPIRED = "expired"
    """Payment window elapsed, reservations released"""

    REFUNDED = "refunded"
    RETURNED = "returned"


class OrderTrigger(Enum):
    """Events that move an order between statuses."""

    RESERVE_STOCK = "reserve_stock"
    INITIATE_PAYMENT = "initiate_payment"
    CONFIRM_PAYMENT = "confirm_payment"
    FAIL_PAYMENT = "fail_payment"
    START_PROCESSING = "start_processing"
    SHIP = "ship"
    DELIVER = "deliver"
    CANCEL = "cancel"
    EXPIRE = "expire"
    REQUEST_REFUND = "request_refund"
    MARK_RETURNED = "mark_returned"


@dataclass
class AddressSnapshot:
    """Delivery address copied onto the order at checkout."""

    receiver_name: str
    phone: str
    city: str
    street: str
    postal_code: str
    province: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "receiver_name": self.receiver_name,
            "phone": self.phone,
            "province": self.province,
            "city": self.city,
            "street": self.street,
            "postal_code": self.postal_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AddressSnapshot":
        return cls(
            receiver_name=data["receiver_name"],
            phone=data["phone"],
            province=data.get("province", ""),
            city=data["city"],
            street=data["street"],
            postal_code=data["postal_code"],
        )


@dataclass
class OrderItem:
    """
    Immutable price snapshot of one cart line.

    Product and variant names are copied so later catalog edits never
    rewrite historical orders. Use :meth:`create` to build one; it derives
    ``discount``, ``amount`` and ``profit`` from the prices.
    """

    order_id: str
    variant_id: str
    product_id: str
    product_name: str
    quantity: int
    purchase_price: Decimal
    selling_price: Decimal
    original_price: Decimal
    discount: Decimal
    amount: Decimal
    profit: Decimal
    variant_name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def create(
        cls,
        order_id: str,
        variant_id: str,
        product_id: str,
        product_name: str,
        quantity: int,
        purchase_price: Any,
        selling_price: Any,
        original_price: Any,
        variant_name: str = "",
    ) -> "OrderItem":
        """
        Build an item snapshot with derived amounts.

        Raises:
            InvalidPriceError: If quantity < 1 or selling price is below the
                purchase price or above the original price
        """
        purchase = money(purchase_price)
        selling = money(selling_price)
        original = money(original_price)

        if quantity < 1:
            msg = f"Quantity for variant {variant_id} must be at least 1, got {quantity}"
            raise InvalidPriceError(msg)
        if selling < purchase:
            msg = f"Selling price {selling} of variant {variant_id} is below purchase price {purchase}"
            raise InvalidPriceError(msg)
        if selling > original:
            msg = f"Selling price {selling} of variant {variant_id} exceeds original price {original}"
            raise InvalidPriceError(msg)

        return cls(
            order_id=order_id,
            variant_id=variant_id,
            product_id=product_id,
            product_name=product_name,
            variant_name=variant_name,
            quantity=quantity,
            purchase_price=purchase,
            selling_price=selling,
            original_price=original,
            discount=(original - selling) * quantity,
            amount=selling * quantity,
            profit=(selling - purchase) * quantity,
        )

    @property
    def correlation_id(self) -> str:
        """Ledger correlation id for reservation/commit/rollback of this item."""
        return f"order-item-{self.id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "variant_id": self.variant_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "quantity": self.quantity,
            "purchase_price": str(self.purchase_price),
            "selling_price": str(self.selling_price),
            "original_price": str(self.original_price),
            "discount": str(self.discount),
            "amount": str(self.amount),
            "profit": str(self.profit),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            variant_id=data["variant_id"],
            product_id=data["product_id"],
            product_name=data["product_name"],
            variant_name=data.get("variant_name", ""),
            quantity=int(data["quantity"]),
            purchase_price=Decimal(data["purchase_price"]),
            selling_price=Decimal(data["selling_price"]),
            original_price=Decimal(data["original_price"]),
            discount=Decimal(data["discount"]),
            amount=Decimal(data["amount"]),
            profit=Decimal(data["profit"]),
        )


def generate_receipt_number(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


@dataclass
class Order:
    """
    Order aggregate root.

    Money invariant: ``final_amount = subtotal + shipping_cost - discount_amount``
    and every money field is non-negative. ``version`` is the optimistic
    concurrency token; storage increments it on every persisted update.

    Example:
        >>> order = Order(user_id="u-1", idempotency_key="checkout-42")
        >>> order.items.append(OrderItem.create(order.id, "v-1", "p-1", "Mug", 2, 60, 100, 120))
        >>> order.recalculate_totals(shipping_cost=money(15))
        >>> order.final_amount
        Decimal('215.00')
    """

    user_id: str
    idempotency_key: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OrderStatus = OrderStatus.CREATED
    items: list[OrderItem] = field(default_factory=list)

    subtotal: Decimal = ZERO
    shipping_cost: Decimal = ZERO
    discount_amount: Decimal = ZERO
    final_amount: Decimal = ZERO
    total_profit: Decimal = ZERO

    address: AddressSnapshot | None = None
    shipping_method_id: str | None = None
    discount_code_id: str | None = None
    receipt_number: str = field(default_factory=generate_receipt_number)
    cancellation_reason: str | None = None

    is_paid: bool = False
    is_deleted: bool = False
    version: int = 0

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def has_items(self) -> bool:
        return bool(self.items)

    @property
    def is_shipped(self) -> bool:
        return self.shipped_at is not None

    @property
    def is_delivered(self) -> bool:
        return self.delivered_at is not None

    def recalculate_totals(
        self,
        shipping_cost: Decimal | None = None,
        discount_amount: Decimal | None = None,
    ) -> None:
        """
        Re-derive subtotal, profit and final amount from the items.

        A discount larger than subtotal plus shipping is clamped so the
        final amount never goes negative.
        """
        if shipping_cost is not None:
            self.shipping_cost = money(shipping_cost)
        if discount_amount is not None:
            self.discount_amount = money(discount_amount)

        if self.shipping_cost < 0 or self.discount_amount < 0:
            msg = f"Order {self.id}: shipping and discount must be non-negative"
            raise InvariantViolationError(msg)

        self.subtotal = money(sum((item.amount for item in self.items), ZERO))
        self.total_profit = money(sum((item.profit for item in self.items), ZERO))
        self.discount_amount = min(self.discount_amount, self.subtotal + self.shipping_cost)
        self.final_amount = self.subtotal + self.shipping_cost - self.discount_amount

    def search_document(self) -> dict[str, Any]:
        """Order summary handed to the search index through the outbox."""
        return {
            "order_id": self.id,
            "user_id": self.user_id,
            "receipt_number": self.receipt_number,
            "status": self.status.value,
            "final_amount": str(self.final_amount),
            "item_count": sum(item.quantity for item in self.items),
            "product_ids": sorted({item.product_id for item in self.items}),
            "is_paid": self.is_paid,
            "created_at": _iso(self.created_at),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "discount_amount": str(self.discount_amount),
            "final_amount": str(self.final_amount),
            "total_profit": str(self.total_profit),
            "address": self.address.to_dict() if self.address else None,
            "shipping_method_id": self.shipping_method_id,
            "discount_code_id": self.discount_code_id,
            "receipt_number": self.receipt_number,
            "cancellation_reason": self.cancellation_reason,
            "is_paid": self.is_paid,
            "is_deleted": self.is_deleted,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "paid_at": _iso(self.paid_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            idempotency_key=data.get("idempotency_key"),
            status=OrderStatus(data["status"]),
            items=[OrderItem.from_dict(item) for item in data.get("items", [])],
            subtotal=Decimal(data["subtotal"]),
            shipping_cost=Decimal(data["shipping_cost"]),
            discount_amount=Decimal(data["discount_amount"]),
            final_amount=Decimal(data["final_amount"]),
            total_profit=Decimal(data.get("total_profit", "0")),
            address=AddressSnapshot.from_dict(data["address"]) if data.get("address") else None,
            shipping_method_id=data.get("shipping_method_id"),
            discount_code_id=data.get("discount_code_id"),
            receipt_number=data.get("receipt_number") or generate_receipt_number(),
            cancellation_reason=data.get("cancellation_reason"),
            is_paid=data.get("is_paid", False),
            is_deleted=data.get("is_deleted", False),
            version=data.get("version", 0),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data.get("updated_at")),
            paid_at=_parse_dt(data.get("paid_at")),
            shipped_at=_parse_dt(data.get("shipped_at")),
            delivered_at=_parse_dt(data.get("delivered_at")),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
        )


# ============================================
# SAGA PROCESS STATE
# ============================================


class ProcessStep(Enum):
    """Checkout saga steps, in forward order."""

    CREATED = "created"
    INVENTORY_RESERVING = "inventory_reserving"
    INVENTORY_RESERVED = "inventory_reserved"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    COMPLETED = "completed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"
    FAILED = "failed"


class ProcessStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATED = "compensated"


_FORWARD_STEPS = [
    ProcessStep.CREATED,
    ProcessStep.INVENTORY_RESERVING,
    ProcessStep.INVENTORY_RESERVED,
    ProcessStep.PAYMENT_PENDING,
    ProcessStep.PAYMENT_SUCCEEDED,
    ProcessStep.COMPLETED,
]

_FINAL_STEPS = {ProcessStep.COMPLETED, ProcessStep.COMPENSATED, ProcessStep.FAILED}


@dataclass
class OrderProcessState:
    """
    Durable record of how far the checkout saga got for one order.

    Kept separate from ``Order.status`` so a crash between steps can be
    resumed or compensated. Steps only move forward; once completed,
    compensated or failed the record is closed.
    """

    order_id: str
    correlation_id: str
    step: ProcessStep = ProcessStep.CREATED
    status: ProcessStatus = ProcessStatus.IN_PROGRESS
    failure_reason: str | None = None
    retry_count: int = 0
    version: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def is_closed(self) -> bool:
        return self.step in _FINAL_STEPS

    def transition_to(self, step: ProcessStep) -> None:
        """
        Move to ``step``.

        Raises:
            InvariantViolationError: If the record is closed or the step
                would move the happy path backwards
        """
        if self.is_closed:
            msg = f"Process {self.order_id} is closed at {self.step.value}, cannot move to {step.value}"
            raise InvariantViolationError(msg)

        if step in _FORWARD_STEPS and self.step in _FORWARD_STEPS:
            if _FORWARD_STEPS.index(step) <= _FORWARD_STEPS.index(self.step):
                msg = f"Process {self.order_id} cannot go back from {self.step.value} to {step.value}"
                raise InvariantViolationError(msg)
        elif step in _FORWARD_STEPS:
            msg = f"Process {self.order_id} is compensating, cannot resume at {step.value}"
            raise InvariantViolationError(msg)
        elif step == ProcessStep.COMPENSATED and self.step != ProcessStep.COMPENSATING:
            msg = f"Process {self.order_id} must be compensating before compensated"
            raise InvariantViolationError(msg)

        self.step = step
        self.updated_at = utcnow()

    def mark_completed(self) -> None:
        self.transition_to(ProcessStep.COMPLETED)
        self.status = ProcessStatus.COMPLETED

    def mark_failed(self, reason: str) -> None:
        self.transition_to(ProcessStep.FAILED)
        self.status = ProcessStatus.FAILED
        self.failure_reason = reason

    def mark_compensating(self, reason: str | None = None) -> None:
        if self.step != ProcessStep.COMPENSATING:
            self.transition_to(ProcessStep.COMPENSATING)
        self.status = ProcessStatus.COMPENSATING
        if reason:
            self.failure_reason = reason

    def mark_compensated(self) -> None:
        self.transition_to(ProcessStep.COMPENSATED)
        self.status = ProcessStatus.COMPENSATED

    def increment_retry(self) -> None:
        self.retry_count += 1
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "correlation_id": self.correlation_id,
            "step": self.step.value,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderProcessState":
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            correlation_id=data["correlation_id"],
            step=ProcessStep(data["step"]),
            status=ProcessStatus(data["status"]),
            failure_reason=data.get("failure_reason"),
            retry_count=data.get("retry_count", 0),
            version=data.get("version", 0),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data.get("updated_at")),
        )


# ============================================
# PAYMENTS
# ============================================


class PaymentStatus(Enum):
    PENDING = "pending"
    VERIFICATION_IN_PROGRESS = "verification_in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


_FINAL_PAYMENT_STATUSES = {
    PaymentStatus.SUCCESS,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
    PaymentStatus.REFUNDED,
}


@dataclass
class PaymentTransaction:
    """
    One payment attempt against the gateway.

    ``authority`` is the gateway's token for the attempt. It is ``None``
    while initiation timed out and the outcome is unknown. A refunded
    payment keeps its settlement fields; ``refunded_amount`` may be less
    than ``amount`` for a partial refund.
    """

    order_id: str
    amount: Decimal
    authority: str | None = None
    redirect_url: str | None = None
    gateway: str = "memory"
    status: PaymentStatus = PaymentStatus.PENDING
    reference_id: str | None = None
    card_mask: str | None = None
    fee: Decimal | None = None
    verification_count: int = 0
    last_error: str | None = None
    refunded_amount: Decimal | None = None
    refund_reference: str | None = None
    version: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime | None = None
    verified_at: datetime | None = None
    refunded_at: datetime | None = None

    @property
    def is_final(self) -> bool:
        return self.status in _FINAL_PAYMENT_STATUSES

    def mark_verification_in_progress(self) -> None:
        self.status = PaymentStatus.VERIFICATION_IN_PROGRESS
        self.updated_at = utcnow()

    def mark_success(self, reference_id: str | None, card_mask: str | None, fee: Decimal | None) -> None:
        now = utcnow()
        self.status = PaymentStatus.SUCCESS
        self.reference_id = reference_id
        self.card_mask = card_mask
        self.fee = fee
        self.verification_count += 1
        self.verified_at = now
        self.updated_at = now
        self.last_error = None

    def mark_failed(self, reason: str) -> None:
        self.status = PaymentStatus.FAILED
        self.last_error = reason
        self.updated_at = utcnow()

    def mark_expired(self) -> None:
        self.status = PaymentStatus.EXPIRED
        self.updated_at = utcnow()

    def mark_refunded(self, amount: Decimal, reference: str | None, now: datetime | None = None) -> None:
        """
        Record money returned to the payer.

        ``reference`` is the gateway's refund id, or None for a refund that
        an operator pays out by hand.
        """
        now = now or utcnow()
        self.status = PaymentStatus.REFUNDED
        self.refunded_amount = amount
        self.refund_reference = reference
        self.refunded_at = now
        self.updated_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "authority": self.authority,
            "redirect_url": self.redirect_url,
            "gateway": self.gateway,
            "status": self.status.value,
            "reference_id": self.reference_id,
            "card_mask": self.card_mask,
            "fee": str(self.fee) if self.fee is not None else None,
            "verification_count": self.verification_count,
            "last_error": self.last_error,
            "refunded_amount": str(self.refunded_amount) if self.refunded_amount is not None else None,
            "refund_reference": self.refund_reference,
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "verified_at": _iso(self.verified_at),
            "refunded_at": _iso(self.refunded_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentTransaction":
        return cls(
            id=data["id"],
            order_id=data["order_id"],
            amount=Decimal(data["amount"]),
            authority=data.get("authority"),
            redirect_url=data.get("redirect_url"),
            gateway=data.get("gateway", "memory"),
            status=PaymentStatus(data["status"]),
            reference_id=data.get("reference_id"),
            card_mask=data.get("card_mask"),
            fee=Decimal(data["fee"]) if data.get("fee") is not None else None,
            verification_count=data.get("verification_count", 0),
            last_error=data.get("last_error"),
            refunded_amount=Decimal(data["refunded_amount"]) if data.get("refunded_amount") is not None else None,
            refund_reference=data.get("refund_reference"),
            version=data.get("version", 0),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data.get("updated_at")),
            verified_at=_parse_dt(data.get("verified_at")),
            refunded_at=_parse_dt(data.get("refunded_at")),
        )
