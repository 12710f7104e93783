"""
Request and result values for the checkout surface.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from orderflow.core.exceptions import InvalidAddressError
from orderflow.orders.types import AddressSnapshot, Order, OrderStatus

POSTAL_CODE_PATTERN = re.compile(r"^\d{10}$")
MAX_PAGE_SIZE = 100


@dataclass
class CartLine:
    variant_id: str
    quantity: int


@dataclass
class Cart:
    user_id: str
    lines: list[CartLine] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def variant_ids(self) -> set[str]:
        return {line.variant_id for line in self.lines}

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "lines": [{"variant_id": line.variant_id, "quantity": line.quantity} for line in self.lines],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Cart":
        return cls(
            user_id=data["user_id"],
            lines=[CartLine(line["variant_id"], int(line["quantity"])) for line in data.get("lines", [])],
        )


@dataclass
class UserAddress:
    """An address saved on a user's profile."""

    user_id: str
    address: AddressSnapshot
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "user_id": self.user_id, "address": self.address.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserAddress":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            address=AddressSnapshot.from_dict(data["address"]),
        )


@dataclass
class NewAddress:
    """Inline address entered at checkout, optionally saved to the profile."""

    receiver_name: str
    phone: str
    city: str
    street: str
    postal_code: str
    province: str = ""
    save_to_profile: bool = False

    def validate(self) -> AddressSnapshot:
        """
        Return the address snapshot.

        Raises:
            InvalidAddressError: If a required field is blank or the postal
                code is not 10 digits
        """
        required = {
            "receiver_name": self.receiver_name,
            "phone": self.phone,
            "city": self.city,
            "street": self.street,
            "postal_code": self.postal_code,
        }
        missing = [name for name, value in required.items() if not (value or "").strip()]
        if missing:
            msg = f"Address is missing: {', '.join(missing)}"
            raise InvalidAddressError(msg)
        if not POSTAL_CODE_PATTERN.match(self.postal_code.strip()):
            msg = f"Postal code must be 10 digits, got {self.postal_code!r}"
            raise InvalidAddressError(msg)

        return AddressSnapshot(
            receiver_name=self.receiver_name.strip(),
            phone=self.phone.strip(),
            province=self.province.strip(),
            city=self.city.strip(),
            street=self.street.strip(),
            postal_code=self.postal_code.strip(),
        )


@dataclass
class ShippingSelection:
    """Shipping method plus the delivery address (saved id or inline)."""

    method_id: str
    address_id: str | None = None
    new_address: NewAddress | None = None


@dataclass
class PayerContact:
    mobile: str | None = None
    email: str | None = None


@dataclass
class CheckoutRequest:
    """
    One checkout attempt.

    ``expected_prices`` maps every variant id in the cart to the selling
    price the client displayed. ``idempotency_key`` makes retries safe.
    """

    user_id: str
    shipping: ShippingSelection
    expected_prices: dict[str, Decimal]
    idempotency_key: str
    discount_code: str | None = None
    contact: PayerContact = field(default_factory=PayerContact)
    description: str | None = None


@dataclass
class CheckoutResult:
    order_id: str
    payment_url: str | None
    authority: str | None
    replayed: bool = False


@dataclass
class PaymentVerificationResult:
    order_id: str
    verified: bool
    status: OrderStatus
    reference_id: str | None = None
    message: str | None = None
    refund_required: bool = False


@dataclass
class OrderFilters:
    user_id: str | None = None
    statuses: set[OrderStatus] | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    include_deleted: bool = False

    def matches(self, order: Order) -> bool:
        if order.is_deleted and not self.include_deleted:
            return False
        if self.user_id is not None and order.user_id != self.user_id:
            return False
        if self.statuses and order.status not in self.statuses:
            return False
        if self.created_from is not None and order.created_at < self.created_from:
            return False
        if self.created_to is not None and order.created_at > self.created_to:
            return False
        return True


@dataclass
class Paging:
    page: int = 1
    page_size: int = 20

    def __post_init__(self):
        if self.page < 1:
            msg = f"page must be >= 1, got {self.page}"
            raise ValueError(msg)
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            msg = f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {self.page_size}"
            raise ValueError(msg)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass
class OrderPage:
    items: list[Order]
    total: int
    page: int
    page_size: int

    @property
    def has_next(self) -> bool:
        return self.page * self.page_size < self.total
