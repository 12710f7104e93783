"""
Inventory types - variant stock counters and the append-only stock ledger.

Every stock-affecting event is an :class:`InventoryTransaction` row. Rows are
never updated or deleted; a correction is a new row.

Ledger sign convention (``quantity_change``):

    RESERVATION            -q   availability held, on-hand unchanged
    RESERVATION_ROLLBACK   +q   availability released, on-hand unchanged
    COMMIT                 -q   sale final, on-hand reduced
    RETURN                 +q   goods back on the shelf
    DAMAGE                 -q   goods written off
    ADJUSTMENT             ±q   manual correction, opening balance, reconcile

Summing ``quantity_change`` over the on-hand types (see
``ON_HAND_TRANSACTION_TYPES``) reproduces the live ``on_hand`` counter.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

MAX_NOTES_LENGTH = 500
MAX_REFERENCE_LENGTH = 100
MAX_CORRELATION_LENGTH = 200
DEFAULT_LOW_STOCK_THRESHOLD = 5


class TransactionType(Enum):
    RESERVATION = "reservation"
    COMMIT = "commit"
    RESERVATION_ROLLBACK = "reservation_rollback"
    RETURN = "return"
    ADJUSTMENT = "adjustment"
    DAMAGE = "damage"


ON_HAND_TRANSACTION_TYPES = frozenset(
    {
        TransactionType.COMMIT,
        TransactionType.RETURN,
        TransactionType.ADJUSTMENT,
        TransactionType.DAMAGE,
    }
)


@dataclass
class VariantStock:
    """
    Stock snapshot of one product variant.

    Invariant: ``0 <= reserved <= on_hand`` unless ``unlimited``. Pricing and
    catalog fields ride along because checkout validates them under the same
    locking read as the counters.
    """

    id: str
    product_id: str
    product_name: str
    on_hand: int = 0
    reserved: int = 0
    unlimited: bool = False
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    purchase_price: Decimal = Decimal("0.00")
    selling_price: Decimal = Decimal("0.00")
    original_price: Decimal = Decimal("0.00")
    variant_name: str = ""
    is_active: bool = True
    is_deleted: bool = False
    version: int = 0
    updated_at: datetime | None = None

    @property
    def available(self) -> int:
        return max(0, self.on_hand - self.reserved)

    @property
    def is_sellable(self) -> bool:
        return self.is_active and not self.is_deleted

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "on_hand": self.on_hand,
            "reserved": self.reserved,
            "unlimited": self.unlimited,
            "low_stock_threshold": self.low_stock_threshold,
            "purchase_price": str(self.purchase_price),
            "selling_price": str(self.selling_price),
            "original_price": str(self.original_price),
            "is_active": self.is_active,
            "is_deleted": self.is_deleted,
            "version": self.version,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VariantStock":
        return cls(
            id=data["id"],
            product_id=data["product_id"],
            product_name=data["product_name"],
            variant_name=data.get("variant_name", ""),
            on_hand=int(data["on_hand"]),
            reserved=int(data["reserved"]),
            unlimited=bool(data.get("unlimited", False)),
            low_stock_threshold=int(data.get("low_stock_threshold", DEFAULT_LOW_STOCK_THRESHOLD)),
            purchase_price=Decimal(data["purchase_price"]),
            selling_price=Decimal(data["selling_price"]),
            original_price=Decimal(data["original_price"]),
            is_active=bool(data.get("is_active", True)),
            is_deleted=bool(data.get("is_deleted", False)),
            version=int(data.get("version", 0)),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else None,
        )

    def search_document(self) -> dict[str, Any]:
        """Availability document handed to the search index through the outbox."""
        return {
            "variant_id": self.id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "selling_price": str(self.selling_price),
            "available": None if self.unlimited else self.available,
            "in_stock": self.unlimited or self.available > 0,
            "is_active": self.is_sellable,
        }


@dataclass
class InventoryTransaction:
    """Append-only stock ledger row."""

    variant_id: str
    type: TransactionType
    quantity_change: int
    stock_before: int
    correlation_id: str | None = None
    reference_number: str | None = None
    notes: str | None = None
    user_id: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        if self.notes and len(self.notes) > MAX_NOTES_LENGTH:
            self.notes = self.notes[:MAX_NOTES_LENGTH]
        if self.reference_number and len(self.reference_number) > MAX_REFERENCE_LENGTH:
            msg = f"reference_number exceeds {MAX_REFERENCE_LENGTH} characters"
            raise ValueError(msg)
        if self.correlation_id and len(self.correlation_id) > MAX_CORRELATION_LENGTH:
            msg = f"correlation_id exceeds {MAX_CORRELATION_LENGTH} characters"
            raise ValueError(msg)

    @property
    def stock_after(self) -> int:
        if self.type in ON_HAND_TRANSACTION_TYPES:
            return self.stock_before + self.quantity_change
        return self.stock_before

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "type": self.type.value,
            "quantity_change": self.quantity_change,
            "stock_before": self.stock_before,
            "correlation_id": self.correlation_id,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InventoryTransaction":
        return cls(
            id=data["id"],
            variant_id=data["variant_id"],
            type=TransactionType(data["type"]),
            quantity_change=int(data["quantity_change"]),
            stock_before=int(data["stock_before"]),
            correlation_id=data.get("correlation_id"),
            reference_number=data.get("reference_number"),
            notes=data.get("notes"),
            user_id=data.get("user_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


# ============================================
# RESULTS
# ============================================


class InventoryOutcome(Enum):
    SUCCESS = "success"
    INSUFFICIENT_STOCK = "insufficient_stock"
    FAILED = "failed"


@dataclass
class InventoryResult:
    """
    Outcome of a single engine operation.

    ``transaction`` is the ledger row to append (``None`` for no-ops such as
    unlimited variants or a rollback with nothing reserved).
    """

    outcome: InventoryOutcome
    variant_id: str
    quantity: int = 0
    transaction: InventoryTransaction | None = None
    available: int | None = None
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == InventoryOutcome.SUCCESS

    @classmethod
    def success(
        cls,
        variant_id: str,
        quantity: int,
        transaction: InventoryTransaction | None = None,
        message: str | None = None,
    ) -> "InventoryResult":
        return cls(InventoryOutcome.SUCCESS, variant_id, quantity, transaction, message=message)

    @classmethod
    def insufficient(cls, variant_id: str, available: int, requested: int) -> "InventoryResult":
        return cls(
            InventoryOutcome.INSUFFICIENT_STOCK,
            variant_id,
            requested,
            available=available,
            message=f"available {available}, requested {requested}",
        )

    @classmethod
    def failed(cls, variant_id: str, message: str) -> "InventoryResult":
        return cls(InventoryOutcome.FAILED, variant_id, message=message)


@dataclass
class StockRequest:
    """One line of a batch operation."""

    variant: VariantStock
    quantity: int
    correlation_id: str | None = None


@dataclass
class BatchResult:
    """All-or-nothing batch outcome: either every result, or every failure reason."""

    results: list[InventoryResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    @property
    def transactions(self) -> list[InventoryTransaction]:
        return [r.transaction for r in self.results if r.transaction is not None]


@dataclass
class ReconcileResult:
    variant_id: str
    calculated_stock: int
    current_stock: int
    transaction: InventoryTransaction | None = None

    @property
    def difference(self) -> int:
        return self.calculated_stock - self.current_stock

    @property
    def has_discrepancy(self) -> bool:
        return self.difference != 0
