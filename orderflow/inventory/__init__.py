"""
Stock ledger and reservation engine.

The service (``orderflow.inventory.service``) is imported from its module
directly; it depends on the storage layer.
"""

from orderflow.inventory.engine import InventoryReservationEngine
from orderflow.inventory.types import (
    BatchResult,
    InventoryOutcome,
    InventoryResult,
    InventoryTransaction,
    ReconcileResult,
    StockRequest,
    TransactionType,
    VariantStock,
)

__all__ = [
    "BatchResult",
    "InventoryOutcome",
    "InventoryReservationEngine",
    "InventoryResult",
    "InventoryTransaction",
    "ReconcileResult",
    "StockRequest",
    "TransactionType",
    "VariantStock",
]
