"""
orderflow - checkout saga for order fulfillment.

Turns a shopping cart into a paid order without overselling stock:

- an order state machine with a single transition table
- an inventory reservation engine backed by an append-only stock ledger
- a checkout orchestrator that reserves stock, opens a payment and
  compensates on every failure path
- a payment reconciliation sweeper that resolves stuck and abandoned orders
- an outbox relay that propagates order and stock changes to a search index

Quick Start:
    >>> from orderflow import CheckoutOrchestrator, CheckoutRequest, create_store
    >>> from orderflow.payments import InMemoryPaymentGateway
    >>>
    >>> store = create_store("sqlite:///orders.db")
    >>> await store.initialize()
    >>> orchestrator = CheckoutOrchestrator(store, InMemoryPaymentGateway())
    >>> result = await orchestrator.checkout_from_cart(request)
    >>> await orchestrator.verify_and_process_payment(result.order_id, result.authority, "OK")

Background workers:
    >>> sweeper = PaymentReconciliationSweeper(store, orchestrator)
    >>> relay = OutboxRelay(store.outbox, search_index)
"""

from orderflow.checkout.orchestrator import CheckoutOrchestrator
from orderflow.checkout.types import CheckoutRequest, CheckoutResult, PaymentVerificationResult
from orderflow.core.config import OrderflowConfig, configure, get_config
from orderflow.core.exceptions import (
    CheckoutValidationError,
    CompensationError,
    ConflictError,
    InvariantViolationError,
    OrderflowError,
    TransientError,
)
from orderflow.inventory.engine import InventoryReservationEngine
from orderflow.inventory.service import InventoryService
from orderflow.orders.state_machine import OrderStateMachine
from orderflow.orders.types import Order, OrderStatus, OrderTrigger
from orderflow.outbox.relay import OutboxRelay
from orderflow.reconciliation.sweeper import PaymentReconciliationSweeper, SweepReport
from orderflow.storage.factory import create_store

__version__ = "0.1.0"

__all__ = [
    "CheckoutOrchestrator",
    "CheckoutRequest",
    "CheckoutResult",
    "CheckoutValidationError",
    "CompensationError",
    "ConflictError",
    "InventoryReservationEngine",
    "InventoryService",
    "InvariantViolationError",
    "Order",
    "OrderStateMachine",
    "OrderStatus",
    "OrderTrigger",
    "OrderflowConfig",
    "OrderflowError",
    "OutboxRelay",
    "PaymentReconciliationSweeper",
    "PaymentVerificationResult",
    "SweepReport",
    "TransientError",
    "__version__",
    "configure",
    "create_store",
    "get_config",
]
