"""Order aggregate, saga process state and the order state machine."""

from orderflow.orders.state_machine import TERMINAL_STATUSES, OrderStateMachine, TransitionRule
from orderflow.orders.types import (
    AddressSnapshot,
    Order,
    OrderItem,
    OrderProcessState,
    OrderStatus,
    OrderTrigger,
    PaymentStatus,
    PaymentTransaction,
    ProcessStatus,
    ProcessStep,
    money,
)

__all__ = [
    "TERMINAL_STATUSES",
    "AddressSnapshot",
    "Order",
    "OrderItem",
    "OrderProcessState",
    "OrderStateMachine",
    "OrderStatus",
    "OrderTrigger",
    "PaymentStatus",
    "PaymentTransaction",
    "ProcessStatus",
    "ProcessStep",
    "TransitionRule",
    "money",
]
