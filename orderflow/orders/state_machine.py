"""
Order State Machine - the single authority on order status changes.

Transitions are data: each ``(status, trigger)`` pair maps to a target
status and a guard evaluated against the order. Adding a transition means
adding a row to ``TRANSITIONS``, not a branch.

State Diagram (happy path and main exits):

    CREATED ──reserve──▶ RESERVED ──initiate──▶ PENDING ──confirm──▶ PAID
       │                    │                   │    ▲                 │
       │ cancel/expire      │ cancel/expire     fail │ initiate        │ start
       ▼                    ▼                   ▼    │                 ▼
    CANCELLED / EXPIRED ◀───────────────────── FAILED           PROCESSING
                                                                      │ ship
                                        RETURNED ◀──mark_returned── SHIPPED
                                           │                          │ deliver
                                           └──refund──▶ REFUNDED    DELIVERED

Terminal: DELIVERED, CANCELLED, EXPIRED, REFUNDED.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from orderflow.core.exceptions import InvalidTransitionError
from orderflow.orders.types import Order, OrderStatus, OrderTrigger, utcnow

Guard = Callable[[Order], bool]


# ============================================
# GUARDS
# ============================================


def always(order: Order) -> bool:
    return True


def can_reserve_stock(order: Order) -> bool:
    return not order.is_deleted and order.has_items


def can_initiate_payment(order: Order) -> bool:
    return not order.is_deleted and order.has_items and order.final_amount > 0


def can_confirm_payment(order: Order) -> bool:
    return not order.is_deleted and order.final_amount > 0


def can_cancel(order: Order) -> bool:
    return not order.is_deleted and not order.is_shipped and not order.is_delivered


def can_cancel_after_paid(order: Order) -> bool:
    return not order.is_deleted


def can_expire(order: Order) -> bool:
    return not order.is_deleted and not order.is_paid


def can_refund(order: Order) -> bool:
    return not order.is_deleted and order.is_paid


def can_retry_payment(order: Order) -> bool:
    return not order.is_deleted and not order.is_paid


def not_deleted(order: Order) -> bool:
    return not order.is_deleted


@dataclass(frozen=True)
class TransitionRule:
    """Target status plus the guard that must hold to reach it."""

    target: OrderStatus
    guard: Guard = always


S = OrderStatus
T = OrderTrigger

TRANSITIONS: dict[OrderStatus, dict[OrderTrigger, TransitionRule]] = {
    S.CREATED: {
        T.RESERVE_STOCK: TransitionRule(S.RESERVED, can_reserve_stock),
        T.CANCEL: TransitionRule(S.CANCELLED, can_cancel),
        T.EXPIRE: TransitionRule(S.EXPIRED, can_expire),
    },
    S.RESERVED: {
        T.INITIATE_PAYMENT: TransitionRule(S.PENDING, can_initiate_payment),
        T.CANCEL: TransitionRule(S.CANCELLED, can_cancel),
        T.EXPIRE: TransitionRule(S.EXPIRED, can_expire),
    },
    S.PENDING: {
        T.CONFIRM_PAYMENT: TransitionRule(S.PAID, can_confirm_payment),
        T.FAIL_PAYMENT: TransitionRule(S.FAILED),
        T.CANCEL: TransitionRule(S.CANCELLED, can_cancel),
        T.EXPIRE: TransitionRule(S.EXPIRED, can_expire),
    },
    S.FAILED: {
        # Not fired by the orchestrator: a failed payment has already released the
        # order's stock, so paying again means a new checkout.
        T.INITIATE_PAYMENT: TransitionRule(S.PENDING, can_retry_payment),
        T.CANCEL: TransitionRule(S.CANCELLED, can_cancel),
        T.EXPIRE: TransitionRule(S.EXPIRED, can_expire),
    },
    S.PAID: {
        T.START_PROCESSING: TransitionRule(S.PROCESSING, not_deleted),
        T.REQUEST_REFUND: TransitionRule(S.REFUNDED, can_refund),
        T.CANCEL: TransitionRule(S.CANCELLED, can_cancel_after_paid),
    },
    S.PROCESSING: {
        T.SHIP: TransitionRule(S.SHIPPED, not_deleted),
        T.CANCEL: TransitionRule(S.CANCELLED, can_cancel_after_paid),
    },
    S.SHIPPED: {
        T.DELIVER: TransitionRule(S.DELIVERED, not_deleted),
        T.MARK_RETURNED: TransitionRule(S.RETURNED, not_deleted),
    },
    S.RETURNED: {
        T.REQUEST_REFUND: TransitionRule(S.REFUNDED, can_refund),
    },
    S.DELIVERED: {},
    S.CANCELLED: {},
    S.EXPIRED: {},
    S.REFUNDED: {},
}

TERMINAL_STATUSES = frozenset(status for status, rules in TRANSITIONS.items() if not rules)

# Statuses in which the order still holds reservations (not yet committed)
RESERVATION_HOLDING_STATUSES = frozenset({S.RESERVED, S.PENDING})

# Statuses in which the payment window still applies
AWAITING_PAYMENT_STATUSES = frozenset({S.CREATED, S.RESERVED, S.PENDING, S.FAILED})


class OrderStateMachine:
    """
    Validates and applies order status transitions.

    Usage:
        >>> sm = OrderStateMachine()
        >>> sm.can_transition(order, OrderTrigger.CANCEL)
        True
        >>> sm.apply(order, OrderTrigger.CANCEL)
        >>> order.status
        <OrderStatus.CANCELLED: 'cancelled'>
    """

    def __init__(
        self,
        transitions: dict[OrderStatus, dict[OrderTrigger, TransitionRule]] | None = None,
        on_transition: Callable[[Order, OrderStatus, OrderStatus], Any] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """
        Args:
            transitions: Transition table (defaults to ``TRANSITIONS``)
            on_transition: Optional callback invoked after every applied
                transition with (order, old_status, new_status)
            clock: Source of the lifecycle timestamps (UTC now if not provided)
        """
        self._transitions = transitions or TRANSITIONS
        self._on_transition = on_transition
        self._clock = clock or utcnow

    def _rule(self, status: OrderStatus, trigger: OrderTrigger) -> TransitionRule | None:
        return self._transitions.get(status, {}).get(trigger)

    def is_terminal(self, status: OrderStatus) -> bool:
        return not self._transitions.get(status)

    def can_transition(self, order: Order, trigger: OrderTrigger) -> bool:
        """Non-raising check: True if ``trigger`` may fire for ``order`` now."""
        rule = self._rule(order.status, trigger)
        return rule is not None and rule.guard(order)

    def transition(self, order: Order, trigger: OrderTrigger) -> OrderStatus:
        """
        Resolve the target status for ``trigger`` without mutating the order.

        Raises:
            InvalidTransitionError: If no rule matches or its guard rejects
        """
        rule = self._rule(order.status, trigger)
        if rule is None:
            raise InvalidTransitionError(order.id, order.status.value, trigger.value)
        if not rule.guard(order):
            raise InvalidTransitionError(
                order.id, order.status.value, trigger.value, reason=f"guard {rule.guard.__name__} rejected"
            )
        return rule.target

    def apply(self, order: Order, trigger: OrderTrigger) -> Order:
        """
        Fire ``trigger`` on ``order``, updating status and lifecycle timestamps.

        Raises:
            InvalidTransitionError: If the transition is not permitted
        """
        old_status = order.status
        target = self.transition(order, trigger)
        now = self._clock()

        order.status = target
        order.updated_at = now

        if trigger == T.CONFIRM_PAYMENT:
            order.is_paid = True
            order.paid_at = now
        elif trigger == T.SHIP:
            order.shipped_at = now
        elif trigger == T.DELIVER:
            order.delivered_at = now
        elif trigger == T.CANCEL:
            order.cancelled_at = now

        if self._on_transition:
            self._on_transition(order, old_status, target)

        return order

    def permitted_triggers(self, order: Order) -> list[OrderTrigger]:
        """Triggers whose rule exists for the current status and whose guard passes."""
        rules = self._transitions.get(order.status, {})
        return [trigger for trigger, rule in rules.items() if rule.guard(order)]
