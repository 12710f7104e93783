"""
In-memory collaborators for tests and development.
"""

from decimal import Decimal
from typing import Any

from orderflow.checkout.ports import (
    AlertSink,
    AuditSink,
    DiscountEvaluator,
    DiscountResult,
    NotificationSink,
    ShippingEvaluator,
)
from orderflow.checkout.types import CartLine
from orderflow.core.exceptions import DiscountRejectedError
from orderflow.core.logger import get_logger
from orderflow.orders.types import money

logger = get_logger(__name__)


class StaticDiscountEvaluator(DiscountEvaluator):
    """
    Fixed table of discount codes.

    Each code maps to either a flat amount or a percentage of the order
    total, with an optional minimum order total:

        >>> discounts = StaticDiscountEvaluator({
        ...     "TEN": {"amount": 10},
        ...     "HALF": {"percent": 50, "min_total": 100},
        ... })
    """

    def __init__(self, codes: dict[str, dict[str, Any]] | None = None):
        self.codes = codes or {}

    async def validate_and_apply(self, code: str, order_total: Decimal, user_id: str) -> DiscountResult:
        rule = self.codes.get(code)
        if rule is None:
            raise DiscountRejectedError(code, "unknown code")
        if not rule.get("active", True):
            raise DiscountRejectedError(code, "code is no longer active")

        min_total = money(rule.get("min_total", 0))
        if order_total < min_total:
            raise DiscountRejectedError(code, f"order total must be at least {min_total}")

        if "percent" in rule:
            amount = money(order_total * Decimal(str(rule["percent"])) / 100)
        else:
            amount = money(rule.get("amount", 0))
        return DiscountResult(discount_amount=min(amount, order_total), discount_id=rule.get("id", code))


class FlatRateShippingEvaluator(ShippingEvaluator):
    """
    Shipping methods priced per order plus per unit.

        >>> shipping = FlatRateShippingEvaluator({"post": {"base": 15}})
    """

    def __init__(self, methods: dict[str, dict[str, Any]] | None = None):
        self.methods = methods if methods is not None else {"standard": {"base": 0}}

    async def is_available(self, method_id: str, order_total: Decimal) -> bool:
        method = self.methods.get(method_id)
        if method is None or not method.get("active", True):
            return False
        max_total = method.get("max_total")
        return max_total is None or order_total <= money(max_total)

    async def get_cost(self, method_id: str, lines: list[CartLine]) -> Decimal:
        method = self.methods[method_id]
        units = sum(line.quantity for line in lines)
        return money(money(method.get("base", 0)) + money(method.get("per_unit", 0)) * units)


class InMemoryNotificationSink(NotificationSink):
    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self.records: list[tuple[str, dict[str, Any]]] = []

    async def record(self, action: str, payload: dict[str, Any]) -> None:
        self.records.append((action, payload))

    def actions(self) -> list[str]:
        return [action for action, _ in self.records]


class LoggingAlertSink(AlertSink):
    """Writes alerts to the log at ERROR; the default when no pager is wired in."""

    async def alert(self, title: str, details: dict[str, Any]) -> None:
        logger.error(f"ALERT: {title} {details}")


class InMemoryAlertSink(AlertSink):
    def __init__(self):
        self.alerts: list[tuple[str, dict[str, Any]]] = []

    async def alert(self, title: str, details: dict[str, Any]) -> None:
        self.alerts.append((title, details))
