"""
Pytest configuration and shared fixtures for orderflow tests.

Every test gets its own store, gateway, Prometheus registry and a fake
clock, so tests never share state through module globals.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from orderflow.checkout.memory import (
    FlatRateShippingEvaluator,
    InMemoryAlertSink,
    InMemoryAuditSink,
    InMemoryNotificationSink,
    StaticDiscountEvaluator,
)
from orderflow.checkout.orchestrator import CheckoutOrchestrator
from orderflow.checkout.types import Cart, CartLine, CheckoutRequest, NewAddress, ShippingSelection
from orderflow.core.config import OrderflowConfig
from orderflow.inventory.service import InventoryService
from orderflow.inventory.types import VariantStock
from orderflow.monitoring.metrics import OrderflowMetrics
from orderflow.payments.memory import InMemoryPaymentGateway
from orderflow.storage.memory import InMemoryOrderStore
from orderflow.storage.sqlite import SQLiteOrderStore

# ============================================
# CLOCK
# ============================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


# ============================================
# INFRASTRUCTURE
# ============================================


@pytest.fixture
def config():
    """Default settings with a short gateway timeout."""
    return OrderflowConfig(gateway_timeout_seconds=0.2)


@pytest.fixture
def metrics():
    """Metrics on a private registry so counters start at zero."""
    return OrderflowMetrics(registry=CollectorRegistry())


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest_asyncio.fixture
async def sqlite_store():
    """Private in-memory SQLite database."""
    store = SQLiteOrderStore(":memory:")
    async with store:
        yield store


@pytest.fixture
def gateway():
    return InMemoryPaymentGateway()


@pytest.fixture
def notifications():
    return InMemoryNotificationSink()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def alerts():
    return InMemoryAlertSink()


@pytest.fixture
def orchestrator(store, gateway, config, metrics, clock, notifications, audit, alerts):
    return CheckoutOrchestrator(
        store,
        gateway,
        discounts=StaticDiscountEvaluator({"TEN": {"amount": 10}, "HALF": {"percent": 50, "min_total": 100}}),
        shipping=FlatRateShippingEvaluator(
            {"standard": {"base": 0}, "express": {"base": 15}, "small": {"base": 5, "max_total": 50}}
        ),
        notifications=notifications,
        audit=audit,
        alerts=alerts,
        config=config,
        metrics=metrics,
        clock=clock,
    )


# ============================================
# CATALOG / CART SEEDING
# ============================================


def make_variant(variant_id: str = "v-1", on_hand: int = 10, price: str = "100.00", **overrides) -> VariantStock:
    """Variant bought at 60% of its price and listed at 120%."""
    selling = Decimal(price)
    fields = {
        "id": variant_id,
        "product_id": f"p-{variant_id}",
        "product_name": f"Product {variant_id}",
        "on_hand": on_hand,
        "purchase_price": (selling * Decimal("0.6")).quantize(Decimal("0.01")),
        "selling_price": selling,
        "original_price": (selling * Decimal("1.2")).quantize(Decimal("0.01")),
    }
    fields.update(overrides)
    return VariantStock(**fields)


class Shop:
    """Seeds variants and carts and reads back persisted state."""

    def __init__(self, store):
        self.store = store
        self.inventory = InventoryService(store)
        self.prices: dict[str, Decimal] = {}
        self._keys = 0

    async def add_variant(self, variant_id: str = "v-1", on_hand: int = 10, price: str = "100.00", **overrides):
        variant = make_variant(variant_id, on_hand, price, **overrides)
        await self.inventory.register_variant(variant)
        self.prices[variant_id] = variant.selling_price
        return variant

    async def fill_cart(self, user_id: str, lines: dict[str, int]) -> None:
        async with self.store.unit_of_work() as uow:
            await uow.carts.save(Cart(user_id, [CartLine(v, q) for v, q in lines.items()]))
            await uow.commit()

    def request(
        self,
        user_id: str,
        variant_ids: list[str] | None = None,
        key: str | None = None,
        method: str = "standard",
        discount_code: str | None = None,
        prices: dict[str, str] | None = None,
    ) -> CheckoutRequest:
        self._keys += 1
        ids = variant_ids if variant_ids is not None else list(self.prices)
        expected = {variant_id: self.prices[variant_id] for variant_id in ids}
        expected.update({k: Decimal(v) for k, v in (prices or {}).items()})
        return CheckoutRequest(
            user_id=user_id,
            shipping=ShippingSelection(
                method_id=method,
                new_address=NewAddress(
                    receiver_name="Sara Ahmadi",
                    phone="09120000000",
                    city="Tehran",
                    street="Valiasr 12",
                    postal_code="1234567890",
                ),
            ),
            expected_prices=expected,
            idempotency_key=key or f"checkout-{user_id}-{self._keys}",
            discount_code=discount_code,
        )

    async def variant(self, variant_id: str = "v-1") -> VariantStock:
        async with self.store.unit_of_work() as uow:
            return await uow.variants.get(variant_id)

    async def ledger(self, variant_id: str = "v-1"):
        async with self.store.unit_of_work() as uow:
            return await uow.ledger.list_for_variant(variant_id)

    async def order(self, order_id: str):
        async with self.store.unit_of_work() as uow:
            return await uow.orders.get(order_id)

    async def payment(self, order_id: str):
        async with self.store.unit_of_work() as uow:
            return await uow.payments.get_latest_for_order(order_id)

    async def process(self, order_id: str):
        async with self.store.unit_of_work() as uow:
            return await uow.process_states.get_by_order(order_id)


@pytest.fixture
def shop(store):
    return Shop(store)


@pytest.fixture
def shop_for():
    """Builds a Shop over any store, for tests that wire their own."""
    return Shop
