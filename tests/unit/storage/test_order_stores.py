"""
Tests for the storage backends.

Every test runs against both the in-memory and the SQLite store; they
must behave the same.
"""

import sqlite3
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from orderflow.checkout.types import Cart, CartLine, OrderFilters, Paging, UserAddress
from orderflow.inventory.types import InventoryTransaction, TransactionType, VariantStock
from orderflow.orders.types import (
    AddressSnapshot,
    Order,
    OrderItem,
    OrderProcessState,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
)
from orderflow.outbox.types import OutboxMessage, OutboxStatus
from orderflow.storage import ConcurrencyError, DuplicateKeyError, InMemoryOrderStore, SQLiteOrderStore
from orderflow.storage.errors import ConnectionError
from orderflow.storage.factory import create_store


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request):
    store = InMemoryOrderStore() if request.param == "memory" else SQLiteOrderStore(":memory:")
    async with store:
        yield store


def make_order(user_id="u-1", key=None, created_at=None, status=OrderStatus.PENDING) -> Order:
    order = Order(user_id=user_id, idempotency_key=key, status=status)
    if created_at is not None:
        order.created_at = created_at
    order.items.append(OrderItem.create(order.id, "v-1", "p-1", "Mug", 2, 60, 100, 120))
    order.address = AddressSnapshot("Sara", "0912", "Tehran", "Valiasr", "1234567890")
    order.recalculate_totals()
    return order


async def save(store, *entities):
    async with store.unit_of_work() as uow:
        for entity in entities:
            if isinstance(entity, Order):
                await uow.orders.add(entity)
            elif isinstance(entity, PaymentTransaction):
                await uow.payments.add(entity)
            elif isinstance(entity, VariantStock):
                await uow.variants.add(entity)
            elif isinstance(entity, OutboxMessage):
                await uow.outbox.insert(entity)
        await uow.commit()


class TestUnitOfWork:
    """Tests for commit and rollback."""

    @pytest.mark.asyncio
    async def test_commit_persists(self, any_store):
        order = make_order(key="k-1")
        await save(any_store, order)

        async with any_store.unit_of_work() as uow:
            loaded = await uow.orders.get(order.id)
        assert loaded.id == order.id
        assert loaded.items[0].quantity == 2
        assert loaded.address.city == "Tehran"

    @pytest.mark.asyncio
    async def test_exit_without_commit_discards(self, any_store):
        order = make_order()
        async with any_store.unit_of_work() as uow:
            await uow.orders.add(order)

        async with any_store.unit_of_work() as uow:
            assert await uow.orders.get(order.id) is None

    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, any_store):
        order = make_order()
        with pytest.raises(RuntimeError):
            async with any_store.unit_of_work() as uow:
                await uow.orders.add(order)
                raise RuntimeError("boom")

        async with any_store.unit_of_work() as uow:
            assert await uow.orders.get(order.id) is None


class TestVersionTokens:
    """Tests for optimistic concurrency."""

    @pytest.mark.asyncio
    async def test_update_increments_version(self, any_store):
        order = make_order()
        await save(any_store, order)

        async with any_store.unit_of_work() as uow:
            loaded = await uow.orders.get(order.id)
            loaded.status = OrderStatus.PAID
            await uow.orders.update(loaded)
            await uow.commit()
        assert loaded.version == 1

        async with any_store.unit_of_work() as uow:
            assert (await uow.orders.get(order.id)).version == 1

    @pytest.mark.asyncio
    async def test_stale_update_rejected(self, any_store):
        """A write against an old version raises ConcurrencyError."""
        order = make_order()
        await save(any_store, order)

        async with any_store.unit_of_work() as uow:
            first = await uow.orders.get(order.id)
            await uow.orders.update(first)
            await uow.commit()

        stale = make_order()
        stale.id = order.id
        async with any_store.unit_of_work() as uow:
            with pytest.raises(ConcurrencyError) as exc_info:
                await uow.orders.update(stale)

        assert exc_info.value.item_type == "order"
        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 1

    @pytest.mark.asyncio
    async def test_stale_variant_rejected(self, any_store):
        variant = VariantStock(id="v-1", product_id="p-1", product_name="Mug", on_hand=5)
        await save(any_store, variant)

        async with any_store.unit_of_work() as uow:
            a = await uow.variants.get("v-1")
            b = await uow.variants.get("v-1")
            a.reserved = 1
            await uow.variants.update(a)
            with pytest.raises(ConcurrencyError):
                await uow.variants.update(b)

    @pytest.mark.asyncio
    async def test_duplicate_idempotency_key(self, any_store):
        await save(any_store, make_order(key="same"))
        with pytest.raises(DuplicateKeyError):
            await save(any_store, make_order(key="same"))


class TestOrderQueries:
    """Tests for order lookups used by checkout and the sweeper."""

    @pytest.mark.asyncio
    async def test_get_by_idempotency_key(self, any_store):
        order = make_order(key="k-42")
        await save(any_store, order)
        async with any_store.unit_of_work() as uow:
            assert (await uow.orders.get_by_idempotency_key("k-42")).id == order.id
            assert await uow.orders.get_by_idempotency_key("other") is None

    @pytest.mark.asyncio
    async def test_find_recent_for_user(self, any_store):
        now = datetime.now(UTC)
        old = make_order(created_at=now - timedelta(minutes=5))
        new = make_order(created_at=now - timedelta(seconds=10))
        other = make_order(user_id="u-2", created_at=now)
        await save(any_store, old, new, other)

        async with any_store.unit_of_work() as uow:
            recent = await uow.orders.find_recent_for_user("u-1", now - timedelta(minutes=1))
        assert [o.id for o in recent] == [new.id]

    @pytest.mark.asyncio
    async def test_find_created_before(self, any_store):
        now = datetime.now(UTC)
        stale = make_order(created_at=now - timedelta(minutes=30))
        fresh = make_order(created_at=now)
        paid = make_order(created_at=now - timedelta(minutes=30), status=OrderStatus.PAID)
        await save(any_store, stale, fresh, paid)

        async with any_store.unit_of_work() as uow:
            found = await uow.orders.find_created_before(
                {OrderStatus.PENDING}, now - timedelta(minutes=20), limit=10
            )
        assert [o.id for o in found] == [stale.id]

    @pytest.mark.asyncio
    async def test_query_filters_and_pages(self, any_store):
        now = datetime.now(UTC)
        orders = [make_order(created_at=now - timedelta(minutes=i)) for i in range(5)]
        orders.append(make_order(user_id="u-2"))
        await save(any_store, *orders)

        async with any_store.unit_of_work() as uow:
            items, total = await uow.orders.query(OrderFilters(user_id="u-1"), Paging(page=2, page_size=2))
        assert total == 5
        assert [o.id for o in items] == [orders[2].id, orders[3].id]

    @pytest.mark.asyncio
    async def test_query_by_status(self, any_store):
        await save(any_store, make_order(status=OrderStatus.PAID), make_order(status=OrderStatus.PENDING))
        async with any_store.unit_of_work() as uow:
            items, total = await uow.orders.query(OrderFilters(statuses={OrderStatus.PAID}), Paging())
        assert total == 1
        assert items[0].status == OrderStatus.PAID


class TestPaymentsAndProcess:
    """Tests for payment and process-state repositories."""

    @pytest.mark.asyncio
    async def test_latest_payment_and_stuck(self, any_store):
        now = datetime.now(UTC)
        first = PaymentTransaction(order_id="o-1", amount=Decimal("10.00"), created_at=now - timedelta(minutes=10))
        second = PaymentTransaction(order_id="o-1", amount=Decimal("10.00"), created_at=now - timedelta(minutes=1))
        done = PaymentTransaction(
            order_id="o-2", amount=Decimal("5.00"), status=PaymentStatus.SUCCESS, created_at=now - timedelta(hours=1)
        )
        await save(any_store, first, second, done)

        async with any_store.unit_of_work() as uow:
            latest = await uow.payments.get_latest_for_order("o-1")
            stuck = await uow.payments.find_stuck(
                {PaymentStatus.PENDING, PaymentStatus.VERIFICATION_IN_PROGRESS}, now - timedelta(minutes=5), 10
            )
        assert latest.id == second.id
        assert [p.id for p in stuck] == [first.id]

    @pytest.mark.asyncio
    async def test_refund_fields_persist(self, any_store):
        refunded_at = datetime(2030, 1, 2, tzinfo=UTC)
        payment = PaymentTransaction(order_id="o-1", amount=Decimal("200.00"), authority="A1")
        payment.mark_success("REF-1", None, None)
        await save(any_store, payment)

        async with any_store.unit_of_work() as uow:
            loaded = await uow.payments.get_latest_for_order("o-1")
            loaded.mark_refunded(Decimal("50.00"), "RF-1", now=refunded_at)
            await uow.payments.update(loaded)
            await uow.commit()

        async with any_store.unit_of_work() as uow:
            stored = await uow.payments.get_latest_for_order("o-1")
        assert stored.status == PaymentStatus.REFUNDED
        assert stored.refunded_amount == Decimal("50.00")
        assert stored.refund_reference == "RF-1"
        assert stored.refunded_at == refunded_at

    @pytest.mark.asyncio
    async def test_process_state_round_trip(self, any_store):
        process = OrderProcessState(order_id="o-1", correlation_id="k-1")
        async with any_store.unit_of_work() as uow:
            await uow.process_states.add(process)
            await uow.commit()

        async with any_store.unit_of_work() as uow:
            loaded = await uow.process_states.get_by_order("o-1")
            loaded.increment_retry()
            await uow.process_states.update(loaded)
            await uow.commit()

        async with any_store.unit_of_work() as uow:
            loaded = await uow.process_states.get_by_order("o-1")
        assert loaded.retry_count == 1
        assert loaded.version == 1


class TestCatalogAndLedger:
    """Tests for variants, the ledger, carts and addresses."""

    @pytest.mark.asyncio
    async def test_get_many_for_update_sorted(self, any_store):
        await save(
            any_store,
            VariantStock(id="v-b", product_id="p", product_name="B"),
            VariantStock(id="v-a", product_id="p", product_name="A"),
        )
        async with any_store.unit_of_work() as uow:
            variants = await uow.variants.get_many_for_update(["v-b", "v-a", "v-missing"])
            ids = await uow.variants.list_ids()
        assert [v.id for v in variants] == ["v-a", "v-b"]
        assert ids == ["v-a", "v-b"]

    @pytest.mark.asyncio
    async def test_ledger_exists_and_sum(self, any_store):
        async with any_store.unit_of_work() as uow:
            await uow.ledger.append(InventoryTransaction("v-1", TransactionType.ADJUSTMENT, 10, 0))
            await uow.ledger.append(InventoryTransaction("v-1", TransactionType.RESERVATION, -2, 10, "c-1"))
            await uow.ledger.append(InventoryTransaction("v-1", TransactionType.COMMIT, -2, 10, "c-1"))
            await uow.commit()

        async with any_store.unit_of_work() as uow:
            assert await uow.ledger.exists("c-1", {TransactionType.COMMIT})
            assert not await uow.ledger.exists("c-1", {TransactionType.RETURN})
            assert await uow.ledger.sum_changes("v-1", {TransactionType.ADJUSTMENT, TransactionType.COMMIT}) == 8
            assert len(await uow.ledger.list_for_variant("v-1")) == 3

    @pytest.mark.asyncio
    async def test_cart_and_address(self, any_store):
        address = UserAddress("u-1", AddressSnapshot("Sara", "0912", "Tehran", "Valiasr", "1234567890"))
        async with any_store.unit_of_work() as uow:
            await uow.carts.save(Cart("u-1", [CartLine("v-1", 2)]))
            await uow.addresses.add(address)
            await uow.commit()

        async with any_store.unit_of_work() as uow:
            cart = await uow.carts.get("u-1")
            await uow.carts.clear("u-1")
            await uow.commit()
        assert cart.lines[0].quantity == 2

        async with any_store.unit_of_work() as uow:
            assert await uow.carts.get("u-1") is None
            assert (await uow.addresses.get(address.id)).address.city == "Tehran"


class TestOutboxStorage:
    """Tests for the relay-side outbox access."""

    @pytest.mark.asyncio
    async def test_claim_in_creation_order(self, any_store):
        now = datetime.now(UTC)
        late = OutboxMessage.index("order", "o-1", {"n": 2})
        late.created_at = now
        early = OutboxMessage.index("order", "o-1", {"n": 1})
        early.created_at = now - timedelta(seconds=5)
        await save(any_store, late, early)

        claimed = await any_store.outbox.claim_batch("relay-1", batch_size=10)

        assert [m.id for m in claimed] == [early.id, late.id]
        assert all(m.status == OutboxStatus.CLAIMED and m.worker_id == "relay-1" for m in claimed)
        assert await any_store.outbox.claim_batch("relay-2") == []
        assert await any_store.outbox.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_update_checks_version(self, any_store):
        message = OutboxMessage.index("product", "v-1", {})
        await save(any_store, message)
        [claimed] = await any_store.outbox.claim_batch("relay-1")

        claimed.status = OutboxStatus.SENT
        await any_store.outbox.update(claimed)
        assert (await any_store.outbox.get_by_id(message.id)).status == OutboxStatus.SENT

        stale = OutboxMessage.from_dict({**claimed.to_dict(), "version": 0})
        with pytest.raises(ConcurrencyError):
            await any_store.outbox.update(stale)

    @pytest.mark.asyncio
    async def test_stuck_and_dead_letters(self, any_store):
        message = OutboxMessage.index("product", "v-1", {})
        parked = OutboxMessage.index("product", "v-2", {})
        parked.status = OutboxStatus.DEAD_LETTER
        await save(any_store, message, parked)
        await any_store.outbox.claim_batch("relay-1")

        stuck = await any_store.outbox.get_stuck(datetime.now(UTC) + timedelta(seconds=1))
        dead = await any_store.outbox.get_dead_letters()

        assert [m.id for m in stuck] == [message.id]
        assert [m.id for m in dead] == [parked.id]


class TestSQLiteFailures:
    """Database errors leave the store usable and surface as ConnectionError."""

    @pytest.mark.asyncio
    async def test_unopenable_file(self, tmp_path):
        store = SQLiteOrderStore(str(tmp_path / "missing" / "orders.db"))

        with pytest.raises(ConnectionError) as exc_info:
            async with store.unit_of_work():
                pass

        assert exc_info.value.backend == "sqlite"
        assert not store._lock.locked()

    @pytest.mark.asyncio
    async def test_operational_error_in_unit_of_work(self, sqlite_store):
        order = make_order()
        with pytest.raises(ConnectionError) as exc_info:
            async with sqlite_store.unit_of_work() as uow:
                await uow.orders.add(order)
                await uow._conn.execute("SELECT * FROM missing_table")

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        async with sqlite_store.unit_of_work() as uow:
            assert await uow.orders.get(order.id) is None


class TestStoreFactory:
    """Tests for create_store()."""

    def test_memory(self):
        assert isinstance(create_store("memory://"), InMemoryOrderStore)

    def test_sqlite_path(self, tmp_path):
        store = create_store(f"sqlite:///{tmp_path}/orders.db")
        assert isinstance(store, SQLiteOrderStore)
        assert store.db_path == f"{tmp_path}/orders.db"

    def test_sqlite_memory(self):
        assert create_store("sqlite://:memory:").db_path == ":memory:"

    def test_unknown_scheme(self):
        with pytest.raises(ConnectionError):
            create_store("postgres://localhost/orders")
