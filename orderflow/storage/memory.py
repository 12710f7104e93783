"""
In-memory storage backend - for tests and local development.

Units of work are serialized by one store-wide ``asyncio.Lock`` held from
``__aenter__`` to ``__aexit__``. That makes every unit of work a locking
read of everything it touches. Each unit of work operates on a private
copy of the tables; ``commit()`` swaps the copy in, anything else discards
it.

Because units of work are serialized, a unit of work must not open a
second one while it is active.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime

from orderflow.checkout.types import Cart, OrderFilters, Paging, UserAddress
from orderflow.inventory.types import InventoryTransaction, TransactionType, VariantStock
from orderflow.orders.types import (
    Order,
    OrderProcessState,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
)
from orderflow.outbox.types import OutboxMessage, OutboxStatus
from orderflow.storage.base import (
    AddressRepository,
    CartRepository,
    LedgerRepository,
    OrderRepository,
    OrderStore,
    OutboxStorage,
    OutboxWriter,
    PaymentRepository,
    ProcessStateRepository,
    UnitOfWork,
    VariantRepository,
)
from orderflow.storage.errors import ConcurrencyError, DuplicateKeyError, TransactionError


@dataclass
class _Tables:
    orders: dict[str, Order] = field(default_factory=dict)
    process_states: dict[str, OrderProcessState] = field(default_factory=dict)
    payments: dict[str, PaymentTransaction] = field(default_factory=dict)
    variants: dict[str, VariantStock] = field(default_factory=dict)
    ledger: list[InventoryTransaction] = field(default_factory=list)
    carts: dict[str, Cart] = field(default_factory=dict)
    addresses: dict[str, UserAddress] = field(default_factory=dict)
    outbox: dict[str, OutboxMessage] = field(default_factory=dict)

    def clone(self) -> "_Tables":
        # Ledger rows are never mutated, a shallow list copy is enough
        return _Tables(
            orders=copy.deepcopy(self.orders),
            process_states=copy.deepcopy(self.process_states),
            payments=copy.deepcopy(self.payments),
            variants=copy.deepcopy(self.variants),
            ledger=list(self.ledger),
            carts=copy.deepcopy(self.carts),
            addresses=copy.deepcopy(self.addresses),
            outbox=copy.deepcopy(self.outbox),
        )


def _check_version(item_type: str, item_id: str, stored_version: int | None, version: int) -> None:
    if stored_version is None:
        msg = f"{item_type} {item_id} does not exist"
        raise ConcurrencyError(msg, item_type=item_type, item_id=item_id, expected_version=version)
    if stored_version != version:
        msg = f"{item_type} {item_id} was modified concurrently"
        raise ConcurrencyError(
            msg,
            item_type=item_type,
            item_id=item_id,
            expected_version=version,
            actual_version=stored_version,
        )


class _Repository:
    def __init__(self, tables: _Tables):
        self._t = tables


class _Orders(_Repository, OrderRepository):
    async def add(self, order: Order) -> None:
        if order.idempotency_key is not None:
            for existing in self._t.orders.values():
                if existing.idempotency_key == order.idempotency_key:
                    msg = "Idempotency key already used"
                    raise DuplicateKeyError(msg, item_type="order", key=order.idempotency_key)
        self._t.orders[order.id] = copy.deepcopy(order)

    async def get(self, order_id: str) -> Order | None:
        order = self._t.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def get_by_idempotency_key(self, key: str) -> Order | None:
        for order in self._t.orders.values():
            if order.idempotency_key == key:
                return copy.deepcopy(order)
        return None

    async def update(self, order: Order) -> None:
        stored = self._t.orders.get(order.id)
        _check_version("order", order.id, stored.version if stored else None, order.version)
        order.version += 1
        self._t.orders[order.id] = copy.deepcopy(order)

    async def find_recent_for_user(self, user_id: str, since: datetime) -> list[Order]:
        orders = [
            o for o in self._t.orders.values()
            if o.user_id == user_id and o.created_at >= since and not o.is_deleted
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return copy.deepcopy(orders)

    async def find_created_before(
        self, statuses: set[OrderStatus], before: datetime, limit: int
    ) -> list[Order]:
        orders = [
            o for o in self._t.orders.values()
            if o.status in statuses and o.created_at < before and not o.is_deleted
        ]
        orders.sort(key=lambda o: o.created_at)
        return copy.deepcopy(orders[:limit])

    async def query(self, filters: OrderFilters, paging: Paging) -> tuple[list[Order], int]:
        orders = [o for o in self._t.orders.values() if filters.matches(o)]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        page = orders[paging.offset : paging.offset + paging.page_size]
        return copy.deepcopy(page), len(orders)


class _ProcessStates(_Repository, ProcessStateRepository):
    async def add(self, state: OrderProcessState) -> None:
        self._t.process_states[state.order_id] = copy.deepcopy(state)

    async def get_by_order(self, order_id: str) -> OrderProcessState | None:
        state = self._t.process_states.get(order_id)
        return copy.deepcopy(state) if state else None

    async def update(self, state: OrderProcessState) -> None:
        stored = self._t.process_states.get(state.order_id)
        _check_version("process_state", state.order_id, stored.version if stored else None, state.version)
        state.version += 1
        self._t.process_states[state.order_id] = copy.deepcopy(state)


class _Payments(_Repository, PaymentRepository):
    async def add(self, payment: PaymentTransaction) -> None:
        self._t.payments[payment.id] = copy.deepcopy(payment)

    async def get_latest_for_order(self, order_id: str) -> PaymentTransaction | None:
        payments = [p for p in self._t.payments.values() if p.order_id == order_id]
        if not payments:
            return None
        return copy.deepcopy(max(payments, key=lambda p: p.created_at))

    async def update(self, payment: PaymentTransaction) -> None:
        stored = self._t.payments.get(payment.id)
        _check_version("payment", payment.id, stored.version if stored else None, payment.version)
        payment.version += 1
        self._t.payments[payment.id] = copy.deepcopy(payment)

    async def find_stuck(
        self, statuses: set[PaymentStatus], before: datetime, limit: int
    ) -> list[PaymentTransaction]:
        payments = [
            p for p in self._t.payments.values() if p.status in statuses and p.created_at < before
        ]
        payments.sort(key=lambda p: p.created_at)
        return copy.deepcopy(payments[:limit])


class _Variants(_Repository, VariantRepository):
    async def add(self, variant: VariantStock) -> None:
        if variant.id in self._t.variants:
            msg = "Variant already exists"
            raise DuplicateKeyError(msg, item_type="variant", key=variant.id)
        self._t.variants[variant.id] = copy.deepcopy(variant)

    async def get(self, variant_id: str) -> VariantStock | None:
        variant = self._t.variants.get(variant_id)
        return copy.deepcopy(variant) if variant else None

    async def get_many_for_update(self, variant_ids: list[str]) -> list[VariantStock]:
        # The unit of work already holds the store lock
        return [
            copy.deepcopy(self._t.variants[variant_id])
            for variant_id in sorted(set(variant_ids))
            if variant_id in self._t.variants
        ]

    async def update(self, variant: VariantStock) -> None:
        stored = self._t.variants.get(variant.id)
        _check_version("variant", variant.id, stored.version if stored else None, variant.version)
        variant.version += 1
        self._t.variants[variant.id] = copy.deepcopy(variant)

    async def list_ids(self) -> list[str]:
        return sorted(self._t.variants)


class _Ledger(_Repository, LedgerRepository):
    async def append(self, transaction: InventoryTransaction) -> None:
        self._t.ledger.append(transaction)

    async def list_for_variant(self, variant_id: str) -> list[InventoryTransaction]:
        return [tx for tx in self._t.ledger if tx.variant_id == variant_id]

    async def exists(self, correlation_id: str, types: set[TransactionType]) -> bool:
        return any(tx.correlation_id == correlation_id and tx.type in types for tx in self._t.ledger)

    async def sum_changes(self, variant_id: str, types: set[TransactionType]) -> int:
        return sum(
            tx.quantity_change for tx in self._t.ledger if tx.variant_id == variant_id and tx.type in types
        )


class _Carts(_Repository, CartRepository):
    async def get(self, user_id: str) -> Cart | None:
        cart = self._t.carts.get(user_id)
        return copy.deepcopy(cart) if cart else None

    async def save(self, cart: Cart) -> None:
        self._t.carts[cart.user_id] = copy.deepcopy(cart)

    async def clear(self, user_id: str) -> None:
        self._t.carts.pop(user_id, None)


class _Addresses(_Repository, AddressRepository):
    async def get(self, address_id: str) -> UserAddress | None:
        address = self._t.addresses.get(address_id)
        return copy.deepcopy(address) if address else None

    async def add(self, address: UserAddress) -> None:
        self._t.addresses[address.id] = copy.deepcopy(address)


class _OutboxWriter(_Repository, OutboxWriter):
    async def insert(self, message: OutboxMessage) -> None:
        self._t.outbox[message.id] = copy.deepcopy(message)


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryOrderStore"):
        self._store = store
        self._tables: _Tables | None = None
        self._committed = False

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await self._store._lock.acquire()
        self._tables = self._store._tables.clone()
        self.orders = _Orders(self._tables)
        self.process_states = _ProcessStates(self._tables)
        self.payments = _Payments(self._tables)
        self.variants = _Variants(self._tables)
        self.ledger = _Ledger(self._tables)
        self.carts = _Carts(self._tables)
        self.addresses = _Addresses(self._tables)
        self.outbox = _OutboxWriter(self._tables)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.rollback()
        finally:
            self._store._lock.release()

    async def commit(self) -> None:
        if self._tables is None or self._committed:
            msg = "Unit of work is not active"
            raise TransactionError(msg, operation="commit")
        self._store._tables = self._tables
        self._committed = True

    async def rollback(self) -> None:
        self._tables = None


class InMemoryOutboxStorage(OutboxStorage):
    """Relay-side outbox access for :class:`InMemoryOrderStore`."""

    def __init__(self, store: "InMemoryOrderStore"):
        self._store = store

    @property
    def _messages(self) -> dict[str, OutboxMessage]:
        return self._store._tables.outbox

    async def claim_batch(self, worker_id: str, batch_size: int = 100) -> list[OutboxMessage]:
        async with self._store._lock:
            pending = sorted(
                (m for m in self._messages.values() if m.status == OutboxStatus.PENDING),
                key=lambda m: m.created_at,
            )[:batch_size]
            now = datetime.now(UTC)
            for message in pending:
                message.status = OutboxStatus.CLAIMED
                message.worker_id = worker_id
                message.claimed_at = now
                message.version += 1
            return copy.deepcopy(pending)

    async def update(self, message: OutboxMessage) -> None:
        async with self._store._lock:
            stored = self._messages.get(message.id)
            _check_version("outbox_message", message.id, stored.version if stored else None, message.version)
            message.version += 1
            self._messages[message.id] = copy.deepcopy(message)

    async def get_by_id(self, message_id: str) -> OutboxMessage | None:
        message = self._messages.get(message_id)
        return copy.deepcopy(message) if message else None

    async def get_stuck(self, claimed_before: datetime) -> list[OutboxMessage]:
        return copy.deepcopy(
            [
                m for m in self._messages.values()
                if m.status == OutboxStatus.CLAIMED and m.claimed_at and m.claimed_at < claimed_before
            ]
        )

    async def get_pending_count(self) -> int:
        return sum(1 for m in self._messages.values() if m.status == OutboxStatus.PENDING)

    async def get_dead_letters(self, limit: int = 100) -> list[OutboxMessage]:
        dead = [m for m in self._messages.values() if m.status == OutboxStatus.DEAD_LETTER]
        dead.sort(key=lambda m: m.created_at)
        return copy.deepcopy(dead[:limit])

    async def list_all(self) -> list[OutboxMessage]:
        return copy.deepcopy(sorted(self._messages.values(), key=lambda m: m.created_at))


class InMemoryOrderStore(OrderStore):
    """
    Dict-backed store.

    Usage:
        >>> store = InMemoryOrderStore()
        >>> async with store.unit_of_work() as uow:
        ...     await uow.variants.add(variant)
        ...     await uow.commit()
    """

    def __init__(self):
        self._tables = _Tables()
        self._lock = asyncio.Lock()
        self._outbox = InMemoryOutboxStorage(self)

    async def initialize(self) -> None:
        """No-op for in-memory storage."""

    async def close(self) -> None:
        """No-op for in-memory storage."""

    def unit_of_work(self) -> InMemoryUnitOfWork:
        return InMemoryUnitOfWork(self)

    @property
    def outbox(self) -> InMemoryOutboxStorage:
        return self._outbox

    def clear(self) -> None:
        """Drop all data (for testing)."""
        self._tables = _Tables()
