"""
Storage interfaces - repositories, unit of work and the outbox store.

All saga writes happen inside a unit of work:

    >>> async with store.unit_of_work() as uow:
    ...     variants = await uow.variants.get_many_for_update(["v-1", "v-2"])
    ...     ...
    ...     await uow.orders.add(order)
    ...     await uow.outbox.insert(OutboxMessage.index("order", order.id, doc))
    ...     await uow.commit()

Leaving the block without ``commit()`` discards every write. Updates carry
the entity's ``version``; a stale version raises
:class:`orderflow.storage.errors.ConcurrencyError` and a successful update
increments the entity's version in place.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from types import TracebackType
from typing import Self

from orderflow.checkout.types import Cart, OrderFilters, Paging, UserAddress
from orderflow.inventory.types import InventoryTransaction, TransactionType, VariantStock
from orderflow.orders.types import (
    Order,
    OrderProcessState,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
)
from orderflow.outbox.types import OutboxMessage


class OrderRepository(ABC):
    @abstractmethod
    async def add(self, order: Order) -> None:
        """
        Insert a new order with its items.

        Raises:
            DuplicateKeyError: If the idempotency key is already used
        """

    @abstractmethod
    async def get(self, order_id: str) -> Order | None: ...

    @abstractmethod
    async def get_by_idempotency_key(self, key: str) -> Order | None: ...

    @abstractmethod
    async def update(self, order: Order) -> None: ...

    @abstractmethod
    async def find_recent_for_user(self, user_id: str, since: datetime) -> list[Order]:
        """Orders of ``user_id`` created at or after ``since``, newest first."""

    @abstractmethod
    async def find_created_before(
        self, statuses: set[OrderStatus], before: datetime, limit: int
    ) -> list[Order]:
        """Orders in ``statuses`` created before ``before``, oldest first."""

    @abstractmethod
    async def query(self, filters: OrderFilters, paging: Paging) -> tuple[list[Order], int]:
        """Page of matching orders (newest first) plus the total match count."""


class ProcessStateRepository(ABC):
    @abstractmethod
    async def add(self, state: OrderProcessState) -> None: ...

    @abstractmethod
    async def get_by_order(self, order_id: str) -> OrderProcessState | None: ...

    @abstractmethod
    async def update(self, state: OrderProcessState) -> None: ...


class PaymentRepository(ABC):
    @abstractmethod
    async def add(self, payment: PaymentTransaction) -> None: ...

    @abstractmethod
    async def get_latest_for_order(self, order_id: str) -> PaymentTransaction | None: ...

    @abstractmethod
    async def update(self, payment: PaymentTransaction) -> None: ...

    @abstractmethod
    async def find_stuck(
        self, statuses: set[PaymentStatus], before: datetime, limit: int
    ) -> list[PaymentTransaction]:
        """Payments in ``statuses`` created before ``before``, oldest first."""


class VariantRepository(ABC):
    @abstractmethod
    async def add(self, variant: VariantStock) -> None: ...

    @abstractmethod
    async def get(self, variant_id: str) -> VariantStock | None: ...

    @abstractmethod
    async def get_many_for_update(self, variant_ids: list[str]) -> list[VariantStock]:
        """
        Locking read of several variants, ordered by variant id.

        Locks are taken in id order so overlapping checkouts cannot
        deadlock. Unknown ids are skipped.
        """

    @abstractmethod
    async def update(self, variant: VariantStock) -> None: ...

    @abstractmethod
    async def list_ids(self) -> list[str]: ...


class LedgerRepository(ABC):
    @abstractmethod
    async def append(self, transaction: InventoryTransaction) -> None: ...

    @abstractmethod
    async def list_for_variant(self, variant_id: str) -> list[InventoryTransaction]:
        """Ledger rows of one variant in insertion order."""

    @abstractmethod
    async def exists(self, correlation_id: str, types: set[TransactionType]) -> bool:
        """True if a row with ``correlation_id`` and one of ``types`` exists."""

    @abstractmethod
    async def sum_changes(self, variant_id: str, types: set[TransactionType]) -> int:
        """Sum of ``quantity_change`` over a variant's rows of ``types``."""


class CartRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Cart | None: ...

    @abstractmethod
    async def save(self, cart: Cart) -> None: ...

    @abstractmethod
    async def clear(self, user_id: str) -> None: ...


class AddressRepository(ABC):
    @abstractmethod
    async def get(self, address_id: str) -> UserAddress | None: ...

    @abstractmethod
    async def add(self, address: UserAddress) -> None: ...


class OutboxWriter(ABC):
    @abstractmethod
    async def insert(self, message: OutboxMessage) -> None:
        """Stage an outbox row in the current unit of work."""


class UnitOfWork(ABC):
    """
    One atomic set of reads and writes across all repositories.

    Used as an async context manager; see the module docstring.
    """

    orders: OrderRepository
    process_states: ProcessStateRepository
    payments: PaymentRepository
    variants: VariantRepository
    ledger: LedgerRepository
    carts: CartRepository
    addresses: AddressRepository
    outbox: OutboxWriter

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.rollback()


class OutboxStorage(ABC):
    """
    Outbox operations used by the relay, each atomic on its own.

    Messages are inserted through :class:`OutboxWriter` inside a unit of
    work; the relay claims and updates them here.
    """

    @abstractmethod
    async def claim_batch(self, worker_id: str, batch_size: int = 100) -> list[OutboxMessage]:
        """Claim up to ``batch_size`` PENDING messages, oldest first."""

    @abstractmethod
    async def update(self, message: OutboxMessage) -> None:
        """Persist a message's new state (version checked)."""

    @abstractmethod
    async def get_by_id(self, message_id: str) -> OutboxMessage | None: ...

    @abstractmethod
    async def get_stuck(self, claimed_before: datetime) -> list[OutboxMessage]:
        """CLAIMED messages whose claim is older than ``claimed_before``."""

    @abstractmethod
    async def get_pending_count(self) -> int: ...

    @abstractmethod
    async def get_dead_letters(self, limit: int = 100) -> list[OutboxMessage]: ...

    @abstractmethod
    async def list_all(self) -> list[OutboxMessage]:
        """Every message, oldest first."""


class OrderStore(ABC):
    """
    A storage backend: hands out units of work and the relay's outbox store.

    Usage:
        >>> async with SQLiteOrderStore("orders.db") as store:
        ...     async with store.unit_of_work() as uow:
        ...         ...
    """

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    @abstractmethod
    def unit_of_work(self) -> UnitOfWork: ...

    @property
    @abstractmethod
    def outbox(self) -> OutboxStorage: ...

    async def __aenter__(self) -> Self:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
