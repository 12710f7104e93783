"""
SQLite storage backend.

Embedded storage for single-process deployments, local development and
tests. One aiosqlite connection is shared; units of work are serialized by
an ``asyncio.Lock`` and each runs inside ``BEGIN IMMEDIATE`` so its reads
are locking reads.

Rows keep a few indexed columns (status, timestamps, version) next to a JSON
``data`` document produced by the entity's ``to_dict``.

Usage:
    >>> store = SQLiteOrderStore("./orders.db")
    >>> async with store:
    ...     async with store.unit_of_work() as uow:
    ...         order = await uow.orders.get(order_id)
"""

import asyncio
import sqlite3
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from orderflow.checkout.types import Cart, OrderFilters, Paging, UserAddress
from orderflow.core.logger import get_logger
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
from orderflow.storage.errors import (
    ConcurrencyError,
    ConnectionError,
    DuplicateKeyError,
    TransactionError,
)
from orderflow.storage.serialization import deserialize, serialize

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL,
    idempotency_key TEXT UNIQUE,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, created_at);

CREATE TABLE IF NOT EXISTS order_process_states (
    order_id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_transactions (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_order ON payment_transactions(order_id);
CREATE INDEX IF NOT EXISTS idx_payments_status ON payment_transactions(status, created_at);

CREATE TABLE IF NOT EXISTS variants (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS inventory_transactions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    variant_id TEXT NOT NULL,
    type TEXT NOT NULL,
    quantity_change INTEGER NOT NULL,
    correlation_id TEXT,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_variant ON inventory_transactions(variant_id);
CREATE INDEX IF NOT EXISTS idx_ledger_correlation ON inventory_transactions(correlation_id);

CREATE TABLE IF NOT EXISTS carts (
    user_id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS addresses (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS outbox_messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    claimed_at TEXT,
    version INTEGER NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox_messages(status, created_at);
"""


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC timestamp so string comparison orders correctly."""
    if value is None:
        return None
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f")


async def _raise_stale(
    conn: aiosqlite.Connection, table: str, key: str, item_type: str, item_id: str, version: int
) -> None:
    async with conn.execute(f"SELECT version FROM {table} WHERE {key} = ?", (item_id,)) as cursor:
        row = await cursor.fetchone()
    actual = row["version"] if row else None
    msg = f"{item_type} {item_id} was modified concurrently" if row else f"{item_type} {item_id} does not exist"
    raise ConcurrencyError(
        msg,
        item_type=item_type,
        item_id=item_id,
        expected_version=version,
        actual_version=actual,
    )


class _Repository:
    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def _fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[aiosqlite.Row]:
        async with self._conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> aiosqlite.Row | None:
        async with self._conn.execute(sql, params) as cursor:
            return await cursor.fetchone()


class _Orders(_Repository, OrderRepository):
    async def add(self, order: Order) -> None:
        try:
            await self._conn.execute(
                """
                INSERT INTO orders (id, user_id, status, idempotency_key, is_deleted, created_at, version, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.id,
                    order.user_id,
                    order.status.value,
                    order.idempotency_key,
                    int(order.is_deleted),
                    _ts(order.created_at),
                    order.version,
                    serialize(order.to_dict()),
                ),
            )
        except sqlite3.IntegrityError as e:
            msg = "Idempotency key already used"
            raise DuplicateKeyError(msg, item_type="order", key=order.idempotency_key) from e

    async def get(self, order_id: str) -> Order | None:
        row = await self._fetch_one("SELECT data FROM orders WHERE id = ?", (order_id,))
        return Order.from_dict(deserialize(row["data"])) if row else None

    async def get_by_idempotency_key(self, key: str) -> Order | None:
        row = await self._fetch_one("SELECT data FROM orders WHERE idempotency_key = ?", (key,))
        return Order.from_dict(deserialize(row["data"])) if row else None

    async def update(self, order: Order) -> None:
        new_version = order.version + 1
        data = order.to_dict()
        data["version"] = new_version
        cursor = await self._conn.execute(
            """
            UPDATE orders SET status = ?, is_deleted = ?, version = ?, data = ?
            WHERE id = ? AND version = ?
            """,
            (order.status.value, int(order.is_deleted), new_version, serialize(data), order.id, order.version),
        )
        if cursor.rowcount == 0:
            await _raise_stale(self._conn, "orders", "id", "order", order.id, order.version)
        order.version = new_version

    async def find_recent_for_user(self, user_id: str, since: datetime) -> list[Order]:
        rows = await self._fetch_all(
            """
            SELECT data FROM orders
            WHERE user_id = ? AND created_at >= ? AND is_deleted = 0
            ORDER BY created_at DESC
            """,
            (user_id, _ts(since)),
        )
        return [Order.from_dict(deserialize(row["data"])) for row in rows]

    async def find_created_before(
        self, statuses: set[OrderStatus], before: datetime, limit: int
    ) -> list[Order]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        rows = await self._fetch_all(
            f"""
            SELECT data FROM orders
            WHERE status IN ({placeholders}) AND created_at < ? AND is_deleted = 0
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (*[s.value for s in statuses], _ts(before), limit),
        )
        return [Order.from_dict(deserialize(row["data"])) for row in rows]

    async def query(self, filters: OrderFilters, paging: Paging) -> tuple[list[Order], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if not filters.include_deleted:
            clauses.append("is_deleted = 0")
        if filters.user_id is not None:
            clauses.append("user_id = ?")
            params.append(filters.user_id)
        if filters.statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in filters.statuses)})")
            params.extend(s.value for s in filters.statuses)
        if filters.created_from is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(filters.created_from))
        if filters.created_to is not None:
            clauses.append("created_at <= ?")
            params.append(_ts(filters.created_to))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        count_row = await self._fetch_one(f"SELECT COUNT(*) AS total FROM orders {where}", tuple(params))
        rows = await self._fetch_all(
            f"SELECT data FROM orders {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (*params, paging.page_size, paging.offset),
        )
        return [Order.from_dict(deserialize(row["data"])) for row in rows], count_row["total"]


class _ProcessStates(_Repository, ProcessStateRepository):
    async def add(self, state: OrderProcessState) -> None:
        await self._conn.execute(
            "INSERT INTO order_process_states (order_id, version, data) VALUES (?, ?, ?)",
            (state.order_id, state.version, serialize(state.to_dict())),
        )

    async def get_by_order(self, order_id: str) -> OrderProcessState | None:
        row = await self._fetch_one("SELECT data FROM order_process_states WHERE order_id = ?", (order_id,))
        return OrderProcessState.from_dict(deserialize(row["data"])) if row else None

    async def update(self, state: OrderProcessState) -> None:
        new_version = state.version + 1
        data = state.to_dict()
        data["version"] = new_version
        cursor = await self._conn.execute(
            "UPDATE order_process_states SET version = ?, data = ? WHERE order_id = ? AND version = ?",
            (new_version, serialize(data), state.order_id, state.version),
        )
        if cursor.rowcount == 0:
            await _raise_stale(
                self._conn, "order_process_states", "order_id", "process_state", state.order_id, state.version
            )
        state.version = new_version


class _Payments(_Repository, PaymentRepository):
    async def add(self, payment: PaymentTransaction) -> None:
        await self._conn.execute(
            """
            INSERT INTO payment_transactions (id, order_id, status, created_at, version, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                payment.id,
                payment.order_id,
                payment.status.value,
                _ts(payment.created_at),
                payment.version,
                serialize(payment.to_dict()),
            ),
        )

    async def get_latest_for_order(self, order_id: str) -> PaymentTransaction | None:
        row = await self._fetch_one(
            "SELECT data FROM payment_transactions WHERE order_id = ? ORDER BY created_at DESC LIMIT 1",
            (order_id,),
        )
        return PaymentTransaction.from_dict(deserialize(row["data"])) if row else None

    async def update(self, payment: PaymentTransaction) -> None:
        new_version = payment.version + 1
        data = payment.to_dict()
        data["version"] = new_version
        cursor = await self._conn.execute(
            """
            UPDATE payment_transactions SET status = ?, version = ?, data = ?
            WHERE id = ? AND version = ?
            """,
            (payment.status.value, new_version, serialize(data), payment.id, payment.version),
        )
        if cursor.rowcount == 0:
            await _raise_stale(self._conn, "payment_transactions", "id", "payment", payment.id, payment.version)
        payment.version = new_version

    async def find_stuck(
        self, statuses: set[PaymentStatus], before: datetime, limit: int
    ) -> list[PaymentTransaction]:
        if not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        rows = await self._fetch_all(
            f"""
            SELECT data FROM payment_transactions
            WHERE status IN ({placeholders}) AND created_at < ?
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (*[s.value for s in statuses], _ts(before), limit),
        )
        return [PaymentTransaction.from_dict(deserialize(row["data"])) for row in rows]


class _Variants(_Repository, VariantRepository):
    async def add(self, variant: VariantStock) -> None:
        try:
            await self._conn.execute(
                "INSERT INTO variants (id, version, data) VALUES (?, ?, ?)",
                (variant.id, variant.version, serialize(variant.to_dict())),
            )
        except sqlite3.IntegrityError as e:
            msg = "Variant already exists"
            raise DuplicateKeyError(msg, item_type="variant", key=variant.id) from e

    async def get(self, variant_id: str) -> VariantStock | None:
        row = await self._fetch_one("SELECT data FROM variants WHERE id = ?", (variant_id,))
        return VariantStock.from_dict(deserialize(row["data"])) if row else None

    async def get_many_for_update(self, variant_ids: list[str]) -> list[VariantStock]:
        ids = sorted(set(variant_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = await self._fetch_all(
            f"SELECT data FROM variants WHERE id IN ({placeholders}) ORDER BY id", tuple(ids)
        )
        return [VariantStock.from_dict(deserialize(row["data"])) for row in rows]

    async def update(self, variant: VariantStock) -> None:
        new_version = variant.version + 1
        data = variant.to_dict()
        data["version"] = new_version
        cursor = await self._conn.execute(
            "UPDATE variants SET version = ?, data = ? WHERE id = ? AND version = ?",
            (new_version, serialize(data), variant.id, variant.version),
        )
        if cursor.rowcount == 0:
            await _raise_stale(self._conn, "variants", "id", "variant", variant.id, variant.version)
        variant.version = new_version

    async def list_ids(self) -> list[str]:
        rows = await self._fetch_all("SELECT id FROM variants ORDER BY id")
        return [row["id"] for row in rows]


class _Ledger(_Repository, LedgerRepository):
    async def append(self, transaction: InventoryTransaction) -> None:
        await self._conn.execute(
            """
            INSERT INTO inventory_transactions (id, variant_id, type, quantity_change, correlation_id, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                transaction.id,
                transaction.variant_id,
                transaction.type.value,
                transaction.quantity_change,
                transaction.correlation_id,
                serialize(transaction.to_dict()),
            ),
        )

    async def list_for_variant(self, variant_id: str) -> list[InventoryTransaction]:
        rows = await self._fetch_all(
            "SELECT data FROM inventory_transactions WHERE variant_id = ? ORDER BY seq", (variant_id,)
        )
        return [InventoryTransaction.from_dict(deserialize(row["data"])) for row in rows]

    async def exists(self, correlation_id: str, types: set[TransactionType]) -> bool:
        if not types:
            return False
        placeholders = ", ".join("?" for _ in types)
        row = await self._fetch_one(
            f"SELECT 1 FROM inventory_transactions WHERE correlation_id = ? AND type IN ({placeholders}) LIMIT 1",
            (correlation_id, *[t.value for t in types]),
        )
        return row is not None

    async def sum_changes(self, variant_id: str, types: set[TransactionType]) -> int:
        if not types:
            return 0
        placeholders = ", ".join("?" for _ in types)
        row = await self._fetch_one(
            f"""
            SELECT COALESCE(SUM(quantity_change), 0) AS total FROM inventory_transactions
            WHERE variant_id = ? AND type IN ({placeholders})
            """,
            (variant_id, *[t.value for t in types]),
        )
        return int(row["total"])


class _Carts(_Repository, CartRepository):
    async def get(self, user_id: str) -> Cart | None:
        row = await self._fetch_one("SELECT data FROM carts WHERE user_id = ?", (user_id,))
        return Cart.from_dict(deserialize(row["data"])) if row else None

    async def save(self, cart: Cart) -> None:
        await self._conn.execute(
            "INSERT OR REPLACE INTO carts (user_id, data) VALUES (?, ?)",
            (cart.user_id, serialize(cart.to_dict())),
        )

    async def clear(self, user_id: str) -> None:
        await self._conn.execute("DELETE FROM carts WHERE user_id = ?", (user_id,))


class _Addresses(_Repository, AddressRepository):
    async def get(self, address_id: str) -> UserAddress | None:
        row = await self._fetch_one("SELECT data FROM addresses WHERE id = ?", (address_id,))
        return UserAddress.from_dict(deserialize(row["data"])) if row else None

    async def add(self, address: UserAddress) -> None:
        await self._conn.execute(
            "INSERT INTO addresses (id, user_id, data) VALUES (?, ?, ?)",
            (address.id, address.user_id, serialize(address.to_dict())),
        )


async def _insert_outbox(conn: aiosqlite.Connection, message: OutboxMessage) -> None:
    await conn.execute(
        """
        INSERT INTO outbox_messages (id, status, created_at, claimed_at, version, data)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            message.id,
            message.status.value,
            _ts(message.created_at),
            _ts(message.claimed_at),
            message.version,
            serialize(message.to_dict()),
        ),
    )


class _OutboxWriter(_Repository, OutboxWriter):
    async def insert(self, message: OutboxMessage) -> None:
        await _insert_outbox(self._conn, message)


class SQLiteUnitOfWork(UnitOfWork):
    def __init__(self, store: "SQLiteOrderStore"):
        self._store = store
        self._conn: aiosqlite.Connection | None = None
        self._active = False

    async def __aenter__(self) -> "SQLiteUnitOfWork":
        await self._store._lock.acquire()
        try:
            self._conn = await self._store._get_connection()
            await self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            self._store._lock.release()
            msg = f"Cannot start SQLite transaction: {e}"
            raise ConnectionError(msg, backend="sqlite", url=self._store.db_path) from e
        except BaseException:
            self._store._lock.release()
            raise
        self._active = True
        self.orders = _Orders(self._conn)
        self.process_states = _ProcessStates(self._conn)
        self.payments = _Payments(self._conn)
        self.variants = _Variants(self._conn)
        self.ledger = _Ledger(self._conn)
        self.carts = _Carts(self._conn)
        self.addresses = _Addresses(self._conn)
        self.outbox = _OutboxWriter(self._conn)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.rollback()
        except sqlite3.Error as e:
            if exc is None:
                raise
            logger.warning(f"Rollback failed after {exc_type.__name__}: {e}")
        finally:
            self._store._lock.release()
        if isinstance(exc, sqlite3.OperationalError):
            msg = f"SQLite operation failed: {exc}"
            raise ConnectionError(msg, backend="sqlite", url=self._store.db_path) from exc

    async def commit(self) -> None:
        if not self._active:
            msg = "Unit of work is not active"
            raise TransactionError(msg, operation="commit")
        try:
            await self._conn.commit()
        except sqlite3.OperationalError as e:
            msg = f"Commit failed, database unavailable: {e}"
            raise ConnectionError(msg, backend="sqlite", url=self._store.db_path) from e
        except sqlite3.Error as e:
            msg = f"Commit failed: {e}"
            raise TransactionError(msg, operation="commit") from e
        self._active = False

    async def rollback(self) -> None:
        if self._active:
            self._active = False
            await self._conn.rollback()


class SQLiteOutboxStorage(OutboxStorage):
    """Relay-side outbox access for :class:`SQLiteOrderStore`."""

    def __init__(self, store: "SQLiteOrderStore"):
        self._store = store

    async def _rows(self, sql: str, params: tuple[Any, ...] = ()) -> list[OutboxMessage]:
        async with self._store._lock:
            conn = await self._store._get_connection()
            async with conn.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [OutboxMessage.from_dict(deserialize(row["data"])) for row in rows]

    async def claim_batch(self, worker_id: str, batch_size: int = 100) -> list[OutboxMessage]:
        async with self._store._lock:
            conn = await self._store._get_connection()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                async with conn.execute(
                    "SELECT data FROM outbox_messages WHERE status = ? ORDER BY created_at, seq LIMIT ?",
                    (OutboxStatus.PENDING.value, batch_size),
                ) as cursor:
                    rows = await cursor.fetchall()

                now = datetime.now(UTC)
                claimed = []
                for row in rows:
                    message = OutboxMessage.from_dict(deserialize(row["data"]))
                    message.status = OutboxStatus.CLAIMED
                    message.worker_id = worker_id
                    message.claimed_at = now
                    message.version += 1
                    await conn.execute(
                        """
                        UPDATE outbox_messages SET status = ?, claimed_at = ?, version = ?, data = ?
                        WHERE id = ?
                        """,
                        (message.status.value, _ts(now), message.version, serialize(message.to_dict()), message.id),
                    )
                    claimed.append(message)
                await conn.commit()
            except BaseException:
                await conn.rollback()
                raise
            return claimed

    async def update(self, message: OutboxMessage) -> None:
        async with self._store._lock:
            conn = await self._store._get_connection()
            new_version = message.version + 1
            data = message.to_dict()
            data["version"] = new_version
            cursor = await conn.execute(
                """
                UPDATE outbox_messages SET status = ?, claimed_at = ?, version = ?, data = ?
                WHERE id = ? AND version = ?
                """,
                (message.status.value, _ts(message.claimed_at), new_version, serialize(data), message.id, message.version),
            )
            if cursor.rowcount == 0:
                await _raise_stale(conn, "outbox_messages", "id", "outbox_message", message.id, message.version)
            await conn.commit()
            message.version = new_version

    async def get_by_id(self, message_id: str) -> OutboxMessage | None:
        rows = await self._rows("SELECT data FROM outbox_messages WHERE id = ?", (message_id,))
        return rows[0] if rows else None

    async def get_stuck(self, claimed_before: datetime) -> list[OutboxMessage]:
        return await self._rows(
            "SELECT data FROM outbox_messages WHERE status = ? AND claimed_at < ? ORDER BY created_at, seq",
            (OutboxStatus.CLAIMED.value, _ts(claimed_before)),
        )

    async def get_pending_count(self) -> int:
        async with self._store._lock:
            conn = await self._store._get_connection()
            async with conn.execute(
                "SELECT COUNT(*) AS total FROM outbox_messages WHERE status = ?", (OutboxStatus.PENDING.value,)
            ) as cursor:
                row = await cursor.fetchone()
        return row["total"]

    async def get_dead_letters(self, limit: int = 100) -> list[OutboxMessage]:
        return await self._rows(
            "SELECT data FROM outbox_messages WHERE status = ? ORDER BY created_at, seq LIMIT ?",
            (OutboxStatus.DEAD_LETTER.value, limit),
        )

    async def list_all(self) -> list[OutboxMessage]:
        return await self._rows("SELECT data FROM outbox_messages ORDER BY created_at, seq")


class SQLiteOrderStore(OrderStore):
    """
    SQLite-backed store.

    Args:
        db_path: Path to the database file, or ":memory:" for a private
            in-memory database
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._lock = asyncio.Lock()
        self._outbox = SQLiteOutboxStorage(self)

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        await self._get_connection()

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            try:
                self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            except sqlite3.Error as e:
                msg = f"Cannot open SQLite database: {e}"
                raise ConnectionError(msg, backend="sqlite", url=self.db_path) from e
            self._conn.row_factory = aiosqlite.Row

        if not self._initialized:
            await self._conn.executescript(SCHEMA)
            self._initialized = True
            logger.debug(f"SQLite schema ready at {self.db_path}")

        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            self._initialized = False

    def unit_of_work(self) -> SQLiteUnitOfWork:
        return SQLiteUnitOfWork(self)

    @property
    def outbox(self) -> SQLiteOutboxStorage:
        return self._outbox
