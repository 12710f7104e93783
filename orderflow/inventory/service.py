"""
Inventory Service - applies engine decisions through a unit of work.

The engine decides; this service loads variant snapshots, persists counter
updates and ledger rows, and writes the availability document to the outbox
in the same unit of work.

Order-item operations are idempotent per item: ledger rows carry the item's
correlation id (``order-item-<id>``) and a step whose row already exists is
skipped, so a retried saga step never reserves, commits or releases twice.
"""

from orderflow.core.exceptions import (
    InsufficientStockError,
    InventoryOperationError,
    NegativeStockError,
    VariantUnavailableError,
)
from orderflow.core.logger import get_logger
from orderflow.inventory.engine import InventoryReservationEngine
from orderflow.inventory.types import (
    ON_HAND_TRANSACTION_TYPES,
    InventoryOutcome,
    InventoryResult,
    ReconcileResult,
    StockRequest,
    TransactionType,
    VariantStock,
)
from orderflow.orders.types import OrderItem
from orderflow.outbox.types import OutboxMessage
from orderflow.storage.base import OrderStore, UnitOfWork
from orderflow.storage.errors import NotFoundError

logger = get_logger(__name__)

PRODUCT_INDEX = "product"

_RESERVED = {TransactionType.RESERVATION}
_COMMITTED = {TransactionType.COMMIT}
_RELEASED_OR_COMMITTED = {TransactionType.RESERVATION_ROLLBACK, TransactionType.COMMIT}
_RETURNED = {TransactionType.RETURN}


class InventoryService:
    """
    Stock operations for the checkout saga and for stock administration.

    Methods that take a ``uow`` run inside the caller's unit of work and
    never commit. Administrative methods (``register_variant``,
    ``adjust_stock``, ``record_damage``, ``reconcile_stock``) open and
    commit their own.
    """

    def __init__(self, store: OrderStore, engine: InventoryReservationEngine | None = None):
        self.store = store
        self.engine = engine or InventoryReservationEngine()

    # ============================================
    # ORDER ITEM OPERATIONS (caller's unit of work)
    # ============================================

    async def _load(
        self, uow: UnitOfWork, items: list[OrderItem], variants: dict[str, VariantStock] | None
    ) -> dict[str, VariantStock]:
        if variants is None:
            loaded = await uow.variants.get_many_for_update([item.variant_id for item in items])
            variants = {variant.id: variant for variant in loaded}
        for item in items:
            if item.variant_id not in variants:
                raise VariantUnavailableError(item.variant_id)
        return variants

    async def _persist(self, uow: UnitOfWork, results: list[InventoryResult], variants: dict[str, VariantStock]) -> None:
        touched: list[str] = []
        for result in results:
            if result.transaction is None:
                continue
            await uow.ledger.append(result.transaction)
            if result.variant_id not in touched:
                touched.append(result.variant_id)

        for variant_id in sorted(touched):
            variant = variants[variant_id]
            await uow.variants.update(variant)
            await uow.outbox.insert(
                OutboxMessage.index(PRODUCT_INDEX, variant.id, variant.search_document())
            )
            if self.engine.check_low_stock(variant):
                logger.warning(
                    f"Low stock for variant {variant.id}: {variant.available} available "
                    f"(threshold {variant.low_stock_threshold})"
                )

    async def reserve_items(
        self,
        uow: UnitOfWork,
        items: list[OrderItem],
        variants: dict[str, VariantStock] | None = None,
        user_id: str | None = None,
    ) -> list[InventoryResult]:
        """
        Reserve stock for every item, all or nothing.

        Raises:
            InsufficientStockError: First line that cannot be covered
            VariantUnavailableError: A variant is unknown, inactive or deleted
        """
        variants = await self._load(uow, items, variants)
        pending = [
            item for item in items if not await uow.ledger.exists(item.correlation_id, _RESERVED)
        ]
        requests = [
            StockRequest(variants[item.variant_id], item.quantity, item.correlation_id) for item in pending
        ]

        batch = self.engine.reserve_batch(requests, user_id=user_id)
        if not batch.succeeded:
            logger.warning(f"Reservation rejected: {'; '.join(batch.errors)}")
            self._raise_for_batch(requests)

        await self._persist(uow, batch.results, variants)
        return batch.results

    def _raise_for_batch(self, requests: list[StockRequest]) -> None:
        demanded: dict[str, int] = {}
        for request in requests:
            variant = request.variant
            if not variant.is_sellable:
                raise VariantUnavailableError(variant.id)
            if variant.unlimited:
                continue
            demanded[variant.id] = demanded.get(variant.id, 0) + request.quantity
            if variant.available < demanded[variant.id]:
                raise InsufficientStockError(variant.id, variant.available, demanded[variant.id])
        msg = "batch reservation rejected"
        raise InventoryOperationError(requests[0].variant.id if requests else "?", msg)

    async def confirm_items(
        self,
        uow: UnitOfWork,
        items: list[OrderItem],
        variants: dict[str, VariantStock] | None = None,
        user_id: str | None = None,
    ) -> list[InventoryResult]:
        """
        Commit every item's reservation after payment success.

        Raises:
            NegativeStockError: A reservation to commit is missing, which
                means the ledger and the counters disagree
        """
        variants = await self._load(uow, items, variants)
        results = []
        for item in items:
            if await uow.ledger.exists(item.correlation_id, _COMMITTED):
                logger.debug(f"Item {item.id} already committed, skipping")
                continue
            result = self.engine.confirm_reservation(
                variants[item.variant_id], item.quantity, item.correlation_id, user_id
            )
            if not result.succeeded:
                raise NegativeStockError(item.variant_id, result.message or "commit rejected")
            results.append(result)

        await self._persist(uow, results, variants)
        return results

    async def release_items(
        self,
        uow: UnitOfWork,
        items: list[OrderItem],
        variants: dict[str, VariantStock] | None = None,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> list[InventoryResult]:
        """
        Release every item's reservation that was neither released nor committed.

        Items without a reservation row are skipped, so a release can never
        free stock held by another order.
        """
        variants = await self._load(uow, items, variants)
        pending = [
            item
            for item in items
            if await uow.ledger.exists(item.correlation_id, _RESERVED)
            and not await uow.ledger.exists(item.correlation_id, _RELEASED_OR_COMMITTED)
        ]
        requests = [
            StockRequest(variants[item.variant_id], item.quantity, item.correlation_id) for item in pending
        ]

        batch = self.engine.release_batch(requests, user_id=user_id, reason=reason)
        if not batch.succeeded:
            raise NegativeStockError(requests[0].variant.id, "; ".join(batch.errors))

        await self._persist(uow, batch.results, variants)
        return batch.results

    async def return_items(
        self,
        uow: UnitOfWork,
        items: list[OrderItem],
        reason: str,
        variants: dict[str, VariantStock] | None = None,
        user_id: str | None = None,
    ) -> list[InventoryResult]:
        """Put committed stock back on hand (returns, cancellation after payment)."""
        variants = await self._load(uow, items, variants)
        results = []
        for item in items:
            if await uow.ledger.exists(item.correlation_id, _RETURNED):
                continue
            result = self.engine.return_stock(
                variants[item.variant_id], item.quantity, reason, user_id, item.correlation_id
            )
            if not result.succeeded:
                raise InventoryOperationError(item.variant_id, result.message or "return rejected")
            results.append(result)

        await self._persist(uow, results, variants)
        return results

    # ============================================
    # ADMINISTRATION (own unit of work)
    # ============================================

    async def _single(self, uow: UnitOfWork, variant_id: str) -> VariantStock:
        variants = await uow.variants.get_many_for_update([variant_id])
        if not variants:
            msg = f"Variant {variant_id} not found"
            raise NotFoundError(msg, item_type="variant", item_id=variant_id)
        return variants[0]

    async def register_variant(self, variant: VariantStock, user_id: str | None = None) -> VariantStock:
        """Add a variant and record its opening stock in the ledger."""
        async with self.store.unit_of_work() as uow:
            await uow.variants.add(variant)
            opening = self.engine.opening_balance(variant, user_id)
            if opening.transaction:
                await uow.ledger.append(opening.transaction)
            await uow.outbox.insert(OutboxMessage.index(PRODUCT_INDEX, variant.id, variant.search_document()))
            await uow.commit()
        return variant

    async def _apply_admin(self, variant_id: str, operation) -> InventoryResult:
        async with self.store.unit_of_work() as uow:
            variant = await self._single(uow, variant_id)
            result = operation(variant)
            if result.outcome == InventoryOutcome.INSUFFICIENT_STOCK:
                raise InsufficientStockError(variant_id, result.available or 0, result.quantity)
            if not result.succeeded:
                raise InventoryOperationError(variant_id, result.message or "operation rejected")
            await self._persist(uow, [result], {variant.id: variant})
            await uow.commit()
        logger.info(f"Stock correction on {variant_id}: {result.transaction.type.value if result.transaction else 'no-op'}")
        return result

    async def adjust_stock(
        self,
        variant_id: str,
        delta: int,
        reason: str,
        user_id: str,
        reference_number: str | None = None,
    ) -> InventoryResult:
        """
        Raises:
            InventoryOperationError: Missing actor/reason, unlimited variant,
                or a result below zero or below the reserved quantity
        """
        return await self._apply_admin(
            variant_id,
            lambda v: self.engine.adjust_stock(v, delta, reason, user_id, reference_number),
        )

    async def record_damage(self, variant_id: str, quantity: int, reason: str, user_id: str) -> InventoryResult:
        return await self._apply_admin(
            variant_id,
            lambda v: self.engine.record_damage(v, quantity, reason, user_id),
        )

    async def calculate_stock(self, uow: UnitOfWork, variant_id: str) -> int:
        """On-hand figure derived from the ledger."""
        return await uow.ledger.sum_changes(variant_id, set(ON_HAND_TRANSACTION_TYPES))

    async def reconcile_stock(
        self,
        variant_ids: list[str] | None = None,
        user_id: str | None = None,
        dry_run: bool = False,
    ) -> list[ReconcileResult]:
        """
        Compare ledger-derived stock with the counters and append correcting rows.

        Args:
            variant_ids: Variants to check (all when None)
            user_id: Actor recorded on correction rows (None = system)
            dry_run: Report discrepancies without writing corrections
        """
        async with self.store.unit_of_work() as uow:
            ids = variant_ids if variant_ids is not None else await uow.variants.list_ids()
            variants = await uow.variants.get_many_for_update(ids)
            results = []
            for variant in variants:
                calculated = await self.calculate_stock(uow, variant.id)
                result = self.engine.reconcile(variant, calculated, user_id)
                results.append(result)
                if result.has_discrepancy:
                    logger.warning(
                        f"Ledger drift on variant {variant.id}: ledger {calculated}, "
                        f"counter {variant.on_hand}"
                    )
                    if result.transaction and not dry_run:
                        await uow.ledger.append(result.transaction)
            if not dry_run:
                await uow.commit()
        return results

    async def check_low_stock(self, variant_id: str) -> bool:
        async with self.store.unit_of_work() as uow:
            variant = await uow.variants.get(variant_id)
        if variant is None:
            msg = f"Variant {variant_id} not found"
            raise NotFoundError(msg, item_type="variant", item_id=variant_id)
        return self.engine.check_low_stock(variant)
