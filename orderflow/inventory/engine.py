"""
Inventory Reservation Engine - pure stock decisions.

The engine holds no state and performs no I/O. Each operation takes a
variant snapshot, validates the request, mutates the snapshot's counters
in place when it succeeds and returns an :class:`InventoryResult` carrying
the ledger row the caller must persist in the same unit of work.

Numeric policy:
    - unlimited variants never block and never mutate counters
    - quantities are positive integers
    - ``available`` is ``max(0, on_hand - reserved)``
    - ``0 <= reserved <= on_hand`` holds after every successful operation

Usage:
    >>> engine = InventoryReservationEngine()
    >>> result = engine.reserve(variant, 2, correlation_id="order-item-42")
    >>> if result.succeeded and result.transaction:
    ...     await uow.ledger.append(result.transaction)
"""

from collections import defaultdict
from datetime import UTC, datetime

from orderflow.inventory.types import (
    BatchResult,
    InventoryResult,
    InventoryTransaction,
    ReconcileResult,
    StockRequest,
    TransactionType,
    VariantStock,
)


class InventoryReservationEngine:
    """Stateless reserve / confirm / release / adjust / reconcile decisions."""

    def _touch(self, variant: VariantStock) -> None:
        variant.updated_at = datetime.now(UTC)

    # ============================================
    # RESERVATION LIFECYCLE
    # ============================================

    def reserve(
        self,
        variant: VariantStock,
        quantity: int,
        correlation_id: str | None = None,
        user_id: str | None = None,
    ) -> InventoryResult:
        """
        Hold ``quantity`` units for an order item.

        Returns:
            SUCCESS with a RESERVATION row, INSUFFICIENT_STOCK when
            ``available < quantity``, FAILED for an invalid quantity or an
            inactive/deleted variant. Unlimited variants succeed without a row.
        """
        if quantity <= 0:
            return InventoryResult.failed(variant.id, f"quantity must be positive, got {quantity}")
        if not variant.is_sellable:
            return InventoryResult.failed(variant.id, "variant is inactive or deleted")
        if variant.unlimited:
            return InventoryResult.success(variant.id, quantity, message="unlimited stock")
        if variant.available < quantity:
            return InventoryResult.insufficient(variant.id, variant.available, quantity)

        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.RESERVATION,
            quantity_change=-quantity,
            stock_before=variant.on_hand,
            correlation_id=correlation_id,
            user_id=user_id,
            notes=f"reserved {quantity} (available before: {variant.available})",
        )
        variant.reserved += quantity
        self._touch(variant)
        return InventoryResult.success(variant.id, quantity, transaction)

    def confirm_reservation(
        self,
        variant: VariantStock,
        quantity: int,
        correlation_id: str | None = None,
        user_id: str | None = None,
    ) -> InventoryResult:
        """
        Turn a reservation into a final sale: ``reserved`` and ``on_hand``
        both drop by ``quantity``.

        Requires ``reserved >= quantity``.
        """
        if quantity <= 0:
            return InventoryResult.failed(variant.id, f"quantity must be positive, got {quantity}")
        if variant.unlimited:
            return InventoryResult.success(variant.id, quantity, message="unlimited stock")
        if variant.reserved < quantity:
            return InventoryResult.failed(
                variant.id,
                f"cannot confirm {quantity}: only {variant.reserved} reserved",
            )
        if variant.on_hand < quantity:
            return InventoryResult.failed(
                variant.id,
                f"cannot confirm {quantity}: only {variant.on_hand} on hand",
            )

        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.COMMIT,
            quantity_change=-quantity,
            stock_before=variant.on_hand,
            correlation_id=correlation_id,
            user_id=user_id,
            notes=f"committed {quantity} after payment",
        )
        variant.reserved -= quantity
        variant.on_hand -= quantity
        self._touch(variant)
        return InventoryResult.success(variant.id, quantity, transaction)

    def rollback_reservation(
        self,
        variant: VariantStock,
        quantity: int,
        correlation_id: str | None = None,
        user_id: str | None = None,
        reason: str | None = None,
    ) -> InventoryResult:
        """
        Release up to ``quantity`` reserved units.

        Releases ``min(quantity, reserved)`` so ``reserved`` never goes
        negative. Nothing reserved is a reported no-op success.
        """
        if quantity <= 0:
            return InventoryResult.failed(variant.id, f"quantity must be positive, got {quantity}")
        if variant.unlimited:
            return InventoryResult.success(variant.id, quantity, message="unlimited stock")

        released = min(quantity, variant.reserved)
        if released == 0:
            return InventoryResult.success(variant.id, 0, message="nothing to release")

        notes = f"released {released}"
        if reason:
            notes = f"{notes}: {reason}"
        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.RESERVATION_ROLLBACK,
            quantity_change=released,
            stock_before=variant.on_hand,
            correlation_id=correlation_id,
            user_id=user_id,
            notes=notes,
        )
        variant.reserved -= released
        self._touch(variant)
        message = None if released == quantity else f"requested {quantity}, released {released}"
        return InventoryResult.success(variant.id, released, transaction, message=message)

    # ============================================
    # POST-FULFILLMENT CORRECTIONS
    # ============================================

    def return_stock(
        self,
        variant: VariantStock,
        quantity: int,
        reason: str,
        user_id: str | None,
        correlation_id: str | None = None,
    ) -> InventoryResult:
        """Put returned goods back on hand."""
        if quantity <= 0:
            return InventoryResult.failed(variant.id, f"quantity must be positive, got {quantity}")
        if not reason:
            return InventoryResult.failed(variant.id, "a reason is required")
        if variant.unlimited:
            return InventoryResult.success(variant.id, quantity, message="unlimited stock")

        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.RETURN,
            quantity_change=quantity,
            stock_before=variant.on_hand,
            correlation_id=correlation_id,
            user_id=user_id,
            notes=reason,
        )
        variant.on_hand += quantity
        self._touch(variant)
        return InventoryResult.success(variant.id, quantity, transaction)

    def adjust_stock(
        self,
        variant: VariantStock,
        delta: int,
        reason: str,
        user_id: str,
        reference_number: str | None = None,
    ) -> InventoryResult:
        """
        Manually correct ``on_hand`` by ``delta``.

        Needs an actor and a reason. Refused for unlimited variants and when
        the result would fall below zero or below the reserved quantity.
        """
        if not user_id:
            return InventoryResult.failed(variant.id, "an actor is required for adjustments")
        if not reason:
            return InventoryResult.failed(variant.id, "a reason is required for adjustments")
        if variant.unlimited:
            return InventoryResult.failed(variant.id, "adjustments do not apply to unlimited variants")
        if delta == 0:
            return InventoryResult.failed(variant.id, "adjustment delta must be non-zero")

        new_on_hand = variant.on_hand + delta
        if new_on_hand < 0:
            return InventoryResult.failed(
                variant.id, f"adjustment would make stock negative ({new_on_hand})"
            )
        if new_on_hand < variant.reserved:
            return InventoryResult.failed(
                variant.id,
                f"adjustment would leave {new_on_hand} on hand with {variant.reserved} reserved",
            )

        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.ADJUSTMENT,
            quantity_change=delta,
            stock_before=variant.on_hand,
            reference_number=reference_number,
            user_id=user_id,
            notes=reason,
        )
        variant.on_hand = new_on_hand
        self._touch(variant)
        return InventoryResult.success(variant.id, abs(delta), transaction)

    def record_damage(
        self,
        variant: VariantStock,
        quantity: int,
        reason: str,
        user_id: str,
    ) -> InventoryResult:
        """Write off damaged units. Only unreserved stock can be written off."""
        if quantity <= 0:
            return InventoryResult.failed(variant.id, f"quantity must be positive, got {quantity}")
        if not user_id or not reason:
            return InventoryResult.failed(variant.id, "an actor and a reason are required")
        if variant.unlimited:
            return InventoryResult.failed(variant.id, "damage does not apply to unlimited variants")
        if variant.available < quantity:
            return InventoryResult.insufficient(variant.id, variant.available, quantity)

        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.DAMAGE,
            quantity_change=-quantity,
            stock_before=variant.on_hand,
            user_id=user_id,
            notes=reason,
        )
        variant.on_hand -= quantity
        self._touch(variant)
        return InventoryResult.success(variant.id, quantity, transaction)

    def opening_balance(self, variant: VariantStock, user_id: str | None = None) -> InventoryResult:
        """Ledger row that accounts for stock a variant starts with."""
        if variant.unlimited or variant.on_hand == 0:
            return InventoryResult.success(variant.id, 0, message="no opening balance")

        transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.ADJUSTMENT,
            quantity_change=variant.on_hand,
            stock_before=0,
            user_id=user_id,
            notes="opening balance",
        )
        return InventoryResult.success(variant.id, variant.on_hand, transaction)

    def reconcile(
        self,
        variant: VariantStock,
        calculated_stock: int,
        user_id: str | None = None,
    ) -> ReconcileResult:
        """
        Compare the ledger-derived figure with the live ``on_hand`` counter.

        The counter is authoritative; when the two diverge the result carries
        an ADJUSTMENT row of ``on_hand - calculated_stock`` that brings the
        ledger back in line. Counters are not touched.
        """
        result = ReconcileResult(
            variant_id=variant.id,
            calculated_stock=calculated_stock,
            current_stock=variant.on_hand,
        )
        if variant.unlimited or not result.has_discrepancy:
            return result

        result.transaction = InventoryTransaction(
            variant_id=variant.id,
            type=TransactionType.ADJUSTMENT,
            quantity_change=variant.on_hand - calculated_stock,
            stock_before=calculated_stock,
            user_id=user_id,
            notes=(
                f"reconcile: diff {result.difference} "
                f"(calculated {calculated_stock}, current {variant.on_hand})"
            ),
        )
        return result

    def check_low_stock(self, variant: VariantStock, threshold: int | None = None) -> bool:
        """True when available stock is at or below the threshold."""
        if variant.unlimited:
            return False
        limit = variant.low_stock_threshold if threshold is None else threshold
        return variant.available <= limit

    # ============================================
    # BATCHES
    # ============================================

    def validate_batch_availability(self, requests: list[StockRequest]) -> list[str]:
        """
        Check every line without mutating anything.

        Quantities for the same variant are summed before comparing against
        availability. Returns one error string per failing line (empty list
        when the batch can be reserved in full).
        """
        errors: list[str] = []
        demanded: dict[str, int] = defaultdict(int)

        for request in requests:
            variant = request.variant
            if request.quantity <= 0:
                errors.append(f"{variant.id}: quantity must be positive, got {request.quantity}")
                continue
            if not variant.is_sellable:
                errors.append(f"{variant.id}: variant is inactive or deleted")
                continue
            if variant.unlimited:
                continue

            demanded[variant.id] += request.quantity
            if variant.available < demanded[variant.id]:
                errors.append(
                    f"{variant.id}: insufficient stock "
                    f"(available {variant.available}, requested {demanded[variant.id]})"
                )

        return errors

    def reserve_batch(self, requests: list[StockRequest], user_id: str | None = None) -> BatchResult:
        """
        Reserve every line, or none.

        On any validation error no snapshot is mutated and the result lists
        every failure reason.
        """
        errors = self.validate_batch_availability(requests)
        if errors:
            return BatchResult(errors=errors)

        batch = BatchResult()
        for request in requests:
            result = self.reserve(request.variant, request.quantity, request.correlation_id, user_id)
            batch.results.append(result)
        return batch

    def release_batch(
        self,
        requests: list[StockRequest],
        user_id: str | None = None,
        reason: str | None = None,
    ) -> BatchResult:
        """Release every line. Invalid quantities reject the whole batch."""
        errors = [
            f"{r.variant.id}: quantity must be positive, got {r.quantity}"
            for r in requests
            if r.quantity <= 0
        ]
        if errors:
            return BatchResult(errors=errors)

        batch = BatchResult()
        for request in requests:
            batch.results.append(
                self.rollback_reservation(
                    request.variant,
                    request.quantity,
                    request.correlation_id,
                    user_id=user_id,
                    reason=reason,
                )
            )
        return batch
