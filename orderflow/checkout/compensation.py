"""
The one rollback path for orders.

Payment failure, cancellation and expiry all end here, whether they come
from the checkout surface or from the reconciliation sweeper. Everything
runs inside the caller's unit of work, so the order status, the stock
movements and the outbox documents are committed together or not at all.
"""

from orderflow.checkout.ports import AlertSink
from orderflow.core.exceptions import CompensationError, InventoryOperationError, NegativeStockError
from orderflow.core.logger import get_logger
from orderflow.inventory.service import InventoryService
from orderflow.monitoring.metrics import OrderflowMetrics
from orderflow.orders.state_machine import OrderStateMachine
from orderflow.orders.types import Order, OrderTrigger, PaymentTransaction, ProcessStep
from orderflow.outbox.types import OutboxMessage
from orderflow.storage.base import UnitOfWork

logger = get_logger(__name__)

ORDER_INDEX = "order"


class OrderCompensator:
    """
    Rolls an order back and moves it to a failed or closed status.

    Stock is released for orders that still hold reservations and returned
    to on-hand for orders whose reservations were already committed (paid
    orders). Ledger correlation ids make a repeated compensation a no-op on
    stock.

    Usage:
        >>> async with store.unit_of_work() as uow:
        ...     await compensator.compensate(uow, order, OrderTrigger.EXPIRE, "payment window elapsed")
        ...     await uow.commit()
    """

    def __init__(
        self,
        inventory: InventoryService,
        state_machine: OrderStateMachine,
        alerts: AlertSink,
        metrics: OrderflowMetrics,
    ):
        self.inventory = inventory
        self.state_machine = state_machine
        self.alerts = alerts
        self.metrics = metrics

    async def compensate(
        self,
        uow: UnitOfWork,
        order: Order,
        trigger: OrderTrigger,
        reason: str,
        payment: PaymentTransaction | None = None,
        user_id: str | None = None,
    ) -> Order:
        """
        Release or return the order's stock and fire ``trigger`` on it.

        Args:
            uow: The caller's unit of work (not committed here)
            order: Order to roll back
            trigger: ``CANCEL``, ``EXPIRE`` or ``FAIL_PAYMENT``
            reason: Recorded on the ledger rows, the order and the process state
            payment: Open payment attempt to close as expired or failed
            user_id: Actor recorded on the ledger rows (None = system)

        Raises:
            InvalidTransitionError: If ``trigger`` may not fire for the order
            CompensationError: If releasing or returning stock failed
        """
        self.state_machine.transition(order, trigger)

        process = await uow.process_states.get_by_order(order.id)
        if process is not None and not process.is_closed:
            process.mark_compensating(reason)

        try:
            if order.is_paid:
                await self.inventory.return_items(uow, order.items, reason=reason, user_id=user_id)
            else:
                await self.inventory.release_items(uow, order.items, reason=reason, user_id=user_id)
        except (NegativeStockError, InventoryOperationError) as e:
            logger.error(f"Compensation for order {order.id} failed: {e}")
            await self.alerts.alert(
                "Order compensation failed",
                {"order_id": order.id, "trigger": trigger.value, "error": str(e)},
            )
            raise CompensationError(order.id, e) from e

        self.state_machine.apply(order, trigger)
        if trigger != OrderTrigger.FAIL_PAYMENT:
            order.cancellation_reason = reason
        await uow.orders.update(order)
        await uow.outbox.insert(OutboxMessage.index(ORDER_INDEX, order.id, order.search_document()))

        if process is not None and process.step == ProcessStep.COMPENSATING:
            process.mark_compensated()
            await uow.process_states.update(process)

        if payment is not None and not payment.is_final:
            if trigger == OrderTrigger.EXPIRE:
                payment.mark_expired()
            else:
                payment.mark_failed(reason)
            await uow.payments.update(payment)

        self.metrics.compensation(trigger.value)
        logger.info(f"Order {order.id} compensated ({trigger.value}): {reason}")
        return order
