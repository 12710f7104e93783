"""
All orderflow exceptions.

The hierarchy follows how callers must react:

- CheckoutValidationError: bad input, nothing was persisted
- ConflictError: stock, price or version changed underneath the caller,
  refresh and retry
- TransientError: infrastructure outcome unknown, the saga is left in a
  recoverable step for the reconciliation sweeper
- InvariantViolationError: programming or data-integrity defect, never
  swallowed
- CompensationError: a rollback itself failed, operator attention needed
"""

from decimal import Decimal


class OrderflowError(Exception):
    """Base orderflow error"""


# ============================================
# VALIDATION
# ============================================


class CheckoutValidationError(OrderflowError):
    """Checkout input rejected before anything was persisted"""


class EmptyCartError(CheckoutValidationError):
    """The user's cart has no lines"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Cart for user {user_id} is empty")


class InvalidAddressError(CheckoutValidationError):
    """Delivery address missing, incomplete or owned by another user"""


class ExpectedItemsMismatchError(CheckoutValidationError):
    """
    The client's view of the cart does not match the server's.

    Raised when the expected item prices do not cover exactly the variants
    in the cart, which means the client rendered a stale cart.
    """

    def __init__(self, missing: set[str], unexpected: set[str]):
        self.missing = missing
        self.unexpected = unexpected
        super().__init__(
            f"Expected items do not match cart "
            f"(missing: {sorted(missing)}, unexpected: {sorted(unexpected)})"
        )


class ShippingUnavailableError(CheckoutValidationError):
    """Selected shipping method is inactive or not offered for this order"""

    def __init__(self, method_id: str):
        self.method_id = method_id
        super().__init__(f"Shipping method {method_id} is not available")


class DiscountRejectedError(CheckoutValidationError):
    """Discount code invalid, expired or not applicable"""

    def __init__(self, code: str, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(f"Discount code '{code}' rejected: {reason}")


class DuplicateSubmissionError(CheckoutValidationError):
    """A recent open order from the same user blocks a new checkout"""

    def __init__(self, user_id: str, order_id: str):
        self.user_id = user_id
        self.order_id = order_id
        super().__init__(
            f"User {user_id} already has open order {order_id}; "
            f"wait for it to complete or cancel it"
        )


class IdempotencyKeyRequiredError(CheckoutValidationError):
    """Checkout submitted without an idempotency key"""

    def __init__(self):
        super().__init__("An idempotency key is required for checkout")


class PaymentMismatchError(CheckoutValidationError):
    """Callback authority does not belong to the order's payment attempt"""

    def __init__(self, order_id: str, authority: str | None):
        self.order_id = order_id
        self.authority = authority
        super().__init__(f"Authority {authority} does not match the payment of order {order_id}")


class RefundRejectedError(CheckoutValidationError):
    """Refund requested for an order without a settled payment, or for a bad amount"""

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Refund for order {order_id} rejected: {reason}")


# ============================================
# CONFLICTS
# ============================================


class ConflictError(OrderflowError):
    """State changed underneath the caller; refresh and retry"""


class InsufficientStockError(ConflictError):
    """Requested quantity exceeds available stock"""

    def __init__(self, variant_id: str, available: int, requested: int):
        self.variant_id = variant_id
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for variant {variant_id}: "
            f"available {available}, requested {requested}"
        )


class PriceChangedError(ConflictError):
    """Live selling price differs from the price the client saw"""

    def __init__(self, variant_id: str, expected: Decimal, actual: Decimal):
        self.variant_id = variant_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Price of variant {variant_id} changed: expected {expected}, now {actual}"
        )


class VariantUnavailableError(ConflictError):
    """Variant is inactive, deleted or unknown"""

    def __init__(self, variant_id: str):
        self.variant_id = variant_id
        super().__init__(f"Variant {variant_id} is no longer available")


class ConcurrencyConflictError(ConflictError):
    """A write targeted a stale version token"""

    def __init__(
        self,
        entity: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity} {entity_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


# ============================================
# TRANSIENT
# ============================================


class TransientError(OrderflowError):
    """Infrastructure failure with an unknown outcome"""


class PaymentGatewayError(TransientError):
    """Payment gateway rejected the request or could not be reached"""

    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


class PaymentGatewayTimeoutError(PaymentGatewayError):
    """
    Payment gateway call exceeded its time bound.

    The payment may still complete out-of-band. ``order_id`` is set when an
    order was left in a pending state for the reconciliation sweeper.
    """

    def __init__(self, message: str = "Payment gateway timed out", order_id: str | None = None):
        self.order_id = order_id
        super().__init__(message)


class StorageUnavailableError(TransientError):
    """Database could not be reached"""


# ============================================
# INVARIANTS
# ============================================


class InvariantViolationError(OrderflowError):
    """Programming or data-integrity defect"""


class InvalidTransitionError(InvariantViolationError):
    """No rule permits the trigger from the current order status"""

    def __init__(self, order_id: str, from_status: str, trigger: str, reason: str | None = None):
        self.order_id = order_id
        self.from_status = from_status
        self.trigger = trigger
        self.reason = reason
        message = f"Order {order_id}: cannot fire {trigger} from {from_status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class NegativeStockError(InvariantViolationError):
    """An operation would drive a stock counter below zero or reserved above on-hand"""

    def __init__(self, variant_id: str, message: str):
        self.variant_id = variant_id
        super().__init__(f"Variant {variant_id}: {message}")


class InvalidPriceError(InvariantViolationError):
    """Selling price outside the purchase/original price bounds"""


# ============================================
# COMPENSATION
# ============================================


class CompensationError(OrderflowError):
    """Rolling back reservations for an order failed"""

    def __init__(self, order_id: str, cause: Exception):
        self.order_id = order_id
        self.cause = cause
        super().__init__(f"Compensation for order {order_id} failed: {cause}")


# ============================================
# QUERIES / ACCESS
# ============================================


class OrderNotFoundError(OrderflowError):
    """Order does not exist or is soft-deleted"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class OrderAccessDeniedError(OrderflowError):
    """Order belongs to another user"""

    def __init__(self, order_id: str, user_id: str):
        self.order_id = order_id
        self.user_id = user_id
        super().__init__(f"User {user_id} may not access order {order_id}")


# ============================================
# INVENTORY ADMINISTRATION
# ============================================


class InventoryOperationError(OrderflowError):
    """A stock correction (adjustment, damage, return) was refused"""

    def __init__(self, variant_id: str, reason: str):
        self.variant_id = variant_id
        self.reason = reason
        super().__init__(f"Variant {variant_id}: {reason}")
