"""
Tests for orderflow.core.exceptions and orderflow.storage.errors
"""

from decimal import Decimal

import pytest

from orderflow.core.exceptions import (
    CheckoutValidationError,
    CompensationError,
    ConcurrencyConflictError,
    ConflictError,
    DiscountRejectedError,
    DuplicateSubmissionError,
    EmptyCartError,
    ExpectedItemsMismatchError,
    IdempotencyKeyRequiredError,
    InsufficientStockError,
    InvalidTransitionError,
    InvariantViolationError,
    NegativeStockError,
    OrderAccessDeniedError,
    OrderflowError,
    OrderNotFoundError,
    PaymentGatewayError,
    PaymentGatewayTimeoutError,
    PriceChangedError,
    RefundRejectedError,
    StorageUnavailableError,
    TransientError,
)
from orderflow.storage.errors import ConcurrencyError, DuplicateKeyError, StorageError


class TestExceptionConstructors:
    """Test exception constructors and message formatting"""

    def test_empty_cart(self):
        error = EmptyCartError("u-1")
        assert error.user_id == "u-1"
        assert "u-1" in str(error)

    def test_expected_items_mismatch_sorted(self):
        error = ExpectedItemsMismatchError(missing={"v-2", "v-1"}, unexpected={"v-9"})
        assert "['v-1', 'v-2']" in str(error)
        assert error.unexpected == {"v-9"}

    def test_insufficient_stock(self):
        error = InsufficientStockError("v-1", available=1, requested=3)
        assert (error.variant_id, error.available, error.requested) == ("v-1", 1, 3)
        assert "available 1, requested 3" in str(error)

    def test_price_changed(self):
        error = PriceChangedError("v-1", Decimal("10.00"), Decimal("12.50"))
        assert error.actual == Decimal("12.50")
        assert "expected 10.00, now 12.50" in str(error)

    def test_concurrency_conflict(self):
        error = ConcurrencyConflictError("order", "o-1", 3, 4)
        assert error.expected_version == 3
        assert error.actual_version == 4
        assert "order o-1 was modified concurrently" in str(error)

    def test_gateway_timeout_carries_order(self):
        error = PaymentGatewayTimeoutError(order_id="o-1")
        assert error.order_id == "o-1"
        assert error.code is None
        assert "timed out" in str(error)

    def test_invalid_transition_with_reason(self):
        error = InvalidTransitionError("o-1", "paid", "expire", reason="guard failed")
        assert str(error) == "Order o-1: cannot fire expire from paid (guard failed)"

    def test_invalid_transition_without_reason(self):
        assert str(InvalidTransitionError("o-1", "paid", "expire")) == "Order o-1: cannot fire expire from paid"

    def test_compensation_error_keeps_cause(self):
        cause = NegativeStockError("v-1", "reserved would drop below zero")
        error = CompensationError("o-1", cause)
        assert error.cause is cause
        assert "v-1" in str(error)

    def test_discount_and_duplicate(self):
        assert "expired" in str(DiscountRejectedError("SPRING", "expired"))
        assert DuplicateSubmissionError("u-1", "o-1").order_id == "o-1"

    def test_access_errors(self):
        assert "o-1 not found" in str(OrderNotFoundError("o-1"))
        assert OrderAccessDeniedError("o-1", "u-2").user_id == "u-2"

    def test_refund_rejected(self):
        error = RefundRejectedError("o-1", "order has no settled payment")
        assert isinstance(error, CheckoutValidationError)
        assert str(error) == "Refund for order o-1 rejected: order has no settled payment"


class TestHierarchy:
    """Callers react by category, so each error must sit in the right branch"""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (EmptyCartError("u-1"), CheckoutValidationError),
            (IdempotencyKeyRequiredError(), CheckoutValidationError),
            (InsufficientStockError("v-1", 0, 1), ConflictError),
            (ConcurrencyConflictError("order", "o-1"), ConflictError),
            (PaymentGatewayTimeoutError(), PaymentGatewayError),
            (PaymentGatewayError("down"), TransientError),
            (StorageUnavailableError("down"), TransientError),
            (NegativeStockError("v-1", "negative"), InvariantViolationError),
            (CompensationError("o-1", RuntimeError("x")), OrderflowError),
        ],
    )
    def test_category(self, error, category):
        assert isinstance(error, category)
        assert isinstance(error, OrderflowError)


class TestStorageErrors:
    def test_concurrency_error_fields(self):
        error = ConcurrencyError(item_type="order", item_id="o-1", expected_version=2, actual_version=3)
        assert isinstance(error, StorageError)
        assert (error.expected_version, error.actual_version) == (2, 3)

    def test_duplicate_key(self):
        error = DuplicateKeyError(item_type="order", key="checkout-1")
        assert isinstance(error, StorageError)
        assert "checkout-1" in str(error)
