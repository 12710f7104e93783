"""
Tests for orderflow's Prometheus metrics and OpenTelemetry spans.
"""

from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import CollectorRegistry

from orderflow.monitoring import metrics as metrics_module
from orderflow.monitoring.metrics import OrderflowMetrics, get_metrics, start_metrics_server
from orderflow.monitoring.tracing import OrderflowTracer


@pytest.fixture
def fresh_metrics():
    """Metrics on a private registry so values never leak between tests."""
    return OrderflowMetrics(registry=CollectorRegistry())


class TestOrderflowMetrics:
    """Tests for OrderflowMetrics."""

    def test_checkout_outcomes_and_duration(self, fresh_metrics):
        fresh_metrics.checkout_finished("succeeded", 0.2)
        fresh_metrics.checkout_finished("succeeded", 0.3)
        fresh_metrics.checkout_finished("out_of_stock", 0.01)

        assert fresh_metrics.sample("checkouts_total", {"outcome": "succeeded"}) == 2
        assert fresh_metrics.sample("checkouts_total", {"outcome": "out_of_stock"}) == 1
        assert fresh_metrics.sample("checkout_duration_seconds_count") == 3
        assert fresh_metrics.sample("checkout_duration_seconds_sum") == pytest.approx(0.51)

    def test_payment_and_compensation_counters(self, fresh_metrics):
        fresh_metrics.payment_verified("verified")
        fresh_metrics.payment_verified("failed")
        fresh_metrics.compensation("payment_failed")
        fresh_metrics.order_expired()

        assert fresh_metrics.sample("payments_verified_total", {"outcome": "verified"}) == 1
        assert fresh_metrics.sample("payments_verified_total", {"outcome": "failed"}) == 1
        assert fresh_metrics.sample("compensations_total", {"reason": "payment_failed"}) == 1
        assert fresh_metrics.sample("orders_expired_total") == 1

    def test_outbox_gauges(self, fresh_metrics):
        fresh_metrics.outbox_message("sent")
        fresh_metrics.outbox_pending(7)
        fresh_metrics.outbox_pending(2)

        assert fresh_metrics.sample("outbox_messages_total", {"outcome": "sent"}) == 1
        assert fresh_metrics.sample("outbox_pending") == 2

    def test_sweep_tracks_failures(self, fresh_metrics):
        fresh_metrics.sweep_finished("failed", 2)
        fresh_metrics.sweep_finished("succeeded", 0)

        assert fresh_metrics.sample("sweeps_total", {"outcome": "failed"}) == 1
        assert fresh_metrics.sample("sweeper_consecutive_failures") == 0

    def test_unrecorded_sample_is_none(self, fresh_metrics):
        assert fresh_metrics.sample("checkouts_total", {"outcome": "never"}) is None

    def test_custom_prefix(self):
        registry = CollectorRegistry()
        shop_metrics = OrderflowMetrics(prefix="shop", registry=registry)
        shop_metrics.order_expired()
        assert registry.get_sample_value("shop_orders_expired_total") == 1

    def test_get_metrics_is_shared(self, monkeypatch):
        monkeypatch.setattr(metrics_module, "_default_metrics", None)
        with patch.object(metrics_module, "OrderflowMetrics", MagicMock()) as factory:
            first = get_metrics()
            assert get_metrics() is first
        factory.assert_called_once_with()

    def test_start_metrics_server(self):
        with patch("orderflow.monitoring.metrics.start_http_server") as mock_start:
            start_metrics_server(port=9100)
        mock_start.assert_called_once_with(9100, addr="0.0.0.0")


class TestOrderflowTracer:
    """Tests for OrderflowTracer."""

    def test_span_without_sdk_is_noop(self):
        tracer = OrderflowTracer()
        with tracer.span("checkout", user_id="u-1") as span:
            span.set_attribute("order.id", "o-1")

    def test_span_name_and_attributes(self):
        tracer = OrderflowTracer(service_name="shop")
        tracer.tracer = MagicMock()
        span = tracer.tracer.start_as_current_span.return_value.__enter__.return_value

        with tracer.span("verify_payment", order_id="o-1", authority=None):
            pass

        assert tracer.tracer.start_as_current_span.call_args.kwargs["name"] == "orderflow.verify_payment"
        span.set_attributes.assert_called_once_with(
            {"orderflow.service": "shop", "orderflow.order_id": "o-1"}
        )

    def test_span_records_and_reraises(self):
        """Errors are recorded on the span and propagate unchanged."""
        tracer = OrderflowTracer()
        tracer.tracer = MagicMock()
        span = tracer.tracer.start_as_current_span.return_value.__enter__.return_value

        with pytest.raises(RuntimeError, match="gateway down"):
            with tracer.span("checkout"):
                raise RuntimeError("gateway down")

        span.record_exception.assert_called_once()
        status = span.set_status.call_args.args[0]
        assert status.description == "gateway down"
