"""
Prometheus metrics for orderflow.

Exposes:
    - <prefix>_checkouts_total{outcome}
    - <prefix>_checkout_duration_seconds
    - <prefix>_payments_verified_total{outcome}
    - <prefix>_compensations_total{reason}
    - <prefix>_refunds_total{method}
    - <prefix>_orders_expired_total
    - <prefix>_outbox_messages_total{outcome}
    - <prefix>_outbox_pending
    - <prefix>_sweeps_total{outcome}
    - <prefix>_sweeper_consecutive_failures

Each :class:`OrderflowMetrics` registers its collectors on the given
registry (the process-wide default registry when omitted). Use
:func:`get_metrics` for the shared default instance.
"""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from orderflow.core.logger import get_logger

logger = get_logger(__name__)


class OrderflowMetrics:
    """
    Prometheus collectors for the checkout saga and its background workers.

    Example:
        >>> metrics = OrderflowMetrics(registry=CollectorRegistry())
        >>> metrics.checkout_finished("succeeded", 0.12)
    """

    def __init__(self, prefix: str = "orderflow", registry: CollectorRegistry | None = None):
        registry = registry if registry is not None else REGISTRY
        self.prefix = prefix
        self.registry = registry

        self._checkouts_total = Counter(
            f"{prefix}_checkouts_total",
            "Checkout attempts by outcome",
            ["outcome"],
            registry=registry,
        )
        self._checkout_duration = Histogram(
            f"{prefix}_checkout_duration_seconds",
            "Checkout duration in seconds",
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=registry,
        )
        self._payments_verified_total = Counter(
            f"{prefix}_payments_verified_total",
            "Payment verifications by outcome",
            ["outcome"],
            registry=registry,
        )
        self._compensations_total = Counter(
            f"{prefix}_compensations_total",
            "Reservation compensations by reason",
            ["reason"],
            registry=registry,
        )
        self._refunds_total = Counter(
            f"{prefix}_refunds_total",
            "Refunds recorded by method (gateway or manual)",
            ["method"],
            registry=registry,
        )
        self._orders_expired_total = Counter(
            f"{prefix}_orders_expired_total",
            "Orders expired by the reconciliation sweeper",
            registry=registry,
        )
        self._outbox_messages_total = Counter(
            f"{prefix}_outbox_messages_total",
            "Outbox messages relayed by outcome",
            ["outcome"],
            registry=registry,
        )
        self._outbox_pending = Gauge(
            f"{prefix}_outbox_pending",
            "Outbox messages waiting to be relayed",
            registry=registry,
        )
        self._sweeps_total = Counter(
            f"{prefix}_sweeps_total",
            "Reconciliation sweeps by outcome",
            ["outcome"],
            registry=registry,
        )
        self._sweeper_failures = Gauge(
            f"{prefix}_sweeper_consecutive_failures",
            "Consecutive failed reconciliation sweeps",
            registry=registry,
        )

    def checkout_finished(self, outcome: str, duration: float) -> None:
        self._checkouts_total.labels(outcome=outcome).inc()
        self._checkout_duration.observe(duration)

    def payment_verified(self, outcome: str) -> None:
        self._payments_verified_total.labels(outcome=outcome).inc()

    def compensation(self, reason: str) -> None:
        self._compensations_total.labels(reason=reason).inc()

    def refund(self, method: str) -> None:
        self._refunds_total.labels(method=method).inc()

    def order_expired(self) -> None:
        self._orders_expired_total.inc()

    def outbox_message(self, outcome: str) -> None:
        self._outbox_messages_total.labels(outcome=outcome).inc()

    def outbox_pending(self, count: int) -> None:
        self._outbox_pending.set(count)

    def sweep_finished(self, outcome: str, consecutive_failures: int) -> None:
        self._sweeps_total.labels(outcome=outcome).inc()
        self._sweeper_failures.set(consecutive_failures)

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of a sample on this instance's registry (for tests and the CLI)."""
        return self.registry.get_sample_value(f"{self.prefix}_{name}", labels or {})


_default_metrics: OrderflowMetrics | None = None


def get_metrics() -> OrderflowMetrics:
    """Shared metrics instance on the default registry, created on first use."""
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = OrderflowMetrics()
    return _default_metrics


def start_metrics_server(port: int = 8000, addr: str = "0.0.0.0") -> None:
    """Serve ``/metrics`` for Prometheus scraping."""
    start_http_server(port, addr=addr)
    logger.info(f"Prometheus metrics server started on {addr}:{port}")
