"""Logging, metrics and tracing for orderflow processes."""

from orderflow.monitoring.logging import order_context, setup_logging
from orderflow.monitoring.metrics import OrderflowMetrics, get_metrics, start_metrics_server
from orderflow.monitoring.tracing import OrderflowTracer

__all__ = [
    "OrderflowMetrics",
    "OrderflowTracer",
    "get_metrics",
    "order_context",
    "setup_logging",
    "start_metrics_server",
]
