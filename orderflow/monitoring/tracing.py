"""
OpenTelemetry tracing for orderflow operations.

Uses only ``opentelemetry-api``; spans are no-ops until the host process
installs an SDK tracer provider.

    >>> tracer = OrderflowTracer()
    >>> with tracer.span("checkout", user_id="u-1") as span:
    ...     span.set_attribute("order.id", order.id)
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode


class OrderflowTracer:
    def __init__(self, service_name: str = "orderflow"):
        self.service_name = service_name
        self.tracer = trace.get_tracer(__name__)

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        """
        Start ``orderflow.<name>`` as the current span.

        ``None`` attribute values are dropped; exceptions are recorded on the
        span and re-raised.
        """
        with self.tracer.start_as_current_span(
            name=f"orderflow.{name}",
            kind=trace.SpanKind.INTERNAL,
        ) as span:
            span.set_attributes(
                {
                    "orderflow.service": self.service_name,
                    **{f"orderflow.{k}": v for k, v in attributes.items() if v is not None},
                }
            )
            try:
                yield span
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise
