"""
Structured logging for the checkout saga.

A context variable carries the order being worked on so every log line
emitted while handling it (by any orderflow module) can be correlated:

    >>> with order_context(order_id=order.id, correlation_id=order.idempotency_key, component="checkout"):
    ...     logger.info("Reserving stock")

``setup_logging(json_format=True)`` installs :class:`OrderJsonFormatter`
and :class:`OrderContextFilter` on the ``orderflow`` logger.
"""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variable for propagating order context
order_context_var: ContextVar[dict[str, Any]] = ContextVar("order_context", default={})

_CONTEXT_FIELDS = ("order_id", "correlation_id", "component")


@contextmanager
def order_context(**values: Any) -> Iterator[dict[str, Any]]:
    """Bind order context fields for the duration of the block (nesting merges)."""
    merged = {**order_context_var.get({}), **{k: v for k, v in values.items() if v is not None}}
    token = order_context_var.set(merged)
    try:
        yield merged
    finally:
        order_context_var.reset(token)


class OrderJsonFormatter(logging.Formatter):
    """
    JSON formatter with order context fields.

    Fields passed through ``extra=`` named in ``_EXTRA_FIELDS`` are copied
    into the entry as well.
    """

    _EXTRA_FIELDS = (
        "order_id",
        "correlation_id",
        "component",
        "variant_id",
        "duration_ms",
        "retry_count",
        "error_type",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        context = order_context_var.get({})
        for field in _CONTEXT_FIELDS:
            if context.get(field) is not None:
                log_entry[field] = context[field]

        for field in self._EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, ""):
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class OrderContextFilter(logging.Filter):
    """Stamps order context fields onto every record passing through."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = order_context_var.get({})
        for field in _CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, context.get(field, ""))
        return True


def setup_logging(level: int = logging.INFO, json_format: bool = False) -> logging.Logger:
    """
    Configure the ``orderflow`` logger for a worker process.

    Args:
        level: Logging level
        json_format: Emit one JSON object per line instead of plain text
    """
    logger = logging.getLogger("orderflow")
    logger.setLevel(level)

    for handler in list(logger.handlers):
        if not isinstance(handler, logging.NullHandler):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.addFilter(OrderContextFilter())
    if json_format:
        handler.setFormatter(OrderJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [%(order_id)s] %(message)s")
        )
    logger.addHandler(handler)
    return logger
