"""
Centralized logger configuration for orderflow.

Provides a unified logging interface that can be customized by the host
application. By default, uses Python's standard logging under the
'orderflow' namespace.

Usage:
    # Use default logger
    from orderflow.core.logger import get_logger
    logger = get_logger(__name__)
    logger.info("Message")

    # Route every orderflow component through an application logger
    from orderflow.core.logger import set_logger
    set_logger(logging.getLogger("shop.checkout"))
"""

import logging
from typing import Any

# Global logger instance - defaults to standard logging
_custom_logger: Any = None


def set_logger(logger: Any) -> None:
    """
    Set a custom logger for all orderflow components.

    Args:
        logger: A logger instance. Must support the
                debug/info/warning/error/exception methods.

    Pass ``None`` to go back to per-module standard loggers.
    """
    global _custom_logger
    _custom_logger = logger


def get_logger(name: str = "orderflow") -> Any:
    """
    Get a logger instance.

    If a custom logger was set via set_logger(), returns that.
    Otherwise, returns a standard Python logger with the given name.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A logger instance
    """
    if _custom_logger is not None:
        return _custom_logger

    logger = logging.getLogger(name)

    # Library code never configures output on its own
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


def configure_default_logging(
    level: int = logging.INFO,
    format_string: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
) -> None:
    """
    Configure basic console logging for orderflow.

    Args:
        level: Logging level (default: INFO)
        format_string: Log message format
    """
    logging.basicConfig(level=level, format=format_string)
    logging.getLogger("orderflow").setLevel(level)
