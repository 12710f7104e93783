"""Core building blocks shared by every orderflow component."""

from orderflow.core.config import OrderflowConfig, configure, get_config
from orderflow.core.logger import get_logger, set_logger

__all__ = [
    "OrderflowConfig",
    "configure",
    "get_config",
    "get_logger",
    "set_logger",
]
