"""
Unified configuration for orderflow.

One dataclass holds every tunable of the checkout saga, the reconciliation
sweeper and the outbox relay. Values come from code, or from ``ORDERFLOW_*``
environment variables via :meth:`OrderflowConfig.from_env`.

Quick Start:
    >>> from orderflow.core.config import OrderflowConfig, configure
    >>> configure(OrderflowConfig(storage_url="sqlite:///orders.db"))

Environment:
    >>> config = OrderflowConfig.from_env()   # reads .env too
"""

from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any

from orderflow.core.env import PREFIX, EnvManager

GATEWAYS = ("memory", "zarinpal")


@dataclass
class OrderflowConfig:
    """
    Settings for every orderflow process.

    Attributes:
        storage_url: ``memory://`` or ``sqlite:///path/to/orders.db``
        duplicate_window_seconds: a user with an open order younger than this
            cannot start another checkout
        payment_window_seconds: unpaid orders older than this are expired
        verification_timeout_seconds: pending payments older than this are
            re-verified by the sweeper
        gateway: payment gateway adapter, ``memory`` or ``zarinpal``
    """

    storage_url: str = "memory://"

    # Checkout
    duplicate_window_seconds: int = 60
    payment_window_seconds: int = 1200
    callback_url: str = "http://localhost:8000/payments/callback"
    low_stock_threshold: int = 5

    # Payment gateway
    gateway: str = "memory"
    gateway_timeout_seconds: float = 10.0
    zarinpal_merchant_id: str = ""
    zarinpal_sandbox: bool = True

    # Reconciliation sweeper
    verification_timeout_seconds: int = 300
    sweep_interval_seconds: float = 300.0
    sweep_batch_size: int = 20
    sweep_alert_threshold: int = 3
    sweep_backoff_base_seconds: float = 5.0
    sweep_backoff_max_seconds: float = 300.0
    sweep_conflict_retries: int = 3

    # Outbox relay
    outbox_batch_size: int = 100
    outbox_poll_interval_seconds: float = 1.0
    outbox_claim_timeout_seconds: int = 300
    outbox_max_retries: int = 5

    def __post_init__(self):
        if self.gateway not in GATEWAYS:
            msg = f"gateway must be one of {GATEWAYS}, got {self.gateway!r}"
            raise ValueError(msg)

        positive = {
            "duplicate_window_seconds": self.duplicate_window_seconds,
            "payment_window_seconds": self.payment_window_seconds,
            "verification_timeout_seconds": self.verification_timeout_seconds,
            "sweep_interval_seconds": self.sweep_interval_seconds,
            "sweep_batch_size": self.sweep_batch_size,
            "sweep_alert_threshold": self.sweep_alert_threshold,
            "gateway_timeout_seconds": self.gateway_timeout_seconds,
            "outbox_batch_size": self.outbox_batch_size,
            "outbox_poll_interval_seconds": self.outbox_poll_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                msg = f"{name} must be positive, got {value}"
                raise ValueError(msg)

        if self.verification_timeout_seconds > self.payment_window_seconds:
            msg = "verification_timeout_seconds must not exceed payment_window_seconds"
            raise ValueError(msg)

        if self.sweep_backoff_base_seconds > self.sweep_backoff_max_seconds:
            msg = "sweep_backoff_base_seconds must not exceed sweep_backoff_max_seconds"
            raise ValueError(msg)

        if self.outbox_max_retries < 0 or self.sweep_conflict_retries < 0:
            msg = "retry counts must be >= 0"
            raise ValueError(msg)

        if self.gateway == "zarinpal" and not self.zarinpal_merchant_id:
            msg = "zarinpal gateway requires zarinpal_merchant_id"
            raise ValueError(msg)

    @property
    def payment_window(self) -> timedelta:
        return timedelta(seconds=self.payment_window_seconds)

    @property
    def verification_timeout(self) -> timedelta:
        return timedelta(seconds=self.verification_timeout_seconds)

    @property
    def duplicate_window(self) -> timedelta:
        return timedelta(seconds=self.duplicate_window_seconds)

    @classmethod
    def from_env(cls, env: EnvManager | None = None) -> "OrderflowConfig":
        """
        Create configuration from environment variables.

        Every field maps to ``ORDERFLOW_<FIELD NAME IN UPPER CASE>``, e.g.
        ``ORDERFLOW_STORAGE_URL`` or ``ORDERFLOW_SWEEP_INTERVAL_SECONDS``.
        Unset, empty or unparseable values keep the field default.
        """
        env = env or EnvManager()
        defaults = cls()
        values: dict[str, Any] = {}

        for f in fields(cls):
            key = f"{PREFIX}{f.name.upper()}"
            default = getattr(defaults, f.name)
            if isinstance(default, bool):
                values[f.name] = env.get_bool(key, default)
            elif isinstance(default, int):
                values[f.name] = env.get_int(key, default)
            elif isinstance(default, float):
                values[f.name] = env.get_float(key, default)
            else:
                values[f.name] = env.get(key) or default

        return cls(**values)

    @classmethod
    def unknown_env_settings(cls, env: EnvManager) -> list[str]:
        """``ORDERFLOW_*`` variables that name no config field (typos, stale settings)."""
        names = {f.name for f in fields(cls)}
        return sorted(f"{PREFIX}{key.upper()}" for key in env.settings() if key not in names)


# Global configuration instance
_global_config: OrderflowConfig | None = None


def get_config() -> OrderflowConfig:
    """Get the global configuration, creating a default one on first use."""
    global _global_config
    if _global_config is None:
        _global_config = OrderflowConfig()
    return _global_config


def configure(config: OrderflowConfig) -> None:
    """Set the global orderflow configuration."""
    global _global_config
    _global_config = config
